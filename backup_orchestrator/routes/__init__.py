from flask import current_app


def get_backup_system():
    """BackupSystem attached to the running app by create_app()."""
    return current_app.extensions['backup_system']
