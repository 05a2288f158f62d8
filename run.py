#!/usr/bin/env python3
"""Development server for the backup orchestrator."""
import os

from backup_orchestrator import create_app

if __name__ == '__main__':
    config_name = os.environ.get('FLASK_ENV', 'development')
    app = create_app(config_name)

    # The reloader child owns the scheduler (see create_app)
    app.run(
        host=os.environ.get('HOST', '127.0.0.1'),
        port=int(os.environ.get('PORT', 5000)),
        debug=config_name == 'development',
    )
