"""
Persistent catalog of backup records.

The catalog is the only store of BackupRecords. It is owned by the
BackupManager; every mutation and every statistics read goes through one
exclusive lock so concurrent run completions never interleave.
"""

import json
import logging
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional, List, Iterable

from sqlalchemy import (
    create_engine, func, case, Column, String, Integer, BigInteger, Boolean, DateTime, Text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import CatalogError
from .models import BackupRecord, BackupStatistics, WriteResult, VerificationResult


logger = logging.getLogger(__name__)

Base = declarative_base()


class BackupRecordRow(Base):
    """Stored form of a BackupRecord"""
    __tablename__ = 'backup_records'

    id = Column(String(64), primary_key=True)
    storage_type = Column(String(64), nullable=False, index=True)
    backup_type = Column(String(20), nullable=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    size = Column(BigInteger, default=0, nullable=False)
    checksum = Column(String(128))
    source_checksum = Column(String(128))
    compression = Column(String(20), nullable=False)
    encrypted = Column(Boolean, default=False, nullable=False)
    destinations = Column(Text)  # JSON list of write results
    verification = Column(Text)  # JSON list of verification results
    warnings = Column(Text)  # JSON list of strings
    error = Column(Text)
    error_code = Column(String(64))
    logs = Column(Text)
    destination_count = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f'<BackupRecordRow {self.id} type={self.storage_type} success={self.success}>'


def _to_db_time(value: datetime) -> datetime:
    """Store as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _row_from_record(record: BackupRecord) -> BackupRecordRow:
    return BackupRecordRow(
        id=record.id,
        storage_type=record.storage_type,
        backup_type=record.backup_type,
        started_at=_to_db_time(record.started_at),
        completed_at=_to_db_time(record.completed_at),
        success=record.success,
        size=record.size,
        checksum=record.checksum,
        source_checksum=record.source_checksum,
        compression=record.compression,
        encrypted=record.encrypted,
        destinations=json.dumps([asdict(d) for d in record.destinations]),
        verification=json.dumps([v.to_dict() for v in record.verification]),
        warnings=json.dumps(list(record.warnings)),
        error=record.error,
        error_code=record.error_code,
        logs=record.logs,
        destination_count=len(record.destinations),
    )


def _record_from_row(row: BackupRecordRow) -> BackupRecord:
    return BackupRecord(
        id=row.id,
        storage_type=row.storage_type,
        backup_type=row.backup_type,
        started_at=_from_db_time(row.started_at),
        completed_at=_from_db_time(row.completed_at),
        success=row.success,
        size=row.size or 0,
        checksum=row.checksum,
        source_checksum=row.source_checksum,
        compression=row.compression,
        encrypted=row.encrypted,
        destinations=tuple(WriteResult(**d) for d in json.loads(row.destinations or '[]')),
        verification=tuple(
            VerificationResult(
                type=v['type'], passed=v['passed'], details=v.get('details', ''),
                errors=tuple(v.get('errors', ())),
            )
            for v in json.loads(row.verification or '[]')
        ),
        warnings=tuple(json.loads(row.warnings or '[]')),
        error=row.error,
        error_code=row.error_code,
        logs=row.logs or '',
    )


class RecordCatalog:
    """
    SQLAlchemy-backed store of BackupRecords.

    The default URL is an in-memory SQLite database shared across worker
    threads through a static connection pool.
    """

    def __init__(self, database_url: str = 'sqlite://'):
        engine_kwargs = {}
        if database_url.startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if database_url in ('sqlite://', 'sqlite:///:memory:'):
                engine_kwargs['poolclass'] = StaticPool

        self.database_url = database_url
        self.engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.Lock()

    def add(self, record: BackupRecord):
        """
        Append a record.

        Raises:
            ValueError: If a record with the same id already exists
            CatalogError: If the database rejects the write
        """
        with self._lock, self._session_factory() as session:
            if session.get(BackupRecordRow, record.id) is not None:
                raise ValueError(f"Backup record already exists: {record.id}")
            try:
                session.add(_row_from_record(record))
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise CatalogError(f"Failed to catalogue backup record {record.id}: {e}")
        logger.debug(f"Catalogued backup record {record.id} ({record.storage_type}, success={record.success})")

    def get(self, record_id: str) -> Optional[BackupRecord]:
        with self._lock, self._session_factory() as session:
            row = session.get(BackupRecordRow, record_id)
            return _record_from_row(row) if row else None

    def list(
        self,
        storage_type: Optional[str] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[BackupRecord]:
        """Return records matching all given filters, ordered by completion time."""
        with self._lock, self._session_factory() as session:
            query = session.query(BackupRecordRow)
            if storage_type is not None:
                query = query.filter(BackupRecordRow.storage_type == storage_type)
            if success is not None:
                query = query.filter(BackupRecordRow.success == success)
            if since is not None:
                query = query.filter(BackupRecordRow.completed_at >= _to_db_time(since))
            if until is not None:
                query = query.filter(BackupRecordRow.completed_at <= _to_db_time(until))

            order = BackupRecordRow.completed_at.desc() if newest_first else BackupRecordRow.completed_at.asc()
            query = query.order_by(order, BackupRecordRow.id)

            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)

            return [_record_from_row(row) for row in query.all()]

    def remove(self, record_ids: Iterable[str]) -> int:
        """Delete records by id. Returns the number removed."""
        ids = list(record_ids)
        if not ids:
            return 0
        with self._lock, self._session_factory() as session:
            removed = (
                session.query(BackupRecordRow)
                .filter(BackupRecordRow.id.in_(ids))
                .delete(synchronize_session=False)
            )
            session.commit()
        return removed

    def statistics(self) -> BackupStatistics:
        """Aggregate counters over every catalogued record."""
        with self._lock, self._session_factory() as session:
            total, successful, total_size, last = session.query(
                func.count(BackupRecordRow.id),
                func.sum(case((BackupRecordRow.success.is_(True), 1), else_=0)),
                func.sum(BackupRecordRow.size),
                func.max(BackupRecordRow.completed_at),
            ).one()

            by_type = {}
            rows = session.query(
                BackupRecordRow.storage_type,
                func.count(BackupRecordRow.id),
                func.sum(BackupRecordRow.size),
                func.max(BackupRecordRow.completed_at),
            ).group_by(BackupRecordRow.storage_type).all()
            for storage_type, count, size, last_backup in rows:
                by_type[storage_type] = {
                    'count': count,
                    'size': int(size or 0),
                    'lastBackup': _from_db_time(last_backup),
                }

        total = total or 0
        successful = int(successful or 0)
        return BackupStatistics(
            total_backups=total,
            successful_backups=successful,
            failed_backups=total - successful,
            total_size=int(total_size or 0),
            last_backup_time=_from_db_time(last),
            by_storage_type=by_type,
        )

    def count(self) -> int:
        with self._lock, self._session_factory() as session:
            return session.query(func.count(BackupRecordRow.id)).scalar() or 0

    def close(self):
        self.engine.dispose()
