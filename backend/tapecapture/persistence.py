# backend/tapecapture/persistence.py
"""
Durable mirror of capture jobs.

Every call is awaited but runs the blocking session work in a worker
thread. Storage failures are logged and swallowed: an outage degrades
durability, never the in-memory state the registry owns.
"""
import asyncio
import logging
from typing import Iterable, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from .models import CaptureJob, CaptureJobRecord, as_utc, utcnow

logger = logging.getLogger(__name__)


class PersistenceAdapter:

    def __init__(self, engine: Engine):
        self._engine = engine

    async def insert(self, job: CaptureJob) -> bool:
        return await self._guard("insert", job.id, self._insert, job)

    async def update(self, job: CaptureJob) -> bool:
        return await self._guard("update", job.id, self._update, job)

    async def delete(self, job_ids: Iterable[str]) -> bool:
        ids = list(job_ids)
        if not ids:
            return True
        return await self._guard("delete", ",".join(ids), self._delete, ids)

    async def select(self, job_id: str) -> Optional[CaptureJob]:
        try:
            return await asyncio.to_thread(self._select, job_id)
        except SQLAlchemyError:
            logger.exception("Failed to load capture job %s from database", job_id)
            return None

    async def select_all(self) -> List[CaptureJob]:
        try:
            return await asyncio.to_thread(self._select_all)
        except SQLAlchemyError:
            logger.exception("Failed to load capture jobs from database")
            return []

    async def _guard(self, op: str, label: str, fn, arg) -> bool:
        try:
            await asyncio.to_thread(fn, arg)
            return True
        except SQLAlchemyError:
            logger.exception("Failed to %s capture job %s in database", op, label)
            return False

    # --- blocking helpers, run off the event loop ---

    def _insert(self, job: CaptureJob):
        with Session(self._engine) as session:
            session.add(CaptureJobRecord.from_job(job))
            session.commit()

    def _update(self, job: CaptureJob):
        with Session(self._engine) as session:
            record = session.get(CaptureJobRecord, job.id)
            if record is None:
                # the insert was lost to an earlier outage
                logger.warning("Capture job %s missing from database, re-inserting", job.id)
                session.add(CaptureJobRecord.from_job(job))
                session.commit()
                return
            record.status = job.status.value
            record.end_time = as_utc(job.end_time)
            record.progress = job.progress
            record.error = job.error
            record.output_path = job.output_path
            record.updated_at = utcnow()
            session.add(record)
            session.commit()

    def _delete(self, job_ids: List[str]):
        with Session(self._engine) as session:
            records = session.exec(
                select(CaptureJobRecord).where(col(CaptureJobRecord.id).in_(job_ids))
            ).all()
            for record in records:
                session.delete(record)
            session.commit()

    def _select(self, job_id: str) -> Optional[CaptureJob]:
        with Session(self._engine) as session:
            record = session.get(CaptureJobRecord, job_id)
            return record.to_job() if record else None

    def _select_all(self) -> List[CaptureJob]:
        with Session(self._engine) as session:
            records = session.exec(select(CaptureJobRecord).order_by(CaptureJobRecord.start_time)).all()
            return [r.to_job() for r in records]
