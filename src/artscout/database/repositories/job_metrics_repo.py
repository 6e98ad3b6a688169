from datetime import datetime

import sqlalchemy as sa

from artscout.database.database import DatabaseSessionManager, sessionmanager
from artscout.database.tables.job_metrics_table import JobMetrics
from artscout.jobs.job_models import JobMetricsRecord


class JobMetricsRepo:
    def __init__(self, session_manager: DatabaseSessionManager = sessionmanager):
        self.session_manager = session_manager

    async def record_job_metrics(self, record: JobMetricsRecord) -> None:
        stmt = sa.insert(JobMetrics).values(**record.model_dump())
        async with self.session_manager.transaction() as session:
            await session.execute(stmt)

    async def delete_job_records_before(self, cutoff: datetime) -> int:
        """Remove metrics rows for job attempts older than ``cutoff``."""
        stmt = sa.delete(JobMetrics).where(JobMetrics.created_at < cutoff)
        async with self.session_manager.transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0
