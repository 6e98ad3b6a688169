import sqlalchemy as sa

from artscout.database.database import DatabaseSessionManager, sessionmanager
from artscout.database.tables.execution_history_table import ExecutionHistory
from artscout.search.search_models import ExecutionHistoryRecord, ExecutionStatus


class ExecutionHistoryRepo:
    """Stores execution summaries; each call runs in its own short transaction."""

    def __init__(self, session_manager: DatabaseSessionManager = sessionmanager):
        self.session_manager = session_manager

    async def add_record(self, record: ExecutionHistoryRecord) -> None:
        stmt = sa.insert(ExecutionHistory).values(
            execution_id=record.execution_id,
            profile_id=record.profile_id,
            queries=record.queries,
            query_count=record.query_count,
            processing_time_ms=record.processing_time_ms,
            status=record.status.value,
            execution_metadata={
                "opportunities_found": record.opportunities_found,
                "high_quality_opportunities": record.high_quality_opportunities,
            },
            created_at=record.created_at,
        )
        async with self.session_manager.transaction() as session:
            await session.execute(stmt)

    async def get_recent(self, profile_id: str, limit: int) -> list[ExecutionHistoryRecord]:
        query = (
            sa.select(ExecutionHistory)
            .where(ExecutionHistory.profile_id == profile_id)
            .order_by(ExecutionHistory.created_at.desc())
            .limit(limit)
        )
        async with self.session_manager.transaction() as session:
            rows = (await session.execute(query)).scalars().all()

        return [
            ExecutionHistoryRecord(
                execution_id=row.execution_id,
                profile_id=row.profile_id,
                queries=list(row.queries or []),
                query_count=row.query_count,
                processing_time_ms=row.processing_time_ms,
                opportunities_found=(row.execution_metadata or {}).get("opportunities_found", 0),
                high_quality_opportunities=(row.execution_metadata or {}).get(
                    "high_quality_opportunities", 0
                ),
                status=ExecutionStatus(row.status),
                created_at=row.created_at,
            )
            for row in rows
        ]
