from sqlalchemy import Integer, Text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from artscout.database.tables.base_class import BasePublic


class ExecutionHistory(BasePublic):
    """Audit summary of one search pipeline execution."""

    __tablename__ = "search_execution_history"

    execution_id: Mapped[str] = mapped_column(Text, unique=True)
    profile_id: Mapped[str] = mapped_column(Text, index=True)
    queries: Mapped[list[str]] = mapped_column(ARRAY(Text))
    query_count: Mapped[int] = mapped_column(Integer)
    processing_time_ms: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(Text)
    execution_metadata: Mapped[dict] = mapped_column(JSONB, default=dict)
