from typing import Optional

from sqlalchemy import Boolean, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from artscout.database.tables.base_class import BasePublic


class JobMetrics(BasePublic):
    __tablename__ = "job_metrics"

    service_name: Mapped[str] = mapped_column(Text)
    operation: Mapped[str] = mapped_column(Text, index=True)
    queue_name: Mapped[str] = mapped_column(Text)
    job_id: Mapped[str] = mapped_column(Text, index=True)
    attempts: Mapped[int] = mapped_column(Integer)
    success: Mapped[bool] = mapped_column(Boolean)
    response_time_ms: Mapped[int] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
