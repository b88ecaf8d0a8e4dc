import enum

from sqlalchemy import Column, String, Integer, Text, DateTime, Index, Uuid, Enum as SQLEnum

from app.database import Base
from app.models.base import BaseModel


class OutboxStatus(str, enum.Enum):
	PENDING = "PENDING"
	DISPATCHING = "DISPATCHING"
	DISPATCHED = "DISPATCHED"
	FAILED = "FAILED"


class OutboxEntry(Base, BaseModel):
	"""Durable unit of pending work. Rows are never deleted; FAILED and DISPATCHED are terminal."""

	__tablename__ = "dw_ingestion_outbox"
	__table_args__ = (
		Index("idx_dw_ingestion_outbox_status_created", "status", "created_at"),
	)

	job_type = Column(String(50), nullable=False)
	payload = Column(Text)
	status = Column(SQLEnum(OutboxStatus, native_enum=False, length=20), default=OutboxStatus.PENDING, nullable=False)
	available_at = Column(DateTime(timezone=True), nullable=False, index=True)
	locked_at = Column(DateTime(timezone=True))
	locked_by = Column(String(100))
	processed_at = Column(DateTime(timezone=True))
	retry_count = Column(Integer, default=0, nullable=False)
	retry_of = Column(Uuid(as_uuid=True))
	last_error = Column(String(500))

	def __repr__(self):
		return f"<OutboxEntry {self.id} {self.job_type} {self.status.value if self.status else None}>"
