import uuid

from sqlalchemy import Column, DateTime, Uuid

from app.core.clock import utcnow


class BaseModel:
	"""Columns shared by every table: surrogate UUID key and audit timestamps."""

	id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
	created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
	updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
