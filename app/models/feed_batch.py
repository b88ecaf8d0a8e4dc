import enum

from sqlalchemy import Column, String, Integer, Text, Date, DateTime, ForeignKey, JSON, Uuid, Enum as SQLEnum

from app.database import Base
from app.models.base import BaseModel


class FeedType(str, enum.Enum):
	ORGANIZATION = "ORGANIZATION"
	EMPLOYEE = "EMPLOYEE"
	HOLIDAY = "HOLIDAY"
	COMMON_CODE = "COMMON_CODE"


class BatchStatus(str, enum.Enum):
	RECEIVED = "RECEIVED"
	PROCESSING = "PROCESSING"
	COMPLETED = "COMPLETED"
	FAILED = "FAILED"


class FeedBatch(Base, BaseModel):
	__tablename__ = "dw_import_batches"

	feed_type = Column(SQLEnum(FeedType, native_enum=False, length=32), nullable=False, index=True)
	source_name = Column(String(64))
	business_date = Column(Date)
	format = Column(String(16))
	checksum = Column(String(128))
	outbox_id = Column(Uuid(as_uuid=True), index=True)  # lookup only, no FK
	status = Column(SQLEnum(BatchStatus, native_enum=False, length=20), default=BatchStatus.RECEIVED, nullable=False, index=True)
	total_records = Column(Integer, default=0, nullable=False)
	inserted_records = Column(Integer, default=0, nullable=False)
	updated_records = Column(Integer, default=0, nullable=False)
	failed_records = Column(Integer, default=0, nullable=False)
	received_at = Column(DateTime(timezone=True), nullable=False)
	completed_at = Column(DateTime(timezone=True))
	error_message = Column(String(2000))


class FeedValidationError(Base, BaseModel):
	__tablename__ = "dw_validation_errors"

	batch_id = Column(Uuid(as_uuid=True), ForeignKey("dw_import_batches.id"), nullable=False, index=True)
	line_number = Column(Integer, nullable=False)
	natural_key = Column(String(255))
	error_code = Column(String(50), nullable=False)
	error_message = Column(Text)
	raw_payload = Column(Text)


class FeedStagedRecord(Base, BaseModel):
	__tablename__ = "dw_staged_records"

	batch_id = Column(Uuid(as_uuid=True), ForeignKey("dw_import_batches.id"), nullable=False, index=True)
	feed_type = Column(SQLEnum(FeedType, native_enum=False, length=32), nullable=False)
	line_number = Column(Integer, nullable=False)
	natural_key = Column(String(255), nullable=False)
	payload = Column(JSON, nullable=False)
