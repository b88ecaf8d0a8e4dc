import base64
import hashlib
import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook
from sqlalchemy import func, select

from app.core.exceptions import SynchronizationError
from app.ingestion.pipeline import IngestionPipeline
from app.ingestion.registry import build_feed_registry
from app.models.directory import CommonCode, Employee, Holiday, Organization
from app.models.feed_batch import BatchStatus, FeedBatch, FeedStagedRecord, FeedValidationError
from app.schemas.feed import FeedDocument


def org_feed(*records) -> FeedDocument:
	return FeedDocument.model_validate({
		"feedType": "ORGANIZATION",
		"sourceName": "hr-master",
		"businessDate": "2026-01-05",
		"records": list(records),
	})


def count(session_factory, model) -> int:
	with session_factory() as db:
		return db.execute(select(func.count()).select_from(model)).scalar_one()


def rows(session_factory, model):
	with session_factory() as db:
		return db.execute(select(model)).scalars().all()


def test_valid_and_malformed_rows(pipeline, session_factory, org_cache):
	"""Test one good row is inserted and one bad row is recorded"""
	result = pipeline.ingest(org_feed(
		{"organizationCode": "G1", "name": "Group A", "status": "ACTIVE"},
		{"name": "Broken"},
	))

	assert result.status == "COMPLETED"
	assert result.counts() == {"total": 2, "inserted": 1, "updated": 0, "failed": 1}

	errors = rows(session_factory, FeedValidationError)
	assert len(errors) == 1
	assert errors[0].line_number == 2
	assert errors[0].error_code == "MISSING_FIELD"
	assert errors[0].natural_key is None
	assert '"name": "Broken"' in errors[0].raw_payload

	staged = rows(session_factory, FeedStagedRecord)
	assert [s.natural_key for s in staged] == ["G1"]
	assert staged[0].payload["organizationCode"] == "G1"

	org = rows(session_factory, Organization)[0]
	assert (org.organization_code, org.name, org.status) == ("G1", "Group A", "ACTIVE")
	assert org_cache.evictions == 1


def test_resubmitted_record_counts_as_update(pipeline, session_factory):
	"""Test an existing key is updated, never inserted twice"""
	record = {"organizationCode": "G1", "name": "Group A", "status": "ACTIVE"}
	pipeline.ingest(org_feed(record))

	second = pipeline.ingest(org_feed(record))

	assert second.counts() == {"total": 1, "inserted": 0, "updated": 1, "failed": 0}
	assert count(session_factory, Organization) == 1


def test_replay_is_idempotent(pipeline, session_factory):
	document = org_feed(
		{"organizationCode": "HQ", "name": "Headquarters"},
		{"organizationCode": "G1", "name": "Group A", "parentCode": "HQ"},
	)
	pipeline.ingest(document)
	before = {(o.organization_code, o.name, o.parent_code) for o in rows(session_factory, Organization)}

	pipeline.ingest(document)
	after = {(o.organization_code, o.name, o.parent_code) for o in rows(session_factory, Organization)}

	assert before == after
	assert count(session_factory, Organization) == 2


def test_changed_attributes_are_applied(pipeline, session_factory):
	pipeline.ingest(org_feed({"organizationCode": "G1", "name": "Group A"}))
	pipeline.ingest(org_feed({"organizationCode": "G1", "name": "Group A (renamed)", "status": "INACTIVE"}))

	org = rows(session_factory, Organization)[0]
	assert org.name == "Group A (renamed)"
	assert org.status == "INACTIVE"


def test_duplicate_key_in_one_batch(pipeline, session_factory):
	result = pipeline.ingest(org_feed(
		{"organizationCode": "G1", "name": "First"},
		{"organizationCode": "G1", "name": "Second"},
	))

	assert result.counts() == {"total": 2, "inserted": 1, "updated": 0, "failed": 1}
	error = rows(session_factory, FeedValidationError)[0]
	assert error.error_code == "DUPLICATE_KEY"
	assert error.natural_key == "G1"
	assert rows(session_factory, Organization)[0].name == "First"


def test_parse_failure_fails_batch_without_staging(pipeline, session_factory):
	"""Test a structural error aborts before anything is staged"""
	document = FeedDocument.model_validate({
		"feedType": "EMPLOYEE",
		"format": "csv",
		"content": "employeeNumber,name\nE1,Kim,extra\n",
	})

	result = pipeline.ingest(document)

	assert result.status == "FAILED"
	assert result.error_message.startswith("Parse failed")
	assert count(session_factory, FeedStagedRecord) == 0
	assert count(session_factory, Employee) == 0
	batch = rows(session_factory, FeedBatch)[0]
	assert batch.status == BatchStatus.FAILED
	assert batch.completed_at is not None


def test_non_object_json_row_is_a_parse_error(pipeline):
	result = pipeline.ingest(org_feed({"organizationCode": "G1", "name": "A"}, "G2"))

	assert result.status == "FAILED"
	assert "Line 2" in result.error_message


def test_csv_feed(pipeline, session_factory):
	document = FeedDocument.model_validate({
		"feedType": "EMPLOYEE",
		"format": "csv",
		"content": "\ufeffemployeeNumber,name,email,organizationCode\n"
		           "E1,Kim,kim@example.com,G1\n"
		           "E2,Lee,not-an-email,G1\n",
	})

	result = pipeline.ingest(document)

	assert result.counts() == {"total": 2, "inserted": 1, "updated": 0, "failed": 1}
	error = rows(session_factory, FeedValidationError)[0]
	assert (error.line_number, error.natural_key, error.error_code) == (3, "E2", "INVALID_VALUE")
	employee = rows(session_factory, Employee)[0]
	assert (employee.employee_number, employee.email, employee.organization_code) == ("E1", "kim@example.com", "G1")


def test_xlsx_holiday_feed(pipeline, session_factory):
	wb = Workbook()
	ws = wb.active
	ws.append(["holidayDate", "name", "workingDay"])
	ws.append([datetime(2026, 1, 1), "New Year", False])
	ws.append([datetime(2026, 2, 17), "Lunar New Year", None])
	ws.append([None, None, None])
	ws.append(["not a date", "Broken", None])
	buffer = io.BytesIO()
	wb.save(buffer)

	result = pipeline.ingest(FeedDocument.model_validate({
		"feedType": "HOLIDAY",
		"format": "xlsx",
		"content": base64.b64encode(buffer.getvalue()).decode("ascii"),
	}))

	assert result.counts() == {"total": 3, "inserted": 2, "updated": 0, "failed": 1}
	holidays = {h.holiday_date: h.name for h in rows(session_factory, Holiday)}
	assert holidays == {date(2026, 1, 1): "New Year", date(2026, 2, 17): "Lunar New Year"}
	assert rows(session_factory, FeedValidationError)[0].line_number == 5


def test_common_code_composite_key(pipeline, session_factory):
	document = FeedDocument.model_validate({
		"feedType": "COMMON_CODE",
		"records": [
			{"codeGroup": "JOB_TITLE", "code": "MGR", "name": "Manager", "sortOrder": 1},
			{"codeGroup": "JOB_TITLE", "code": "STF", "name": "Staff", "sortOrder": 2},
			{"codeGroup": "REGION", "code": "MGR", "name": "Mangyeong"},
		],
	})

	result = pipeline.ingest(document)

	assert result.counts() == {"total": 3, "inserted": 3, "updated": 0, "failed": 0}
	keys = {s.natural_key for s in rows(session_factory, FeedStagedRecord)}
	assert keys == {"JOB_TITLE|MGR", "JOB_TITLE|STF", "REGION|MGR"}
	assert count(session_factory, CommonCode) == 3


def test_cache_eviction_failure_does_not_fail_batch(session_factory, clock, make_cache):
	"""Test a stale cache is preferred over a failed batch"""
	broken = make_cache("dw:org-tree", error=ConnectionError("redis down"))
	pipeline = IngestionPipeline(session_factory, build_feed_registry(org_tree_cache=broken), clock=clock)

	result = pipeline.ingest(org_feed({"organizationCode": "G1", "name": "Group A"}))

	assert result.status == "COMPLETED"
	assert result.inserted_records == 1


def test_synchronization_failure_keeps_audit_trail(session_factory, clock):
	class FailingSynchronizer:
		def synchronize(self, strategy, records):
			raise SynchronizationError("deadlock detected")

	pipeline = IngestionPipeline(
		session_factory, build_feed_registry(), synchronizer=FailingSynchronizer(), clock=clock,
	)

	result = pipeline.ingest(org_feed({"organizationCode": "G1", "name": "Group A"}, {"name": "Broken"}))

	assert result.status == "FAILED"
	assert result.error_message == "deadlock detected"
	assert result.total_records == 2
	assert result.failed_records == 1
	assert count(session_factory, FeedStagedRecord) == 1
	assert count(session_factory, FeedValidationError) == 1
	assert count(session_factory, Organization) == 0


def test_batch_metadata(pipeline, session_factory):
	raw = '{"feedType": "ORGANIZATION", "records": [{"organizationCode": "G1", "name": "A"}]}'
	document = FeedDocument.model_validate_json(raw)
	outbox_id = "7b4c1f52-3a43-4b57-9f0e-1f5a9d3c2e10"

	result = pipeline.ingest(document, outbox_id=outbox_id, raw_payload=raw)

	batch = rows(session_factory, FeedBatch)[0]
	assert str(batch.id) == result.batch_id
	assert str(batch.outbox_id) == outbox_id
	assert batch.checksum == hashlib.sha256(raw.encode("utf-8")).hexdigest()
	assert batch.format == "json"
	assert batch.status == BatchStatus.COMPLETED


@pytest.mark.parametrize("records", [
	[],
	[{"organizationCode": "A", "name": "A"}],
	[{"organizationCode": "A", "name": "A"}, {"organizationCode": "A", "name": "B"}, {"name": "x"}],
	[{"organizationCode": "A", "name": "A", "status": "DELETED"}, {"organizationCode": "B", "name": "B"}],
])
def test_counts_add_up_for_completed_batches(pipeline, session_factory, records):
	result = pipeline.ingest(org_feed(*records))

	assert result.status == "COMPLETED"
	assert result.inserted_records + result.updated_records + result.failed_records == result.total_records
	assert result.total_records == len(records)
