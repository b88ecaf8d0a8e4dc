from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.feed_batch import FeedType


class FeedDocument(BaseModel):
	"""Payload of a FEED_INGESTION job."""
	model_config = ConfigDict(populate_by_name=True)

	feed_type: FeedType = Field(alias="feedType")
	source_name: Optional[str] = Field(default=None, alias="sourceName", max_length=64)
	business_date: Optional[date] = Field(default=None, alias="businessDate")
	format: Literal["json", "csv", "xlsx"] = "json"
	content: Optional[str] = None  # csv text, or base64 for xlsx
	records: Optional[List[Any]] = None

	@model_validator(mode="after")
	def _body_present(self) -> "FeedDocument":
		if self.format == "json" and self.records is None:
			raise ValueError("json feeds carry their rows in 'records'")
		if self.format != "json" and self.content is None:
			raise ValueError(f"{self.format} feeds carry their body in 'content'")
		return self


# =====================================
# Record models, one per feed type
# =====================================

class FeedRecord(BaseModel):
	model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class OrganizationRecord(FeedRecord):
	organization_code: str = Field(alias="organizationCode", min_length=1, max_length=50)
	name: str = Field(min_length=1, max_length=255)
	parent_code: Optional[str] = Field(default=None, alias="parentCode", max_length=50)
	status: Literal["ACTIVE", "INACTIVE"] = "ACTIVE"
	leader_employee_number: Optional[str] = Field(default=None, alias="leaderEmployeeNumber", max_length=50)


class EmployeeRecord(FeedRecord):
	employee_number: str = Field(alias="employeeNumber", min_length=1, max_length=50)
	name: str = Field(min_length=1, max_length=255)
	organization_code: Optional[str] = Field(default=None, alias="organizationCode", max_length=50)
	email: Optional[str] = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
	job_title: Optional[str] = Field(default=None, alias="jobTitle", max_length=100)
	status: Literal["ACTIVE", "LEAVE", "RETIRED"] = "ACTIVE"


class HolidayRecord(FeedRecord):
	holiday_date: date = Field(alias="holidayDate")
	name: str = Field(min_length=1, max_length=255)
	working_day: bool = Field(default=False, alias="workingDay")


class CommonCodeRecord(FeedRecord):
	code_group: str = Field(alias="codeGroup", min_length=1, max_length=50)
	code: str = Field(min_length=1, max_length=50)
	name: str = Field(min_length=1, max_length=255)
	sort_order: int = Field(default=0, alias="sortOrder")
	active: bool = True


class PipelineResult(BaseModel):
	batch_id: str
	feed_type: FeedType
	status: str
	total_records: int = 0
	inserted_records: int = 0
	updated_records: int = 0
	failed_records: int = 0
	error_message: Optional[str] = None

	def counts(self) -> Dict[str, int]:
		return {
			"total": self.total_records,
			"inserted": self.inserted_records,
			"updated": self.updated_records,
			"failed": self.failed_records,
		}
