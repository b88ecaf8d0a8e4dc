# Authoritative tables written by the synchronize stage.
from sqlalchemy import Column, String, Integer, Boolean, Date, UniqueConstraint

from app.database import Base
from app.models.base import BaseModel


class Organization(Base, BaseModel):
	__tablename__ = "dw_organizations"

	organization_code = Column(String(50), unique=True, nullable=False, index=True)
	name = Column(String(255), nullable=False)
	parent_code = Column(String(50), index=True)
	status = Column(String(20), nullable=False, default="ACTIVE")
	leader_employee_number = Column(String(50))


class Employee(Base, BaseModel):
	__tablename__ = "dw_employees"

	employee_number = Column(String(50), unique=True, nullable=False, index=True)
	name = Column(String(255), nullable=False)
	organization_code = Column(String(50), index=True)
	email = Column(String(255))
	job_title = Column(String(100))
	status = Column(String(20), nullable=False, default="ACTIVE")


class Holiday(Base, BaseModel):
	__tablename__ = "dw_holidays"

	holiday_date = Column(Date, unique=True, nullable=False, index=True)
	name = Column(String(255), nullable=False)
	working_day = Column(Boolean, nullable=False, default=False)


class CommonCode(Base, BaseModel):
	__tablename__ = "dw_common_codes"
	__table_args__ = (
		UniqueConstraint("code_group", "code", name="uq_dw_common_codes_group_code"),
	)

	code_group = Column(String(50), nullable=False, index=True)
	code = Column(String(50), nullable=False)
	name = Column(String(255), nullable=False)
	sort_order = Column(Integer, nullable=False, default=0)
	active = Column(Boolean, nullable=False, default=True)
