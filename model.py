import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, Enum, Float, Integer, String, UniqueConstraint

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"
    MANAGER = "manager"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(String(9), unique=True, index=True, nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    email = Column(String(254), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(Enum(UserRole, values_callable=lambda e: [m.value for m in e]), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Timesheet(Base):
    __tablename__ = "timesheets"
    # Natural key of the save path; the submit path keys on (date, employee_id) only
    __table_args__ = (
        UniqueConstraint("date", "employee_id", "record_type", name="uq_timesheet_day_record_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    hours = Column(Float, nullable=False)
    employee_id = Column(String(50), nullable=False, index=True)
    project_id = Column(String(50), nullable=False)
    task_id = Column(String(50), nullable=False)
    record_type = Column(String(50), nullable=False)
    wfh = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default="Saved", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
