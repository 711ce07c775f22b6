import datetime as dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from model import UserRole


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case attributes in Python"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ErrorResponse(BaseModel):
    message: str
    error: str
    code: int
    timestamp: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))


# ---------- Auth ----------

class RegisterRequest(CamelModel):
    first_name: str = Field(min_length=2, max_length=50)
    last_name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=8)
    confirm_password: Optional[str] = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def strip_names(cls, v):
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.confirm_password and self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class LoginRequest(CamelModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ProfileUpdate(CamelModel):
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None


class PasswordChange(CamelModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8)
    confirm_new_password: Optional[str] = None

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_new_password:
            raise ValueError("New passwords do not match")
        return self


class UserOut(CamelModel):
    id: int
    employee_id: str
    first_name: str
    last_name: str
    email: str
    role: UserRole
    is_active: bool
    created_at: dt.datetime
    updated_at: dt.datetime


class AuthResponse(BaseModel):
    message: str
    token: str
    user: UserOut


class UserResponse(BaseModel):
    message: str
    user: UserOut


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class UserListResponse(BaseModel):
    message: str
    users: List[UserOut]
    pagination: Pagination


class MessageResponse(BaseModel):
    message: str


# ---------- Timesheets ----------

class TimesheetBase(CamelModel):
    hours: float = Field(ge=0, le=24)
    employee_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    task_id: str = Field(min_length=1)
    record_type: str = Field(min_length=1)
    wfh: Optional[bool] = None


class TimesheetCreate(TimesheetBase):
    date: dt.date
    status: Optional[str] = Field(default=None, max_length=20)


class WeeklyTimesheetCreate(TimesheetBase):
    start_date: dt.date
    end_date: dt.date
    status: Optional[str] = Field(default=None, max_length=20)


class TimesheetOut(CamelModel):
    id: int
    date: dt.date
    hours: float
    employee_id: str
    project_id: str
    task_id: str
    record_type: str
    wfh: bool = False
    status: str
    created_at: dt.datetime
    updated_at: dt.datetime

    @field_validator("wfh", mode="before")
    @classmethod
    def default_wfh(cls, v):
        return False if v is None else v


class TimesheetResponse(BaseModel):
    message: str
    data: TimesheetOut
    action: str


class TimesheetListResponse(BaseModel):
    message: str
    count: int
    data: List[TimesheetOut]


class WeeklyTimesheetResponse(CamelModel):
    message: str
    count: int
    start_date: dt.date
    end_date: dt.date
    data: List[TimesheetOut]
    action: str


# ---------- Notifications ----------

class PublishRequest(BaseModel):
    queue: str
    message: Dict[str, Any] = Field(default_factory=dict)


class PublishResponse(BaseModel):
    message: str
    queue: str
    data: Dict[str, Any]
