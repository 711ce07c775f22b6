import random
from datetime import date, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from model import Timesheet, User, utcnow

EMPLOYEE_ID_PREFIX = "EMP"
DEFAULT_STATUS = "Saved"


# User CRUD
async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
    return await db.get(User, user_id)


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalars().first()


async def employee_id_exists(db: AsyncSession, employee_id: str) -> bool:
    result = await db.execute(select(User.id).where(User.employee_id == employee_id))
    return result.first() is not None


async def generate_employee_id(db: AsyncSession) -> str:
    """EMP + 6 random digits, regenerated until unused"""
    while True:
        employee_id = f"{EMPLOYEE_ID_PREFIX}{random.randint(100000, 999999)}"
        if not await employee_id_exists(db, employee_id):
            return employee_id


async def create_user(db: AsyncSession, first_name: str, last_name: str, email: str, password_hash: str) -> User:
    db_user = User(
        employee_id=await generate_employee_id(db),
        first_name=first_name,
        last_name=last_name,
        email=email.strip().lower(),
        password_hash=password_hash,
    )
    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)
    return db_user


async def update_user(db: AsyncSession, db_user: User, **changes) -> User:
    for key, value in changes.items():
        setattr(db_user, key, value)
    db_user.updated_at = utcnow()
    await db.commit()
    await db.refresh(db_user)
    return db_user


async def list_users(db: AsyncSession, page: int = 1, limit: int = 10, search: str = "") -> Tuple[List[User], int]:
    query = select(User)
    if search:
        query = query.where(
            or_(
                User.first_name.icontains(search, autoescape=True),
                User.last_name.icontains(search, autoescape=True),
                User.email.icontains(search, autoescape=True),
            )
        )
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), total or 0


# Timesheet CRUD
def _insert_for(db: AsyncSession):
    if db.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def lock_employee_day(db: AsyncSession, entry_date: date, employee_id: str):
    """Transaction-scoped lock on (employee_id, date), released at commit or rollback."""
    # SQLite already allows a single writer at a time
    if db.bind.dialect.name != "postgresql":
        return
    key = f"{employee_id}|{entry_date.isoformat()}"
    await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))


async def upsert_timesheet_entry(
    db: AsyncSession,
    entry_date: date,
    employee_id: str,
    record_type: str,
    hours: float,
    project_id: str,
    task_id: str,
    wfh: Optional[bool],
    status: Optional[str],
    commit: bool = True,
) -> Timesheet:
    """
    Upsert keyed on (date, employee_id, record_type) in one INSERT .. ON CONFLICT statement.
    A ``wfh`` or ``status`` of None leaves the stored value alone on update and
    falls back to the column default on insert.
    """
    now = utcnow()
    fields = dict(hours=hours, project_id=project_id, task_id=task_id, updated_at=now)
    if wfh is not None:
        fields["wfh"] = wfh
    if status is not None:
        fields["status"] = status
    stmt = _insert_for(db)(Timesheet).values(
        date=entry_date,
        employee_id=employee_id,
        record_type=record_type,
        created_at=now,
        **{"wfh": False, "status": DEFAULT_STATUS, **fields},
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Timesheet.date, Timesheet.employee_id, Timesheet.record_type],
        set_=fields,
    ).returning(Timesheet)
    result = await db.scalars(stmt, execution_options={"populate_existing": True})
    timesheet = result.one()
    if commit:
        await db.commit()
    return timesheet


async def upsert_timesheet_for_day(
    db: AsyncSession,
    entry_date: date,
    employee_id: str,
    record_type: str,
    hours: float,
    project_id: str,
    task_id: str,
    wfh: Optional[bool],
    status: str,
) -> Timesheet:
    """
    Upsert keyed on (date, employee_id) only: one row per employee per day,
    whatever its record type. The record type is overwritten along with the
    other fields; ``wfh`` only when given. If several rows already exist for
    the day, the one whose record type matches is updated, otherwise the oldest.

    The unique constraint does not cover this key, so writers for the same
    employee and day are serialized before the UPDATE .. INSERT pair runs.
    """
    await lock_employee_day(db, entry_date, employee_id)

    fields = dict(
        record_type=record_type,
        hours=hours,
        project_id=project_id,
        task_id=task_id,
        status=status,
        updated_at=utcnow(),
    )
    if wfh is not None:
        fields["wfh"] = wfh

    existing = aliased(Timesheet)
    target = (
        select(existing.id)
        .where(existing.date == entry_date, existing.employee_id == employee_id)
        .order_by((existing.record_type == record_type).desc(), existing.id)
        .limit(1)
        .scalar_subquery()
    )
    stmt = (
        update(Timesheet)
        .where(Timesheet.id == target)
        .values(**fields)
        .returning(Timesheet)
    )
    result = await db.scalars(
        stmt,
        execution_options={"synchronize_session": False, "populate_existing": True},
    )
    timesheet = result.first()
    if timesheet is None:
        timesheet = await upsert_timesheet_entry(
            db, entry_date, employee_id, record_type, hours, project_id, task_id, wfh, status, commit=False
        )
    await db.commit()
    return timesheet


def days_between(start: date, end: date) -> List[date]:
    """Every calendar day in the closed interval [start, end]"""
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


async def upsert_timesheet_range(
    db: AsyncSession,
    start: date,
    end: date,
    employee_id: str,
    record_type: str,
    hours: float,
    project_id: str,
    task_id: str,
    wfh: Optional[bool],
    status: Optional[str],
) -> List[Timesheet]:
    results = []
    for day in days_between(start, end):
        results.append(
            await upsert_timesheet_entry(
                db, day, employee_id, record_type, hours, project_id, task_id, wfh, status, commit=False
            )
        )
    await db.commit()
    return results


async def get_timesheet(db: AsyncSession, timesheet_id: int) -> Optional[Timesheet]:
    return await db.get(Timesheet, timesheet_id)


async def get_timesheets(
    db: AsyncSession,
    employee_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[Timesheet]:
    query = select(Timesheet)

    # Apply filters
    if employee_id:
        query = query.where(Timesheet.employee_id == employee_id)
    if start_date:
        query = query.where(Timesheet.date >= start_date)
    if end_date:
        query = query.where(Timesheet.date <= end_date)

    result = await db.execute(query.order_by(Timesheet.date, Timesheet.id))
    return list(result.scalars().all())
