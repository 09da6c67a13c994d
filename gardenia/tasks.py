from datetime import datetime

import structlog
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .models import ClinicUser, Task, utc_now_naive
from .services import OPEN_TASK_STATUSES, _clean_optional, get_membership, to_utc_naive

logger = structlog.get_logger("gardenia.tasks")

TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")
TASK_PRIORITIES = ("low", "medium", "high")


def _title(value: str | None) -> str:
    cleaned = str(value or "").strip()
    if len(cleaned) < 3 or len(cleaned) > 100:
        raise ValueError("title must be between 3 and 100 characters")
    return cleaned


def _status(value: str | None) -> str:
    cleaned = str(value or "").strip().lower()
    if cleaned not in TASK_STATUSES:
        raise ValueError("Invalid task status")
    return cleaned


def _priority(value: str | None) -> str:
    cleaned = str(value or "medium").strip().lower()
    if cleaned not in TASK_PRIORITIES:
        raise ValueError("Invalid task priority")
    return cleaned


def _assignee(db: Session, clinic_id: int, user_id: int | None) -> int | None:
    if user_id is None:
        return None
    if get_membership(db, clinic_id, user_id) is None:
        raise ValueError("Assignee is not a member of this clinic")
    return user_id


def _set_status(row: Task, new_status: str) -> None:
    if new_status == row.status:
        return
    row.status = new_status
    row.completed_at = utc_now_naive() if new_status == "completed" else None


def create_task(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    title: str,
    description: str | None = None,
    priority: str | None = None,
    due_date: datetime | None = None,
    assigned_to: int | None = None,
) -> Task:
    now = utc_now_naive()
    row = Task(
        clinic_id=clinic_id,
        title=_title(title),
        description=_clean_optional(description),
        status="pending",
        priority=_priority(priority),
        due_date=to_utc_naive(due_date) if due_date is not None else None,
        assigned_to=_assignee(db, clinic_id, assigned_to),
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("task_created", clinic_id=clinic_id, task_id=row.id, assigned_to=row.assigned_to)
    return row


def get_task(db: Session, clinic_id: int, task_id: int) -> Task | None:
    return db.execute(select(Task).where(Task.clinic_id == clinic_id, Task.id == task_id)).scalar_one_or_none()


def list_tasks(
    db: Session,
    clinic_id: int,
    *,
    status: str | None = None,
    assigned_to: int | None = None,
    open_only: bool = False,
) -> list[Task]:
    q = db.query(Task).filter(Task.clinic_id == clinic_id)
    if status:
        q = q.filter(Task.status == _status(status))
    elif open_only:
        q = q.filter(Task.status.in_(OPEN_TASK_STATUSES))
    if assigned_to is not None:
        q = q.filter(Task.assigned_to == assigned_to)
    # undated tasks sort after dated ones
    return q.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc()).all()


def list_tasks_for_user(db: Session, user_id: int, open_only: bool = True) -> list[Task]:
    q = (
        db.query(Task)
        .join(ClinicUser, and_(ClinicUser.clinic_id == Task.clinic_id, ClinicUser.user_id == user_id))
        .filter(Task.assigned_to == user_id)
    )
    if open_only:
        q = q.filter(Task.status.in_(OPEN_TASK_STATUSES))
    return q.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc()).all()


def update_task(db: Session, clinic_id: int, task_id: int, fields: dict) -> Task | None:
    row = get_task(db, clinic_id, task_id)
    if row is None:
        return None
    if fields.get("title") is not None:
        row.title = _title(fields["title"])
    if "description" in fields:
        row.description = _clean_optional(fields["description"])
    if fields.get("priority") is not None:
        row.priority = _priority(fields["priority"])
    if "due_date" in fields:
        row.due_date = to_utc_naive(fields["due_date"]) if fields["due_date"] is not None else None
    if "assigned_to" in fields:
        row.assigned_to = _assignee(db, clinic_id, fields["assigned_to"])
    if fields.get("status") is not None:
        _set_status(row, _status(fields["status"]))
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def delete_task(db: Session, clinic_id: int, task_id: int) -> bool:
    row = get_task(db, clinic_id, task_id)
    if row is None:
        return False
    db.delete(row)
    db.commit()
    logger.info("task_deleted", clinic_id=clinic_id, task_id=task_id)
    return True
