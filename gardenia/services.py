from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from .audit import write_audit_log
from .errors import ConflictError
from .models import (
    Appointment,
    Client,
    Clinic,
    ClinicUser,
    Lead,
    Payment,
    Permission,
    Professional,
    Service,
    Task,
    User,
    utc_now_naive,
)
from .permissions import apply_role_defaults, normalize_role

logger = structlog.get_logger("gardenia.services")

APPOINTMENT_STATUSES = {"scheduled", "confirmed", "completed", "cancelled", "no_show"}
INITIAL_APPOINTMENT_STATUSES = {"scheduled", "confirmed"}
OPEN_TASK_STATUSES = ("pending", "in_progress")
ALLOWED_APPOINTMENT_TRANSITIONS = {
    "scheduled": {"confirmed", "cancelled", "no_show", "completed"},
    "confirmed": {"completed", "cancelled", "no_show"},
    "no_show": {"scheduled"},
    "cancelled": {"scheduled"},
    "completed": set(),
}


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _clean_required(value: str | None, field: str) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        raise ValueError(f"{field} is required")
    return cleaned


def _clean_email(value: str | None) -> str | None:
    cleaned = _clean_optional(value)
    if cleaned is None:
        return None
    cleaned = cleaned.lower()
    if "@" not in cleaned or cleaned.startswith("@") or cleaned.endswith("@"):
        raise ValueError("invalid email")
    return cleaned


# --- clinics ---------------------------------------------------------------


def create_clinic(
    db: Session,
    owner: User,
    *,
    name: str,
    logo: str | None = None,
    address: str | None = None,
    phone: str | None = None,
    opening_hours: str | None = None,
) -> Clinic:
    now = utc_now_naive()
    clinic = Clinic(
        name=_clean_required(name, "name"),
        logo=_clean_optional(logo),
        address=_clean_optional(address),
        phone=_clean_optional(phone),
        opening_hours=_clean_optional(opening_hours),
        created_at=now,
        updated_at=now,
    )
    db.add(clinic)
    db.flush()
    membership = ClinicUser(
        clinic_id=clinic.id,
        user_id=owner.id,
        role="OWNER",
        invited_by=None,
        invited_at=now,
        accepted_at=now,
    )
    db.add(membership)
    db.flush()
    apply_role_defaults(db, membership, commit=False)
    db.commit()
    db.refresh(clinic)
    logger.info("clinic_created", clinic_id=clinic.id, owner_id=owner.id)
    return clinic


def list_clinics_for_user(db: Session, user: User) -> list[Clinic]:
    q = db.query(Clinic)
    if str(user.role).upper() != "SUPER_ADMIN":
        q = q.join(ClinicUser, ClinicUser.clinic_id == Clinic.id).filter(ClinicUser.user_id == user.id)
    return q.order_by(Clinic.name.asc(), Clinic.id.asc()).all()


def update_clinic(db: Session, clinic: Clinic, fields: dict) -> Clinic:
    if "name" in fields:
        clinic.name = _clean_required(fields["name"], "name")
    for key in ("logo", "address", "phone", "opening_hours"):
        if key in fields:
            setattr(clinic, key, _clean_optional(fields[key]))
    clinic.updated_at = utc_now_naive()
    db.commit()
    db.refresh(clinic)
    return clinic


# --- members ---------------------------------------------------------------


def get_member(db: Session, clinic_id: int, member_id: int) -> ClinicUser | None:
    return db.execute(
        select(ClinicUser).where(ClinicUser.clinic_id == clinic_id, ClinicUser.id == member_id)
    ).scalar_one_or_none()


def get_membership(db: Session, clinic_id: int, user_id: int) -> ClinicUser | None:
    return db.execute(
        select(ClinicUser).where(ClinicUser.clinic_id == clinic_id, ClinicUser.user_id == user_id)
    ).scalar_one_or_none()


def list_memberships_for_user(db: Session, user_id: int) -> list[ClinicUser]:
    return (
        db.query(ClinicUser)
        .filter(ClinicUser.user_id == user_id)
        .order_by(ClinicUser.clinic_id.asc())
        .all()
    )


def list_members(db: Session, clinic_id: int) -> list[ClinicUser]:
    return (
        db.query(ClinicUser)
        .join(User, User.id == ClinicUser.user_id)
        .filter(ClinicUser.clinic_id == clinic_id)
        .order_by(User.name.asc(), ClinicUser.id.asc())
        .all()
    )


def _owner_count(db: Session, clinic_id: int) -> int:
    return int(
        db.execute(
            select(func.count(ClinicUser.id)).where(ClinicUser.clinic_id == clinic_id, ClinicUser.role == "OWNER")
        ).scalar_one()
        or 0
    )


def can_assign_owner(actor: User, actor_membership: ClinicUser | None) -> bool:
    if str(actor.role).upper() == "SUPER_ADMIN":
        return True
    return actor_membership is not None and actor_membership.role == "OWNER"


def change_member_role(
    db: Session,
    clinic_id: int,
    member_id: int,
    role: str,
    *,
    actor: User,
    actor_membership: ClinicUser | None,
    keep_permissions: bool = False,
) -> ClinicUser | None:
    member = get_member(db, clinic_id, member_id)
    if member is None:
        return None
    new_role = normalize_role(role)
    old_role = member.role
    if new_role == old_role:
        return member
    if "OWNER" in {new_role, old_role} and not can_assign_owner(actor, actor_membership):
        raise PermissionError("Only an owner can grant or remove the OWNER role")
    if old_role == "OWNER" and _owner_count(db, clinic_id) <= 1:
        raise ConflictError("Clinic must keep at least one owner")

    member.role = new_role
    db.flush()
    if not keep_permissions:
        apply_role_defaults(db, member, commit=False)
    write_audit_log(
        db,
        clinic_id,
        "member.role_changed",
        "clinic_user",
        member.id,
        actor=actor,
        payload={"from": old_role, "to": new_role, "keep_permissions": bool(keep_permissions)},
        commit=False,
    )
    db.commit()
    db.refresh(member)
    logger.info("member_role_changed", clinic_id=clinic_id, member_id=member.id, role=new_role)
    return member


def remove_member(
    db: Session,
    clinic_id: int,
    member_id: int,
    *,
    actor: User,
    actor_membership: ClinicUser | None,
) -> bool:
    member = get_member(db, clinic_id, member_id)
    if member is None:
        return False
    if member.role == "OWNER":
        if not can_assign_owner(actor, actor_membership):
            raise PermissionError("Only an owner can remove another owner")
        if _owner_count(db, clinic_id) <= 1:
            raise ConflictError("Clinic must keep at least one owner")

    db.execute(delete(Permission).where(Permission.clinic_user_id == member.id))
    professional = get_professional_by_user(db, clinic_id, member.user_id)
    if professional is not None:
        professional.is_active = False
    db.execute(
        update(Task)
        .where(
            Task.clinic_id == clinic_id,
            Task.assigned_to == member.user_id,
            Task.status.in_(OPEN_TASK_STATUSES),
        )
        .values(assigned_to=None)
    )
    write_audit_log(
        db,
        clinic_id,
        "member.removed",
        "clinic_user",
        member.id,
        actor=actor,
        payload={"user_id": member.user_id, "role": member.role},
        commit=False,
    )
    db.delete(member)
    db.commit()
    logger.info("member_removed", clinic_id=clinic_id, member_id=member_id)
    return True


# --- clients ---------------------------------------------------------------


def create_client(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    name: str,
    email: str | None = None,
    phone: str | None = None,
    address: str | None = None,
    birthdate: datetime | None = None,
    notes: str | None = None,
    commit: bool = True,
) -> Client:
    now = utc_now_naive()
    row = Client(
        clinic_id=clinic_id,
        name=_clean_required(name, "name"),
        email=_clean_email(email),
        phone=_clean_optional(phone),
        address=_clean_optional(address),
        birthdate=birthdate,
        notes=_clean_optional(notes),
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    else:
        db.flush()
    logger.info("client_created", clinic_id=clinic_id, client_id=row.id)
    return row


def get_client(db: Session, clinic_id: int, client_id: int) -> Client | None:
    return db.execute(
        select(Client).where(Client.clinic_id == clinic_id, Client.id == client_id)
    ).scalar_one_or_none()


def list_clients(
    db: Session,
    clinic_id: int,
    q: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Client]:
    query = db.query(Client).filter(Client.clinic_id == clinic_id)
    term = (q or "").strip().lower()
    if term:
        like = f"%{term}%"
        query = query.filter(
            or_(
                func.lower(Client.name).like(like),
                func.lower(Client.email).like(like),
                Client.phone.like(like),
            )
        )
    return (
        query.order_by(Client.name.asc(), Client.id.asc())
        .offset(max(0, int(offset)))
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def update_client(db: Session, clinic_id: int, client_id: int, fields: dict) -> Client | None:
    row = get_client(db, clinic_id, client_id)
    if row is None:
        return None
    if "name" in fields:
        row.name = _clean_required(fields["name"], "name")
    if "email" in fields:
        row.email = _clean_email(fields["email"])
    for key in ("phone", "address", "notes"):
        if key in fields:
            setattr(row, key, _clean_optional(fields[key]))
    if "birthdate" in fields:
        row.birthdate = fields["birthdate"]
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def delete_client(db: Session, clinic_id: int, client_id: int) -> bool:
    row = get_client(db, clinic_id, client_id)
    if row is None:
        return False
    has_appointments = db.execute(
        select(Appointment.id).where(Appointment.client_id == row.id).limit(1)
    ).first()
    if has_appointments:
        raise ConflictError("Client has appointments and cannot be deleted")
    has_payments = db.execute(select(Payment.id).where(Payment.client_id == row.id).limit(1)).first()
    if has_payments:
        raise ConflictError("Client has payments and cannot be deleted")
    db.execute(update(Lead).where(Lead.converted_client_id == row.id).values(converted_client_id=None))
    db.delete(row)
    db.commit()
    logger.info("client_deleted", clinic_id=clinic_id, client_id=client_id)
    return True


# --- professionals ---------------------------------------------------------


def _validate_rate(value) -> float:
    rate = float(value or 0)
    if rate < 0 or rate > 1:
        raise ValueError("commission_rate must be between 0 and 1")
    return rate


def get_professional(db: Session, clinic_id: int, professional_id: int) -> Professional | None:
    return db.execute(
        select(Professional).where(Professional.clinic_id == clinic_id, Professional.id == professional_id)
    ).scalar_one_or_none()


def get_professional_by_user(db: Session, clinic_id: int, user_id: int) -> Professional | None:
    return db.execute(
        select(Professional).where(Professional.clinic_id == clinic_id, Professional.user_id == user_id)
    ).scalar_one_or_none()


def create_professional(
    db: Session,
    clinic_id: int,
    *,
    user_id: int,
    specialization: str | None = None,
    bio: str | None = None,
    commission_rate: float = 0.0,
    color: str | None = None,
) -> Professional:
    if get_membership(db, clinic_id, user_id) is None:
        raise ValueError("User is not a member of this clinic")
    existing = get_professional_by_user(db, clinic_id, user_id)
    if existing is not None:
        raise ConflictError("User is already a professional in this clinic")

    now = utc_now_naive()
    row = Professional(
        clinic_id=clinic_id,
        user_id=user_id,
        specialization=_clean_optional(specialization),
        bio=_clean_optional(bio),
        commission_rate=_validate_rate(commission_rate),
        color=_clean_optional(color) or "#3498db",
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("professional_created", clinic_id=clinic_id, professional_id=row.id)
    return row


def list_professionals(db: Session, clinic_id: int, include_inactive: bool = False) -> list[Professional]:
    q = (
        db.query(Professional)
        .join(User, User.id == Professional.user_id)
        .filter(Professional.clinic_id == clinic_id)
    )
    if not include_inactive:
        q = q.filter(Professional.is_active.is_(True))
    return q.order_by(User.name.asc(), Professional.id.asc()).all()


def update_professional(db: Session, clinic_id: int, professional_id: int, fields: dict) -> Professional | None:
    row = get_professional(db, clinic_id, professional_id)
    if row is None:
        return None
    for key in ("specialization", "bio"):
        if key in fields:
            setattr(row, key, _clean_optional(fields[key]))
    if "commission_rate" in fields and fields["commission_rate"] is not None:
        row.commission_rate = _validate_rate(fields["commission_rate"])
    if "color" in fields and fields["color"] is not None:
        row.color = _clean_required(fields["color"], "color")
    if "is_active" in fields and fields["is_active"] is not None:
        row.is_active = bool(fields["is_active"])
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def deactivate_professional(db: Session, clinic_id: int, professional_id: int) -> Professional | None:
    row = get_professional(db, clinic_id, professional_id)
    if row is None:
        return None
    if row.is_active:
        row.is_active = False
        row.updated_at = utc_now_naive()
        db.commit()
        db.refresh(row)
    return row


# --- services --------------------------------------------------------------


def _validate_duration(value) -> int:
    duration = int(value)
    if duration <= 0:
        raise ValueError("duration must be greater than 0")
    return duration


def _validate_price(value) -> float:
    price = round(float(value or 0), 2)
    if price < 0:
        raise ValueError("price must be >= 0")
    return price


def get_service(db: Session, clinic_id: int, service_id: int) -> Service | None:
    return db.execute(
        select(Service).where(Service.clinic_id == clinic_id, Service.id == service_id)
    ).scalar_one_or_none()


def _service_name_taken(db: Session, clinic_id: int, name: str, exclude_id: int | None = None) -> bool:
    q = select(Service.id).where(Service.clinic_id == clinic_id, func.lower(Service.name) == name.lower())
    if exclude_id is not None:
        q = q.where(Service.id != exclude_id)
    return db.execute(q.limit(1)).first() is not None


def create_service(
    db: Session,
    clinic_id: int,
    *,
    name: str,
    duration: int,
    price: float = 0.0,
    description: str | None = None,
) -> Service:
    clean_name = _clean_required(name, "name")
    if _service_name_taken(db, clinic_id, clean_name):
        raise ConflictError("Service name already exists")
    now = utc_now_naive()
    row = Service(
        clinic_id=clinic_id,
        name=clean_name,
        description=_clean_optional(description),
        duration=_validate_duration(duration),
        price=_validate_price(price),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("service_created", clinic_id=clinic_id, service_id=row.id)
    return row


def list_services(db: Session, clinic_id: int, include_inactive: bool = False) -> list[Service]:
    q = db.query(Service).filter(Service.clinic_id == clinic_id)
    if not include_inactive:
        q = q.filter(Service.is_active.is_(True))
    return q.order_by(Service.name.asc(), Service.id.asc()).all()


def update_service(db: Session, clinic_id: int, service_id: int, fields: dict) -> Service | None:
    row = get_service(db, clinic_id, service_id)
    if row is None:
        return None
    if "name" in fields and fields["name"] is not None:
        clean_name = _clean_required(fields["name"], "name")
        if _service_name_taken(db, clinic_id, clean_name, exclude_id=row.id):
            raise ConflictError("Service name already exists")
        row.name = clean_name
    if "description" in fields:
        row.description = _clean_optional(fields["description"])
    if "duration" in fields and fields["duration"] is not None:
        row.duration = _validate_duration(fields["duration"])
    if "price" in fields and fields["price"] is not None:
        row.price = _validate_price(fields["price"])
    if "is_active" in fields and fields["is_active"] is not None:
        row.is_active = bool(fields["is_active"])
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def deactivate_service(db: Session, clinic_id: int, service_id: int) -> Service | None:
    row = get_service(db, clinic_id, service_id)
    if row is None:
        return None
    if row.is_active:
        row.is_active = False
        row.updated_at = utc_now_naive()
        db.commit()
        db.refresh(row)
    return row


# --- appointments ----------------------------------------------------------


def _resolve_schedulables(
    db: Session,
    clinic_id: int,
    *,
    client_id: int | None = None,
    professional_id: int | None = None,
    service_id: int | None = None,
) -> tuple[Client | None, Professional | None, Service | None]:
    client = professional = service = None
    if client_id is not None:
        client = get_client(db, clinic_id, client_id)
        if client is None:
            raise ValueError("Client not found in this clinic")
    if professional_id is not None:
        professional = get_professional(db, clinic_id, professional_id)
        if professional is None:
            raise ValueError("Professional not found in this clinic")
        if not professional.is_active:
            raise ValueError("Professional is inactive")
    if service_id is not None:
        service = get_service(db, clinic_id, service_id)
        if service is None:
            raise ValueError("Service not found in this clinic")
        if not service.is_active:
            raise ValueError("Service is inactive")
    return client, professional, service


def create_appointment(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    client_id: int,
    professional_id: int,
    service_id: int,
    start_time: datetime,
    end_time: datetime | None = None,
    notes: str | None = None,
    status: str = "scheduled",
) -> Appointment:
    _client, _professional, service = _resolve_schedulables(
        db,
        clinic_id,
        client_id=client_id,
        professional_id=professional_id,
        service_id=service_id,
    )
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time) if end_time is not None else start + timedelta(minutes=int(service.duration))
    if end <= start:
        raise ValueError("end_time must be after start_time")
    initial_status = (status or "scheduled").strip().lower()
    if initial_status not in INITIAL_APPOINTMENT_STATUSES:
        raise ValueError("Appointments start as scheduled or confirmed")

    now = utc_now_naive()
    row = Appointment(
        clinic_id=clinic_id,
        client_id=client_id,
        professional_id=professional_id,
        service_id=service_id,
        start_time=start,
        end_time=end,
        status=initial_status,
        notes=_clean_optional(notes),
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(
        "appointment_created",
        clinic_id=clinic_id,
        appointment_id=row.id,
        professional_id=professional_id,
        start_time=start.isoformat(),
    )
    return row


def get_appointment(db: Session, clinic_id: int, appointment_id: int) -> Appointment | None:
    return db.execute(
        select(Appointment).where(Appointment.clinic_id == clinic_id, Appointment.id == appointment_id)
    ).scalar_one_or_none()


def list_appointments(
    db: Session,
    clinic_id: int,
    *,
    professional_id: int | None = None,
    client_id: int | None = None,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Appointment]:
    q = db.query(Appointment).filter(Appointment.clinic_id == clinic_id)
    if professional_id is not None:
        q = q.filter(Appointment.professional_id == professional_id)
    if client_id is not None:
        q = q.filter(Appointment.client_id == client_id)
    if status:
        value = status.strip().lower()
        if value not in APPOINTMENT_STATUSES:
            raise ValueError("Invalid appointment status")
        q = q.filter(Appointment.status == value)
    if start is not None and end is not None and to_utc_naive(end) <= to_utc_naive(start):
        raise ValueError("end must be after start")
    # range selects appointments that intersect [start, end)
    if end is not None:
        q = q.filter(Appointment.start_time < to_utc_naive(end))
    if start is not None:
        q = q.filter(Appointment.end_time > to_utc_naive(start))
    return q.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()


def _apply_status(appointment: Appointment, new_status: str) -> tuple[str, str]:
    target = (new_status or "").strip().lower()
    if target not in APPOINTMENT_STATUSES:
        raise ValueError("Invalid appointment status")
    current = (appointment.status or "scheduled").strip().lower()
    if target == current:
        return current, target
    if target not in ALLOWED_APPOINTMENT_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid appointment status transition: {current} -> {target}")
    appointment.status = target
    return current, target


def update_appointment(db: Session, clinic_id: int, appointment_id: int, fields: dict) -> Appointment | None:
    row = get_appointment(db, clinic_id, appointment_id)
    if row is None:
        return None

    new_professional_id = fields.get("professional_id")
    if new_professional_id == row.professional_id:
        new_professional_id = None
    new_service_id = fields.get("service_id")
    if new_service_id == row.service_id:
        new_service_id = None
    _client, professional, service = _resolve_schedulables(
        db,
        clinic_id,
        professional_id=new_professional_id,
        service_id=new_service_id,
    )
    if professional is not None:
        row.professional_id = professional.id
    if service is not None:
        row.service_id = service.id

    start = row.start_time
    end = row.end_time
    if fields.get("start_time") is not None:
        new_start = to_utc_naive(fields["start_time"])
        if fields.get("end_time") is None:
            # keep the booked length when only the start moves
            end = new_start + (row.end_time - row.start_time)
        start = new_start
    if fields.get("end_time") is not None:
        end = to_utc_naive(fields["end_time"])
    if end <= start:
        raise ValueError("end_time must be after start_time")
    row.start_time = start
    row.end_time = end

    if "notes" in fields:
        row.notes = _clean_optional(fields["notes"])
    previous_status = row.status
    if fields.get("status") is not None:
        _apply_status(row, fields["status"])

    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    logger.info(
        "appointment_updated",
        clinic_id=clinic_id,
        appointment_id=row.id,
        status_from=previous_status,
        status_to=row.status,
    )
    return row


def update_appointment_status(db: Session, clinic_id: int, appointment_id: int, new_status: str) -> Appointment | None:
    row = get_appointment(db, clinic_id, appointment_id)
    if row is None:
        return None
    current, target = _apply_status(row, new_status)
    if current != target:
        row.updated_at = utc_now_naive()
        db.commit()
        db.refresh(row)
        logger.info("appointment_status_changed", appointment_id=row.id, status_from=current, status_to=target)
    return row


def delete_appointment(db: Session, clinic_id: int, appointment_id: int) -> bool:
    row = get_appointment(db, clinic_id, appointment_id)
    if row is None:
        return False
    has_payments = db.execute(select(Payment.id).where(Payment.appointment_id == row.id).limit(1)).first()
    if has_payments:
        raise ConflictError("Appointment has payments and cannot be deleted")
    db.delete(row)
    db.commit()
    logger.info("appointment_deleted", clinic_id=clinic_id, appointment_id=appointment_id)
    return True
