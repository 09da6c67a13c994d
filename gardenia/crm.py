"""Lead pipeline: prospects, their contact history and trial bookings.

A lead is converted into a regular client exactly once; the conversion keeps
a link to the created client so repeated calls return the same record.
"""

from datetime import datetime

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from .audit import write_audit_log
from .models import Client, Lead, LeadAppointment, LeadInteraction, User, utc_now_naive
from .payments import money
from .services import (
    _clean_email,
    _clean_optional,
    _clean_required,
    create_client,
    get_client,
    get_membership,
    to_utc_naive,
)

logger = structlog.get_logger("gardenia.crm")

LEAD_STATUSES = ("new", "contacted", "scheduled", "converted", "lost")
LEAD_SOURCES = ("instagram", "facebook", "website", "referral", "google", "whatsapp", "other")
INTERACTION_KINDS = ("message", "call", "email", "visit", "other")
LEAD_APPOINTMENT_STATUSES = ("pending", "confirmed", "cancelled", "done")


def _choice(value: str | None, allowed: tuple[str, ...], field: str) -> str:
    cleaned = str(value or "").strip().lower()
    if cleaned not in allowed:
        raise ValueError(f"invalid {field}: {value}")
    return cleaned


def _estimated_value(value):
    if value is None:
        return None
    amount = money(value)
    if amount < 0:
        raise ValueError("estimated_value must not be negative")
    return amount


def _assignee(db: Session, clinic_id: int, user_id: int | None) -> int | None:
    if user_id is None:
        return None
    if get_membership(db, clinic_id, user_id) is None:
        raise ValueError("Assignee is not a member of this clinic")
    return user_id


def create_lead(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    name: str,
    phone: str,
    source: str,
    email: str | None = None,
    interest: str | None = None,
    estimated_value=None,
    assigned_to: int | None = None,
    notes: str | None = None,
) -> Lead:
    now = utc_now_naive()
    row = Lead(
        clinic_id=clinic_id,
        name=_clean_required(name, "name"),
        phone=_clean_required(phone, "phone"),
        email=_clean_email(email),
        source=_choice(source, LEAD_SOURCES, "source"),
        status="new",
        interest=_clean_optional(interest),
        estimated_value=_estimated_value(estimated_value),
        assigned_to=_assignee(db, clinic_id, assigned_to),
        notes=_clean_optional(notes),
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("lead_created", clinic_id=clinic_id, lead_id=row.id, source=row.source)
    return row


def get_lead(db: Session, clinic_id: int, lead_id: int) -> Lead | None:
    return db.execute(
        select(Lead).where(Lead.clinic_id == clinic_id, Lead.id == lead_id)
    ).scalar_one_or_none()


def list_leads(
    db: Session,
    clinic_id: int,
    *,
    status: str | None = None,
    source: str | None = None,
    q: str | None = None,
    assigned_to: int | None = None,
) -> list[Lead]:
    query = db.query(Lead).filter(Lead.clinic_id == clinic_id)
    if status:
        query = query.filter(Lead.status == _choice(status, LEAD_STATUSES, "status"))
    if source:
        query = query.filter(Lead.source == _choice(source, LEAD_SOURCES, "source"))
    if assigned_to is not None:
        query = query.filter(Lead.assigned_to == assigned_to)
    term = (q or "").strip().lower()
    if term:
        like = f"%{term}%"
        query = query.filter(
            or_(
                func.lower(Lead.name).like(like),
                func.lower(Lead.email).like(like),
                Lead.phone.like(like),
            )
        )
    return query.order_by(Lead.updated_at.desc(), Lead.id.desc()).all()


def update_lead(db: Session, clinic_id: int, lead_id: int, fields: dict) -> Lead | None:
    row = get_lead(db, clinic_id, lead_id)
    if row is None:
        return None
    if "status" in fields and fields["status"] is not None:
        target = _choice(fields["status"], LEAD_STATUSES, "status")
        if target != row.status:
            if row.status == "converted":
                raise ValueError("Converted lead can only stay converted")
            if target == "converted":
                raise ValueError("Use the convert action to convert a lead")
            row.status = target
    if "name" in fields:
        row.name = _clean_required(fields["name"], "name")
    if "phone" in fields:
        row.phone = _clean_required(fields["phone"], "phone")
    if "email" in fields:
        row.email = _clean_email(fields["email"])
    if "source" in fields:
        row.source = _choice(fields["source"], LEAD_SOURCES, "source")
    if "interest" in fields:
        row.interest = _clean_optional(fields["interest"])
    if "notes" in fields:
        row.notes = _clean_optional(fields["notes"])
    if "estimated_value" in fields:
        row.estimated_value = _estimated_value(fields["estimated_value"])
    if "assigned_to" in fields:
        row.assigned_to = _assignee(db, clinic_id, fields["assigned_to"])
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def delete_lead(db: Session, clinic_id: int, lead_id: int, *, actor: User) -> bool:
    row = get_lead(db, clinic_id, lead_id)
    if row is None:
        return False
    db.execute(delete(LeadInteraction).where(LeadInteraction.lead_id == row.id))
    db.execute(delete(LeadAppointment).where(LeadAppointment.lead_id == row.id))
    write_audit_log(
        db,
        clinic_id,
        "lead.deleted",
        "lead",
        row.id,
        actor=actor,
        payload={"name": row.name, "status": row.status},
        commit=False,
    )
    db.delete(row)
    db.commit()
    logger.info("lead_deleted", clinic_id=clinic_id, lead_id=lead_id)
    return True


def add_interaction(
    db: Session,
    lead: Lead,
    created_by: int,
    *,
    kind: str,
    description: str,
    occurred_at: datetime | None = None,
) -> LeadInteraction:
    now = utc_now_naive()
    row = LeadInteraction(
        lead_id=lead.id,
        kind=_choice(kind, INTERACTION_KINDS, "kind"),
        description=_clean_required(description, "description"),
        occurred_at=to_utc_naive(occurred_at) if occurred_at is not None else now,
        created_by=created_by,
        created_at=now,
    )
    db.add(row)
    lead.updated_at = now
    db.commit()
    db.refresh(row)
    return row


def list_interactions(db: Session, lead_id: int) -> list[LeadInteraction]:
    return (
        db.query(LeadInteraction)
        .filter(LeadInteraction.lead_id == lead_id)
        .order_by(LeadInteraction.occurred_at.desc(), LeadInteraction.id.desc())
        .all()
    )


def book_lead_appointment(
    db: Session,
    lead: Lead,
    created_by: int,
    *,
    scheduled_for: datetime,
    procedure: str,
    status: str = "pending",
    notes: str | None = None,
) -> LeadAppointment:
    if lead.status in {"converted", "lost"}:
        raise ValueError(f"Lead is {lead.status} and cannot be booked")
    now = utc_now_naive()
    row = LeadAppointment(
        lead_id=lead.id,
        scheduled_for=to_utc_naive(scheduled_for),
        procedure=_clean_required(procedure, "procedure"),
        status=_choice(status, LEAD_APPOINTMENT_STATUSES, "status"),
        notes=_clean_optional(notes),
        created_by=created_by,
        created_at=now,
    )
    db.add(row)
    lead.status = "scheduled"
    lead.updated_at = now
    db.commit()
    db.refresh(row)
    logger.info("lead_appointment_booked", clinic_id=lead.clinic_id, lead_id=lead.id)
    return row


def list_lead_appointments(db: Session, lead_id: int) -> list[LeadAppointment]:
    return (
        db.query(LeadAppointment)
        .filter(LeadAppointment.lead_id == lead_id)
        .order_by(LeadAppointment.scheduled_for.asc(), LeadAppointment.id.asc())
        .all()
    )


def convert_lead(db: Session, clinic_id: int, lead_id: int, *, actor: User) -> tuple[Lead | None, Client | None]:
    lead = get_lead(db, clinic_id, lead_id)
    if lead is None:
        return None, None
    if lead.converted_client_id is not None:
        existing = get_client(db, clinic_id, lead.converted_client_id)
        if existing is not None:
            return lead, existing
    if lead.status == "lost":
        raise ValueError("Lead is lost and cannot be converted")

    client = create_client(
        db,
        clinic_id,
        actor.id,
        name=lead.name,
        email=lead.email,
        phone=lead.phone,
        notes=lead.notes,
        commit=False,
    )
    previous_status = lead.status
    now = utc_now_naive()
    lead.status = "converted"
    lead.converted_client_id = client.id
    lead.converted_at = lead.converted_at or now
    lead.updated_at = now
    write_audit_log(
        db,
        clinic_id,
        "lead.converted",
        "lead",
        lead.id,
        actor=actor,
        payload={"client_id": client.id, "from_status": previous_status},
        commit=False,
    )
    db.commit()
    db.refresh(lead)
    db.refresh(client)
    logger.info("lead_converted", clinic_id=clinic_id, lead_id=lead.id, client_id=client.id)
    return lead, client


def crm_stats(db: Session, clinic_id: int) -> dict:
    total = int(db.execute(select(func.count(Lead.id)).where(Lead.clinic_id == clinic_id)).scalar_one())

    by_status = {status: 0 for status in LEAD_STATUSES}
    for status, count in db.execute(
        select(Lead.status, func.count(Lead.id)).where(Lead.clinic_id == clinic_id).group_by(Lead.status)
    ).all():
        by_status[status] = int(count)

    by_source = {source: 0 for source in LEAD_SOURCES}
    for source, count in db.execute(
        select(Lead.source, func.count(Lead.id)).where(Lead.clinic_id == clinic_id).group_by(Lead.source)
    ).all():
        by_source[source] = int(count)

    pipeline_value = db.execute(
        select(func.coalesce(func.sum(Lead.estimated_value), 0)).where(
            Lead.clinic_id == clinic_id,
            Lead.status.in_(("new", "contacted", "scheduled")),
        )
    ).scalar_one()

    conversion_rate = round(by_status["converted"] * 100.0 / total, 1) if total else 0.0
    return {
        "total": total,
        "by_status": by_status,
        "by_source": by_source,
        "conversion_rate": conversion_rate,
        "open_pipeline_value": float(money(pipeline_value)),
    }
