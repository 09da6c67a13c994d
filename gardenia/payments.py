from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import write_audit_log
from .config import settings
from .errors import ConflictError
from .models import Appointment, Commission, Payment, Professional, User, utc_now_naive
from .services import get_appointment, get_client
from .stripe_gateway import StripeGateway, gateway as default_gateway

logger = structlog.get_logger("gardenia.payments")

PAYMENT_STATUSES = {"pending", "paid", "partially_refunded", "refunded", "cancelled", "failed"}
REFUNDABLE_STATUSES = {"paid", "partially_refunded"}
PAYMENT_METHODS = {"cash", "credit_card", "debit_card", "pix", "bank_transfer", "card_online", "other"}

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def refundable_amount(payment: Payment) -> Decimal:
    return money(payment.amount) - money(payment.refund_amount)


def _validate_method(value: str | None) -> str:
    method = (value or "cash").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValueError(f"invalid payment_method: {value}")
    return method


def _validate_links(db: Session, clinic_id: int, client_id: int, appointment_id: int | None) -> None:
    if get_client(db, clinic_id, client_id) is None:
        raise ValueError("Client not found in this clinic")
    if appointment_id is not None:
        appointment = get_appointment(db, clinic_id, appointment_id)
        if appointment is None:
            raise ValueError("Appointment not found in this clinic")
        if appointment.client_id != client_id:
            raise ValueError("Appointment belongs to a different client")


def create_payment(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    client_id: int,
    amount,
    appointment_id: int | None = None,
    payment_method: str | None = None,
    notes: str | None = None,
    currency: str | None = None,
    provider: str = "local",
    provider_ref: str | None = None,
) -> Payment:
    value = money(amount)
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    _validate_links(db, clinic_id, client_id, appointment_id)

    now = utc_now_naive()
    row = Payment(
        clinic_id=clinic_id,
        client_id=client_id,
        appointment_id=appointment_id,
        amount=value,
        currency=(currency or settings.PAYMENT_DEFAULT_CURRENCY).upper(),
        status="pending",
        payment_method=_validate_method(payment_method),
        provider=provider,
        provider_ref=provider_ref,
        refund_amount=Decimal("0.00"),
        notes=(notes or "").strip() or None,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("payment_created", clinic_id=clinic_id, payment_id=row.id, provider=provider)
    return row


def get_payment(db: Session, clinic_id: int, payment_id: int) -> Payment | None:
    return db.execute(
        select(Payment).where(Payment.clinic_id == clinic_id, Payment.id == payment_id)
    ).scalar_one_or_none()


def get_payment_by_provider_ref(db: Session, provider_ref: str) -> Payment | None:
    return db.execute(select(Payment).where(Payment.provider_ref == provider_ref)).scalar_one_or_none()


def list_payments(
    db: Session,
    clinic_id: int,
    *,
    client_id: int | None = None,
    appointment_id: int | None = None,
    status: str | None = None,
) -> list[Payment]:
    q = db.query(Payment).filter(Payment.clinic_id == clinic_id)
    if client_id is not None:
        q = q.filter(Payment.client_id == client_id)
    if appointment_id is not None:
        q = q.filter(Payment.appointment_id == appointment_id)
    if status:
        value = status.strip().lower()
        if value not in PAYMENT_STATUSES:
            raise ValueError("Invalid payment status")
        q = q.filter(Payment.status == value)
    return q.order_by(Payment.created_at.desc(), Payment.id.desc()).all()


def _create_commission(db: Session, payment: Payment) -> Commission | None:
    if payment.appointment_id is None:
        return None
    existing = db.execute(select(Commission).where(Commission.payment_id == payment.id)).scalar_one_or_none()
    if existing is not None:
        return existing
    appointment = db.get(Appointment, payment.appointment_id)
    if appointment is None:
        return None
    professional = db.get(Professional, appointment.professional_id)
    if professional is None:
        return None
    rate = Decimal(str(professional.commission_rate or 0))
    if rate <= 0:
        return None
    row = Commission(
        clinic_id=payment.clinic_id,
        professional_id=professional.id,
        payment_id=payment.id,
        amount=money(money(payment.amount) * rate),
        rate=rate,
        status="pending",
        created_at=utc_now_naive(),
    )
    db.add(row)
    logger.info("commission_created", payment_id=payment.id, professional_id=professional.id, amount=str(row.amount))
    return row


def mark_paid(db: Session, payment: Payment) -> Payment:
    if payment.status == "paid":
        return payment
    if payment.status not in {"pending", "failed"}:
        raise ConflictError(f"Payment cannot be confirmed from status {payment.status}")
    now = utc_now_naive()
    payment.status = "paid"
    payment.payment_date = now
    payment.updated_at = now
    db.flush()
    _create_commission(db, payment)
    db.commit()
    db.refresh(payment)
    logger.info("payment_confirmed", clinic_id=payment.clinic_id, payment_id=payment.id)
    return payment


def confirm_payment(db: Session, clinic_id: int, payment_id: int) -> Payment | None:
    row = get_payment(db, clinic_id, payment_id)
    if row is None:
        return None
    return mark_paid(db, row)


def mark_failed(db: Session, payment: Payment) -> Payment:
    if payment.status == "pending":
        payment.status = "failed"
        payment.updated_at = utc_now_naive()
        db.commit()
        db.refresh(payment)
        logger.warning("payment_failed", clinic_id=payment.clinic_id, payment_id=payment.id)
    return payment


def refund_payment(
    db: Session,
    clinic_id: int,
    payment_id: int,
    *,
    actor: User,
    amount=None,
    reason: str | None = None,
    stripe_gateway: StripeGateway | None = None,
) -> Payment | None:
    row = get_payment(db, clinic_id, payment_id)
    if row is None:
        return None
    if row.status not in REFUNDABLE_STATUSES:
        raise ValueError("Only paid payments can be refunded")

    remaining = refundable_amount(row)
    value = remaining if amount is None else money(amount)
    if value <= 0:
        raise ValueError("refund amount must be greater than 0")
    if value > remaining:
        raise ValueError(f"refund amount cannot exceed {remaining}")

    if row.provider == "stripe" and row.provider_ref:
        (stripe_gateway or default_gateway).create_refund(row.provider_ref, amount=value, reason=reason)

    row.refund_amount = money(row.refund_amount) + value
    row.status = "refunded" if money(row.refund_amount) >= money(row.amount) else "partially_refunded"
    if reason:
        row.refund_reason = reason.strip()[:300]
    row.updated_at = utc_now_naive()
    write_audit_log(
        db,
        clinic_id,
        "payment.refunded",
        "payment",
        row.id,
        actor=actor,
        payload={"amount": str(value), "reason": reason, "provider": row.provider},
        commit=False,
    )
    db.commit()
    db.refresh(row)
    logger.info("payment_refunded", clinic_id=clinic_id, payment_id=row.id, amount=str(value), status=row.status)
    return row


def cancel_payment(db: Session, clinic_id: int, payment_id: int) -> Payment | None:
    row = get_payment(db, clinic_id, payment_id)
    if row is None:
        return None
    if row.status != "pending":
        raise ValueError("Only pending payments can be cancelled")
    row.status = "cancelled"
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    logger.info("payment_cancelled", clinic_id=clinic_id, payment_id=row.id)
    return row


def create_stripe_payment(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    client_id: int,
    amount,
    appointment_id: int | None = None,
    currency: str | None = None,
    notes: str | None = None,
    idempotency_key: str | None = None,
    stripe_gateway: StripeGateway | None = None,
) -> tuple[Payment, str]:
    value = money(amount)
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    _validate_links(db, clinic_id, client_id, appointment_id)
    intent = (stripe_gateway or default_gateway).create_payment_intent(
        value,
        currency=currency,
        metadata={"clinic_id": clinic_id, "client_id": client_id, "appointment_id": appointment_id or ""},
        idempotency_key=idempotency_key,
    )
    existing = get_payment_by_provider_ref(db, intent.id)
    if existing is not None:
        return existing, intent.client_secret
    try:
        row = create_payment(
            db,
            clinic_id,
            created_by,
            client_id=client_id,
            amount=value,
            appointment_id=appointment_id,
            payment_method="card_online",
            notes=notes,
            currency=currency,
            provider="stripe",
            provider_ref=intent.id,
        )
    except IntegrityError:
        # a concurrent request with the same idempotency key inserted first
        db.rollback()
        row = get_payment_by_provider_ref(db, intent.id)
        if row is None:
            raise
        logger.info("stripe_payment_replayed", clinic_id=clinic_id, payment_id=row.id, intent_id=intent.id)
    return row, intent.client_secret


def sync_stripe_payment(
    db: Session,
    clinic_id: int,
    payment_id: int,
    stripe_gateway: StripeGateway | None = None,
) -> Payment | None:
    row = get_payment(db, clinic_id, payment_id)
    if row is None:
        return None
    if row.provider != "stripe" or not row.provider_ref:
        raise ValueError("Payment is not processed by Stripe")
    if row.status == "paid":
        return row
    (stripe_gateway or default_gateway).confirm_payment(row.provider_ref)
    return mark_paid(db, row)


def handle_stripe_event(db: Session, event) -> Payment | None:
    event_type = getattr(event, "type", None)
    data = getattr(event, "data", None)
    obj = getattr(data, "object", None) if data is not None else None
    intent_id = getattr(obj, "id", None) if obj is not None else None
    if not intent_id:
        logger.info("stripe_event_ignored", event_type=event_type)
        return None
    payment = get_payment_by_provider_ref(db, intent_id)
    if payment is None:
        logger.warning("stripe_event_unmatched", event_type=event_type, intent_id=intent_id)
        return None
    if event_type == "payment_intent.succeeded":
        # redelivered events for settled payments are no-ops
        if payment.status not in {"pending", "failed"}:
            return payment
        return mark_paid(db, payment)
    if event_type == "payment_intent.payment_failed":
        return mark_failed(db, payment)
    logger.info("stripe_event_ignored", event_type=event_type, intent_id=intent_id)
    return payment


def list_commissions(
    db: Session,
    clinic_id: int,
    *,
    professional_id: int | None = None,
    status: str | None = None,
) -> list[Commission]:
    q = db.query(Commission).filter(Commission.clinic_id == clinic_id)
    if professional_id is not None:
        q = q.filter(Commission.professional_id == professional_id)
    if status:
        q = q.filter(Commission.status == status.strip().lower())
    return q.order_by(Commission.created_at.desc(), Commission.id.desc()).all()
