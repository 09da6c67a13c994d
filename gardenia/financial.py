from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import Commission, Expense, Payment, utc_now_naive
from .payments import PAYMENT_METHODS, money
from .services import to_utc_naive

logger = structlog.get_logger("gardenia.financial")

EXPENSE_STATUSES = {"pending", "paid", "cancelled"}
REVENUE_STATUSES = ("paid", "partially_refunded", "refunded")


def _clean_text(value: str | None, field: str, max_len: int) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        raise ValueError(f"{field} is required")
    return cleaned[:max_len]


def _positive_amount(value):
    amount = money(value)
    if amount <= 0:
        raise ValueError("amount must be greater than 0")
    return amount


def create_expense(
    db: Session,
    clinic_id: int,
    created_by: int,
    *,
    description: str,
    category: str,
    amount,
    due_date: datetime,
    notes: str | None = None,
) -> Expense:
    now = utc_now_naive()
    row = Expense(
        clinic_id=clinic_id,
        description=_clean_text(description, "description", 300),
        category=_clean_text(category, "category", 80).lower(),
        amount=_positive_amount(amount),
        due_date=to_utc_naive(due_date),
        status="pending",
        notes=(notes or "").strip() or None,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("expense_created", clinic_id=clinic_id, expense_id=row.id, category=row.category)
    return row


def get_expense(db: Session, clinic_id: int, expense_id: int) -> Expense | None:
    return db.execute(
        select(Expense).where(Expense.clinic_id == clinic_id, Expense.id == expense_id)
    ).scalar_one_or_none()


def list_expenses(
    db: Session,
    clinic_id: int,
    *,
    status: str | None = None,
    category: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Expense]:
    q = db.query(Expense).filter(Expense.clinic_id == clinic_id)
    if status:
        value = status.strip().lower()
        if value not in EXPENSE_STATUSES:
            raise ValueError("Invalid expense status")
        q = q.filter(Expense.status == value)
    if category:
        q = q.filter(Expense.category == category.strip().lower())
    if start is not None:
        q = q.filter(Expense.due_date >= to_utc_naive(start))
    if end is not None:
        q = q.filter(Expense.due_date < to_utc_naive(end))
    return q.order_by(Expense.due_date.desc(), Expense.id.desc()).all()


def _pending_or_raise(row: Expense) -> None:
    if row.status != "pending":
        raise ValueError(f"Expense is {row.status}; only pending expenses can change")


def update_expense(db: Session, clinic_id: int, expense_id: int, fields: dict) -> Expense | None:
    row = get_expense(db, clinic_id, expense_id)
    if row is None:
        return None
    _pending_or_raise(row)
    if fields.get("description") is not None:
        row.description = _clean_text(fields["description"], "description", 300)
    if fields.get("category") is not None:
        row.category = _clean_text(fields["category"], "category", 80).lower()
    if fields.get("amount") is not None:
        row.amount = _positive_amount(fields["amount"])
    if fields.get("due_date") is not None:
        row.due_date = to_utc_naive(fields["due_date"])
    if "notes" in fields:
        row.notes = (fields["notes"] or "").strip() or None
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def pay_expense(db: Session, clinic_id: int, expense_id: int, payment_method: str) -> Expense | None:
    row = get_expense(db, clinic_id, expense_id)
    if row is None:
        return None
    _pending_or_raise(row)
    method = (payment_method or "").strip().lower()
    if not method:
        raise ValueError("payment_method is required")
    if method not in PAYMENT_METHODS:
        raise ValueError(f"invalid payment_method: {payment_method}")
    now = utc_now_naive()
    row.status = "paid"
    row.payment_method = method
    row.payment_date = now
    row.updated_at = now
    db.commit()
    db.refresh(row)
    logger.info("expense_paid", clinic_id=clinic_id, expense_id=row.id, payment_method=method)
    return row


def cancel_expense(db: Session, clinic_id: int, expense_id: int) -> Expense | None:
    row = get_expense(db, clinic_id, expense_id)
    if row is None:
        return None
    _pending_or_raise(row)
    row.status = "cancelled"
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    logger.info("expense_cancelled", clinic_id=clinic_id, expense_id=row.id)
    return row


def _sum(db: Session, column, *criteria):
    return money(db.execute(select(func.coalesce(func.sum(column), 0)).where(*criteria)).scalar_one())


def financial_summary(db: Session, clinic_id: int, start: datetime, end: datetime) -> dict:
    start = to_utc_naive(start)
    end = to_utc_naive(end)
    if end <= start:
        raise ValueError("end must be after start")

    revenue_filter = (
        Payment.clinic_id == clinic_id,
        Payment.status.in_(REVENUE_STATUSES),
        Payment.payment_date >= start,
        Payment.payment_date < end,
    )
    gross = _sum(db, Payment.amount, *revenue_filter)
    refunds = _sum(db, Payment.refund_amount, *revenue_filter)
    net = gross - refunds
    paid_expenses = _sum(
        db,
        Expense.amount,
        Expense.clinic_id == clinic_id,
        Expense.status == "paid",
        Expense.payment_date >= start,
        Expense.payment_date < end,
    )
    pending_expenses = _sum(
        db,
        Expense.amount,
        Expense.clinic_id == clinic_id,
        Expense.status == "pending",
        Expense.due_date >= start,
        Expense.due_date < end,
    )
    commissions = _sum(
        db,
        Commission.amount,
        Commission.clinic_id == clinic_id,
        Commission.status != "cancelled",
        Commission.created_at >= start,
        Commission.created_at < end,
    )
    return {
        "clinic_id": clinic_id,
        "start": start,
        "end": end,
        "gross_revenue": float(gross),
        "refunds": float(refunds),
        "net_revenue": float(net),
        "paid_expenses": float(paid_expenses),
        "pending_expenses": float(pending_expenses),
        "commissions": float(commissions),
        "balance": float(net - paid_expenses),
    }


# --- reports -------------------------------------------------------------

REPORT_PERIOD_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}
REPORT_PERIOD_INTERVALS = {"week": 7, "month": 4, "quarter": 3, "year": 12}
MAX_CASH_FLOW_DAYS = 366


def report_window(
    period: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    if period:
        key = period.strip().lower()
        if key not in REPORT_PERIOD_DAYS:
            raise ValueError("period must be one of: week, month, quarter, year")
        end_at = now or utc_now_naive()
        return end_at - timedelta(days=REPORT_PERIOD_DAYS[key]), end_at
    if start is None or end is None:
        raise ValueError("start and end are required when no period is given")
    start, end = to_utc_naive(start), to_utc_naive(end)
    if end <= start:
        raise ValueError("end must be after start")
    return start, end


def _net_payments(db: Session, clinic_id: int, start: datetime, end: datetime):
    return db.execute(
        select(Payment.payment_date, Payment.amount, Payment.refund_amount).where(
            Payment.clinic_id == clinic_id,
            Payment.status.in_(REVENUE_STATUSES),
            Payment.payment_date >= start,
            Payment.payment_date < end,
        )
    ).all()


def _paid_expenses(db: Session, clinic_id: int, start: datetime, end: datetime):
    return db.execute(
        select(Expense.payment_date, Expense.amount).where(
            Expense.clinic_id == clinic_id,
            Expense.status == "paid",
            Expense.payment_date >= start,
            Expense.payment_date < end,
        )
    ).all()


def expenses_by_category(db: Session, clinic_id: int, start: datetime, end: datetime) -> list[dict]:
    rows = db.execute(
        select(Expense.category, func.coalesce(func.sum(Expense.amount), 0), func.count(Expense.id))
        .where(
            Expense.clinic_id == clinic_id,
            Expense.status != "cancelled",
            Expense.due_date >= start,
            Expense.due_date < end,
        )
        .group_by(Expense.category)
    ).all()
    out = [
        {"category": category, "total": float(money(total)), "count": int(count)}
        for category, total, count in rows
    ]
    out.sort(key=lambda item: (-item["total"], item["category"]))
    return out


def cash_flow(db: Session, clinic_id: int, start: datetime, end: datetime) -> list[dict]:
    """Daily money in and out, with a running balance.

    Income is net of refunds so the totals match ``financial_summary`` for the
    same window.
    """
    first_day = start.date()
    # end is exclusive, so a window ending at midnight stops the day before
    last_day = (end - timedelta(microseconds=1)).date()
    days = (last_day - first_day).days + 1
    if days > MAX_CASH_FLOW_DAYS:
        raise ValueError(f"cash flow window is limited to {MAX_CASH_FLOW_DAYS} days")

    income = {}
    for paid_at, amount, refunded in _net_payments(db, clinic_id, start, end):
        key = paid_at.date()
        income[key] = income.get(key, money(0)) + money(amount) - money(refunded or 0)
    outflow = {}
    for paid_at, amount in _paid_expenses(db, clinic_id, start, end):
        key = paid_at.date()
        outflow[key] = outflow.get(key, money(0)) + money(amount)

    balance = money(0)
    out = []
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        day_in = income.get(day, money(0))
        day_out = outflow.get(day, money(0))
        balance += day_in - day_out
        out.append(
            {
                "day": day,
                "income": float(day_in),
                "expenses": float(day_out),
                "net": float(day_in - day_out),
                "balance": float(balance),
            }
        )
    return out


def revenue_vs_expense(db: Session, clinic_id: int, start: datetime, end: datetime, intervals: int) -> list[dict]:
    if intervals < 1 or intervals > 52:
        raise ValueError("intervals must be between 1 and 52")
    step = (end - start) / intervals
    buckets = [
        {"start": start + step * i, "end": end if i == intervals - 1 else start + step * (i + 1)}
        for i in range(intervals)
    ]
    revenue = [money(0)] * intervals
    expenses = [money(0)] * intervals

    def index_of(moment: datetime) -> int:
        return min(int((moment - start) / step), intervals - 1)

    for paid_at, amount, refunded in _net_payments(db, clinic_id, start, end):
        i = index_of(paid_at)
        revenue[i] += money(amount) - money(refunded or 0)
    for paid_at, amount in _paid_expenses(db, clinic_id, start, end):
        i = index_of(paid_at)
        expenses[i] += money(amount)

    return [
        {
            "start": bucket["start"],
            "end": bucket["end"],
            "revenue": float(revenue[i]),
            "expenses": float(expenses[i]),
            "profit": float(revenue[i] - expenses[i]),
        }
        for i, bucket in enumerate(buckets)
    ]
