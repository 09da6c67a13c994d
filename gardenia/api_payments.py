from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
import structlog
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .api import http_error
from .config import settings
from .db import get_db
from .dependencies import ClinicAccess, get_current_user, require_permission
from .financial import (
    REPORT_PERIOD_INTERVALS,
    cancel_expense,
    cash_flow,
    create_expense,
    expenses_by_category,
    financial_summary,
    get_expense,
    list_expenses,
    pay_expense,
    report_window,
    revenue_vs_expense,
    update_expense,
)
from .models import Commission, Expense, Payment, User, utc_now_naive
from .payments import (
    cancel_payment,
    confirm_payment,
    create_payment,
    create_stripe_payment,
    get_payment,
    handle_stripe_event,
    list_commissions,
    list_payments,
    refund_payment,
    sync_stripe_payment,
)
from .schemas import (
    CashFlowDayOut,
    CommissionOut,
    ExpenseCategoryOut,
    ExpenseCreate,
    ExpenseOut,
    ExpensePay,
    ExpenseUpdate,
    FinancialSummaryOut,
    PaymentCreate,
    PaymentIntentCreate,
    PaymentIntentOut,
    PaymentOut,
    RefundCreate,
    RevenueExpenseIntervalOut,
    SubscriptionCreate,
    SubscriptionOut,
)
from .stripe_gateway import PaymentProviderError, gateway, subscription_client_secret

router = APIRouter(prefix="/api", tags=["payments"])
logger = structlog.get_logger("gardenia.payments.api")


def provider_http_error(exc: PaymentProviderError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message},
    )


def _to_payment_out(p: Payment) -> PaymentOut:
    return PaymentOut(
        id=p.id,
        clinic_id=p.clinic_id,
        client_id=p.client_id,
        appointment_id=p.appointment_id,
        amount=float(p.amount),
        currency=p.currency,
        status=p.status,
        payment_method=p.payment_method,
        provider=p.provider,
        provider_ref=p.provider_ref,
        refund_amount=float(p.refund_amount or 0),
        refund_reason=p.refund_reason,
        notes=p.notes,
        payment_date=p.payment_date,
        created_by=p.created_by,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


def _to_commission_out(c: Commission) -> CommissionOut:
    return CommissionOut(
        id=c.id,
        clinic_id=c.clinic_id,
        professional_id=c.professional_id,
        payment_id=c.payment_id,
        amount=float(c.amount),
        rate=float(c.rate),
        status=c.status,
        created_at=c.created_at,
    )


def _to_expense_out(e: Expense) -> ExpenseOut:
    return ExpenseOut(
        id=e.id,
        clinic_id=e.clinic_id,
        description=e.description,
        category=e.category,
        amount=float(e.amount),
        due_date=e.due_date,
        status=e.status,
        payment_method=e.payment_method,
        payment_date=e.payment_date,
        notes=e.notes,
        created_by=e.created_by,
        created_at=e.created_at,
        updated_at=e.updated_at,
    )


def _payment_or_404(row: Payment | None) -> PaymentOut:
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return _to_payment_out(row)


# --- local payments --------------------------------------------------------


@router.post("/clinics/{clinic_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def add_payment(
    clinic_id: int,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "create")),
):
    try:
        row = create_payment(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_payment_out(row)


@router.get("/clinics/{clinic_id}/payments", response_model=List[PaymentOut])
def get_payments(
    clinic_id: int,
    client_id: Optional[int] = Query(default=None),
    appointment_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    try:
        rows = list_payments(
            db,
            clinic_id,
            client_id=client_id,
            appointment_id=appointment_id,
            status=status_filter,
        )
    except ValueError as exc:
        raise http_error(exc)
    return [_to_payment_out(p) for p in rows]


@router.get("/clinics/{clinic_id}/payments/{payment_id}", response_model=PaymentOut)
def get_payment_detail(
    clinic_id: int,
    payment_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    return _payment_or_404(get_payment(db, clinic_id, payment_id))


@router.post("/clinics/{clinic_id}/payments/{payment_id}/confirm", response_model=PaymentOut)
def confirm_payment_endpoint(
    clinic_id: int,
    payment_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    try:
        row = confirm_payment(db, clinic_id, payment_id)
    except ValueError as exc:
        raise http_error(exc)
    return _payment_or_404(row)


@router.post("/clinics/{clinic_id}/payments/{payment_id}/refund", response_model=PaymentOut)
def refund_payment_endpoint(
    clinic_id: int,
    payment_id: int,
    payload: RefundCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    try:
        row = refund_payment(
            db,
            clinic_id,
            payment_id,
            actor=access.user,
            amount=payload.amount,
            reason=payload.reason,
        )
    except PaymentProviderError as exc:
        raise provider_http_error(exc)
    except ValueError as exc:
        raise http_error(exc)
    return _payment_or_404(row)


@router.post("/clinics/{clinic_id}/payments/{payment_id}/cancel", response_model=PaymentOut)
def cancel_payment_endpoint(
    clinic_id: int,
    payment_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    try:
        row = cancel_payment(db, clinic_id, payment_id)
    except ValueError as exc:
        raise http_error(exc)
    return _payment_or_404(row)


@router.get("/clinics/{clinic_id}/commissions", response_model=List[CommissionOut])
def get_commissions(
    clinic_id: int,
    professional_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    rows = list_commissions(db, clinic_id, professional_id=professional_id, status=status_filter)
    return [_to_commission_out(c) for c in rows]


# --- stripe ----------------------------------------------------------------


@router.post(
    "/clinics/{clinic_id}/payments/intents",
    response_model=PaymentIntentOut,
    status_code=status.HTTP_201_CREATED,
)
def create_payment_intent(
    clinic_id: int,
    payload: PaymentIntentCreate,
    idempotency_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "create")),
):
    try:
        row, client_secret = create_stripe_payment(
            db,
            clinic_id,
            access.user.id,
            client_id=payload.client_id,
            amount=payload.amount,
            appointment_id=payload.appointment_id,
            currency=payload.currency,
            notes=payload.notes,
            idempotency_key=idempotency_key,
        )
    except PaymentProviderError as exc:
        logger.error("stripe_intent_failed", clinic_id=clinic_id, code=exc.code)
        raise provider_http_error(exc)
    except ValueError as exc:
        raise http_error(exc)
    return PaymentIntentOut(payment=_to_payment_out(row), client_secret=client_secret)


@router.post("/clinics/{clinic_id}/payments/{payment_id}/sync", response_model=PaymentOut)
def sync_payment(
    clinic_id: int,
    payment_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    try:
        row = sync_stripe_payment(db, clinic_id, payment_id)
    except PaymentProviderError as exc:
        raise provider_http_error(exc)
    except ValueError as exc:
        raise http_error(exc)
    return _payment_or_404(row)


@router.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    try:
        event = gateway.construct_webhook_event(payload, stripe_signature)
    except PaymentProviderError as exc:
        logger.error("stripe_webhook_invalid", code=exc.code)
        raise provider_http_error(exc)

    payment = await run_in_threadpool(handle_stripe_event, db, event)
    logger.info(
        "stripe_webhook_processed",
        event_type=getattr(event, "type", None),
        payment_id=payment.id if payment else None,
    )
    return {"status": "success", "payment_id": payment.id if payment else None}


@router.post("/billing/subscription", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    price_id = (payload.price_id or settings.STRIPE_DEFAULT_PRICE_ID or "").strip()
    if not price_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="price_id is required")
    if user.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Subscription already exists")
    try:
        customer = gateway.get_or_create_customer(user)
        if user.stripe_customer_id != customer.id:
            user.stripe_customer_id = customer.id
            db.commit()
        subscription = gateway.create_subscription(customer.id, price_id)
    except PaymentProviderError as exc:
        raise provider_http_error(exc)
    user.stripe_subscription_id = subscription.id
    user.updated_at = utc_now_naive()
    db.commit()
    return SubscriptionOut(
        subscription_id=subscription.id,
        status=subscription.status,
        client_secret=subscription_client_secret(subscription),
    )


@router.get("/billing/subscription", response_model=SubscriptionOut)
def get_subscription(user: User = Depends(get_current_user)):
    if not user.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    try:
        subscription = gateway.get_subscription(user.stripe_subscription_id)
    except PaymentProviderError as exc:
        raise provider_http_error(exc)
    return SubscriptionOut(subscription_id=subscription.id, status=subscription.status)


@router.delete("/billing/subscription", response_model=SubscriptionOut)
def cancel_subscription(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not user.stripe_subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    try:
        subscription = gateway.cancel_subscription(user.stripe_subscription_id)
    except PaymentProviderError as exc:
        raise provider_http_error(exc)
    user.stripe_subscription_id = None
    user.updated_at = utc_now_naive()
    db.commit()
    return SubscriptionOut(subscription_id=subscription.id, status=subscription.status)


# --- expenses & summary ----------------------------------------------------


@router.post("/clinics/{clinic_id}/expenses", response_model=ExpenseOut, status_code=status.HTTP_201_CREATED)
def add_expense(
    clinic_id: int,
    payload: ExpenseCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "create")),
):
    try:
        row = create_expense(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_expense_out(row)


@router.get("/clinics/{clinic_id}/expenses", response_model=List[ExpenseOut])
def get_expenses(
    clinic_id: int,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    category: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    try:
        rows = list_expenses(db, clinic_id, status=status_filter, category=category, start=start, end=end)
    except ValueError as exc:
        raise http_error(exc)
    return [_to_expense_out(e) for e in rows]


def _expense_or_404(row: Expense | None) -> ExpenseOut:
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Expense not found")
    return _to_expense_out(row)


@router.get("/clinics/{clinic_id}/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense_detail(
    clinic_id: int,
    expense_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    return _expense_or_404(get_expense(db, clinic_id, expense_id))


@router.patch("/clinics/{clinic_id}/expenses/{expense_id}", response_model=ExpenseOut)
def patch_expense(
    clinic_id: int,
    expense_id: int,
    payload: ExpenseUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_expense(db, clinic_id, expense_id, fields)
    except ValueError as exc:
        raise http_error(exc)
    return _expense_or_404(row)


@router.post("/clinics/{clinic_id}/expenses/{expense_id}/pay", response_model=ExpenseOut)
def pay_expense_endpoint(
    clinic_id: int,
    expense_id: int,
    payload: ExpensePay,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    try:
        row = pay_expense(db, clinic_id, expense_id, payload.payment_method)
    except ValueError as exc:
        raise http_error(exc)
    return _expense_or_404(row)


@router.post("/clinics/{clinic_id}/expenses/{expense_id}/cancel", response_model=ExpenseOut)
def cancel_expense_endpoint(
    clinic_id: int,
    expense_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "edit")),
):
    try:
        row = cancel_expense(db, clinic_id, expense_id)
    except ValueError as exc:
        raise http_error(exc)
    return _expense_or_404(row)


@router.get("/clinics/{clinic_id}/financial/summary", response_model=FinancialSummaryOut)
def get_financial_summary(
    clinic_id: int,
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    try:
        data = financial_summary(db, clinic_id, start, end)
    except ValueError as exc:
        raise http_error(exc)
    return FinancialSummaryOut(**data)


# --- reports ---------------------------------------------------------------


@router.get(
    "/clinics/{clinic_id}/financial/reports/expenses-by-category",
    response_model=List[ExpenseCategoryOut],
)
def get_expenses_by_category(
    clinic_id: int,
    period: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    try:
        window_start, window_end = report_window(period, start, end)
        rows = expenses_by_category(db, clinic_id, window_start, window_end)
    except ValueError as exc:
        raise http_error(exc)
    return [ExpenseCategoryOut(**r) for r in rows]


@router.get("/clinics/{clinic_id}/financial/reports/cash-flow", response_model=List[CashFlowDayOut])
def get_cash_flow(
    clinic_id: int,
    period: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    try:
        window_start, window_end = report_window(period, start, end)
        rows = cash_flow(db, clinic_id, window_start, window_end)
    except ValueError as exc:
        raise http_error(exc)
    return [CashFlowDayOut(**r) for r in rows]


@router.get(
    "/clinics/{clinic_id}/financial/reports/revenue-vs-expense",
    response_model=List[RevenueExpenseIntervalOut],
)
def get_revenue_vs_expense(
    clinic_id: int,
    period: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    intervals: Optional[int] = Query(default=None, ge=1, le=52),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("financial", "view")),
):
    if intervals is None:
        intervals = REPORT_PERIOD_INTERVALS.get((period or "").strip().lower(), 6)
    try:
        window_start, window_end = report_window(period, start, end)
        rows = revenue_vs_expense(db, clinic_id, window_start, window_end, intervals)
    except ValueError as exc:
        raise http_error(exc)
    return [RevenueExpenseIntervalOut(**r) for r in rows]
