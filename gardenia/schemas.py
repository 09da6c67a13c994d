from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator, model_validator


class ClinicCreate(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    logo: str | None = Field(default=None, max_length=500)
    address: str | None = Field(default=None, max_length=300)
    phone: str | None = Field(default=None, max_length=40)
    opening_hours: str | None = Field(default=None, max_length=300)


class ClinicUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=160)
    logo: str | None = Field(default=None, max_length=500)
    address: str | None = Field(default=None, max_length=300)
    phone: str | None = Field(default=None, max_length=40)
    opening_hours: str | None = Field(default=None, max_length=300)


class ClinicOut(BaseModel):
    id: int
    name: str
    logo: str | None = None
    address: str | None = None
    phone: str | None = None
    opening_hours: str | None = None
    role: str | None = None
    created_at: datetime


class MemberOut(BaseModel):
    id: int
    clinic_id: int
    user_id: int
    name: str
    email: str
    role: str
    invited_by: int | None = None
    invited_at: datetime
    accepted_at: datetime | None = None


class MemberRoleUpdate(BaseModel):
    role: str = Field(min_length=4, max_length=32)
    keep_permissions: bool = False


class PermissionPair(BaseModel):
    module: str = Field(min_length=2, max_length=40)
    action: str = Field(min_length=2, max_length=40)


class PermissionOut(PermissionPair):
    id: int | None = None


class PermissionSetIn(BaseModel):
    permissions: list[PermissionPair] = Field(default_factory=list)


class PermissionCopyIn(BaseModel):
    source_member_id: int = Field(gt=0)


class EffectivePermissionsOut(BaseModel):
    clinic_id: int
    role: str | None = None
    bypass: bool
    permissions: list[PermissionPair]


class ClientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=300)
    birthdate: datetime | None = None
    notes: str | None = Field(default=None, max_length=5000)

    @field_validator("name")
    @classmethod
    def validate_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name is required")
        return value.strip()


class ClientUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=300)
    birthdate: datetime | None = None
    notes: str | None = Field(default=None, max_length=5000)


class ClientOut(BaseModel):
    id: int
    clinic_id: int
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    birthdate: datetime | None = None
    notes: str | None = None
    created_by: int
    created_at: datetime
    updated_at: datetime


class ProfessionalCreate(BaseModel):
    user_id: int = Field(gt=0)
    specialization: str | None = Field(default=None, max_length=160)
    bio: str | None = Field(default=None, max_length=5000)
    commission_rate: float = Field(default=0.0, ge=0, le=1)
    color: str | None = Field(default=None, max_length=16)


class ProfessionalUpdate(BaseModel):
    specialization: str | None = Field(default=None, max_length=160)
    bio: str | None = Field(default=None, max_length=5000)
    commission_rate: float | None = Field(default=None, ge=0, le=1)
    color: str | None = Field(default=None, max_length=16)
    is_active: bool | None = None


class ProfessionalOut(BaseModel):
    id: int
    clinic_id: int
    user_id: int
    name: str
    email: str
    specialization: str | None = None
    bio: str | None = None
    commission_rate: float
    color: str
    is_active: bool


class ServiceCreate(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    description: str | None = Field(default=None, max_length=5000)
    duration: int = Field(gt=0, le=24 * 60)
    price: float = Field(default=0.0, ge=0)


class ServiceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=160)
    description: str | None = Field(default=None, max_length=5000)
    duration: int | None = Field(default=None, gt=0, le=24 * 60)
    price: float | None = Field(default=None, ge=0)
    is_active: bool | None = None


class ServiceOut(BaseModel):
    id: int
    clinic_id: int
    name: str
    description: str | None = None
    duration: int
    price: float
    is_active: bool


class AppointmentCreate(BaseModel):
    client_id: int = Field(gt=0)
    professional_id: int = Field(gt=0)
    service_id: int = Field(gt=0)
    start_time: datetime
    end_time: datetime | None = None
    notes: str | None = Field(default=None, max_length=5000)
    status: str = Field(default="scheduled", pattern="^(scheduled|confirmed)$")

    @model_validator(mode="after")
    def validate_end_after_start(self):
        if self.end_time is None:
            return self
        comparable = (self.start_time.tzinfo is None) == (self.end_time.tzinfo is None)
        if comparable and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AppointmentUpdate(BaseModel):
    professional_id: int | None = Field(default=None, gt=0)
    service_id: int | None = Field(default=None, gt=0)
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = Field(default=None, max_length=5000)
    status: str | None = None


class AppointmentStatusUpdate(BaseModel):
    status: str = Field(min_length=3, max_length=32)


class AppointmentOut(BaseModel):
    id: int
    clinic_id: int
    client_id: int
    professional_id: int
    service_id: int
    client_name: str
    professional_name: str
    service_name: str
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    created_by: int
    created_at: datetime
    updated_at: datetime


class InvitationCreate(BaseModel):
    email: str = Field(min_length=3, max_length=200)
    role: str = Field(min_length=4, max_length=32)
    permissions: list[PermissionPair] | None = None


class InvitationOut(BaseModel):
    id: int
    clinic_id: int
    email: str
    role: str
    permissions: list[PermissionPair] | None = None
    invited_by: int
    expires_at: datetime
    accepted_at: datetime | None = None
    revoked_at: datetime | None = None
    created_at: datetime


class InvitationCreatedOut(InvitationOut):
    token: str
    invitation_link: str


class InvitationPublicOut(BaseModel):
    clinic_id: int
    clinic_name: str
    email: str
    role: str
    expires_at: datetime


class InvitationRegisterIn(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    password: str = Field(min_length=8, max_length=200)


class AuditLogOut(BaseModel):
    id: int
    clinic_id: int | None = None
    actor_user_id: int | None = None
    actor_email: str | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    request_id: str | None = None
    payload_json: str | None = None
    created_at: datetime


class PaymentCreate(BaseModel):
    client_id: int = Field(gt=0)
    amount: float = Field(gt=0)
    appointment_id: int | None = Field(default=None, gt=0)
    payment_method: str | None = Field(default="cash", max_length=40)
    notes: str | None = Field(default=None, max_length=2000)


class PaymentIntentCreate(BaseModel):
    client_id: int = Field(gt=0)
    amount: float = Field(gt=0)
    appointment_id: int | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    notes: str | None = Field(default=None, max_length=2000)


class RefundCreate(BaseModel):
    amount: float | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=300)


class PaymentOut(BaseModel):
    id: int
    clinic_id: int
    client_id: int
    appointment_id: int | None = None
    amount: float
    currency: str
    status: str
    payment_method: str
    provider: str
    provider_ref: str | None = None
    refund_amount: float
    refund_reason: str | None = None
    notes: str | None = None
    payment_date: datetime | None = None
    created_by: int
    created_at: datetime
    updated_at: datetime


class PaymentIntentOut(BaseModel):
    payment: PaymentOut
    client_secret: str | None = None


class CommissionOut(BaseModel):
    id: int
    clinic_id: int
    professional_id: int
    payment_id: int
    amount: float
    rate: float
    status: str
    created_at: datetime


class ExpenseCreate(BaseModel):
    description: str = Field(min_length=2, max_length=300)
    category: str = Field(min_length=2, max_length=80)
    amount: float = Field(gt=0)
    due_date: datetime
    notes: str | None = Field(default=None, max_length=2000)


class ExpenseUpdate(BaseModel):
    description: str | None = Field(default=None, min_length=2, max_length=300)
    category: str | None = Field(default=None, min_length=2, max_length=80)
    amount: float | None = Field(default=None, gt=0)
    due_date: datetime | None = None
    notes: str | None = Field(default=None, max_length=2000)


class ExpensePay(BaseModel):
    payment_method: str = Field(min_length=2, max_length=40)


class ExpenseOut(BaseModel):
    id: int
    clinic_id: int
    description: str
    category: str
    amount: float
    due_date: datetime
    status: str
    payment_method: str | None = None
    payment_date: datetime | None = None
    notes: str | None = None
    created_by: int
    created_at: datetime
    updated_at: datetime


class FinancialSummaryOut(BaseModel):
    clinic_id: int
    start: datetime
    end: datetime
    gross_revenue: float
    refunds: float
    net_revenue: float
    paid_expenses: float
    pending_expenses: float
    commissions: float
    balance: float


class ExpenseCategoryOut(BaseModel):
    category: str
    total: float
    count: int


class CashFlowDayOut(BaseModel):
    day: date
    income: float
    expenses: float
    net: float
    balance: float


class RevenueExpenseIntervalOut(BaseModel):
    start: datetime
    end: datetime
    revenue: float
    expenses: float
    profit: float


class SubscriptionCreate(BaseModel):
    price_id: str | None = Field(default=None, max_length=120)


class SubscriptionOut(BaseModel):
    subscription_id: str
    status: str
    client_secret: str | None = None


class LeadCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    phone: str = Field(min_length=3, max_length=40)
    source: str = Field(min_length=2, max_length=32)
    email: str | None = Field(default=None, max_length=200)
    interest: str | None = Field(default=None, max_length=200)
    estimated_value: float | None = Field(default=None, ge=0)
    assigned_to: int | None = None
    notes: str | None = Field(default=None, max_length=5000)

    @field_validator("name")
    @classmethod
    def validate_name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name is required")
        return value.strip()


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    phone: str | None = Field(default=None, min_length=3, max_length=40)
    source: str | None = Field(default=None, min_length=2, max_length=32)
    status: str | None = Field(default=None, min_length=2, max_length=32)
    email: str | None = Field(default=None, max_length=200)
    interest: str | None = Field(default=None, max_length=200)
    estimated_value: float | None = Field(default=None, ge=0)
    assigned_to: int | None = None
    notes: str | None = Field(default=None, max_length=5000)


class LeadOut(BaseModel):
    id: int
    clinic_id: int
    name: str
    email: str | None = None
    phone: str
    source: str
    status: str
    interest: str | None = None
    estimated_value: float | None = None
    assigned_to: int | None = None
    notes: str | None = None
    converted_client_id: int | None = None
    converted_at: datetime | None = None
    created_by: int
    created_at: datetime
    updated_at: datetime


class LeadInteractionCreate(BaseModel):
    kind: str = Field(min_length=2, max_length=32)
    description: str = Field(min_length=1, max_length=5000)
    occurred_at: datetime | None = None


class LeadInteractionOut(BaseModel):
    id: int
    lead_id: int
    kind: str
    description: str
    occurred_at: datetime
    created_by: int
    created_at: datetime


class LeadAppointmentCreate(BaseModel):
    scheduled_for: datetime
    procedure: str = Field(min_length=2, max_length=200)
    status: str = Field(default="pending", max_length=32)
    notes: str | None = Field(default=None, max_length=2000)


class LeadAppointmentOut(BaseModel):
    id: int
    lead_id: int
    scheduled_for: datetime
    procedure: str
    status: str
    notes: str | None = None
    created_by: int
    created_at: datetime


class LeadConvertOut(BaseModel):
    lead: LeadOut
    client: ClientOut


class CrmStatsOut(BaseModel):
    clinic_id: int
    total: int
    by_status: dict[str, int]
    by_source: dict[str, int]
    conversion_rate: float
    open_pipeline_value: float


class InventoryProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    category: str = Field(min_length=1, max_length=80)
    quantity: int = Field(default=0, ge=0)
    price: float = Field(default=0, ge=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)


class InventoryProductUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    category: str | None = Field(default=None, min_length=1, max_length=80)
    quantity: int | None = Field(default=None, ge=0)
    price: float | None = Field(default=None, ge=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)


class StockAdjustIn(BaseModel):
    delta: int
    reason: str | None = Field(default=None, max_length=300)


class InventoryProductOut(BaseModel):
    id: int
    clinic_id: int
    name: str
    category: str
    quantity: int
    price: float
    low_stock_threshold: int
    status: str
    created_by: int
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=3, max_length=100)
    description: str | None = Field(default=None, max_length=5000)
    priority: str | None = Field(default=None, max_length=16)
    due_date: datetime | None = None
    assigned_to: int | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=3, max_length=100)
    description: str | None = Field(default=None, max_length=5000)
    status: str | None = Field(default=None, max_length=16)
    priority: str | None = Field(default=None, max_length=16)
    due_date: datetime | None = None
    assigned_to: int | None = None


class TaskOut(BaseModel):
    id: int
    clinic_id: int
    title: str
    description: str | None = None
    status: str
    priority: str
    due_date: datetime | None = None
    assigned_to: int | None = None
    completed_at: datetime | None = None
    created_by: int
    created_at: datetime
    updated_at: datetime
