"""
Pydantic schemas for API request/response models.

Monetary fields are integers in the currency's minor unit; `StrictInt`
rejects floats and numeric strings so a fractional amount never reaches a
service. Incoming datetimes are normalised to naive UTC, the form every
DateTime column stores.
"""

from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal
from urllib.parse import urlsplit

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, StrictInt


def _to_naive_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_local_path(value: str) -> bool:
    """True for an absolute path on this site; rejects ``//host``, ``/\\host`` and schemes."""
    if not value.startswith("/") or value.startswith(("//", "/\\")):
        return False
    if "\\" in value or not value.isprintable():
        return False
    parts = urlsplit(value)
    return not parts.scheme and not parts.netloc


def _local_path(value: str) -> str:
    if not is_local_path(value):
        raise ValueError("Must be a path on this site, starting with a single /")
    return value


UtcDateTime = Annotated[datetime, AfterValidator(_to_naive_utc)]
LocalPath = Annotated[str, Field(max_length=500), AfterValidator(_local_path)]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ── Users / auth ──

class UserSchema(ORMModel):
    id: str
    email: str
    name: str | None = None
    avatar: str | None = None


class MagicLinkRequest(BaseModel):
    email: EmailStr
    redirect_path: LocalPath | None = None


class MagicLinkResponse(BaseModel):
    message: str = "Check your email for a sign-in link"


class VerifyRequest(BaseModel):
    token: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserSchema


class WorkspaceRef(BaseModel):
    id: str
    name: str
    slug: str


class MembershipRef(BaseModel):
    id: str
    role: str
    workspace: WorkspaceRef


class ClientRef(BaseModel):
    id: str
    name: str


class ContactRef(BaseModel):
    id: str
    is_primary: bool
    client: ClientRef
    workspace: WorkspaceRef


class MeResponse(BaseModel):
    user: UserSchema
    membership: MembershipRef | None = None
    client_contacts: list[ContactRef] = []


class ProfileUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    avatar: str | None = Field(None, max_length=500)


# ── Workspace ──

class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    slug: str = Field(..., min_length=2, max_length=100, pattern=r"^[a-z0-9-]+$")
    brand_color: str | None = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")


class WorkspaceUpdate(BaseModel):
    name: str | None = Field(None, min_length=2, max_length=100)
    brand_color: str | None = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    logo: str | None = Field(None, max_length=500)
    website: str | None = Field(None, max_length=200)
    address: str | None = Field(None, max_length=500)
    phone: str | None = Field(None, max_length=50)


class WorkspaceSchema(ORMModel):
    id: str
    name: str
    slug: str
    logo: str | None = None
    brand_color: str
    website: str | None = None
    address: str | None = None
    phone: str | None = None
    plan: str
    trial_ends_at: datetime | None = None
    created_at: datetime


class WorkspaceDetail(WorkspaceSchema):
    role: str | None = None


# ── Team ──

class InviteRequest(BaseModel):
    email: EmailStr
    role: Literal["admin", "member"]


class RoleChange(BaseModel):
    role: Literal["owner", "admin", "member"]


class MemberSchema(BaseModel):
    id: str
    role: str
    created_at: datetime
    user: UserSchema


# ── Clients ──

class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    notes: str | None = None
    contact_name: str | None = Field(None, max_length=100)


class ClientUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    notes: str | None = None


class ContactCreate(BaseModel):
    email: EmailStr
    name: str | None = Field(None, max_length=100)
    is_primary: bool = False


class ContactSchema(BaseModel):
    id: str
    is_primary: bool
    created_at: datetime
    user: UserSchema


class ClientSchema(ORMModel):
    id: str
    workspace_id: str
    name: str
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class ClientSummary(ClientSchema):
    contacts: list[ContactSchema] = []
    project_count: int = 0


# ── Projects ──

ProjectStatusLiteral = Literal["not-started", "active", "on-hold", "completed", "cancelled"]


class ProjectCreate(BaseModel):
    client_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    status: ProjectStatusLiteral = "active"
    start_date: UtcDateTime | None = None
    due_date: UtcDateTime | None = None


class ProjectUpdateRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    status: ProjectStatusLiteral | None = None
    start_date: UtcDateTime | None = None
    due_date: UtcDateTime | None = None


class ProjectSchema(ORMModel):
    id: str
    client_id: str
    name: str
    description: str | None = None
    status: str
    start_date: datetime | None = None
    due_date: datetime | None = None
    created_at: datetime
    updated_at: datetime
    client_name: str | None = None


class ClientDetail(ClientSchema):
    contacts: list[ContactSchema] = []
    projects: list[ProjectSchema] = []


# ── Project updates / messages / files ──

class UpdateCreate(BaseModel):
    content: str = Field(..., min_length=1)


class UpdateSchema(BaseModel):
    id: str
    project_id: str
    content: str
    created_at: datetime
    author: UserSchema


class MessageCreate(BaseModel):
    project_id: str
    content: str = Field(..., min_length=1, max_length=5000)


class MessageSchema(BaseModel):
    id: str
    project_id: str
    content: str
    created_at: datetime
    author: UserSchema


class FileSchema(BaseModel):
    id: str
    project_id: str
    name: str
    url: str
    size: int
    size_label: str
    content_type: str
    created_at: datetime
    uploaded_by: UserSchema


# ── Approvals ──

class ApprovalCreate(BaseModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = None


class ApprovalRespond(BaseModel):
    status: Literal["approved", "changes-requested", "rejected"]
    response_note: str | None = None


class ApprovalSchema(ORMModel):
    id: str
    project_id: str
    requested_by_id: str
    title: str
    description: str | None = None
    status: str
    response_note: str | None = None
    responded_by_id: str | None = None
    responded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ApprovalDetail(ApprovalSchema):
    project: ClientRef
    client: ClientRef
    workspace: WorkspaceRef
    requested_by: UserSchema | None = None
    responded_by: UserSchema | None = None


# ── Invoices ──

class InvoiceItemInput(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: StrictInt = Field(..., ge=1)
    unit_price: StrictInt = Field(..., ge=0)


class InvoiceCreate(BaseModel):
    client_id: str
    items: list[InvoiceItemInput] = Field(..., min_length=1)
    due_date: UtcDateTime | None = None
    tax: StrictInt = Field(0, ge=0)
    currency: str = Field("USD", pattern=r"^[A-Za-z]{3}$")
    notes: str | None = None


class InvoiceUpdate(BaseModel):
    items: list[InvoiceItemInput] | None = Field(None, min_length=1)
    tax: StrictInt | None = Field(None, ge=0)
    due_date: UtcDateTime | None = None
    notes: str | None = None
    status: Literal["draft", "sent", "paid", "overdue", "cancelled"] | None = None


class InvoiceItemSchema(ORMModel):
    id: str
    position: int
    description: str
    quantity: int
    unit_price: int
    total: int


class InvoiceSchema(BaseModel):
    id: str
    client_id: str
    client_name: str | None = None
    number: str
    status: str
    effective_status: str
    currency: str
    subtotal: int
    tax: int
    total: int
    formatted_total: str
    notes: str | None = None
    due_date: datetime | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    items: list[InvoiceItemSchema] | None = None


# ── Activity ──

class ActivityUser(BaseModel):
    id: str
    name: str | None = None
    email: str
    avatar: str | None = None


class ActivityEntry(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: str | None = None
    description: str
    metadata: dict[str, Any] | None = None
    created_at: datetime
    user: ActivityUser | None = None
    project: ClientRef | None = None
    client: ClientRef | None = None


# ── Search ──

class SearchResult(BaseModel):
    id: str
    type: str
    title: str
    subtitle: str = ""
    description: str = ""
    meta: str = ""
    url: str
    file_url: str | None = None


class SearchResponse(BaseModel):
    clients: list[SearchResult] = []
    projects: list[SearchResult] = []
    files: list[SearchResult] = []
    invoices: list[SearchResult] = []
    total: int = 0


# ── Portal ──

class PortalBranding(ORMModel):
    name: str
    slug: str
    logo: str | None = None
    brand_color: str


class PortalProject(ProjectSchema):
    pending_approvals: int = 0


class PortalClient(BaseModel):
    id: str
    name: str
    outstanding_invoices: int = 0
    projects: list[PortalProject] = []


class PortalHome(BaseModel):
    workspace: PortalBranding
    clients: list[PortalClient]


class PortalProjectDetail(BaseModel):
    workspace: PortalBranding
    project: ProjectSchema
    updates: list[UpdateSchema]
    approvals: list[ApprovalSchema]
    files: list[FileSchema]
    message_count: int


# ── Dashboard ──

class DashboardStats(BaseModel):
    clients: dict[str, int]
    projects: dict[str, Any]
    invoices: dict[str, Any]
    revenue: dict[str, Any]
    approvals: dict[str, int]
    files: dict[str, int]
    messages: dict[str, int]
    upcoming_due: list[dict[str, Any]]


# ── Reports ──

class ReportPeriodSchema(BaseModel):
    start: date | None = None
    end: date | None = None


class ReportResponse(BaseModel):
    type: Literal["summary", "revenue", "projects", "clients"]
    workspace: str
    generated_at: datetime
    period: ReportPeriodSchema
    data: dict[str, Any]
