import datetime as dt
import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EstimateState(str, enum.Enum):
    draft = "draft"
    estimate = "estimate"
    invoice = "invoice"
    change_order = "change-order"


class ClientState(str, enum.Enum):
    sent = "sent"
    viewed = "viewed"
    accepted = "accepted"
    denied = "denied"
    on_hold = "on-hold"
    # Only ever reported at read time, never stored
    expired = "expired"


class DiscountType(str, enum.Enum):
    percentage = "percentage"
    amount = "amount"


class DepositType(str, enum.Enum):
    none = "none"
    percentage = "percentage"
    amount = "amount"


class LineItemType(str, enum.Enum):
    product = "product"
    labor = "labor"
    tool = "tool"
    equipment = "equipment"
    custom = "custom"


class PaymentMethod(str, enum.Enum):
    cash = "Cash"
    card = "Card"
    online = "Online"
    check = "Check"
    other = "Other"


class RevisionChangeType(str, enum.Enum):
    created = "created"
    line_item_added = "line_item_added"
    line_item_updated = "line_item_updated"
    line_item_deleted = "line_item_deleted"
    line_item_reordered = "line_item_reordered"
    financial_change = "financial_change"
    details_changed = "details_changed"
    status_changed = "status_changed"


class CommunicationType(str, enum.Enum):
    email = "email"
    phone = "phone"
    text = "text"
    in_person = "in-person"
    note = "note"


class LineItem(BaseModel):
    id: str
    description: str
    quantity: float
    unit_price: float
    total: float
    item_type: LineItemType = LineItemType.custom
    catalog_item_id: Optional[str] = None  # Link into the inventory catalog
    notes: Optional[str] = None
    collection_id: Optional[str] = None
    collection_name: Optional[str] = None


class LineItemWithStatus(LineItem):
    status: str = "normal"  # 'normal', 'added', 'removed'


class PaymentRecord(BaseModel):
    id: str
    amount: float
    date: dt.date
    method: PaymentMethod = PaymentMethod.cash
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: dt.datetime


class PaymentScheduleMode(str, enum.Enum):
    percentage = "percentage"
    amount = "amount"


class PaymentScheduleEntry(BaseModel):
    id: str
    description: str = ""
    value: float
    due_date: Optional[dt.date] = None


class PaymentSchedule(BaseModel):
    mode: PaymentScheduleMode
    entries: List[PaymentScheduleEntry] = []


class RevisionDetails(BaseModel):
    line_item_id: Optional[str] = None
    deleted_item: Optional[LineItem] = None  # Snapshot so history survives the deletion
    changed_fields: Optional[Dict[str, Dict[str, Any]]] = None  # {field: {before, after}}
    ordered_ids: Optional[List[str]] = None
    from_state: Optional[str] = None
    to_state: Optional[str] = None


class Revision(BaseModel):
    revision_number: int
    date: dt.datetime
    change_type: RevisionChangeType
    changes: str
    modified_by: Optional[str] = None
    modified_by_name: Optional[str] = None
    previous_total: float = 0.0
    new_total: float = 0.0
    details: RevisionDetails = Field(default_factory=RevisionDetails)


class Communication(BaseModel):
    id: str
    date: dt.datetime
    content: str
    type: CommunicationType = CommunicationType.note
    created_by: Optional[str] = None
    created_by_name: Optional[str] = None


class ClientComment(BaseModel):
    id: str
    date: dt.datetime
    text: str
    author_name: str
    author_email: Optional[str] = None
    is_contractor: bool = False


class ViewLog(BaseModel):
    timestamp: dt.datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class Estimate(BaseModel):
    """The estimate aggregate as persisted in the document store."""

    id: str
    estimate_number: str
    project_id: Optional[str] = None
    estimate_state: EstimateState = EstimateState.draft
    client_state: Optional[ClientState] = None

    # Customer snapshot
    customer_id: Optional[str] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    service_address: Optional[str] = None
    project_description: Optional[str] = None

    # Ledger and financial terms
    line_items: List[LineItem] = []
    discount: float = 0.0
    discount_type: DiscountType = DiscountType.amount
    tax_rate: float = 0.0
    deposit_type: DepositType = DepositType.none
    deposit_value: float = 0.0
    payment_schedule: Optional[PaymentSchedule] = None

    # Derived amounts, refreshed before every persisted financial mutation
    subtotal: float = 0.0
    discount_amount: float = 0.0
    taxable_amount: float = 0.0
    tax_amount: float = 0.0
    total: float = 0.0
    deposit_amount: float = 0.0

    payments: List[PaymentRecord] = []

    # Append-only logs
    communications: List[Communication] = []
    client_comments: List[ClientComment] = []
    revisions_history: List[Revision] = []
    current_revision: int = 0

    # Procurement / lineage
    purchase_order_ids: List[str] = []
    purchase_order_fingerprint: Optional[str] = None
    parent_estimate_id: Optional[str] = None

    # Sending and client engagement
    email_token: Optional[str] = None
    client_view_url: Optional[str] = None
    contractor_email: Optional[str] = None
    sent_date: Optional[dt.datetime] = None
    last_email_sent: Optional[dt.datetime] = None
    email_sent_count: int = 0
    viewed_date: Optional[dt.datetime] = None
    view_count: int = 0
    view_history: List[ViewLog] = []
    accepted_date: Optional[dt.datetime] = None
    denied_date: Optional[dt.datetime] = None
    on_hold_date: Optional[dt.datetime] = None
    decision_reason: Optional[str] = None
    client_decision_by: Optional[str] = None
    invoiced_date: Optional[dt.datetime] = None

    valid_until: Optional[dt.date] = None
    notes: Optional[str] = None

    created_by: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    # Store version for conditional writes; not part of the JSON document
    version: int = 0


class EstimateTotals(BaseModel):
    subtotal: float
    discount_amount: float
    taxable_amount: float
    tax_amount: float
    total: float
    deposit_amount: float


class PaymentSummary(BaseModel):
    total: float
    total_paid: float
    balance: float
    payments: List[PaymentRecord] = []


class EstimateSummary(BaseModel):
    id: str
    estimate_number: str
    estimate_state: EstimateState
    client_state: Optional[ClientState] = None
    is_expired: bool = False
    line_items_locked: bool = False
    totals: EstimateTotals
    total_paid: float
    balance: float
    duplicate_line_item_ids: List[str] = []
    current_revision: int
    change_order_ids: List[str] = []


class RevisionDay(BaseModel):
    date: dt.date
    revisions: List[Revision] = []
    line_items: List[LineItemWithStatus] = []


class PurchaseOrderLink(BaseModel):
    estimate_id: str
    purchase_order_id: Optional[str] = None
    created: bool = False
    reason: Optional[str] = None  # Why nothing new was created
