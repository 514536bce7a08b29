"""
Update DTOs, one per mutation type.

Shape is enforced by pydantic here; business rules (positive amounts, schedule
limits, state legality) are enforced by the engine so the same checks apply to
every caller.
"""
import datetime as dt
import enum
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, field_validator

from .estimates import (
    CommunicationType,
    DepositType,
    DiscountType,
    LineItemType,
    PaymentMethod,
    PaymentScheduleMode,
)


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class AddLineItem(BaseModel):
    description: str
    quantity: float = 1.0
    unit_price: float = 0.0
    item_type: LineItemType = LineItemType.custom
    catalog_item_id: Optional[str] = None
    notes: Optional[str] = None
    collection_id: Optional[str] = None
    collection_name: Optional[str] = None


class UpdateLineItem(BaseModel):
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    notes: Optional[str] = None


class ReorderLineItems(BaseModel):
    ordered_ids: List[str]


class CollectionImport(BaseModel):
    collection: Dict
    include_types: List[LineItemType] = [
        LineItemType.product,
        LineItemType.labor,
        LineItemType.tool,
        LineItemType.equipment,
    ]


class EstimateCreate(BaseModel):
    customer_name: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    service_address: Optional[str] = None
    project_id: Optional[str] = None
    project_description: Optional[str] = None
    line_items: List[AddLineItem] = []
    discount: float = 0.0
    discount_type: DiscountType = DiscountType.amount
    tax_rate: float = 0.0
    deposit_type: DepositType = DepositType.none
    deposit_value: float = 0.0
    valid_until: Optional[dt.date] = None
    notes: Optional[str] = None

    @field_validator("customer_email", "customer_phone", "service_address", "project_description", "notes", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        return _blank_to_none(v)


class EstimateDetailsUpdate(BaseModel):
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    service_address: Optional[str] = None
    project_id: Optional[str] = None
    project_description: Optional[str] = None
    valid_until: Optional[dt.date] = None
    notes: Optional[str] = None


class UpdateFinancials(BaseModel):
    discount: Optional[float] = None
    discount_type: Optional[DiscountType] = None
    tax_rate: Optional[float] = None
    deposit_type: Optional[DepositType] = None
    deposit_value: Optional[float] = None


class PaymentScheduleEntryIn(BaseModel):
    id: Optional[str] = None
    description: str = ""
    value: float
    due_date: Optional[dt.date] = None


class PaymentScheduleIn(BaseModel):
    mode: PaymentScheduleMode
    entries: List[PaymentScheduleEntryIn] = []


class RecordPayment(BaseModel):
    amount: float
    date: Optional[dt.date] = None
    method: PaymentMethod = PaymentMethod.cash
    notes: Optional[str] = None


class ClientDecisionType(str, enum.Enum):
    accepted = "accepted"
    denied = "denied"
    on_hold = "on-hold"


class ClientDecision(BaseModel):
    decision: ClientDecisionType
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    reason: Optional[str] = None


class SendEstimateRequest(BaseModel):
    recipient_email: Optional[EmailStr] = None
    recipient_name: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    cc_emails: List[str] = []
    contractor_email: Optional[EmailStr] = None

    @field_validator("recipient_email", "contractor_email", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        return _blank_to_none(v)


class CommunicationIn(BaseModel):
    content: str
    type: CommunicationType = CommunicationType.note


class ClientCommentIn(BaseModel):
    text: str
    author_name: str
    author_email: Optional[EmailStr] = None
