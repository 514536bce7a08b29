from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from ..auth.security import require_permissions
from ..schemas.auth import Actor
from ..schemas.estimates import ClientState, EstimateState
from ..schemas.updates import (
    AddLineItem,
    CollectionImport,
    CommunicationIn,
    EstimateCreate,
    EstimateDetailsUpdate,
    PaymentScheduleIn,
    RecordPayment,
    ReorderLineItems,
    SendEstimateRequest,
    UpdateFinancials,
    UpdateLineItem,
)
from ..services.email import EmailDispatcher
from ..services.estimates import EstimateService
from ..services.sending import send_estimate
from .deps import get_email_dispatcher, get_estimate_service


router = APIRouter(prefix="/estimates", tags=["estimates"])

read_access = require_permissions("estimates:read", "estimates:write")
write_access = require_permissions("estimates:write")


@router.post("", status_code=201)
def create_estimate(payload: EstimateCreate, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.create_estimate(payload, actor)


@router.get("")
def list_estimates(
    estimate_state: Optional[EstimateState] = Query(None),
    client_state: Optional[ClientState] = Query(None),
    project_id: Optional[str] = Query(None),
    order_by: str = Query("created_at"),
    descending: bool = Query(True),
    limit: Optional[int] = Query(None, ge=1, le=500),
    svc: EstimateService = Depends(get_estimate_service),
    _=Depends(read_access),
):
    return svc.list_estimates(estimate_state, client_state, project_id, order_by, descending, limit)


@router.get("/search")
def search_estimates(
    customer: str = Query(""),
    limit: Optional[int] = Query(50, ge=1, le=500),
    svc: EstimateService = Depends(get_estimate_service),
    _=Depends(read_access),
):
    return svc.search_by_customer(customer, limit)


@router.get("/{estimate_id}")
def get_estimate(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.get_estimate(estimate_id)


@router.delete("/{estimate_id}", status_code=204)
def delete_estimate(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(write_access)):
    svc.delete_estimate(estimate_id)
    return Response(status_code=204)


@router.post("/{estimate_id}/duplicate", status_code=201)
def duplicate_estimate(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.duplicate_estimate(estimate_id, actor)


@router.get("/{estimate_id}/summary")
def estimate_summary(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.summarize(estimate_id)


@router.get("/{estimate_id}/revisions")
def estimate_revisions(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.revision_history(estimate_id)


# ===================== Details / financial terms =====================

@router.patch("/{estimate_id}/details")
def update_details(estimate_id: str, patch: EstimateDetailsUpdate, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.update_details(estimate_id, patch, actor)


@router.patch("/{estimate_id}/financials")
def update_financials(estimate_id: str, patch: UpdateFinancials, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.update_financials(estimate_id, patch, actor)


@router.put("/{estimate_id}/payment-schedule")
def update_payment_schedule(estimate_id: str, payload: PaymentScheduleIn, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.update_payment_schedule(estimate_id, payload, actor)


# ===================== Line items =====================

@router.post("/{estimate_id}/line-items", status_code=201)
def add_line_item(estimate_id: str, payload: AddLineItem, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.add_line_item(estimate_id, payload, actor)


@router.put("/{estimate_id}/line-items/order")
def reorder_line_items(estimate_id: str, payload: ReorderLineItems, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.reorder_line_items(estimate_id, payload.ordered_ids, actor)


@router.get("/{estimate_id}/line-items/duplicates")
def duplicate_line_items(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.find_duplicate_line_items(estimate_id)


@router.post("/{estimate_id}/line-items/import-collection", status_code=201)
def import_collection(estimate_id: str, payload: CollectionImport, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.import_collection(estimate_id, payload, actor)


@router.patch("/{estimate_id}/line-items/{line_item_id}")
def update_line_item(estimate_id: str, line_item_id: str, patch: UpdateLineItem, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.update_line_item(estimate_id, line_item_id, patch, actor)


@router.delete("/{estimate_id}/line-items/{line_item_id}")
def delete_line_item(estimate_id: str, line_item_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.delete_line_item(estimate_id, line_item_id, actor)


# ===================== Payments =====================

@router.get("/{estimate_id}/payments")
def list_payments(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.payment_summary(estimate_id)


@router.post("/{estimate_id}/payments", status_code=201)
def add_payment(estimate_id: str, payload: RecordPayment, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.add_payment(estimate_id, payload, actor)


@router.delete("/{estimate_id}/payments/{payment_id}")
def delete_payment(estimate_id: str, payment_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(write_access)):
    svc.delete_payment(estimate_id, payment_id)
    return svc.payment_summary(estimate_id)


# ===================== Communications =====================

@router.post("/{estimate_id}/communications", status_code=201)
def add_communication(estimate_id: str, payload: CommunicationIn, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.add_communication(estimate_id, payload, actor)


# ===================== Sending / lifecycle =====================

@router.post("/{estimate_id}/prepare-send")
def prepare_send(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    token = svc.prepare_estimate_for_sending(estimate_id, actor.email, actor)
    estimate = svc.get_estimate(estimate_id)
    return {"email_token": token, "client_view_url": estimate.client_view_url}


@router.post("/{estimate_id}/send")
def send(
    estimate_id: str,
    payload: SendEstimateRequest,
    svc: EstimateService = Depends(get_estimate_service),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
    actor: Actor = Depends(write_access),
):
    return send_estimate(svc, dispatcher, estimate_id, payload, actor)


@router.post("/{estimate_id}/mark-sent")
def mark_sent(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.record_sent(estimate_id, actor=actor)


@router.post("/{estimate_id}/convert-to-invoice")
def convert_to_invoice(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.convert_to_invoice(estimate_id, actor)


@router.post("/{estimate_id}/change-orders", status_code=201)
def create_change_order(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.create_change_order(estimate_id, actor)


@router.get("/{estimate_id}/change-orders")
def list_change_orders(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.list_change_orders(estimate_id)


@router.get("/{estimate_id}/parent")
def get_parent(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), _=Depends(read_access)):
    return svc.get_parent_estimate(estimate_id)


@router.post("/{estimate_id}/purchase-orders")
def generate_purchase_order(estimate_id: str, svc: EstimateService = Depends(get_estimate_service), actor: Actor = Depends(write_access)):
    return svc.generate_purchase_order(estimate_id, actor)
