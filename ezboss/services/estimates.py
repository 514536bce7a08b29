"""
Estimate service.

Entry point for every estimate operation. Each mutation runs as one
``{load -> check guard -> mutate -> append revision -> recompute totals -> save}``
unit against the document store, so revision numbers stay gap-free and the
accepted lock cannot be raced past. Notifications and automatic purchase
orders happen after the save and never undo it.
"""
from contextlib import contextmanager
from datetime import date, timedelta, tzinfo
from typing import Iterator, List, Optional

import pytz
import structlog

from ..config import Settings, settings as default_settings
from ..exceptions import EngineError, ExternalDependencyError, ValidationError
from ..logging import estimate_context
from ..schemas.auth import Actor, CLIENT_ACTOR
from ..schemas.estimates import (
    ClientComment,
    ClientState,
    Communication,
    Estimate,
    EstimateState,
    EstimateSummary,
    LineItem,
    PaymentRecord,
    PaymentSchedule,
    PaymentScheduleEntry,
    PaymentSummary,
    PurchaseOrderLink,
    RevisionChangeType,
    RevisionDay,
    RevisionDetails,
)
from ..schemas.updates import (
    AddLineItem,
    ClientCommentIn,
    ClientDecision,
    CollectionImport,
    CommunicationIn,
    EstimateCreate,
    EstimateDetailsUpdate,
    PaymentScheduleIn,
    RecordPayment,
    UpdateFinancials,
    UpdateLineItem,
)
from ..storage.provider import EstimateStore
from . import payments, state_machine
from .catalog import convert_collection_to_line_items
from .clock import Clock, IdGenerator, SystemClock
from .email import EmailDispatcher
from .line_items import LineItemLedger, find_duplicate_line_items
from .numbering import next_change_order_number, next_estimate_number
from .purchase_orders import PurchaseOrderService, line_item_fingerprint, purchasable_line_items
from .revisions import RevisionRecorder, build_revision_history
from .totals import apply_totals, totals_for, validate_financial_terms, validate_payment_schedule


logger = structlog.get_logger(__name__)


def _state(v) -> Optional[str]:
    return getattr(v, "value", v)


class EstimateService:
    def __init__(
        self,
        store: EstimateStore,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        purchase_orders: Optional[PurchaseOrderService] = None,
        notifier: Optional[EmailDispatcher] = None,
        tz: Optional[tzinfo] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or IdGenerator()
        self.purchase_orders = purchase_orders
        self.notifier = notifier
        self.settings = config or default_settings
        self.tz = tz or pytz.timezone(self.settings.tz_default)
        self.recorder = RevisionRecorder(self.clock)
        self.ledger = LineItemLedger(self.ids, self.recorder)

    # ------------------------------------------------------------------
    # helpers

    def _today(self) -> date:
        return self.clock.today(self.tz)

    @contextmanager
    def _editing(self, estimate_id: str, actor: Optional[Actor] = None) -> Iterator[Estimate]:
        if not estimate_id:
            raise ValidationError("Estimate id is required", errors={"estimate_id": "required"})
        with estimate_context(estimate_id, actor.id if actor else None), self.store.transaction(estimate_id) as estimate:
            yield estimate
            estimate.updated_at = self.clock.now()

    @contextmanager
    def _editing_by_token(self, token: str) -> Iterator[Estimate]:
        if not token:
            raise ValidationError("Token is required", errors={"token": "required"})
        with self.store.token_transaction(token) as estimate, estimate_context(estimate.id, CLIENT_ACTOR.id):
            yield estimate
            estimate.updated_at = self.clock.now()

    def _status_revision(self, estimate: Estimate, from_state: Optional[str], to_state: Optional[str], changes: str, actor: Optional[Actor]) -> None:
        self.recorder.record(
            estimate,
            RevisionChangeType.status_changed,
            changes,
            actor,
            estimate.total,
            RevisionDetails(from_state=from_state, to_state=to_state),
        )

    def _notify_contractor(self, estimate: Estimate, event: str, info: Optional[str] = None) -> None:
        if not self.notifier or not estimate.contractor_email:
            return
        try:
            self.notifier.notify_contractor(estimate.contractor_email, event, estimate, info)
        except EngineError as e:
            logger.warning("contractor_notification_failed", estimate_id=estimate.id, event=event, error=str(e))

    def _new_document(self, number: str, customer_name: str, actor: Optional[Actor]) -> Estimate:
        now = self.clock.now()
        return Estimate(
            id=self.ids.new("est"),
            estimate_number=number,
            customer_name=customer_name,
            valid_until=self._today() + timedelta(days=self.settings.default_valid_days),
            created_by=actor.id if actor else None,
            created_at=now,
            updated_at=now,
        )

    def _copy_line_items(self, items: List[LineItem]) -> List[LineItem]:
        return [li.model_copy(update={"id": self.ids.new("li")}, deep=True) for li in items]

    # ------------------------------------------------------------------
    # create / read / delete

    def create_estimate(self, payload: EstimateCreate, actor: Optional[Actor] = None) -> Estimate:
        if not payload.customer_name or not payload.customer_name.strip():
            raise ValidationError("Customer name is required", errors={"customer_name": "required"})
        validate_financial_terms(payload.discount, payload.discount_type, payload.tax_rate, payload.deposit_type, payload.deposit_value)
        line_items = [self.ledger.build(li) for li in payload.line_items]

        number = next_estimate_number(self.store, self._today().year, self.settings.estimate_number_prefix)
        estimate = self._new_document(number, payload.customer_name.strip(), actor)
        estimate.customer_id = payload.customer_id
        estimate.customer_email = payload.customer_email
        estimate.customer_phone = payload.customer_phone
        estimate.service_address = payload.service_address
        estimate.project_id = payload.project_id
        estimate.project_description = payload.project_description
        estimate.line_items = line_items
        estimate.discount = payload.discount
        estimate.discount_type = payload.discount_type
        estimate.tax_rate = payload.tax_rate
        estimate.deposit_type = payload.deposit_type
        estimate.deposit_value = payload.deposit_value
        estimate.notes = payload.notes
        if payload.valid_until:
            estimate.valid_until = payload.valid_until
        apply_totals(estimate)
        self.recorder.record(estimate, RevisionChangeType.created, f"Estimate {number} created", actor, 0.0)

        self.store.create(estimate)
        logger.info("estimate_created", estimate_id=estimate.id, estimate_number=number, line_items=len(line_items), total=estimate.total)
        return estimate

    def get_estimate(self, estimate_id: str) -> Estimate:
        if not estimate_id:
            raise ValidationError("Estimate id is required", errors={"estimate_id": "required"})
        return self.store.get(estimate_id)

    def get_estimate_by_token(self, token: str) -> Estimate:
        return self.store.get_by_token(token)

    def list_estimates(
        self,
        estimate_state: Optional[EstimateState] = None,
        client_state: Optional[ClientState] = None,
        project_id: Optional[str] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Estimate]:
        if client_state == ClientState.expired:
            # Expiry is not stored, filter after loading
            today = self._today()
            rows = self.store.query(estimate_state=estimate_state, project_id=project_id, order_by=order_by, descending=descending)
            rows = [e for e in rows if state_machine.is_expired(e, today)]
            return rows[:limit] if limit else rows
        return self.store.query(
            estimate_state=estimate_state,
            client_state=client_state,
            project_id=project_id,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )

    def search_by_customer(self, prefix: str, limit: Optional[int] = None) -> List[Estimate]:
        if not prefix or not prefix.strip():
            return []
        return self.store.query(customer_prefix=prefix.strip(), order_by="customer_name", descending=False, limit=limit)

    def list_change_orders(self, parent_estimate_id: str) -> List[Estimate]:
        return self.store.query(parent_estimate_id=parent_estimate_id, order_by="estimate_number", descending=False)

    def get_parent_estimate(self, change_order_id: str) -> Optional[Estimate]:
        change_order = self.get_estimate(change_order_id)
        if not change_order.parent_estimate_id:
            return None
        return self.store.find(change_order.parent_estimate_id)

    def delete_estimate(self, estimate_id: str) -> None:
        if not estimate_id:
            raise ValidationError("Estimate id is required", errors={"estimate_id": "required"})
        self.store.delete(estimate_id)
        logger.info("estimate_deleted", estimate_id=estimate_id)

    def duplicate_estimate(self, estimate_id: str, actor: Optional[Actor] = None) -> Estimate:
        source = self.get_estimate(estimate_id)
        number = next_estimate_number(self.store, self._today().year, self.settings.estimate_number_prefix)
        copy = self._new_document(number, f"{source.customer_name} (Copy)", actor)
        for field in (
            "customer_id", "customer_email", "customer_phone", "service_address",
            "project_id", "project_description", "discount", "discount_type",
            "tax_rate", "deposit_type", "deposit_value", "notes",
        ):
            setattr(copy, field, getattr(source, field))
        copy.line_items = self._copy_line_items(source.line_items)
        if source.payment_schedule:
            copy.payment_schedule = PaymentSchedule(
                mode=source.payment_schedule.mode,
                entries=[e.model_copy(update={"id": self.ids.new("sched")}) for e in source.payment_schedule.entries],
            )
        apply_totals(copy)
        self.recorder.record(copy, RevisionChangeType.created, f"Estimate {number} duplicated from {source.estimate_number}", actor, 0.0)
        self.store.create(copy)
        logger.info("estimate_duplicated", estimate_id=copy.id, source_estimate_id=source.id, estimate_number=number)
        return copy

    # ------------------------------------------------------------------
    # details and financial terms

    def update_details(self, estimate_id: str, patch: EstimateDetailsUpdate, actor: Optional[Actor] = None) -> Estimate:
        values = patch.model_dump(exclude_unset=True)
        if "customer_name" in values and not (values["customer_name"] or "").strip():
            raise ValidationError("Customer name cannot be empty", errors={"customer_name": "required"})
        with self._editing(estimate_id, actor) as estimate:
            changed = {}
            for field, value in values.items():
                before = getattr(estimate, field)
                if before != value:
                    changed[field] = {"before": before, "after": value}
                    setattr(estimate, field, value)
            if changed:
                self.recorder.record(
                    estimate,
                    RevisionChangeType.details_changed,
                    f"Updated details: {', '.join(sorted(changed))}",
                    actor,
                    estimate.total,
                    RevisionDetails(changed_fields={k: {"before": str(v["before"]) if v["before"] is not None else None,
                                                        "after": str(v["after"]) if v["after"] is not None else None}
                                                    for k, v in changed.items()}),
                )
        if changed:
            logger.info("estimate_details_updated", estimate_id=estimate_id, fields=sorted(changed))
        return estimate

    def update_financials(self, estimate_id: str, patch: UpdateFinancials, actor: Optional[Actor] = None) -> Estimate:
        values = patch.model_dump(exclude_unset=True, exclude_none=True)
        with self._editing(estimate_id, actor) as estimate:
            state_machine.ensure_line_items_editable(estimate)
            merged = {
                "discount": estimate.discount,
                "discount_type": estimate.discount_type,
                "tax_rate": estimate.tax_rate,
                "deposit_type": estimate.deposit_type,
                "deposit_value": estimate.deposit_value,
            }
            merged.update(values)
            validate_financial_terms(**merged)
            changed = {
                k: {"before": _state(getattr(estimate, k)), "after": _state(v)}
                for k, v in merged.items()
                if getattr(estimate, k) != v
            }
            if changed:
                previous_total = estimate.total
                for field, value in merged.items():
                    setattr(estimate, field, value)
                apply_totals(estimate)
                validate_payment_schedule(estimate.payment_schedule, estimate.total)
                summary = ", ".join(f"{k}: {v['before']} -> {v['after']}" for k, v in changed.items())
                self.recorder.record(
                    estimate,
                    RevisionChangeType.financial_change,
                    f"Updated financial terms: {summary}",
                    actor,
                    previous_total,
                    RevisionDetails(changed_fields=changed),
                )
        if changed:
            logger.info("estimate_financials_updated", estimate_id=estimate_id, fields=sorted(changed), total=estimate.total)
        return estimate

    def update_payment_schedule(self, estimate_id: str, payload: PaymentScheduleIn, actor: Optional[Actor] = None) -> Estimate:
        with self._editing(estimate_id, actor) as estimate:
            schedule = PaymentSchedule(
                mode=payload.mode,
                entries=[
                    PaymentScheduleEntry(
                        id=e.id or self.ids.new("sched"),
                        description=e.description,
                        value=e.value,
                        due_date=e.due_date,
                    )
                    for e in payload.entries
                ],
            )
            apply_totals(estimate)
            validate_payment_schedule(schedule, estimate.total)
            estimate.payment_schedule = schedule
            self.recorder.record(
                estimate,
                RevisionChangeType.financial_change,
                f"Updated payment schedule ({len(schedule.entries)} {schedule.mode.value} entries)",
                actor,
                estimate.total,
            )
        logger.info("payment_schedule_updated", estimate_id=estimate_id, entries=len(schedule.entries), mode=schedule.mode.value)
        return estimate

    # ------------------------------------------------------------------
    # line item ledger

    def add_line_item(self, estimate_id: str, payload: AddLineItem, actor: Optional[Actor] = None) -> LineItem:
        with self._editing(estimate_id, actor) as estimate:
            return self.ledger.add(estimate, payload, actor)

    def update_line_item(self, estimate_id: str, line_item_id: str, patch: UpdateLineItem, actor: Optional[Actor] = None) -> LineItem:
        with self._editing(estimate_id, actor) as estimate:
            return self.ledger.update(estimate, line_item_id, patch, actor)

    def delete_line_item(self, estimate_id: str, line_item_id: str, actor: Optional[Actor] = None) -> LineItem:
        with self._editing(estimate_id, actor) as estimate:
            return self.ledger.delete(estimate, line_item_id, actor)

    def reorder_line_items(self, estimate_id: str, ordered_ids: List[str], actor: Optional[Actor] = None) -> Estimate:
        with self._editing(estimate_id, actor) as estimate:
            self.ledger.reorder(estimate, ordered_ids, actor)
        return estimate

    def find_duplicate_line_items(self, estimate_id: str) -> List[LineItem]:
        return find_duplicate_line_items(self.get_estimate(estimate_id).line_items)

    def import_collection(self, estimate_id: str, payload: CollectionImport, actor: Optional[Actor] = None) -> List[LineItem]:
        converted = convert_collection_to_line_items(payload.collection, payload.include_types, self.ids)
        added = []
        with self._editing(estimate_id, actor) as estimate:
            for item in converted:
                added.append(self.ledger.add(
                    estimate,
                    AddLineItem(**item.model_dump(exclude={"id", "total"})),
                    actor,
                ))
        logger.info("collection_imported", estimate_id=estimate_id, collection_id=payload.collection.get("id"), line_items=len(added))
        return added

    # ------------------------------------------------------------------
    # payments

    def add_payment(self, estimate_id: str, payload: RecordPayment, actor: Optional[Actor] = None) -> PaymentRecord:
        with self._editing(estimate_id, actor) as estimate:
            return payments.add_payment(estimate, payload, self.clock, self.ids, actor)

    def delete_payment(self, estimate_id: str, payment_id: str) -> PaymentRecord:
        with self._editing(estimate_id) as estimate:
            return payments.delete_payment(estimate, payment_id)

    def payment_summary(self, estimate_id: str) -> PaymentSummary:
        return payments.payment_summary(self.get_estimate(estimate_id))

    # ------------------------------------------------------------------
    # logs

    def add_communication(self, estimate_id: str, payload: CommunicationIn, actor: Optional[Actor] = None) -> Communication:
        if not payload.content or not payload.content.strip():
            raise ValidationError("Communication content is required", errors={"content": "required"})
        with self._editing(estimate_id, actor) as estimate:
            entry = Communication(
                id=self.ids.new("com"),
                date=self.clock.now(),
                content=payload.content.strip(),
                type=payload.type,
                created_by=actor.id if actor else None,
                created_by_name=actor.name if actor else None,
            )
            estimate.communications.append(entry)
        logger.info("communication_added", estimate_id=estimate_id, communication_id=entry.id, type=entry.type.value)
        return entry

    def add_client_comment(self, token: str, payload: ClientCommentIn) -> ClientComment:
        if not payload.text or not payload.text.strip():
            raise ValidationError("Comment text is required", errors={"text": "required"})
        if not payload.author_name or not payload.author_name.strip():
            raise ValidationError("Author name is required", errors={"author_name": "required"})
        with self._editing_by_token(token) as estimate:
            comment = ClientComment(
                id=self.ids.new("cmt"),
                date=self.clock.now(),
                text=payload.text.strip(),
                author_name=payload.author_name.strip(),
                author_email=payload.author_email,
            )
            estimate.client_comments.append(comment)
        logger.info("client_comment_added", estimate_id=estimate.id, comment_id=comment.id)
        self._notify_contractor(estimate, "commented", comment.text)
        return comment

    # ------------------------------------------------------------------
    # sending and client engagement

    def prepare_estimate_for_sending(self, estimate_id: str, contractor_email: Optional[str] = None, actor: Optional[Actor] = None) -> str:
        with self._editing(estimate_id, actor) as estimate:
            from_state = _state(estimate.estimate_state)
            token = state_machine.prepare_for_sending(estimate, self.ids.token())
            estimate.client_view_url = f"{self.settings.public_base_url.rstrip('/')}/client/estimate/{token}"
            if contractor_email:
                estimate.contractor_email = contractor_email
            if _state(estimate.estimate_state) != from_state:
                self._status_revision(estimate, from_state, _state(estimate.estimate_state), "Estimate prepared for sending", actor)
        logger.info("estimate_prepared_for_sending", estimate_id=estimate_id, estimate_state=_state(estimate.estimate_state))
        return token

    def record_sent(self, estimate_id: str, recipient_email: Optional[str] = None, actor: Optional[Actor] = None) -> Estimate:
        with self._editing(estimate_id, actor) as estimate:
            now = self.clock.now()
            transitioned = state_machine.record_sent(estimate, now)
            if transitioned:
                self._status_revision(estimate, None, ClientState.sent.value, "Estimate sent to client", actor)
            if recipient_email:
                estimate.communications.append(Communication(
                    id=self.ids.new("com"),
                    date=now,
                    content=f"Estimate {estimate.estimate_number} emailed to {recipient_email}",
                    type="email",
                    created_by=actor.id if actor else None,
                    created_by_name=actor.name if actor else None,
                ))
        logger.info("estimate_sent", estimate_id=estimate_id, resend=not transitioned, email_sent_count=estimate.email_sent_count)
        return estimate

    def record_viewed(self, token: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Estimate:
        with self._editing_by_token(token) as estimate:
            first_view = estimate.viewed_date is None
            transitioned = state_machine.record_viewed(estimate, self.clock.now(), ip_address, user_agent)
            if transitioned:
                self._status_revision(estimate, ClientState.sent.value, ClientState.viewed.value, "Client viewed estimate", CLIENT_ACTOR)
        logger.info("estimate_viewed", estimate_id=estimate.id, view_count=estimate.view_count, first_view=first_view)
        if first_view:
            self._notify_contractor(estimate, "opened")
        return estimate

    def record_client_decision(self, token: str, payload: ClientDecision) -> Estimate:
        decision = ClientState(payload.decision.value)
        with self._editing_by_token(token) as estimate:
            from_state = _state(estimate.client_state)
            state_machine.record_client_decision(
                estimate,
                decision,
                self.clock.now(),
                self._today(),
                reason=payload.reason,
                decided_by=payload.client_name or payload.client_email,
            )
            actor = Actor(id="client", name=payload.client_name or "Client", email=payload.client_email)
            message = f"Client marked estimate {decision.value}"
            if payload.reason:
                message = f"{message}: {payload.reason}"
            self._status_revision(estimate, from_state, decision.value, message, actor)
        logger.info("client_decision_recorded", estimate_id=estimate.id, decision=decision.value)
        self._notify_contractor(estimate, decision.value, payload.reason)

        if decision == ClientState.accepted and self.settings.auto_purchase_order_on_accept and self.purchase_orders:
            try:
                self.generate_purchase_order(estimate.id)
            except EngineError as e:
                logger.warning("auto_purchase_order_failed", estimate_id=estimate.id, error=str(e))
            return self.get_estimate(estimate.id)
        return estimate

    # ------------------------------------------------------------------
    # lifecycle transitions

    def convert_to_invoice(self, estimate_id: str, actor: Optional[Actor] = None) -> Estimate:
        with self._editing(estimate_id, actor) as estimate:
            state_machine.convert_to_invoice(estimate, self.clock.now())
            self._status_revision(estimate, EstimateState.estimate.value, EstimateState.invoice.value, "Converted to invoice", actor)
        logger.info("estimate_converted_to_invoice", estimate_id=estimate_id, total=estimate.total)
        return estimate

    def create_change_order(self, estimate_id: str, actor: Optional[Actor] = None) -> Estimate:
        source = self.get_estimate(estimate_id)
        state_machine.ensure_accepted_estimate(source, "create change order")
        number = next_change_order_number(
            self.store,
            source.estimate_number,
            self.settings.change_order_number_prefix,
            self.settings.estimate_number_prefix,
        )
        change_order = self._new_document(number, source.customer_name, actor)
        change_order.estimate_state = EstimateState.change_order
        change_order.parent_estimate_id = source.id
        for field in (
            "customer_id", "customer_email", "customer_phone", "service_address",
            "project_id", "project_description", "discount", "discount_type", "tax_rate",
        ):
            setattr(change_order, field, getattr(source, field))
        change_order.line_items = self._copy_line_items(source.line_items)
        apply_totals(change_order)
        self.recorder.record(
            change_order,
            RevisionChangeType.created,
            f"Change order {number} created from {source.estimate_number}",
            actor,
            0.0,
        )
        self.store.create(change_order)
        logger.info("change_order_created", estimate_id=change_order.id, parent_estimate_id=source.id, estimate_number=number)
        return change_order

    # ------------------------------------------------------------------
    # purchase orders

    def generate_purchase_order(self, estimate_id: str, actor: Optional[Actor] = None) -> PurchaseOrderLink:
        if self.purchase_orders is None:
            raise ExternalDependencyError("purchase_orders", "purchase order service is not configured")
        with self._editing(estimate_id, actor) as estimate:
            items = purchasable_line_items(estimate)
            if not items:
                return PurchaseOrderLink(estimate_id=estimate.id, reason="no product line items to order")
            fingerprint = line_item_fingerprint(items)
            if estimate.purchase_order_ids and estimate.purchase_order_fingerprint == fingerprint:
                return PurchaseOrderLink(
                    estimate_id=estimate.id,
                    purchase_order_id=estimate.purchase_order_ids[-1],
                    reason="product line items unchanged since the last purchase order",
                )
            purchase_order_id = self.purchase_orders.create_purchase_order(estimate, items)
            estimate.purchase_order_ids.append(purchase_order_id)
            estimate.purchase_order_fingerprint = fingerprint
        logger.info("purchase_order_linked", estimate_id=estimate_id, purchase_order_id=purchase_order_id, actor=actor.id if actor else None)
        return PurchaseOrderLink(estimate_id=estimate_id, purchase_order_id=purchase_order_id, created=True)

    # ------------------------------------------------------------------
    # read models

    def summarize(self, estimate_id: str) -> EstimateSummary:
        estimate = self.get_estimate(estimate_id)
        today = self._today()
        return EstimateSummary(
            id=estimate.id,
            estimate_number=estimate.estimate_number,
            estimate_state=estimate.estimate_state,
            client_state=state_machine.effective_client_state(estimate, today),
            is_expired=state_machine.is_expired(estimate, today),
            line_items_locked=state_machine.line_items_lock_reason(estimate) is not None,
            totals=totals_for(estimate),
            total_paid=payments.total_paid(estimate),
            balance=payments.balance(estimate),
            duplicate_line_item_ids=[li.id for li in find_duplicate_line_items(estimate.line_items)],
            current_revision=estimate.current_revision,
            change_order_ids=[co.id for co in self.list_change_orders(estimate.id)],
        )

    def revision_history(self, estimate_id: str) -> List[RevisionDay]:
        return build_revision_history(self.get_estimate(estimate_id), self.tz)
