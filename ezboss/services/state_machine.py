"""
Estimate state machine.

Two independent axes:

    estimate_state   draft -> estimate -> invoice
                     change-order (created as such, never converted)
    client_state     null -> sent -> viewed -> accepted | denied | on-hold
                     on-hold -> accepted | denied | on-hold

``expired`` is never stored; it is derived at read time from ``valid_until``.
Every transition is checked here so the same rules hold for every caller.
"""
from datetime import date, datetime
from typing import Optional

from ..exceptions import InvalidTransitionError, LineItemsLockedError
from ..schemas.estimates import ClientState, Estimate, EstimateState, ViewLog


SENDABLE_STATES = (EstimateState.draft, EstimateState.estimate, EstimateState.change_order)
DECIDABLE_STATES = (EstimateState.estimate, EstimateState.change_order)
DECIDABLE_CLIENT_STATES = (ClientState.viewed, ClientState.on_hold)


def _value(v) -> Optional[str]:
    return getattr(v, "value", v)


def _reject(action: str, estimate: Estimate, reason: str = ""):
    raise InvalidTransitionError(action, _value(estimate.estimate_state), _value(estimate.client_state), reason)


def line_items_lock_reason(estimate: Estimate) -> Optional[str]:
    if estimate.estimate_state == EstimateState.invoice:
        return "estimate has been converted to an invoice"
    if estimate.client_state == ClientState.accepted:
        return "estimate has been accepted by the client; create a change order instead"
    return None


def ensure_line_items_editable(estimate: Estimate) -> None:
    reason = line_items_lock_reason(estimate)
    if reason:
        raise LineItemsLockedError(estimate.id, reason)


def is_expired(estimate: Estimate, today: date) -> bool:
    if estimate.estimate_state == EstimateState.invoice:
        return False
    return estimate.valid_until is not None and estimate.valid_until < today


def effective_client_state(estimate: Estimate, today: date) -> Optional[ClientState]:
    if is_expired(estimate, today):
        return ClientState.expired
    return estimate.client_state


def prepare_for_sending(estimate: Estimate, token: str) -> str:
    """Attach the client-view token; a draft becomes an estimate. Returns the token in use."""
    if estimate.estimate_state not in SENDABLE_STATES:
        _reject("prepare for sending", estimate, "invoices are not sent for approval")
    if estimate.client_state in (ClientState.accepted, ClientState.denied):
        _reject("prepare for sending", estimate, "the client has already decided")
    # A link that was already sent keeps working
    if not estimate.email_token:
        estimate.email_token = token
    if estimate.estimate_state == EstimateState.draft:
        estimate.estimate_state = EstimateState.estimate
    return estimate.email_token


def record_sent(estimate: Estimate, now: datetime) -> bool:
    """Returns True when ``client_state`` moved to ``sent``, False for a re-send."""
    if estimate.estimate_state not in DECIDABLE_STATES:
        _reject("record sent", estimate, "prepare the estimate for sending first")
    if not estimate.email_token:
        _reject("record sent", estimate, "no client-view token has been generated")
    if estimate.client_state not in (None, ClientState.sent):
        _reject("record sent", estimate)

    transitioned = estimate.client_state is None
    estimate.client_state = ClientState.sent
    if estimate.sent_date is None:
        estimate.sent_date = now
    estimate.last_email_sent = now
    estimate.email_sent_count += 1
    return transitioned


def record_viewed(estimate: Estimate, now: datetime, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> bool:
    """Every view is counted; only the first view after sending changes state."""
    estimate.view_count += 1
    estimate.view_history.append(ViewLog(timestamp=now, ip_address=ip_address, user_agent=user_agent))
    if estimate.viewed_date is None:
        estimate.viewed_date = now
    if estimate.client_state == ClientState.sent:
        estimate.client_state = ClientState.viewed
        return True
    return False


def record_client_decision(
    estimate: Estimate,
    decision: ClientState,
    now: datetime,
    today: date,
    reason: Optional[str] = None,
    decided_by: Optional[str] = None,
) -> None:
    action = f"record client decision '{_value(decision)}'"
    if decision not in (ClientState.accepted, ClientState.denied, ClientState.on_hold):
        _reject(action, estimate, "not a client decision")
    if estimate.estimate_state not in DECIDABLE_STATES:
        _reject(action, estimate)
    if estimate.client_state not in DECIDABLE_CLIENT_STATES:
        _reject(action, estimate, "the client must view the estimate first")
    if is_expired(estimate, today):
        _reject(action, estimate, f"estimate expired on {estimate.valid_until.isoformat()}")

    estimate.client_state = decision
    estimate.decision_reason = reason
    estimate.client_decision_by = decided_by
    if decision == ClientState.accepted:
        estimate.accepted_date = now
    elif decision == ClientState.denied:
        estimate.denied_date = now
    else:
        estimate.on_hold_date = now


def ensure_accepted_estimate(estimate: Estimate, action: str) -> None:
    if estimate.estimate_state != EstimateState.estimate or estimate.client_state != ClientState.accepted:
        _reject(action, estimate, "requires an accepted estimate")


def convert_to_invoice(estimate: Estimate, now: datetime) -> None:
    ensure_accepted_estimate(estimate, "convert to invoice")
    estimate.estimate_state = EstimateState.invoice
    estimate.invoiced_date = now
