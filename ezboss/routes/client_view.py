"""
Client-facing estimate view, keyed by the emailed token. No login.
"""
import base64

import structlog
from fastapi import APIRouter, Depends, Request, Response

from ..schemas.updates import ClientCommentIn, ClientDecision
from ..services.estimates import EstimateService
from .deps import get_estimate_service


router = APIRouter(prefix="/client/estimate", tags=["client"])
logger = structlog.get_logger(__name__)

# Contractor-only parts of the document
PRIVATE_FIELDS = {
    "communications",
    "revisions_history",
    "view_history",
    "purchase_order_ids",
    "purchase_order_fingerprint",
    "contractor_email",
    "created_by",
    "version",
}

# 1x1 transparent PNG
TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)


def _client_view(estimate) -> dict:
    return estimate.model_dump(mode="json", exclude=PRIVATE_FIELDS)


@router.get("/{token}")
def view_estimate(token: str, request: Request, svc: EstimateService = Depends(get_estimate_service)):
    estimate = svc.record_viewed(
        token,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return _client_view(estimate)


@router.post("/{token}/decision")
def decide(token: str, payload: ClientDecision, svc: EstimateService = Depends(get_estimate_service)):
    return _client_view(svc.record_client_decision(token, payload))


@router.post("/{token}/comments", status_code=201)
def comment(token: str, payload: ClientCommentIn, svc: EstimateService = Depends(get_estimate_service)):
    return svc.add_client_comment(token, payload)


@router.get("/{token}/pixel.png")
def tracking_pixel(token: str):
    # Mail clients that load images hit this; the real view is tracked by GET /{token}
    logger.info("estimate_email_opened", token_prefix=token[:8])
    return Response(
        content=TRACKING_PIXEL,
        media_type="image/png",
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )
