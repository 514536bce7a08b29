from fastapi import Depends

from ..db import SessionLocal
from ..services.clock import Clock, IdGenerator, SystemClock
from ..services.email import EmailDispatcher, SmtpEmailDispatcher
from ..services.estimates import EstimateService
from ..services.purchase_orders import PurchaseOrderService, SqlPurchaseOrderService
from ..storage.provider import EstimateStore
from ..storage.sql_provider import SqlEstimateStore


_clock = SystemClock()
_ids = IdGenerator()


def get_clock() -> Clock:
    return _clock


def get_ids() -> IdGenerator:
    return _ids


def get_store() -> EstimateStore:
    return SqlEstimateStore(SessionLocal)


def get_email_dispatcher() -> EmailDispatcher:
    return SmtpEmailDispatcher()


def get_purchase_order_service(clock: Clock = Depends(get_clock), ids: IdGenerator = Depends(get_ids)) -> PurchaseOrderService:
    return SqlPurchaseOrderService(SessionLocal, clock, ids)


def get_estimate_service(
    store: EstimateStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    ids: IdGenerator = Depends(get_ids),
    purchase_orders: PurchaseOrderService = Depends(get_purchase_order_service),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> EstimateService:
    return EstimateService(store, clock, ids, purchase_orders=purchase_orders, notifier=dispatcher)
