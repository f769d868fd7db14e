"""
FastAPI dependency providers.

Everything the routes need is constructed here and injected, so tests can
swap any piece through ``app.dependency_overrides``.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from payment_reconciler.config import Settings, get_settings
from payment_reconciler.database import get_db
from payment_reconciler.gateway import GatewayClient, StripeGateway
from payment_reconciler.reconciliation import ReconciliationEngine
from payment_reconciler.repository import OrderRepository


def get_repository(db: Session = Depends(get_db)) -> OrderRepository:
    return OrderRepository(db)


def get_gateway(settings: Settings = Depends(get_settings)) -> GatewayClient:
    return StripeGateway.from_settings(settings)


def get_engine(repository: OrderRepository = Depends(get_repository)) -> ReconciliationEngine:
    return ReconciliationEngine(repository)


def get_refund_engine(
    repository: OrderRepository = Depends(get_repository),
    gateway: GatewayClient = Depends(get_gateway),
) -> ReconciliationEngine:
    return ReconciliationEngine(repository, gateway=gateway)
