from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    ForeignKey,
    Integer,
    Float,
    JSON,
    Text,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


class EstimateRecord(Base):
    """One row per estimate aggregate; the full document lives in ``data``."""
    __tablename__ = "estimates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    estimate_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    estimate_state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # 'draft', 'estimate', 'invoice', 'change-order'
    client_state: Mapped[Optional[str]] = mapped_column(String(32), index=True)  # 'sent', 'viewed', 'accepted', 'denied', 'on-hold'
    email_token: Mapped[Optional[str]] = mapped_column(String(128), unique=True, index=True)
    parent_estimate_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)  # Set only for change orders
    project_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("idx_estimate_state_client", "estimate_state", "client_state"),
    )


class PurchaseOrder(Base):
    """Purchase orders generated from the product lines of an estimate"""
    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    estimate_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    estimate_number: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(50), default="draft", nullable=False)  # 'draft', 'ordered', 'received'
    subtotal: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    tax_amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))

    items = relationship("PurchaseOrderItem", back_populates="order", cascade="all, delete-orphan")


class PurchaseOrderItem(Base):
    """Items in a purchase order"""
    __tablename__ = "purchase_order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    line_item_id: Mapped[Optional[str]] = mapped_column(String(64))  # Estimate line item this was ordered from
    catalog_item_id: Mapped[Optional[str]] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)

    order = relationship("PurchaseOrder", back_populates="items")
