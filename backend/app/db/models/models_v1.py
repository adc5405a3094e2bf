from __future__ import annotations

from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base
from backend.app.db.models.core_types import (
    Role,
    PeriodStatus,
    PRFStatus,
    POStatus,
    DeliveryStatus,
    NCRType,
    NCRStatus,
    FinancialImpact,
)

# SQLite n'auto-incrémente que les "INTEGER PRIMARY KEY"
PK = BigInteger().with_variant(Integer, "sqlite")

QTY = Numeric(14, 3)
PRICE = Numeric(14, 4)
MONEY = Numeric(14, 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- MASTER DATA ----------
class Location(Base):
    __tablename__ = "locations"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Period(Base):
    __tablename__ = "periods"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PeriodStatus] = mapped_column(
        Enum(PeriodStatus, name="period_status"),
        default=PeriodStatus.open,
        nullable=False,
    )


class Item(Base):
    __tablename__ = "items"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), default="EA", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ItemPrice(Base):
    """Prix de référence d'un item, verrouillé pour une période."""

    __tablename__ = "item_prices"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    period_id: Mapped[int] = mapped_column(ForeignKey("periods.id", ondelete="CASCADE"), nullable=False)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)

    __table_args__ = (
        UniqueConstraint("period_id", "item_id", name="uq_item_price_period_item"),
        CheckConstraint("price >= 0", name="ck_item_price_nonneg"),
    )


class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))


# ---------- AUTH ----------
class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    role: Mapped[Role] = mapped_column(Enum(Role, name="role"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    locations: Mapped[list["UserLocation"]] = relationship(cascade="all, delete-orphan")


class UserLocation(Base):
    __tablename__ = "user_locations"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="CASCADE"), primary_key=True)


# ---------- PROCUREMENT ----------
class PRF(Base):
    __tablename__ = "prfs"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    prf_no: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    period_id: Mapped[int] = mapped_column(ForeignKey("periods.id", ondelete="RESTRICT"), nullable=False)
    requested_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[PRFStatus] = mapped_column(Enum(PRFStatus, name="prf_status"), default=PRFStatus.draft, nullable=False)

    project_name: Mapped[str | None] = mapped_column(String(200))
    notes: Mapped[str | None] = mapped_column(Text)
    total_value: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    cloned_from_id: Mapped[int | None] = mapped_column(ForeignKey("prfs.id", ondelete="SET NULL"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    location: Mapped[Location] = relationship()
    period: Mapped[Period] = relationship()
    requester: Mapped[User] = relationship(foreign_keys=[requested_by])
    lines: Mapped[list["PRFLine"]] = relationship(
        back_populates="prf",
        cascade="all, delete-orphan",
        order_by="PRFLine.line_no",
    )
    purchase_order: Mapped["PurchaseOrder | None"] = relationship(back_populates="prf", uselist=False)


class PRFLine(Base):
    __tablename__ = "prf_lines"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    prf_id: Mapped[int] = mapped_column(ForeignKey("prfs.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"))
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), default="EA", nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    estimated_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    line_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    prf: Mapped[PRF] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_prf_line_qty_pos"),
        CheckConstraint("estimated_price >= 0", name="ck_prf_line_price_nonneg"),
    )


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    po_no: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # 1 PRF -> au plus 1 PO
    prf_id: Mapped[int | None] = mapped_column(ForeignKey("prfs.id", ondelete="RESTRICT"), unique=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[POStatus] = mapped_column(Enum(POStatus, name="po_status"), default=POStatus.open, nullable=False)

    total_before_discount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_discount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_after_discount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_vat: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    payment_terms: Mapped[str | None] = mapped_column(String(200))
    delivery_terms: Mapped[str | None] = mapped_column(String(200))
    notes: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    prf: Mapped[PRF | None] = relationship(back_populates="purchase_order")
    supplier: Mapped[Supplier] = relationship()
    location: Mapped[Location] = relationship()
    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="po",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.line_no",
    )


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    po_id: Mapped[int] = mapped_column(ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"))
    item_description: Mapped[str] = mapped_column(String(500), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), default="EA", nullable=False)

    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    # Cumul livré : écrit uniquement par backend.services.ledger
    delivered_qty: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    total_before_vat: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    vat_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("15"), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_after_vat: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # Verrou optimiste : UPDATE ... WHERE version = :lu
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    po: Mapped[PurchaseOrder] = relationship(back_populates="lines")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_po_line_qty_pos"),
        CheckConstraint("delivered_qty >= 0", name="ck_po_line_delivered_nonneg"),
        CheckConstraint("unit_price >= 0", name="ck_po_line_unit_price_nonneg"),
    )

    @property
    def remaining_qty(self) -> Decimal:
        # Dérivé, jamais stocké
        return max(Decimal("0"), Decimal(self.quantity) - Decimal(self.delivered_qty or 0))


class Delivery(Base):
    __tablename__ = "deliveries"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    delivery_no: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    po_id: Mapped[int] = mapped_column(
        ForeignKey("purchase_orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    period_id: Mapped[int | None] = mapped_column(ForeignKey("periods.id", ondelete="RESTRICT"))

    invoice_no: Mapped[str | None] = mapped_column(String(100), unique=True)
    delivery_note: Mapped[str | None] = mapped_column(String(200))
    delivery_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status"),
        default=DeliveryStatus.draft,
        nullable=False,
    )
    pending_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    over_delivery_rejected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_variance: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    posted_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    # Un rejet concurrent d'un post doit faire échouer l'un des deux
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    po: Mapped[PurchaseOrder] = relationship()
    location: Mapped[Location] = relationship()
    creator: Mapped[User] = relationship(foreign_keys=[created_by])
    lines: Mapped[list["DeliveryLine"]] = relationship(
        back_populates="delivery",
        cascade="all, delete-orphan",
        order_by="DeliveryLine.id",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index("ix_deliveries_location_status", "location_id", "status"),)


class DeliveryLine(Base):
    __tablename__ = "delivery_lines"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    delivery_id: Mapped[int] = mapped_column(ForeignKey("deliveries.id", ondelete="CASCADE"), nullable=False, index=True)
    po_line_id: Mapped[int | None] = mapped_column(ForeignKey("purchase_order_lines.id", ondelete="RESTRICT"))
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"))

    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    period_price: Mapped[Decimal | None] = mapped_column(PRICE)
    price_variance: Mapped[Decimal] = mapped_column(PRICE, default=Decimal("0"), nullable=False)
    line_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    is_over_delivery: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    over_delivery_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    delivery: Mapped[Delivery] = relationship(back_populates="lines")
    po_line: Mapped[PurchaseOrderLine | None] = relationship()

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_delivery_line_qty_pos"),)


class NCR(Base):
    __tablename__ = "ncrs"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    ncr_no: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    type: Mapped[NCRType] = mapped_column(Enum(NCRType, name="ncr_type"), nullable=False)
    auto_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    delivery_id: Mapped[int | None] = mapped_column(ForeignKey("deliveries.id", ondelete="RESTRICT"), index=True)
    delivery_line_id: Mapped[int | None] = mapped_column(ForeignKey("delivery_lines.id", ondelete="RESTRICT"))
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"))

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(QTY)
    value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    status: Mapped[NCRStatus] = mapped_column(Enum(NCRStatus, name="ncr_status"), default=NCRStatus.open, nullable=False)
    resolution_type: Mapped[str | None] = mapped_column(String(100))
    financial_impact: Mapped[FinancialImpact | None] = mapped_column(Enum(FinancialImpact, name="financial_impact"))
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (CheckConstraint("value >= 0", name="ck_ncr_value_nonneg"),)


# ---------- INVENTORY ----------
class LocationStock(Base):
    __tablename__ = "location_stock"
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"), primary_key=True)

    on_hand: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0"), nullable=False)
    wac: Mapped[Decimal] = mapped_column(PRICE, default=Decimal("0"), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_location_stock_on_hand_nonneg"),
        CheckConstraint("wac >= 0", name="ck_location_stock_wac_nonneg"),
    )
