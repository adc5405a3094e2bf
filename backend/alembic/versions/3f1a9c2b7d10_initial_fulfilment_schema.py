"""initial fulfilment schema

Revision ID: 3f1a9c2b7d10
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2b7d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QTY = sa.Numeric(14, 3)
PRICE = sa.Numeric(14, 4)
MONEY = sa.Numeric(14, 2)

# SQLAlchemy persiste le NOM des membres d'enum
ROLE = sa.Enum("admin", "supervisor", "operator", "procurement_specialist", name="role")
PERIOD_STATUS = sa.Enum("open", "closed", name="period_status")
PRF_STATUS = sa.Enum("draft", "pending", "approved", "rejected", "closed", name="prf_status")
PO_STATUS = sa.Enum("open", "closed", name="po_status")
DELIVERY_STATUS = sa.Enum("draft", "posted", "rejected", name="delivery_status")
NCR_TYPE = sa.Enum("price_variance", "manual", name="ncr_type")
NCR_STATUS = sa.Enum("open", "sent", "credited", "rejected", "resolved", name="ncr_status")
FINANCIAL_IMPACT = sa.Enum("none", "credit", "loss", name="financial_impact")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # ---------- master data ----------
    op.create_table(
        "locations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_table(
        "periods",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(64), nullable=False, unique=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", PERIOD_STATUS, nullable=False),
    )
    op.create_table(
        "items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_table(
        "item_prices",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("period_id", sa.BigInteger(), sa.ForeignKey("periods.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("price", PRICE, nullable=False),
        sa.UniqueConstraint("period_id", "item_id", name="uq_item_price_period_item"),
        sa.CheckConstraint("price >= 0", name="ck_item_price_nonneg"),
    )
    op.create_table(
        "suppliers",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("email", sa.String(255)),
        sa.Column("role", ROLE, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "user_locations",
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="CASCADE"), primary_key=True),
    )

    # ---------- procurement ----------
    op.create_table(
        "prfs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("prf_no", sa.String(64), nullable=False, unique=True),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("period_id", sa.BigInteger(), sa.ForeignKey("periods.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("requested_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", PRF_STATUS, nullable=False),
        sa.Column("project_name", sa.String(200)),
        sa.Column("notes", sa.Text()),
        sa.Column("total_value", MONEY, nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("cloned_from_id", sa.BigInteger(), sa.ForeignKey("prfs.id", ondelete="SET NULL")),
        *_timestamps(),
    )
    op.create_table(
        "prf_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("prf_id", sa.BigInteger(), sa.ForeignKey("prfs.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT")),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("estimated_price", PRICE, nullable=False),
        sa.Column("line_value", MONEY, nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_prf_line_qty_pos"),
        sa.CheckConstraint("estimated_price >= 0", name="ck_prf_line_price_nonneg"),
    )
    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("po_no", sa.String(64), nullable=False, unique=True),
        sa.Column("prf_id", sa.BigInteger(), sa.ForeignKey("prfs.id", ondelete="RESTRICT"), unique=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", PO_STATUS, nullable=False),
        sa.Column("total_before_discount", MONEY, nullable=False),
        sa.Column("total_discount", MONEY, nullable=False),
        sa.Column("total_after_discount", MONEY, nullable=False),
        sa.Column("total_vat", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("payment_terms", sa.String(200)),
        sa.Column("delivery_terms", sa.String(200)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        *_timestamps(),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("closed_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
    )
    op.create_table(
        "purchase_order_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "po_id",
            sa.BigInteger(),
            sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT")),
        sa.Column("item_description", sa.String(500), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("delivered_qty", QTY, nullable=False, server_default="0"),
        sa.Column("unit_price", PRICE, nullable=False),
        sa.Column("discount_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_before_vat", MONEY, nullable=False),
        sa.Column("vat_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("vat_amount", MONEY, nullable=False),
        sa.Column("total_after_vat", MONEY, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("quantity > 0", name="ck_po_line_qty_pos"),
        sa.CheckConstraint("delivered_qty >= 0", name="ck_po_line_delivered_nonneg"),
        sa.CheckConstraint("unit_price >= 0", name="ck_po_line_unit_price_nonneg"),
    )

    # ---------- deliveries ----------
    op.create_table(
        "deliveries",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("delivery_no", sa.String(64), nullable=False, unique=True),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "po_id",
            sa.BigInteger(),
            sa.ForeignKey("purchase_orders.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("period_id", sa.BigInteger(), sa.ForeignKey("periods.id", ondelete="RESTRICT")),
        sa.Column("invoice_no", sa.String(100), unique=True),
        sa.Column("delivery_note", sa.String(200)),
        sa.Column("delivery_date", sa.Date(), nullable=False),
        sa.Column("status", DELIVERY_STATUS, nullable=False),
        sa.Column("pending_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("over_delivery_rejected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_variance", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        *_timestamps(),
        sa.Column("posted_at", sa.DateTime(timezone=True)),
        sa.Column("posted_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_deliveries_location_status", "deliveries", ["location_id", "status"])
    op.create_table(
        "delivery_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "delivery_id",
            sa.BigInteger(),
            sa.ForeignKey("deliveries.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("po_line_id", sa.BigInteger(), sa.ForeignKey("purchase_order_lines.id", ondelete="RESTRICT")),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT")),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("unit_price", PRICE, nullable=False),
        sa.Column("period_price", PRICE),
        sa.Column("price_variance", PRICE, nullable=False),
        sa.Column("line_value", MONEY, nullable=False),
        sa.Column("is_over_delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("over_delivery_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.CheckConstraint("quantity > 0", name="ck_delivery_line_qty_pos"),
    )

    # ---------- NCR ----------
    op.create_table(
        "ncrs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("ncr_no", sa.String(32), nullable=False, unique=True),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", NCR_TYPE, nullable=False),
        sa.Column("auto_generated", sa.Boolean(), nullable=False),
        sa.Column("delivery_id", sa.BigInteger(), sa.ForeignKey("deliveries.id", ondelete="RESTRICT"), index=True),
        sa.Column("delivery_line_id", sa.BigInteger(), sa.ForeignKey("delivery_lines.id", ondelete="RESTRICT")),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT")),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("quantity", QTY),
        sa.Column("value", MONEY, nullable=False),
        sa.Column("status", NCR_STATUS, nullable=False),
        sa.Column("resolution_type", sa.String(100)),
        sa.Column("financial_impact", FINANCIAL_IMPACT),
        sa.Column("resolution_notes", sa.Text()),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("created_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        *_timestamps(),
        sa.CheckConstraint("value >= 0", name="ck_ncr_value_nonneg"),
    )

    # ---------- inventory ----------
    op.create_table(
        "location_stock",
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("on_hand", QTY, nullable=False),
        sa.Column("wac", PRICE, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("on_hand >= 0", name="ck_location_stock_on_hand_nonneg"),
        sa.CheckConstraint("wac >= 0", name="ck_location_stock_wac_nonneg"),
    )


def downgrade() -> None:
    for table in (
        "location_stock",
        "ncrs",
        "delivery_lines",
        "deliveries",
        "purchase_order_lines",
        "purchase_orders",
        "prf_lines",
        "prfs",
        "user_locations",
        "users",
        "suppliers",
        "item_prices",
        "items",
        "periods",
        "locations",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum in (
        FINANCIAL_IMPACT,
        NCR_STATUS,
        NCR_TYPE,
        DELIVERY_STATUS,
        PO_STATUS,
        PRF_STATUS,
        PERIOD_STATUS,
        ROLE,
    ):
        enum.drop(bind, checkfirst=True)
