"""lot ledger initial schema

Revision ID: 0001_lot_ledger_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_lot_ledger_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    批次台账初始表：
      - catalog_items / products：协作方的最小形状（引用为软引用，无外键）
      - lot_entries：批次本体（entry_number 唯一）
      - lot_movements：流水
      - sequence_counters：按日原子计数器
      - ledger_leases：跨实例租约锁
    """
    op.create_table(
        "catalog_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("uq_catalog_items_code", "catalog_items", ["code"], unique=True)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("category_name", sa.String(128), nullable=True),
        sa.Column("catalog_item_id", sa.Integer(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("quantity_on_hand", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("quantity_sold", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_products_catalog_item_id", "products", ["catalog_item_id"])
    op.create_index("uq_products_code", "products", ["code"], unique=True)
    op.create_index(
        "uq_products_catalog_category", "products", ["catalog_item_id", "category_id"], unique=True
    )

    op.create_table(
        "lot_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entry_number", sa.String(32), nullable=False),
        sa.Column("catalog_item_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("product_code", sa.String(64), nullable=False),
        sa.Column("product_name", sa.String(128), nullable=False),
        sa.Column("lot_code", sa.String(64), nullable=False),
        sa.Column("supplier", sa.String(128), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("intake_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("initial", sa.Integer(), nullable=False),
        sa.Column("available", sa.Integer(), nullable=False),
        sa.Column("reserved", sa.Integer(), nullable=False),
        sa.Column("sold", sa.Integer(), nullable=False),
        sa.Column("returned", sa.Integer(), nullable=False),
        sa.Column("lost", sa.Integer(), nullable=False),
        sa.Column("purchase_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("sale_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("total_cost", sa.Numeric(14, 2), nullable=False),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("state_reason", sa.String(255), nullable=False),
        sa.Column("rotation_priority", sa.BigInteger(), nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_by_email", sa.String(128), nullable=False),
        sa.Column("created_by_role", sa.String(32), nullable=False),
        sa.Column("updated_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("alerts", sa.JSON(), nullable=False),
        sa.Column("next_alert_on", sa.Date(), nullable=True),
        sa.Column("allow_partial_sale", sa.Boolean(), nullable=False),
        sa.Column("expiry_alert_days", sa.Integer(), nullable=False),
        sa.Column("min_stock", sa.Integer(), nullable=False),
        sa.Column("requires_authorization", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_lot_entries_catalog_item_id", "lot_entries", ["catalog_item_id"])
    op.create_index("ix_lot_entries_product_id", "lot_entries", ["product_id"])
    op.create_index("uq_lot_entries_entry_number", "lot_entries", ["entry_number"], unique=True)
    op.create_index("ix_lot_entries_catalog_intake", "lot_entries", ["catalog_item_id", "intake_date"])
    op.create_index("ix_lot_entries_state_intake", "lot_entries", ["state", "intake_date"])
    op.create_index(
        "ix_lot_entries_rotation", "lot_entries", ["catalog_item_id", "state", "rotation_priority"]
    )
    op.create_index("ix_lot_entries_expiry_state", "lot_entries", ["expiry_date", "state"])
    op.create_index("ix_lot_entries_created_by", "lot_entries", ["created_by", "intake_date"])
    op.create_index("ix_lot_entries_supplier", "lot_entries", ["supplier", "intake_date"])

    op.create_table(
        "lot_movements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("lot_entry_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_lot_movements_lot_entry_id", "lot_movements", ["lot_entry_id"])
    op.create_index("ix_lot_movements_entry_time", "lot_movements", ["lot_entry_id", "occurred_at"])

    op.create_table(
        "sequence_counters",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "ledger_leases",
        sa.Column("name", sa.String(191), primary_key=True),
        sa.Column("holder", sa.String(64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("ledger_leases")
    op.drop_table("sequence_counters")
    op.drop_index("ix_lot_movements_entry_time", table_name="lot_movements")
    op.drop_index("ix_lot_movements_lot_entry_id", table_name="lot_movements")
    op.drop_table("lot_movements")
    for name in (
        "ix_lot_entries_supplier",
        "ix_lot_entries_created_by",
        "ix_lot_entries_expiry_state",
        "ix_lot_entries_rotation",
        "ix_lot_entries_state_intake",
        "ix_lot_entries_catalog_intake",
        "uq_lot_entries_entry_number",
        "ix_lot_entries_product_id",
        "ix_lot_entries_catalog_item_id",
    ):
        op.drop_index(name, table_name="lot_entries")
    op.drop_table("lot_entries")
    op.drop_index("uq_products_catalog_category", table_name="products")
    op.drop_index("uq_products_code", table_name="products")
    op.drop_index("ix_products_catalog_item_id", table_name="products")
    op.drop_table("products")
    op.drop_index("uq_catalog_items_code", table_name="catalog_items")
    op.drop_table("catalog_items")
