"""Create bills and shop_products

Revision ID: 20261019_bills_products
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_bills_products"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "bills",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("bill_number", sa.String(length=20), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("vendor", sa.String(length=100), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("total_quantity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_profit", sa.Float(), nullable=False, server_default="0"),
        sa.Column("product_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    with op.batch_alter_table("bills", schema=None) as batch_op:
        batch_op.create_index("ix_bills_bill_number", ["bill_number"], unique=True)
        batch_op.create_index("ix_bills_date", ["date"], unique=False)
        batch_op.create_index("ix_bills_vendor", ["vendor"], unique=False)
        batch_op.create_index("ix_bills_status", ["status"], unique=False)

    op.create_table(
        "shop_products",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("bill_id", sa.String(length=32), sa.ForeignKey("bills.id"), nullable=True),
        sa.Column("bill_number", sa.String(length=20), nullable=True),
        sa.Column("product_name", sa.String(length=100), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("vendor", sa.String(length=100), nullable=True),
        sa.Column("mrp", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_quantity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("price_per_piece", sa.Float(), nullable=False, server_default="0"),
        sa.Column("profit_per_piece", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    with op.batch_alter_table("shop_products", schema=None) as batch_op:
        batch_op.create_index("ix_shop_products_bill_id", ["bill_id"], unique=False)
        batch_op.create_index("ix_shop_products_bill_number", ["bill_number"], unique=False)
        batch_op.create_index("ix_shop_products_bill_created", ["bill_id", "created_at"], unique=False)


def downgrade():
    with op.batch_alter_table("shop_products", schema=None) as batch_op:
        batch_op.drop_index("ix_shop_products_bill_created")
        batch_op.drop_index("ix_shop_products_bill_number")
        batch_op.drop_index("ix_shop_products_bill_id")
    op.drop_table("shop_products")

    with op.batch_alter_table("bills", schema=None) as batch_op:
        batch_op.drop_index("ix_bills_status")
        batch_op.drop_index("ix_bills_vendor")
        batch_op.drop_index("ix_bills_date")
        batch_op.drop_index("ix_bills_bill_number")
    op.drop_table("bills")
