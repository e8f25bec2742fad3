"""orders, payments and reconciliation ledger tables

Revision ID: 3a9c1e7d5b20
Revises:
Create Date: 2026-10-17 11:02:41.318204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3a9c1e7d5b20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAYMENT_SUCCESS = 10


def _timestamps(*names, nullable=False):
    return [sa.Column(n, sa.DateTime(timezone=True), nullable=nullable) for n in names]


def upgrade():
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("public_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("payment_status", sa.Integer(), nullable=False),
        sa.Column("estimated_amount", sa.BigInteger(), nullable=False),
        sa.Column("final_amount", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps("created_at", "updated_at"),
        *_timestamps("confirmed_at", "completed_at", "cancelled_at", nullable=True),
    )
    op.create_index("ix_orders_public_id", "orders", ["public_id"], unique=True)
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_payment_status", "orders", ["payment_status"])

    op.create_table(
        "payment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("public_id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(128), nullable=False, unique=True),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        *_timestamps("created_at", "updated_at"),
        *_timestamps("settled_at", "refunded_at", nullable=True),
    )
    op.create_index("ix_payment_public_id", "payment", ["public_id"], unique=True)
    op.create_index("ix_payment_order_id", "payment", ["order_id"])
    op.create_index("ix_payment_status", "payment", ["status"])
    # at most one settled payment per order
    op.create_index(
        "uq_payment_order_settled", "payment", ["order_id"], unique=True,
        postgresql_where=sa.text(f"status = {PAYMENT_SUCCESS}"),
        sqlite_where=sa.text(f"status = {PAYMENT_SUCCESS}"),
    )

    op.create_table(
        "processedevent",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_key", sa.String(255), nullable=False, unique=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("outcome_summary", sa.JSON(), nullable=True),
        *_timestamps("first_seen_at"),
        *_timestamps("completed_at", nullable=True),
    )
    op.create_index("ix_processedevent_order_id", "processedevent", ["order_id"])

    op.create_table(
        "refundrequest",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("refund_request_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payment.id", ondelete="RESTRICT"), nullable=False, unique=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("requested_by", sa.String(64), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_refund_id", sa.String(128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        *_timestamps("completed_at", nullable=True),
    )
    op.create_index("ix_refundrequest_order_id", "refundrequest", ["order_id"])

    op.create_table(
        "outboxevent",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("topic", sa.String(128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("aggregate_type", sa.String(64), nullable=False),
        sa.Column("aggregate_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps("created_at"),
        *_timestamps("sent_at", nullable=True),
        sa.UniqueConstraint("aggregate_type", "aggregate_id", "topic", name="uq_outboxevent_aggid_type_topic"),
    )
    op.create_index("ix_outboxevent_topic", "outboxevent", ["topic"])
    op.create_index("ix_outboxevent_status", "outboxevent", ["status"])

    op.create_table(
        "reconciliationconflict",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("event_key", sa.String(255), nullable=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(128), nullable=True),
        sa.Column("competing_transaction_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        *_timestamps("created_at"),
        *_timestamps("resolved_at", nullable=True),
    )
    op.create_index("ix_reconciliationconflict_order_id", "reconciliationconflict", ["order_id"])
    op.create_index("ix_reconciliationconflict_event_key", "reconciliationconflict", ["event_key"])
    op.create_index("ix_reconciliationconflict_gateway_transaction_id", "reconciliationconflict",
                    ["gateway_transaction_id"])


def downgrade():
    op.drop_table("reconciliationconflict")
    op.drop_table("outboxevent")
    op.drop_table("refundrequest")
    op.drop_table("processedevent")
    op.drop_index("uq_payment_order_settled", table_name="payment")
    op.drop_table("payment")
    op.drop_table("orders")
