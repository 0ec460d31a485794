from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "4f2a9c1d7e3b"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

ACTIVE_DISPUTE_WHERE = sa.text(
    "status IN ('open', 'under_review', 'seller_responded', 'escalated')"
)


def _enum(name, *values):
    return sa.Enum(*values, name=name)


paymentmethod = _enum("paymentmethod", "bank_transfer", "card", "wallet", "cod")
disputeresolution = _enum(
    "disputeresolution",
    "full_refund",
    "partial_refund",
    "replacement",
    "return_and_refund",
    "no_action",
)
outboxdestination = _enum(
    "outboxdestination",
    "webhook",
    "email",
    "sms",
    "payment_gateway",
    "analytics",
    "notification",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column(
            "role", _enum("userrole", "buyer", "seller", "admin"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "seller_profiles",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("company_name", sa.String(length=200), nullable=False),
        sa.Column("contact_phone", sa.String(length=30), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("sku", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status", _enum("itemstatus", "active", "inactive"),
            nullable=False,
        ),
        sa.Column("successful_orders", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("price >= 0", name="check_item_price_non_negative"),
    )
    op.create_index("ix_items_seller_id", "items", ["seller_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("order_number", sa.String(length=32), nullable=False,
                  unique=True),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("item_id", sa.String(length=36), sa.ForeignKey("items.id"),
                  nullable=True),
        sa.Column("item_name", sa.String(length=200), nullable=False),
        sa.Column("item_sku", sa.String(length=100), nullable=True),
        sa.Column("item_snapshot", JSONType, nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            _enum(
                "orderstatus",
                "pending_confirmation",
                "confirmed",
                "in_progress",
                "shipped",
                "delivered",
                "failed",
                "cancelled",
                "refunded",
                "closed",
            ),
            nullable=False,
        ),
        sa.Column(
            "payment_status",
            _enum(
                "orderpaymentstatus",
                "unpaid",
                "partial",
                "authorized",
                "paid",
                "paid_cash",
                "refunded",
            ),
            nullable=False,
        ),
        sa.Column("payment_method", paymentmethod, nullable=False),
        sa.Column(
            "fulfillment_status",
            _enum(
                "fulfillmentstatus",
                "not_started",
                "packing",
                "shipped",
                "delivered",
                "failed",
            ),
            nullable=False,
        ),
        sa.Column("shipping_address", JSONType, nullable=True),
        sa.Column("carrier", sa.String(length=100), nullable=True),
        sa.Column("tracking_number", sa.String(length=100), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(), nullable=True),
        sa.Column("buyer_notes", sa.Text(), nullable=True),
        sa.Column("seller_notes", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(length=20), nullable=True),
        sa.Column("delivery_confirmed_by", sa.String(length=20),
                  nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_at", sa.DateTime(), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0",
                           name="check_order_quantity_positive"),
        sa.CheckConstraint("total_price >= 0",
                           name="check_order_total_positive"),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_seller_id", "orders", ["seller_id"])
    op.create_index("ix_orders_item_id", "orders", ["item_id"])
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("invoice_number", sa.String(length=32), nullable=False,
                  unique=True),
        sa.Column("order_id", sa.String(length=36),
                  sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("platform_fee_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("net_to_seller", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            _enum("invoicestatus", "draft", "issued", "paid", "overdue",
                  "cancelled"),
            nullable=False,
        ),
        sa.Column("issued_at", sa.DateTime(), nullable=True),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_invoices_buyer_id", "invoices", ["buyer_id"])
    op.create_index("ix_invoices_seller_id", "invoices", ["seller_id"])
    op.create_index("ix_invoices_status", "invoices", ["status"])
    op.create_index("ix_invoices_paid_at", "invoices", ["paid_at"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("payment_number", sa.String(length=32), nullable=False,
                  unique=True),
        sa.Column("order_id", sa.String(length=36),
                  sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("invoice_id", sa.String(length=36),
                  sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_method", paymentmethod, nullable=False),
        sa.Column("bank_reference", sa.String(length=100), nullable=True),
        sa.Column("bank_name", sa.String(length=100), nullable=True),
        sa.Column(
            "status",
            _enum("paymentstatus", "pending", "confirmed", "failed"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("confirmed_by", sa.String(length=36), nullable=True),
        sa.Column("confirmation_note", sa.Text(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("order_id", "bank_reference",
                            name="uq_payment_order_bank_reference"),
        sa.CheckConstraint("amount > 0",
                           name="check_payment_amount_positive"),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"])
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])
    op.create_index("ix_payments_buyer_id", "payments", ["buyer_id"])
    op.create_index("ix_payments_seller_id", "payments", ["seller_id"])

    op.create_table(
        "buyer_expenses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36),
                  sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("payment_id", sa.String(length=36),
                  sa.ForeignKey("payments.id"), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_buyer_expenses_buyer_id", "buyer_expenses",
                    ["buyer_id"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("dispute_number", sa.String(length=32), nullable=False,
                  unique=True),
        sa.Column("order_id", sa.String(length=36),
                  sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column(
            "reason",
            _enum(
                "disputereason",
                "wrong_item",
                "damaged_goods",
                "missing_quantity",
                "late_delivery",
                "quality_issue",
                "other",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence", JSONType, nullable=True),
        sa.Column("requested_resolution", disputeresolution, nullable=False),
        sa.Column("requested_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "status",
            _enum(
                "disputestatus",
                "open",
                "under_review",
                "seller_responded",
                "escalated",
                "resolved",
                "rejected",
                "closed",
            ),
            nullable=False,
        ),
        sa.Column(
            "priority", _enum("disputepriority", "medium", "high", "urgent"),
            nullable=False,
        ),
        sa.Column(
            "seller_response_type",
            _enum(
                "sellerresponsetype",
                "propose_resolution",
                "accept_responsibility",
                "reject",
            ),
            nullable=True,
        ),
        sa.Column("seller_response", sa.Text(), nullable=True),
        sa.Column("seller_proposed_resolution", disputeresolution,
                  nullable=True),
        sa.Column("seller_proposed_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("seller_responded_at", sa.DateTime(), nullable=True),
        sa.Column("buyer_response", sa.Text(), nullable=True),
        sa.Column("resolution", disputeresolution, nullable=True),
        sa.Column("resolution_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(length=30), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("is_escalated", sa.Boolean(), nullable=False),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(), nullable=True),
        sa.Column("response_deadline", sa.DateTime(), nullable=True),
        sa.Column("resolution_deadline", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_disputes_order_id", "disputes", ["order_id"])
    op.create_index("ix_disputes_buyer_id", "disputes", ["buyer_id"])
    op.create_index("ix_disputes_seller_id", "disputes", ["seller_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])
    op.create_index(
        "uq_disputes_active_order",
        "disputes",
        ["order_id"],
        unique=True,
        sqlite_where=ACTIVE_DISPUTE_WHERE,
        postgresql_where=ACTIVE_DISPUTE_WHERE,
    )

    op.create_table(
        "returns",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("return_number", sa.String(length=32), nullable=False,
                  unique=True),
        sa.Column("dispute_id", sa.String(length=36),
                  sa.ForeignKey("disputes.id"), nullable=False, unique=True),
        sa.Column("order_id", sa.String(length=36),
                  sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column(
            "return_type",
            _enum("returntype", "full_return", "partial_return",
                  "replacement_only"),
            nullable=False,
        ),
        sa.Column(
            "status",
            _enum(
                "returnstatus",
                "requested",
                "approved",
                "rejected",
                "in_transit",
                "received",
                "refund_processed",
                "closed",
            ),
            nullable=False,
        ),
        sa.Column("items", JSONType, nullable=False),
        sa.Column("return_reason", sa.Text(), nullable=True),
        sa.Column("return_address", JSONType, nullable=True),
        sa.Column("carrier", sa.String(length=100), nullable=True),
        sa.Column("tracking_number", sa.String(length=100), nullable=True),
        sa.Column(
            "received_condition",
            _enum(
                "returncondition",
                "as_expected",
                "damaged_in_transit",
                "partial_received",
                "other",
            ),
            nullable=True,
        ),
        sa.Column("inspection_notes", sa.Text(), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("refund_reference", sa.String(length=100), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=True),
        sa.Column("refund_processed_at", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_returns_order_id", "returns", ["order_id"])
    op.create_index("ix_returns_buyer_id", "returns", ["buyer_id"])
    op.create_index("ix_returns_seller_id", "returns", ["seller_id"])

    op.create_table(
        "seller_banks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("bank_name", sa.String(length=100), nullable=False),
        sa.Column("account_holder_name", sa.String(length=200),
                  nullable=False),
        sa.Column("iban", sa.String(length=34), nullable=False),
        sa.Column("swift_code", sa.String(length=11), nullable=True),
        sa.Column(
            "verification_status",
            _enum("bankverificationstatus", "pending", "approved",
                  "rejected"),
            nullable=False,
        ),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_seller_banks_seller_id", "seller_banks",
                    ["seller_id"])

    op.create_table(
        "seller_payouts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("payout_number", sa.String(length=32), nullable=False,
                  unique=True),
        sa.Column("seller_id", sa.String(length=36), nullable=False),
        sa.Column("bank_id", sa.String(length=36),
                  sa.ForeignKey("seller_banks.id"), nullable=True),
        sa.Column("bank_name", sa.String(length=100), nullable=False),
        sa.Column("account_holder_name", sa.String(length=200),
                  nullable=False),
        sa.Column("iban_masked", sa.String(length=40), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("gross_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("invoice_count", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            _enum("payoutstatus", "pending", "processing", "on_hold",
                  "settled", "failed"),
            nullable=False,
        ),
        sa.Column("approved_by", sa.String(length=36), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("settled_at", sa.DateTime(), nullable=True),
        sa.Column("bank_reference", sa.String(length=100), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("hold_reason", sa.Text(), nullable=True),
        sa.Column("hold_until", sa.DateTime(), nullable=True),
        sa.Column("held_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_seller_payouts_seller_id", "seller_payouts",
                    ["seller_id"])
    op.create_index("ix_seller_payouts_status", "seller_payouts", ["status"])

    op.create_table(
        "payout_line_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("payout_id", sa.String(length=36),
                  sa.ForeignKey("seller_payouts.id", ondelete="CASCADE"),
                  nullable=False),
        sa.Column("invoice_id", sa.String(length=36),
                  sa.ForeignKey("invoices.id"), nullable=False, unique=True),
        sa.Column("order_id", sa.String(length=36), nullable=False),
        sa.Column("gross_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payout_line_items_payout_id", "payout_line_items",
                    ["payout_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_type", sa.String(length=50), nullable=False),
        sa.Column("aggregate_id", sa.String(length=36), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("destination", outboxdestination, nullable=False),
        sa.Column("destination_url", sa.String(length=500), nullable=True),
        sa.Column("partition_key", sa.String(length=100), nullable=True),
        sa.Column(
            "status",
            _enum("outboxstatus", "pending", "processing", "delivered",
                  "failed"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=100), nullable=True),
        sa.Column("causation_id", sa.String(length=100), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_outbox_events_event_type", "outbox_events",
                    ["event_type"])
    op.create_index("ix_outbox_status_next_attempt", "outbox_events",
                    ["status", "next_attempt_at"])
    op.create_index("ix_outbox_aggregate", "outbox_events",
                    ["aggregate_type", "aggregate_id"])

    op.create_table(
        "outbox_dead_letters",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("original_event_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_type", sa.String(length=50), nullable=False),
        sa.Column("aggregate_id", sa.String(length=36), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("destination", outboxdestination, nullable=False),
        sa.Column("destination_url", sa.String(length=500), nullable=True),
        sa.Column("correlation_id", sa.String(length=100), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "failure_reason",
            _enum("deadletterreason", "max_retries_exceeded",
                  "permanent_failure"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            _enum("deadletterstatus", "unresolved", "requeued", "skipped"),
            nullable=False,
        ),
        sa.Column("requeued_event_id", sa.String(length=36), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by", sa.String(length=36), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_outbox_dead_letters_original_event_id",
                    "outbox_dead_letters", ["original_event_id"])
    op.create_index("ix_outbox_dead_letters_status", "outbox_dead_letters",
                    ["status"])

    op.create_table(
        "sequence_counters",
        sa.Column("name", sa.String(length=50), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("actor_role", sa.String(length=20), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("target_type", sa.String(length=50), nullable=True),
        sa.Column("target_id", sa.String(length=36), nullable=True),
        sa.Column("from_status", sa.String(length=50), nullable=True),
        sa.Column("to_status", sa.String(length=50), nullable=True),
        sa.Column("ip", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("payload", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"])
    op.create_index("ix_audit_target", "audit_logs",
                    ["target_type", "target_id"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("sequence_counters")
    op.drop_table("outbox_dead_letters")
    op.drop_table("outbox_events")
    op.drop_table("payout_line_items")
    op.drop_table("seller_payouts")
    op.drop_table("seller_banks")
    op.drop_table("returns")
    op.drop_index("uq_disputes_active_order", table_name="disputes")
    op.drop_table("disputes")
    op.drop_table("buyer_expenses")
    op.drop_table("payments")
    op.drop_table("invoices")
    op.drop_table("orders")
    op.drop_table("items")
    op.drop_table("seller_profiles")
    op.drop_table("users")
