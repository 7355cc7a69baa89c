"""reservations, storefront orders and payment reconciliation

Revision ID: 0001_reservations
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_reservations"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "services",
        sa.Column("service_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
        sa.CheckConstraint("price_cents >= 0", name="ck_services_price_non_negative"),
    )
    op.create_index("ix_services_active_position", "services", ["is_active", "position"])

    op.create_table(
        "service_deposits",
        sa.Column(
            "service_id",
            sa.String(length=36),
            sa.ForeignKey("services.service_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("deposit_type", sa.String(length=16), nullable=False),
        sa.Column("deposit_value", sa.Integer(), nullable=False),
        sa.CheckConstraint("deposit_type IN ('flat', 'percent')", name="ck_service_deposits_type"),
        sa.CheckConstraint("deposit_value >= 0", name="ck_service_deposits_value"),
    )

    op.create_table(
        "availability_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(timezone=False), nullable=False),
        sa.Column("end_time", sa.Time(timezone=False), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_rules_day"),
        sa.CheckConstraint("start_time < end_time", name="ck_availability_rules_window"),
    )
    op.create_index("ix_availability_rules_day", "availability_rules", ["day_of_week"])

    op.create_table(
        "blackout_dates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("date", sa.Date(), nullable=False, unique=True),
        sa.Column("reason", sa.String(length=255), nullable=True),
        *_timestamps(updated=False),
    )

    op.create_table(
        "reservation_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("min_notice_minutes", sa.Integer(), nullable=False),
        sa.Column("buffer_minutes", sa.Integer(), nullable=False),
        sa.Column("max_days_out", sa.Integer(), nullable=False),
        sa.Column("hold_minutes", sa.Integer(), nullable=False),
        sa.Column("deposits_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("default_deposit_type", sa.String(length=16), nullable=False),
        sa.Column("default_deposit_value", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("id = 1", name="ck_reservation_settings_singleton"),
        sa.CheckConstraint("hold_minutes > 0", name="ck_reservation_settings_hold_minutes"),
        sa.CheckConstraint(
            "default_deposit_type IN ('flat', 'percent')",
            name="ck_reservation_settings_deposit_type",
        ),
    )

    op.create_table(
        "reservations",
        sa.Column("reservation_id", sa.String(length=36), primary_key=True),
        sa.Column("service_id", sa.String(length=36), sa.ForeignKey("services.service_id"), nullable=False),
        sa.Column("start_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("customer_name", sa.String(length=200), nullable=False),
        sa.Column("customer_phone", sa.String(length=50), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deposit_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stripe_checkout_session_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "(status = 'hold' AND hold_expires_at IS NOT NULL) "
            "OR (status <> 'hold' AND hold_expires_at IS NULL)",
            name="ck_reservations_hold_expiry",
        ),
        sa.CheckConstraint("end_ts > start_ts", name="ck_reservations_window"),
        sa.CheckConstraint(
            "status IN ('hold', 'confirmed', 'cancelled', 'expired', 'completed', 'no_show')",
            name="ck_reservations_status",
        ),
    )
    op.create_index("ix_reservations_service_window", "reservations", ["service_id", "start_ts", "end_ts"])
    op.create_index("ix_reservations_status_hold_expires", "reservations", ["status", "hold_expires_at"])

    op.create_table(
        "products",
        sa.Column("product_id", sa.String(length=36), primary_key=True),
        sa.Column("handle", sa.String(length=200), nullable=False, unique=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
    )

    op.create_table(
        "product_variants",
        sa.Column("variant_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "product_id",
            sa.String(length=36),
            sa.ForeignKey("products.product_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=False, server_default="Default"),
        sa.Column("sku", sa.String(length=100), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("inventory_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("inventory_quantity >= 0", name="ck_product_variants_inventory_non_negative"),
    )
    op.create_index("ix_product_variants_product_id", "product_variants", ["product_id"])

    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(length=36), primary_key=True),
        sa.Column("order_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("status_notes", sa.Text(), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stripe_checkout_session_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("tracking_number", sa.String(length=128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'needs_attention', 'shipped', 'delivered', "
            "'cancelled', 'refunded')",
            name="ck_orders_status",
        ),
        sa.CheckConstraint("total_cents >= 0", name="ck_orders_total_non_negative"),
    )
    op.create_index("ix_orders_status_created", "orders", ["status", "created_at"])

    op.create_table(
        "order_items",
        sa.Column("item_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.String(length=36),
            sa.ForeignKey("orders.order_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "variant_id",
            sa.String(length=36),
            sa.ForeignKey("product_variants.variant_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("product_title", sa.String(length=255), nullable=False),
        sa.Column("variant_title", sa.String(length=255), nullable=True),
        sa.Column("sku", sa.String(length=100), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "stripe_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=True),
        sa.Column("event_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("reservation_id", sa.String(length=64), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_stripe_events_payload_hash", "stripe_events", ["payload_hash"])
    op.create_index("ix_stripe_events_reservation_id", "stripe_events", ["reservation_id"])
    op.create_index("ix_stripe_events_order_id", "stripe_events", ["order_id"])

    op.create_table(
        "reconciliation_anomalies",
        sa.Column("anomaly_id", sa.String(length=36), primary_key=True),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("reservation_id", sa.String(length=64), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_reconciliation_anomalies_open", "reconciliation_anomalies", ["resolved_at", "created_at"]
    )
    op.create_index(
        "ix_reconciliation_anomalies_reservation", "reconciliation_anomalies", ["reservation_id"]
    )
    op.create_index("ix_reconciliation_anomalies_order", "reconciliation_anomalies", ["order_id"])

    op.create_table(
        "notification_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=True),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("reservation_id", sa.String(length=64), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("dedupe_key", name="uq_notification_events_dedupe"),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'dead', 'skipped')",
            name="ck_notification_events_status",
        ),
    )
    op.create_index("ix_notification_events_status_next", "notification_events", ["status", "next_attempt_at"])
    op.create_index("ix_notification_events_reservation", "notification_events", ["reservation_id"])

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("runner_id", sa.String(length=128), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_notification_events_reservation", table_name="notification_events")
    op.drop_index("ix_notification_events_status_next", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("ix_reconciliation_anomalies_order", table_name="reconciliation_anomalies")
    op.drop_index("ix_reconciliation_anomalies_reservation", table_name="reconciliation_anomalies")
    op.drop_index("ix_reconciliation_anomalies_open", table_name="reconciliation_anomalies")
    op.drop_table("reconciliation_anomalies")
    op.drop_index("ix_stripe_events_order_id", table_name="stripe_events")
    op.drop_index("ix_stripe_events_reservation_id", table_name="stripe_events")
    op.drop_index("ix_stripe_events_payload_hash", table_name="stripe_events")
    op.drop_table("stripe_events")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_status_created", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_product_variants_product_id", table_name="product_variants")
    op.drop_table("product_variants")
    op.drop_table("products")
    op.drop_index("ix_reservations_status_hold_expires", table_name="reservations")
    op.drop_index("ix_reservations_service_window", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("reservation_settings")
    op.drop_table("blackout_dates")
    op.drop_index("ix_availability_rules_day", table_name="availability_rules")
    op.drop_table("availability_rules")
    op.drop_table("service_deposits")
    op.drop_index("ix_services_active_position", table_name="services")
    op.drop_table("services")
