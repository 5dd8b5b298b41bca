"""Initial escrow settlement and contract locking schema

Revision ID: 20261019_settlement_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_settlement_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(32), nullable=False),
        sa.Column("listing_ref", sa.String(64), nullable=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("counterparty_id", sa.String(64), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("base_amount", sa.BigInteger(), nullable=False),
        sa.Column("deposit_amount", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("document_path", sa.String(500), nullable=True),
        sa.Column("document_hash", sa.String(64), nullable=True),
        sa.Column("status", sa.String(24), nullable=False, server_default="UNSIGNED"),
        sa.Column("fully_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retraction_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retraction_expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        sa.Column("seal_hash", sa.String(64), nullable=True),
        sa.Column("archive_hash", sa.String(64), nullable=True),
        sa.Column("archive_path", sa.String(500), nullable=True),
        sa.Column("encryption_algorithm", sa.String(32), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retention_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("contracts", schema=None) as batch_op:
        batch_op.create_index("ix_contracts_reference", ["reference"], unique=True)
        batch_op.create_index("ix_contracts_listing_ref", ["listing_ref"], unique=False)
        batch_op.create_index("ix_contracts_owner_id", ["owner_id"], unique=False)
        batch_op.create_index("ix_contracts_counterparty_id", ["counterparty_id"], unique=False)
        batch_op.create_index("ix_contracts_status", ["status"], unique=False)
        batch_op.create_index("ix_contracts_locked", ["locked"], unique=False)
        batch_op.create_index("ix_contracts_status_deadline", ["status", "retraction_deadline"], unique=False)

    op.create_table(
        "contract_signatures",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("signature_id", sa.String(32), nullable=False),
        sa.Column("party_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("signature_hash", sa.String(64), nullable=False),
        sa.Column("origin_ip", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(255), nullable=True),
        sa.Column("verification_method", sa.String(16), nullable=False, server_default="OTP"),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("signature_id"),
        sa.UniqueConstraint("contract_id", "party_id", name="uq_contract_signatures_party"),
        sa.UniqueConstraint("contract_id", "role", name="uq_contract_signatures_role"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("contract_signatures", schema=None) as batch_op:
        batch_op.create_index("ix_contract_signatures_contract_id", ["contract_id"], unique=False)

    op.create_table(
        "integrity_audits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("file_path", sa.String(500), nullable=False),
        sa.Column("original_hash", sa.String(64), nullable=False),
        sa.Column("encrypted_hash", sa.String(64), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("algorithm", sa.String(32), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retention_until", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contract_id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(32), nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("payee_id", sa.String(64), nullable=False),
        sa.Column("rent_amount", sa.BigInteger(), nullable=False),
        sa.Column("deposit_amount", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("platform_fee", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("loyalty_tier", sa.String(16), nullable=False, server_default="bronze"),
        sa.Column("commission_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("discount_rate", sa.Numeric(6, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("settlement_mode", sa.String(16), nullable=False, server_default="ESCROW"),
        sa.Column("status", sa.String(16), nullable=False, server_default="INITIATED"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entered_escrow_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payee_amount", sa.BigInteger(), nullable=True),
        sa.Column("refund_amount", sa.BigInteger(), nullable=True),
        sa.Column("retained_commission", sa.BigInteger(), nullable=True),
        sa.Column("refund_reason", sa.String(255), nullable=True),
        sa.Column("gateway", sa.String(32), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(128), nullable=True),
        sa.Column("webhook_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("receipt_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("receipt_reference", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint(
            "total_amount = rent_amount + deposit_amount + platform_fee",
            name="ck_payments_total_matches_components",
        ),
        sa.CheckConstraint("rent_amount >= 0", name="ck_payments_rent_non_negative"),
        sa.CheckConstraint("deposit_amount >= 0", name="ck_payments_deposit_non_negative"),
        sa.CheckConstraint("platform_fee >= 0", name="ck_payments_fee_non_negative"),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("payments", schema=None) as batch_op:
        batch_op.create_index("ix_payments_reference", ["reference"], unique=True)
        batch_op.create_index("ix_payments_contract_id", ["contract_id"], unique=False)
        batch_op.create_index("ix_payments_payer_id", ["payer_id"], unique=False)
        batch_op.create_index("ix_payments_payee_id", ["payee_id"], unique=False)
        batch_op.create_index("ix_payments_status", ["status"], unique=False)
        batch_op.create_index("ix_payments_gateway_transaction_id", ["gateway_transaction_id"], unique=False)
        batch_op.create_index("ix_payments_status_escrow", ["status", "entered_escrow_at"], unique=False)

    op.create_table(
        "escrow_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(24), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("party_id", sa.String(64), nullable=True),
        sa.Column("settles", sa.Boolean(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("note", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("escrow_movements", schema=None) as batch_op:
        batch_op.create_index("ix_escrow_movements_payment_id", ["payment_id"], unique=False)
        batch_op.create_index("ix_escrow_movements_movement_type", ["movement_type"], unique=False)
        batch_op.create_index("ix_escrow_movements_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_escrow_movements_payment_occurred", ["payment_id", "occurred_at"], unique=False)
        batch_op.create_index("uq_escrow_movements_single_settlement", ["payment_id", "settles"], unique=True)

    op.create_table(
        "escrow_timeouts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("fire_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("escrow_timeouts", schema=None) as batch_op:
        batch_op.create_index("ix_escrow_timeouts_status_fire", ["status", "fire_at"], unique=False)

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(32), nullable=True),
        sa.Column("payment_id", sa.Integer(), nullable=True),
        sa.Column("contract_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="OPEN"),
        sa.Column("opened_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("disputes", schema=None) as batch_op:
        batch_op.create_index("ix_disputes_payment_id", ["payment_id"], unique=False)
        batch_op.create_index("ix_disputes_contract_id", ["contract_id"], unique=False)
        batch_op.create_index("ix_disputes_payment_status", ["payment_id", "status"], unique=False)

    op.create_table(
        "settlement_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("from_state", sa.String(24), nullable=True),
        sa.Column("to_state", sa.String(24), nullable=True),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("note", sa.String(255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_settlement_events_entity_seq"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("settlement_events", schema=None) as batch_op:
        batch_op.create_index("ix_settlement_events_entity", ["entity_type", "entity_id"], unique=False)
        batch_op.create_index("ix_settlement_events_event_type", ["event_type"], unique=False)
        batch_op.create_index("ix_settlement_events_occurred_at", ["occurred_at"], unique=False)


def downgrade():
    op.drop_table("settlement_events")
    op.drop_table("disputes")
    op.drop_table("escrow_timeouts")
    op.drop_table("escrow_movements")
    op.drop_table("payments")
    op.drop_table("integrity_audits")
    op.drop_table("contract_signatures")
    op.drop_table("contracts")
