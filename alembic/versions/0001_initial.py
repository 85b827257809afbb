"""Initial schema: participants, wish lists, draws, assignments, purchases.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
ACTIVE_PREDICATE = sa.text("status IN ('pending', 'submitted')")


def upgrade() -> None:
    op.create_table(
        "participants",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("nickname", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False),
        sa.Column("tos_agreed", sa.Boolean(), nullable=False),
        sa.Column("guide_checked", sa.Boolean(), nullable=False),
        sa.Column("referral_code", sa.String(length=32), nullable=True),
        sa.Column("referred_by_id", ID_TYPE, nullable=True),
        sa.Column("referral_count", sa.Integer(), nullable=False),
        sa.Column("wishlist_url", sa.Text(), nullable=True),
        sa.Column("tickets_bronze", sa.Integer(), nullable=False),
        sa.Column("tickets_silver", sa.Integer(), nullable=False),
        sa.Column("tickets_gold", sa.Integer(), nullable=False),
        sa.Column("tickets_red", sa.Integer(), nullable=False),
        sa.Column("total_tickets", sa.Integer(), nullable=False),
        sa.Column("can_use_ticket", sa.Boolean(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "referral_count >= 0",
            name=op.f("ck_participants_referral_count_non_negative"),
        ),
        sa.CheckConstraint(
            "tickets_bronze >= 0 AND tickets_silver >= 0 "
            "AND tickets_gold >= 0 AND tickets_red >= 0",
            name=op.f("ck_participants_ticket_counts_non_negative"),
        ),
        sa.ForeignKeyConstraint(
            ["referred_by_id"],
            ["participants.id"],
            name=op.f("fk_participants_referred_by_id_participants"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_participants")),
        sa.UniqueConstraint("email", name=op.f("uq_participants_email")),
        sa.UniqueConstraint("referral_code", name=op.f("uq_participants_referral_code")),
    )
    op.create_index(
        op.f("ix_participants_status"), "participants", ["status"], unique=False
    )

    op.create_table(
        "wishlists",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("participant_id", ID_TYPE, nullable=False),
        sa.Column("primary_item_name", sa.String(length=255), nullable=False),
        sa.Column("primary_item_url", sa.Text(), nullable=True),
        sa.Column("budget_min", sa.Integer(), nullable=True),
        sa.Column("budget_max", sa.Integer(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["participant_id"],
            ["participants.id"],
            name=op.f("fk_wishlists_participant_id_participants"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_wishlists")),
        sa.UniqueConstraint("participant_id", name=op.f("uq_wishlists_participant_id")),
    )

    op.create_table(
        "draws",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", ID_TYPE, nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("reveal_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reward_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["participants.id"],
            name=op.f("fk_draws_owner_id_participants"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draws")),
    )
    op.create_index(op.f("ix_draws_owner_id"), "draws", ["owner_id"], unique=False)
    op.create_index("ix_draws_reveal_at", "draws", ["reveal_at"], unique=False)

    op.create_table(
        "assignments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("buyer_id", ID_TYPE, nullable=False),
        sa.Column("target_id", ID_TYPE, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("purchase_ref", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recipient_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'submitted', 'completed')",
            name=op.f("ck_assignments_assignment_status_valid"),
        ),
        sa.CheckConstraint(
            "buyer_id <> target_id", name=op.f("ck_assignments_assignment_not_self")
        ),
        sa.ForeignKeyConstraint(
            ["buyer_id"],
            ["participants.id"],
            name=op.f("fk_assignments_buyer_id_participants"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["target_id"],
            ["participants.id"],
            name=op.f("fk_assignments_target_id_participants"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_assignments")),
    )
    op.create_index(
        op.f("ix_assignments_buyer_id"), "assignments", ["buyer_id"], unique=False
    )
    op.create_index(
        op.f("ix_assignments_target_id"), "assignments", ["target_id"], unique=False
    )
    # At most one active reservation per target and per buyer.
    op.create_index(
        "uq_assignments_active_target",
        "assignments",
        ["target_id"],
        unique=True,
        sqlite_where=ACTIVE_PREDICATE,
        postgresql_where=ACTIVE_PREDICATE,
    )
    op.create_index(
        "uq_assignments_active_buyer",
        "assignments",
        ["buyer_id"],
        unique=True,
        sqlite_where=ACTIVE_PREDICATE,
        postgresql_where=ACTIVE_PREDICATE,
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("buyer_id", ID_TYPE, nullable=False),
        sa.Column("assignment_id", sa.Integer(), nullable=True),
        sa.Column("proof_ref", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["assignment_id"],
            ["assignments.id"],
            name=op.f("fk_purchases_assignment_id_assignments"),
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["buyer_id"],
            ["participants.id"],
            name=op.f("fk_purchases_buyer_id_participants"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_purchases")),
    )
    op.create_index(
        op.f("ix_purchases_buyer_id"), "purchases", ["buyer_id"], unique=False
    )

    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", name=op.f("pk_system_settings")),
    )

    op.create_table(
        "token_budget",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "balance >= 0", name=op.f("ck_token_budget_balance_non_negative")
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_token_budget")),
    )


def downgrade() -> None:
    op.drop_table("token_budget")
    op.drop_table("system_settings")
    op.drop_index(op.f("ix_purchases_buyer_id"), table_name="purchases")
    op.drop_table("purchases")
    op.drop_index("uq_assignments_active_buyer", table_name="assignments")
    op.drop_index("uq_assignments_active_target", table_name="assignments")
    op.drop_index(op.f("ix_assignments_target_id"), table_name="assignments")
    op.drop_index(op.f("ix_assignments_buyer_id"), table_name="assignments")
    op.drop_table("assignments")
    op.drop_index("ix_draws_reveal_at", table_name="draws")
    op.drop_index(op.f("ix_draws_owner_id"), table_name="draws")
    op.drop_table("draws")
    op.drop_table("wishlists")
    op.drop_index(op.f("ix_participants_status"), table_name="participants")
    op.drop_table("participants")
