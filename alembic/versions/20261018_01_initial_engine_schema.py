"""Initial claims engine schema.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


REWARD_CADENCE = ("daily", "monthly", "quarterly", "annual", "one_time")
REWARD_CLAIM_STATUS = ("claimed", "delivered")
GIFT_STATUS = ("pending", "claimed", "cancelled", "expired")
LEDGER_REASON = (
    "purchase",
    "gift_send_hold",
    "gift_cancel_refund",
    "gift_claim_credit",
    "gift_expiry_refund",
    "redemption_debit",
    "selection_swap_debit",
    "bonus_slot_debit",
    "admin_credit",
    "tier_allocation_credit",
)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamp(name: str, *, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()") if default else None,
        nullable=nullable,
    )


def upgrade() -> None:
    reward_cadence = sa.Enum(*REWARD_CADENCE, name="reward_cadence")
    reward_claim_status = sa.Enum(*REWARD_CLAIM_STATUS, name="reward_claim_status")
    gift_status = sa.Enum(*GIFT_STATUS, name="gift_status")
    ledger_reason = sa.Enum(*LEDGER_REASON, name="ledger_reason")

    op.create_table(
        "members",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("external_user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("claims_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("claims_balance >= 0", name="ck_members_claims_balance_non_negative"),
    )
    op.create_index("ix_members_external_user_id", "members", ["external_user_id"], unique=True)
    op.create_index("ix_members_email", "members", ["email"])

    op.create_table(
        "token_locks",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        _timestamp("locked_at"),
        _timestamp("released_at", nullable=True, default=False),
    )
    op.create_index("ix_token_locks_member_id", "token_locks", ["member_id"])

    op.create_table(
        "status_tiers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("badge_emoji", sa.String(), nullable=True),
        sa.Column("min_locked", sa.Numeric(18, 2), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("claims_per_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_status_tiers_name", "status_tiers", ["name"], unique=True)

    op.create_table(
        "rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sponsor", sa.String(), nullable=True),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("min_status_tier", sa.String(), nullable=True),
        sa.Column("tier_price_overrides", sa.JSON(), nullable=True),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("program", sa.String(), nullable=True),
        sa.Column("cadence", reward_cadence, nullable=True),
        sa.Column("is_giveback", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("stock_quantity IS NULL OR stock_quantity >= 0", name="ck_rewards_stock_non_negative"),
        sa.CheckConstraint("cost >= 0", name="ck_rewards_cost_non_negative"),
    )
    op.create_index("ix_rewards_slug", "rewards", ["slug"], unique=True)
    op.create_index("ix_rewards_program", "rewards", ["program"])

    op.create_table(
        "reward_claims",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column("price_paid", sa.Integer(), nullable=False),
        sa.Column("tier_name", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("status", reward_claim_status, nullable=False, server_default="claimed"),
        _timestamp("created_at"),
        sa.UniqueConstraint("member_id", "correlation_id", name="uq_reward_claims_member_correlation"),
    )
    op.create_index("ix_reward_claims_member_id", "reward_claims", ["member_id"])

    op.create_table(
        "claim_packages",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("claims_amount", sa.Integer(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", ledger_reason, nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("correlation_id", "reason", name="uq_ledger_entries_correlation_reason"),
    )
    op.create_index("ix_ledger_entries_member_id", "ledger_entries", ["member_id"])
    op.create_index("ix_ledger_entries_correlation_id", "ledger_entries", ["correlation_id"])

    op.create_table(
        "gifts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("sender_id", _uuid(), sa.ForeignKey("members.id"), nullable=True),
        sa.Column("recipient_email", sa.String(), nullable=False),
        sa.Column("recipient_id", _uuid(), sa.ForeignKey("members.id"), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("status", gift_status, nullable=False, server_default="pending"),
        sa.Column("is_admin_gift", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("client_reference", sa.String(), nullable=True),
        _timestamp("created_at"),
        _timestamp("expires_at", default=False),
        _timestamp("claimed_at", nullable=True, default=False),
        _timestamp("cancelled_at", nullable=True, default=False),
        _timestamp("expired_at", nullable=True, default=False),
        _timestamp("refunded_at", nullable=True, default=False),
        sa.CheckConstraint("amount > 0", name="ck_gifts_amount_positive"),
        sa.UniqueConstraint("sender_id", "client_reference", name="uq_gifts_sender_client_reference"),
    )
    op.create_index("ix_gifts_code", "gifts", ["code"], unique=True)
    op.create_index("ix_gifts_sender_id", "gifts", ["sender_id"])
    op.create_index("ix_gifts_recipient_email", "gifts", ["recipient_email"])
    op.create_index("ix_gifts_status_expires_at", "gifts", ["status", "expires_at"])

    op.create_table(
        "selection_programs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("program", sa.String(), nullable=False),
        sa.Column("total_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_swaps_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("member_id", "program", name="uq_selection_programs_member_program"),
        sa.CheckConstraint("free_swaps_remaining >= 0", name="ck_selection_programs_free_swaps"),
    )

    op.create_table(
        "reward_selections",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "program_id",
            _uuid(),
            sa.ForeignKey("selection_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column("is_giveback", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_redeemed_at", nullable=True, default=False),
        _timestamp("selected_at"),
        _timestamp("deactivated_at", nullable=True, default=False),
        sa.Column("replaced_by_id", _uuid(), sa.ForeignKey("reward_selections.id"), nullable=True),
    )
    op.create_index("ix_reward_selections_member_id", "reward_selections", ["member_id"])

    op.create_table(
        "selection_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "selection_id",
            _uuid(),
            sa.ForeignKey("reward_selections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("member_id", _uuid(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("redeemed_at"),
        sa.UniqueConstraint("selection_id", "period", name="uq_selection_redemptions_selection_period"),
    )


def downgrade() -> None:
    op.drop_table("selection_redemptions")
    op.drop_index("ix_reward_selections_member_id", table_name="reward_selections")
    op.drop_table("reward_selections")
    op.drop_table("selection_programs")
    op.drop_index("ix_gifts_status_expires_at", table_name="gifts")
    op.drop_index("ix_gifts_recipient_email", table_name="gifts")
    op.drop_index("ix_gifts_sender_id", table_name="gifts")
    op.drop_index("ix_gifts_code", table_name="gifts")
    op.drop_table("gifts")
    op.drop_index("ix_ledger_entries_correlation_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_member_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("claim_packages")
    op.drop_index("ix_reward_claims_member_id", table_name="reward_claims")
    op.drop_table("reward_claims")
    op.drop_index("ix_rewards_program", table_name="rewards")
    op.drop_index("ix_rewards_slug", table_name="rewards")
    op.drop_table("rewards")
    op.drop_index("ix_status_tiers_name", table_name="status_tiers")
    op.drop_table("status_tiers")
    op.drop_index("ix_token_locks_member_id", table_name="token_locks")
    op.drop_table("token_locks")
    op.drop_index("ix_members_email", table_name="members")
    op.drop_index("ix_members_external_user_id", table_name="members")
    op.drop_table("members")

    bind = op.get_bind()
    for name in ("ledger_reason", "gift_status", "reward_claim_status", "reward_cadence"):
        sa.Enum(name=name).drop(bind, checkfirst=True)
