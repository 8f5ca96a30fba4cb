"""Participants, deliberations, ideas, cells, votes, comments and events.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _uuid(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), nullable=nullable, **kwargs)


def _enum(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.String(length=16), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "participants",
        _uuid("id", primary_key=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("api_key_prefix", sa.String(length=16), nullable=False),
        sa.Column("api_key_hash", sa.String(length=255), nullable=False),
        sa.Column("is_agent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_participants_api_key_prefix", "participants", ["api_key_prefix"])

    op.create_table(
        "deliberations",
        _uuid("id", primary_key=True),
        sa.Column("question", sa.Text(), nullable=False),
        _uuid("creator_id"),
        _enum("phase"),
        sa.Column("current_tier", sa.Integer(), nullable=False),
        sa.Column("challenge_round", sa.Integer(), nullable=False),
        _enum("allocation_mode"),
        _enum("voting_mode"),
        _enum("advancement_policy"),
        sa.Column("group_quorum", sa.Boolean(), nullable=False),
        sa.Column("cell_voters_target", sa.Integer(), nullable=False),
        sa.Column("voting_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("submission_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accumulation_enabled", sa.Boolean(), nullable=False),
        sa.Column("accumulation_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("accumulation_threshold", sa.Integer(), nullable=True),
        sa.Column("accumulation_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supermajority_enabled", sa.Boolean(), nullable=False),
        sa.Column("one_idea_per_author", sa.Boolean(), nullable=False),
        sa.Column("idea_cap", sa.Integer(), nullable=True),
        _uuid("must_vote_participant_id", nullable=True),
        _uuid("champion_id", nullable=True),
        sa.Column("champion_entered_tier", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["creator_id"], ["participants.id"]),
        sa.ForeignKeyConstraint(["must_vote_participant_id"], ["participants.id"]),
    )
    op.create_index("ix_deliberations_phase", "deliberations", ["phase"])

    op.create_table(
        "deliberation_members",
        _uuid("id", primary_key=True),
        _uuid("deliberation_id"),
        _uuid("participant_id"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
        sa.UniqueConstraint("deliberation_id", "participant_id", name="uq_members_deliberation_participant"),
    )

    op.create_table(
        "tiers",
        _uuid("id", primary_key=True),
        _uuid("deliberation_id"),
        sa.Column("challenge_round", sa.Integer(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        _enum("status"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extended", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
        sa.UniqueConstraint("deliberation_id", "challenge_round", "number", name="uq_tiers_round_number"),
    )

    op.create_table(
        "ideas",
        _uuid("id", primary_key=True),
        _uuid("deliberation_id"),
        _uuid("author_id"),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False),
        _enum("status"),
        sa.Column("times_presented", sa.Integer(), nullable=False),
        sa.Column("total_points", sa.Integer(), nullable=False),
        sa.Column("total_voters", sa.Integer(), nullable=False),
        sa.Column("losses", sa.Integer(), nullable=False),
        sa.Column("is_new", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
        sa.ForeignKeyConstraint(["author_id"], ["participants.id"]),
    )
    op.create_index("ix_ideas_deliberation_status", "ideas", ["deliberation_id", "status"])
    op.create_index("ix_ideas_deliberation_author", "ideas", ["deliberation_id", "author_id"])

    op.create_table(
        "cells",
        _uuid("id", primary_key=True),
        _uuid("deliberation_id"),
        sa.Column("challenge_round", sa.Integer(), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False),
        _enum("status"),
        sa.Column("votes_needed", sa.Integer(), nullable=False),
        sa.Column("group_quorum", sa.Boolean(), nullable=False),
        sa.Column("is_final_vote", sa.Boolean(), nullable=False),
        sa.Column("reserved_for_humans_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("voting_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deadline_extended", sa.Boolean(), nullable=False),
        sa.Column("finalizes_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by_timeout", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
    )
    op.create_index("ix_cells_deliberation_round_tier", "cells", ["deliberation_id", "challenge_round", "tier"])
    op.create_index("ix_cells_status_finalizes_at", "cells", ["status", "finalizes_at"])

    op.create_table(
        "cell_ideas",
        _uuid("id", primary_key=True),
        _uuid("cell_id"),
        _uuid("idea_id"),
        sa.Column("total_points", sa.Integer(), nullable=False),
        sa.Column("total_voters", sa.Integer(), nullable=False),
        _enum("outcome", nullable=True),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["idea_id"], ["ideas.id"]),
        sa.UniqueConstraint("cell_id", "idea_id", name="uq_cell_ideas_cell_idea"),
    )
    op.create_index("ix_cell_ideas_idea_id", "cell_ideas", ["idea_id"])

    op.create_table(
        "cell_participants",
        _uuid("id", primary_key=True),
        _uuid("cell_id"),
        _uuid("participant_id"),
        sa.Column("group_key", sa.String(length=64), nullable=True),
        _enum("status"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("voted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
        sa.UniqueConstraint("cell_id", "participant_id", name="uq_cell_participants_cell_participant"),
    )
    op.create_index("ix_cell_participants_participant_id", "cell_participants", ["participant_id"])

    op.create_table(
        "votes",
        _uuid("id", primary_key=True),
        _uuid("cell_id"),
        _uuid("participant_id"),
        _uuid("idea_id"),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("voted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
        sa.ForeignKeyConstraint(["idea_id"], ["ideas.id"]),
        sa.UniqueConstraint("cell_id", "participant_id", "idea_id", name="uq_votes_cell_participant_idea"),
    )
    op.create_index("ix_votes_cell_id", "votes", ["cell_id"])

    op.create_table(
        "reservations",
        _uuid("id", primary_key=True),
        _uuid("cell_id"),
        _uuid("participant_id"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
        sa.UniqueConstraint("cell_id", "participant_id", name="uq_reservations_cell_participant"),
    )
    op.create_index("ix_reservations_expires_at", "reservations", ["expires_at"])

    op.create_table(
        "comments",
        _uuid("id", primary_key=True),
        _uuid("cell_id"),
        _uuid("idea_id", nullable=True),
        _uuid("author_id"),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("upvote_count", sa.Integer(), nullable=False),
        sa.Column("reach_tier", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cell_id"], ["cells.id"]),
        sa.ForeignKeyConstraint(["idea_id"], ["ideas.id"]),
        sa.ForeignKeyConstraint(["author_id"], ["participants.id"]),
    )
    op.create_index("ix_comments_cell_id", "comments", ["cell_id"])
    op.create_index("ix_comments_idea_id", "comments", ["idea_id"])

    op.create_table(
        "comment_upvotes",
        _uuid("id", primary_key=True),
        _uuid("comment_id"),
        _uuid("participant_id"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["comment_id"], ["comments.id"]),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
        sa.UniqueConstraint("comment_id", "participant_id", name="uq_comment_upvotes_comment_participant"),
    )

    op.create_table(
        "events",
        _uuid("id", primary_key=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _uuid("deliberation_id", nullable=True),
        _uuid("actor_participant_id", nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deliberation_id"], ["deliberations.id"]),
        sa.ForeignKeyConstraint(["actor_participant_id"], ["participants.id"]),
    )
    op.create_index("ix_events_created_at_id", "events", ["created_at", "id"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("comment_upvotes")
    op.drop_table("comments")
    op.drop_table("reservations")
    op.drop_table("votes")
    op.drop_table("cell_participants")
    op.drop_table("cell_ideas")
    op.drop_table("cells")
    op.drop_table("ideas")
    op.drop_table("tiers")
    op.drop_table("deliberation_members")
    op.drop_table("deliberations")
    op.drop_table("participants")
