"""Initial schema: users, requests, matches, ratings.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

For databases created with SQLModel's create_all, this migration is
stamped (not executed).
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

_user_role = sa.Enum("senior", "volunteer", "caregiver", "admin", name="userrole")
_urgency = sa.Enum("urgent", "high", "medium", "low", name="urgency")
_request_status = sa.Enum("pending", "matched", "fulfilled", "cancelled", name="requeststatus")
_match_status = sa.Enum("active", "completed", "cancelled", name="matchstatus")


def upgrade() -> None:
    # --- users (helpers and requesters share this table) ---
    op.create_table(
        "users",
        sa.Column("id", sa.INTEGER(), nullable=False),
        sa.Column("email", sa.VARCHAR(), nullable=False),
        sa.Column("first_name", sa.VARCHAR(), nullable=True),
        sa.Column("last_name", sa.VARCHAR(), nullable=True),
        sa.Column("role", _user_role, nullable=True),
        sa.Column("rating", sa.FLOAT(), nullable=False, server_default="5.0"),
        sa.Column("is_active", sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_is_active", "users", ["is_active"])

    # --- requests ---
    op.create_table(
        "requests",
        sa.Column("id", sa.INTEGER(), nullable=False),
        sa.Column("requester_id", sa.INTEGER(), nullable=False),
        sa.Column("title", sa.VARCHAR(), nullable=True),
        sa.Column("category", sa.VARCHAR(), nullable=False),
        sa.Column("description", sa.VARCHAR(), nullable=False),
        sa.Column("urgency", _urgency, nullable=False, server_default="low"),
        sa.Column("status", _request_status, nullable=False, server_default="pending"),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["requester_id"], ["users.id"]),
    )
    op.create_index("ix_requests_requester_id", "requests", ["requester_id"])
    op.create_index("ix_requests_status", "requests", ["status"])
    op.create_index("ix_requests_status_created_at", "requests", ["status", "created_at"])

    # --- matches ---
    op.create_table(
        "matches",
        sa.Column("id", sa.INTEGER(), nullable=False),
        sa.Column("request_id", sa.INTEGER(), nullable=False),
        sa.Column("helper_id", sa.INTEGER(), nullable=False),
        sa.Column("status", _match_status, nullable=False, server_default="active"),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["request_id"], ["requests.id"]),
        sa.ForeignKeyConstraint(["helper_id"], ["users.id"]),
    )
    op.create_index("ix_matches_request_id", "matches", ["request_id"])
    op.create_index("ix_matches_helper_id", "matches", ["helper_id"])
    op.create_index("ix_matches_status", "matches", ["status"])
    op.create_index(
        "ix_matches_one_active_per_request",
        "matches",
        ["request_id"],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    # --- ratings ---
    op.create_table(
        "ratings",
        sa.Column("id", sa.INTEGER(), nullable=False),
        sa.Column("match_id", sa.INTEGER(), nullable=False),
        sa.Column("rater_id", sa.INTEGER(), nullable=False),
        sa.Column("ratee_id", sa.INTEGER(), nullable=False),
        sa.Column("score", sa.INTEGER(), nullable=False),
        sa.Column("comment", sa.VARCHAR(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["match_id"], ["matches.id"]),
        sa.ForeignKeyConstraint(["rater_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["ratee_id"], ["users.id"]),
        sa.CheckConstraint("score BETWEEN 1 AND 5", name="ck_ratings_score_range"),
    )
    op.create_index("ix_ratings_match_rater", "ratings", ["match_id", "rater_id"], unique=True)
    op.create_index("ix_ratings_rater_id", "ratings", ["rater_id"])
    op.create_index("ix_ratings_ratee_id", "ratings", ["ratee_id"])


def downgrade() -> None:
    op.drop_table("ratings")
    op.drop_table("matches")
    op.drop_table("requests")
    op.drop_table("users")
    bind = op.get_bind()
    for enum_type in (_match_status, _request_status, _urgency, _user_role):
        enum_type.drop(bind, checkfirst=True)
