# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

"""Add instances and subscriptions tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-02-10 09:00:00.000000

The subscriptions table is written by the payment service. It is created
here only when missing so a fresh database can run the enforcer.
"""
from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create instances and subscriptions tables."""
    from sqlalchemy import inspect

    existing_tables = inspect(op.get_bind()).get_table_names()

    op.create_table(
        "instances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("container_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("model", sa.String(length=200), nullable=False),
        sa.Column("secrets", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("stopped_at", sa.DateTime(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        mysql_charset="utf8mb4",
        mysql_collate="utf8mb4_unicode_ci",
    )
    op.create_index("ix_instances_owner_id", "instances", ["owner_id"], unique=False)
    op.create_index("idx_instance_status", "instances", ["status"], unique=False)
    op.create_index("idx_instance_container", "instances", ["container_id"], unique=False)

    if "subscriptions" not in existing_tables:
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("current_period_end", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            mysql_charset="utf8mb4",
            mysql_collate="utf8mb4_unicode_ci",
        )
        op.create_index("ix_subscriptions_id", "subscriptions", ["id"], unique=False)
        op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_instance_container", table_name="instances")
    op.drop_index("idx_instance_status", table_name="instances")
    op.drop_index("ix_instances_owner_id", table_name="instances")
    op.drop_table("instances")
    # subscriptions belongs to the payment service and is left in place
