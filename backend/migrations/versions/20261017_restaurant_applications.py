"""Add restaurant applications

Revision ID: 20261017_restaurant_applications
Revises: 20261001_initial
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_restaurant_applications"
down_revision = "20261001_initial"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "restaurant_applications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("applicant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("delivery_fee", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(255), nullable=True),
        sa.Column("restaurant_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["applicant_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["reviewed_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["restaurant_id"], ["restaurants.id"]),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_restaurant_applications_status",
        ),
        sa.CheckConstraint("delivery_fee >= 0", name="ck_restaurant_applications_delivery_fee"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("restaurant_applications", schema=None) as batch_op:
        batch_op.create_index("ix_restaurant_applications_applicant_id", ["applicant_id"], unique=False)
        batch_op.create_index("ix_restaurant_applications_status", ["status"], unique=False)

    # At most one pending application per applicant
    op.create_index(
        "uq_restaurant_applications_one_pending",
        "restaurant_applications",
        ["applicant_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade():
    op.drop_index("uq_restaurant_applications_one_pending", table_name="restaurant_applications")
    op.drop_table("restaurant_applications")
