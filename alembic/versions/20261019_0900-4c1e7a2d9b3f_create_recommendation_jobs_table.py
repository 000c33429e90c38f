"""create_recommendation_jobs_table

Revision ID: 4c1e7a2d9b3f
Revises:
Create Date: 2026-10-19 09:00:12.418203

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c1e7a2d9b3f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "recommendation_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("session_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("patient_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("job_type", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("input_data", sa.JSON(), nullable=True),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("error_message", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id"),
    )
    op.create_index("ix_recommendation_jobs_session_id", "recommendation_jobs", ["session_id"], unique=False)
    op.create_index(
        "ix_recommendation_jobs_patient_id_status", "recommendation_jobs", ["patient_id", "status"], unique=False
    )
    op.create_index(
        "ix_recommendation_jobs_claim_order", "recommendation_jobs", ["status", "priority", "created_at"], unique=False
    )
    op.create_index(
        "ix_recommendation_jobs_status_completed_at", "recommendation_jobs", ["status", "completed_at"], unique=False
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_recommendation_jobs_status_completed_at", table_name="recommendation_jobs")
    op.drop_index("ix_recommendation_jobs_claim_order", table_name="recommendation_jobs")
    op.drop_index("ix_recommendation_jobs_patient_id_status", table_name="recommendation_jobs")
    op.drop_index("ix_recommendation_jobs_session_id", table_name="recommendation_jobs")
    op.drop_table("recommendation_jobs")
