"""create_generations_and_queue_jobs

Revision ID: 3f1c2a9d7b4e
Revises:
Create Date: 2026-10-18 09:12:41.318204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7b4e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy stores enum member names
generation_mode = sa.Enum("IMAGE", "VIDEO", name="generationmode")
generation_status = sa.Enum(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", name="generationstatus"
)
queue_job_status = sa.Enum("QUEUED", "ACTIVE", "COMPLETED", "FAILED", name="queuejobstatus")


def upgrade() -> None:
    """Create generation records and the durable job queue."""
    op.create_table(
        "generations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sa.String(length=1000), nullable=False),
        sa.Column("mode", generation_mode, nullable=False),
        sa.Column("model", sa.String(length=255), nullable=False),
        sa.Column("status", generation_status, nullable=False),
        sa.Column("provider_job_id", sa.String(length=255), nullable=True),
        sa.Column("queue_job_id", sa.Uuid(), nullable=True),
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("input_image_urls", sa.JSON(), nullable=True),
        sa.Column("aspect_ratio", sa.String(length=10), nullable=True),
        sa.Column("resolution", sa.String(length=10), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("fixed_lens", sa.Boolean(), nullable=False),
        sa.Column("generate_audio", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generations_status", "generations", ["status"])
    op.create_index(
        "ix_generations_provider_job_id", "generations", ["provider_job_id"], unique=True
    )
    op.create_index("ix_generations_created_at", "generations", ["created_at"])

    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("queue_name", sa.String(length=50), nullable=False),
        sa.Column("generation_id", sa.Uuid(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", queue_job_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=100), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["generation_id"], ["generations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_jobs_queue_name", "queue_jobs", ["queue_name"])
    op.create_index("ix_queue_jobs_generation_id", "queue_jobs", ["generation_id"])
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"])
    op.create_index("ix_queue_jobs_available_at", "queue_jobs", ["available_at"])


def downgrade() -> None:
    """Drop the job queue and generation records."""
    op.drop_index("ix_queue_jobs_available_at", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_status", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_generation_id", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_queue_name", table_name="queue_jobs")
    op.drop_table("queue_jobs")

    op.drop_index("ix_generations_created_at", table_name="generations")
    op.drop_index("ix_generations_provider_job_id", table_name="generations")
    op.drop_index("ix_generations_status", table_name="generations")
    op.drop_table("generations")

    queue_job_status.drop(op.get_bind(), checkfirst=True)
    generation_status.drop(op.get_bind(), checkfirst=True)
    generation_mode.drop(op.get_bind(), checkfirst=True)
