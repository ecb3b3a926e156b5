"""create charts, chart documents and processing queue

Revision ID: c1a2b3d4e5f6
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "c1a2b3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if "charts" not in tables:
        op.create_table(
            "charts",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("chart_number", sa.String(length=50), nullable=False),
            sa.Column("mrn", sa.String(length=50), nullable=True),
            sa.Column("facility", sa.String(length=255), nullable=True),
            sa.Column("specialty", sa.String(length=100), nullable=True),
            sa.Column("date_of_service", sa.Date(), nullable=True),
            sa.Column("provider", sa.String(length=255), nullable=True),
            sa.Column("ai_status", sa.String(length=50), nullable=False),
            sa.Column("review_status", sa.String(length=50), nullable=False),
            sa.Column("document_count", sa.Integer(), nullable=False),
            sa.Column("ai_summary", JSONType, nullable=True),
            sa.Column("diagnosis_codes", JSONType, nullable=True),
            sa.Column("procedures", JSONType, nullable=True),
            sa.Column("medications", JSONType, nullable=True),
            sa.Column("vitals_summary", JSONType, nullable=True),
            sa.Column("lab_results_summary", JSONType, nullable=True),
            sa.Column("coding_notes", JSONType, nullable=True),
            sa.Column("original_ai_codes", JSONType, nullable=True),
            sa.Column("sla_data", JSONType, nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False),
            sa.Column("processing_started_at", sa.DateTime(), nullable=True),
            sa.Column("processing_completed_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(op.f("ix_charts_chart_number"), "charts", ["chart_number"], unique=True)
        op.create_index(op.f("ix_charts_mrn"), "charts", ["mrn"], unique=False)
        op.create_index(op.f("ix_charts_ai_status"), "charts", ["ai_status"], unique=False)

    if "chart_documents" not in tables:
        op.create_table(
            "chart_documents",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("chart_id", sa.Integer(), nullable=False),
            sa.Column("document_type", sa.String(length=100), nullable=True),
            sa.Column("filename", sa.String(length=255), nullable=False),
            sa.Column("original_name", sa.String(length=255), nullable=True),
            sa.Column("mime_type", sa.String(length=100), nullable=True),
            sa.Column("file_size", sa.Integer(), nullable=True),
            sa.Column("s3_key", sa.String(length=500), nullable=True),
            sa.Column("s3_url", sa.String(length=1000), nullable=True),
            sa.Column("ocr_text", sa.Text(), nullable=True),
            sa.Column("ocr_status", sa.String(length=50), nullable=False),
            sa.Column("ocr_error", sa.Text(), nullable=True),
            sa.Column("ocr_processing_time", sa.Integer(), nullable=True),
            sa.Column("ocr_completed_at", sa.DateTime(), nullable=True),
            sa.Column("ai_document_summary", JSONType, nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["chart_id"], ["charts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            op.f("ix_chart_documents_chart_id"), "chart_documents", ["chart_id"], unique=False
        )

    if "processing_queue" not in tables:
        op.create_table(
            "processing_queue",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("job_id", sa.String(length=36), nullable=False),
            sa.Column("chart_id", sa.Integer(), nullable=True),
            sa.Column("chart_number", sa.String(length=50), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("payload", JSONType, nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False),
            sa.Column("max_attempts", sa.Integer(), nullable=False),
            sa.Column("worker_id", sa.String(length=100), nullable=True),
            sa.Column("locked_at", sa.DateTime(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_id"),
        )
        op.create_index(
            op.f("ix_processing_queue_chart_number"),
            "processing_queue",
            ["chart_number"],
            unique=False,
        )
        # Supports claim_next_job: WHERE status IN (...) ORDER BY created_at
        op.create_index(
            "ix_processing_queue_claim",
            "processing_queue",
            ["status", "created_at"],
            unique=False,
        )
        # Supports release_stuck_jobs: WHERE status='processing' AND locked_at < cutoff
        op.create_index(
            "ix_processing_queue_stale",
            "processing_queue",
            ["status", "locked_at"],
            unique=False,
        )


def downgrade() -> None:
    op.drop_index("ix_processing_queue_stale", table_name="processing_queue")
    op.drop_index("ix_processing_queue_claim", table_name="processing_queue")
    op.drop_index(op.f("ix_processing_queue_chart_number"), table_name="processing_queue")
    op.drop_table("processing_queue")
    op.drop_index(op.f("ix_chart_documents_chart_id"), table_name="chart_documents")
    op.drop_table("chart_documents")
    op.drop_index(op.f("ix_charts_ai_status"), table_name="charts")
    op.drop_index(op.f("ix_charts_mrn"), table_name="charts")
    op.drop_index(op.f("ix_charts_chart_number"), table_name="charts")
    op.drop_table("charts")
