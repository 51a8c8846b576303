"""ingestion jobs and work items

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS ingestion_jobs (
          job_id             UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          source_container   TEXT NOT NULL,
          source_key         TEXT NOT NULL,
          file_name          TEXT NOT NULL,
          status             TEXT NOT NULL,
          window_size        INT NOT NULL CHECK (window_size > 0),
          total_records      INT NOT NULL DEFAULT 0,
          processed_records  INT NOT NULL DEFAULT 0,
          next_start_row     INT,
          aggregate          JSONB,
          error_detail       TEXT,
          report             JSONB,
          created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
          started_at         TIMESTAMPTZ,
          completed_at       TIMESTAMPTZ,
          CHECK (status IN ('pending', 'processing', 'completed', 'failed'))
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ingestion_jobs_status_created_idx "
        "ON ingestion_jobs (status, created_at DESC);"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS work_items (
          job_id        UUID NOT NULL REFERENCES ingestion_jobs(job_id) ON DELETE CASCADE,
          issue_key     TEXT NOT NULL,
          issue_id      TEXT NOT NULL DEFAULT '',
          issue_type    TEXT NOT NULL DEFAULT '',
          status        TEXT NOT NULL DEFAULT '',
          priority      TEXT NOT NULL DEFAULT '',
          assignee      TEXT NOT NULL DEFAULT 'Unassigned',
          created       TEXT NOT NULL DEFAULT '',
          updated       TEXT NOT NULL DEFAULT '',
          resolved      TEXT,
          project_key   TEXT NOT NULL DEFAULT '',
          project_name  TEXT NOT NULL DEFAULT '',
          summary       TEXT NOT NULL DEFAULT '',
          extra         JSONB NOT NULL DEFAULT '{}'::jsonb,
          written_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (job_id, issue_key)
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS work_items_job_type_idx "
        "ON work_items (job_id, issue_type);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS work_items;")
    op.execute("DROP TABLE IF EXISTS ingestion_jobs;")
