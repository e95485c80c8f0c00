"""create_projects_and_clips

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "1a2b3c4d5e6f"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clip_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("project_id"),
    )

    op.create_table(
        "clips",
        sa.Column("clip_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("original_name", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
        # Derived clips only
        sa.Column("source_clip_id", sa.String(length=36), nullable=True),
        sa.Column("operation", sa.JSON(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.project_id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["source_clip_id"], ["clips.clip_id"]),
        sa.PrimaryKeyConstraint("clip_id"),
        sa.UniqueConstraint("project_id", "sequence", name="uq_clips_project_sequence"),
    )

    op.create_index("ix_clips_project_id", "clips", ["project_id"])
    op.create_index("ix_clips_source_clip_id", "clips", ["source_clip_id"])


def downgrade() -> None:
    op.drop_index("ix_clips_source_clip_id", table_name="clips")
    op.drop_index("ix_clips_project_id", table_name="clips")
    op.drop_table("clips")
    op.drop_table("projects")
