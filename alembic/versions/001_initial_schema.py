"""Initial RepoBrief schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSION = 768

ID_DEFAULT = sa.text("gen_random_uuid()::text")
NOW = sa.text("now()")


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        'projects',
        sa.Column('id', sa.Text(), primary_key=True, server_default=ID_DEFAULT),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('github_url', sa.Text(), nullable=False),
        sa.Column('github_token', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'source_code_embeddings',
        sa.Column('id', sa.Text(), primary_key=True, server_default=ID_DEFAULT),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_name', sa.Text(), nullable=False),
        sa.Column('source_code', sa.Text(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.UniqueConstraint('project_id', 'file_name', name='uq_source_code_embeddings_project_file'),
    )
    # pgvector column types are not known to SQLAlchemy, so the column is added in SQL
    op.execute(
        f"ALTER TABLE source_code_embeddings ADD COLUMN summary_embedding vector({EMBEDDING_DIMENSION}) NOT NULL"
    )
    op.create_index('idx_source_code_embeddings_project', 'source_code_embeddings', ['project_id'])
    op.execute("""
        CREATE INDEX idx_source_code_embeddings_vector
        ON source_code_embeddings USING ivfflat (summary_embedding vector_cosine_ops)
        WITH (lists = 100)
    """)

    op.create_table(
        'commits',
        sa.Column('id', sa.Text(), primary_key=True, server_default=ID_DEFAULT),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('commit_hash', sa.Text(), nullable=False),
        sa.Column('commit_message', sa.Text(), nullable=False),
        sa.Column('commit_author_name', sa.Text(), nullable=False),
        sa.Column('commit_author_avatar', sa.Text(), nullable=False),
        sa.Column('commit_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
        sa.UniqueConstraint('project_id', 'commit_hash', name='uq_commits_project_hash'),
    )
    op.create_index('idx_commits_project_date', 'commits', ['project_id', 'commit_date'])

    op.create_table(
        'questions',
        sa.Column('id', sa.Text(), primary_key=True, server_default=ID_DEFAULT),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=True),
        sa.Column('question', sa.Text(), nullable=False),
        sa.Column('answer', sa.Text(), nullable=False),
        sa.Column('file_references', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )
    op.create_index('idx_questions_project', 'questions', ['project_id'])

    op.create_table(
        'meetings',
        sa.Column('id', sa.Text(), primary_key=True, server_default=ID_DEFAULT),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('meeting_url', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='PROCESSING'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )
    op.create_index('idx_meetings_project', 'meetings', ['project_id'])

    op.create_table(
        'meeting_issues',
        sa.Column('id', sa.Text(), primary_key=True, server_default=ID_DEFAULT),
        sa.Column('meeting_id', sa.Text(), sa.ForeignKey('meetings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.Text(), nullable=False),
        sa.Column('end_time', sa.Text(), nullable=False),
        sa.Column('gist', sa.Text(), nullable=False),
        sa.Column('headline', sa.Text(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=NOW),
    )
    op.create_index('idx_meeting_issues_meeting', 'meeting_issues', ['meeting_id', 'position'])


def downgrade() -> None:
    op.drop_index('idx_meeting_issues_meeting')
    op.drop_table('meeting_issues')
    op.drop_index('idx_meetings_project')
    op.drop_table('meetings')
    op.drop_index('idx_questions_project')
    op.drop_table('questions')
    op.drop_index('idx_commits_project_date')
    op.drop_table('commits')
    op.execute("DROP INDEX IF EXISTS idx_source_code_embeddings_vector")
    op.drop_index('idx_source_code_embeddings_project')
    op.drop_table('source_code_embeddings')
    op.drop_table('projects')
