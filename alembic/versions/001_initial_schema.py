"""initial schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates the DriveVault tables:
  - users          → external identity (bearer token subject)
  - user_keys      → per-user password verifier: 16-byte salt + HKDF-separated PBKDF2 output
  - files          → encrypted file metadata; bodies live in the owner's Google Drive
  - google_tokens  → OAuth access/refresh tokens for Drive

All binary encryption values (salt, iv, auth_tag, key_hash) are stored as base64 text.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ─── users ──────────────────────────────────────────────────────────
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_id', 'users', ['id'], unique=False)
    op.create_index('ix_users_external_id', 'users', ['external_id'], unique=True)

    # ─── user_keys: one verifier per user ───────────────────────────────
    op.create_table(
        'user_keys',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('salt', sa.Text(), nullable=False),
        sa.Column('key_hash', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_keys_user_id', 'user_keys', ['user_id'], unique=True)

    # ─── files: per-file salt, iv and tag ───────────────────────────────
    op.create_table(
        'files',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('drive_file_id', sa.String(length=255), nullable=True),
        sa.Column('iv', sa.Text(), nullable=False),
        sa.Column('salt', sa.Text(), nullable=False),
        sa.Column('auth_tag', sa.Text(), nullable=False),
        sa.Column('file_name', sa.String(length=500), nullable=False),
        sa.Column('mime_type', sa.String(length=255), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_files_id', 'files', ['id'], unique=False)
    op.create_index('ix_files_user_id', 'files', ['user_id'], unique=False)
    op.create_index('ix_files_created_at', 'files', ['created_at'], unique=False)

    # ─── google_tokens ──────────────────────────────────────────────────
    op.create_table(
        'google_tokens',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_google_tokens_user_id', 'google_tokens', ['user_id'], unique=True)


def downgrade():
    op.drop_index('ix_google_tokens_user_id', table_name='google_tokens')
    op.drop_table('google_tokens')

    op.drop_index('ix_files_created_at', table_name='files')
    op.drop_index('ix_files_user_id', table_name='files')
    op.drop_index('ix_files_id', table_name='files')
    op.drop_table('files')

    op.drop_index('ix_user_keys_user_id', table_name='user_keys')
    op.drop_table('user_keys')

    op.drop_index('ix_users_external_id', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')
