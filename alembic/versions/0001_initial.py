"""initial media schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "conversion_status": ("NOT_STARTED", "IN_PROGRESS", "COMPLETED", "FAILED"),
    "source_format": ("XM", "IT", "MOD", "WAV", "FLAC"),
    "track_status": ("ACTIVE", "PENDING_DELETION"),
}


def _enum(name: str) -> postgresql.ENUM:
    # types are created once up front; columns only reference them
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _rendition_columns() -> list[sa.Column]:
    return [
        sa.Column("mp3_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("wav_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("flac_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("wav_conversion_status", _enum("conversion_status"), nullable=False),
        sa.Column("flac_conversion_status", _enum("conversion_status"), nullable=False),
        sa.Column("wav_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("wav_last_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("flac_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("flac_last_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waveform_data", postgresql.JSONB(), nullable=True),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("is_flac_source", sa.Boolean(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("free_quota_seconds", sa.Float(), nullable=False),
        sa.Column("paid_quota_seconds", sa.Float(), nullable=False),
        sa.Column("used_quota_seconds", sa.Float(), nullable=False),
        sa.Column("used_storage_bytes", sa.BigInteger(), nullable=False),
        sa.Column("is_over_quota", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "tracks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("original_url", sa.Text(), nullable=True),
        sa.Column(
            "original_format",
            _enum("source_format"),
            nullable=False,
        ),
        sa.Column("cover_art_url", sa.Text(), nullable=True),
        sa.Column("full_track_wav_url", sa.Text(), nullable=True),
        sa.Column("full_track_mp3_url", sa.Text(), nullable=True),
        sa.Column("full_track_flac_url", sa.Text(), nullable=True),
        sa.Column("is_fork", sa.Boolean(), nullable=False),
        sa.Column("forked_from_id", sa.Uuid(), sa.ForeignKey("tracks.id"), nullable=True),
        sa.Column(
            "status",
            _enum("track_status"),
            nullable=False,
        ),
        sa.Column("quota_seconds_charged", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        *_rendition_columns(),
    )
    op.create_index("ix_tracks_status", "tracks", ["status"])
    op.create_index("ix_tracks_user_id", "tracks", ["user_id"])

    op.create_table(
        "stems",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("track_id", sa.Uuid(), sa.ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("wav_url", sa.Text(), nullable=True),
        sa.Column("mp3_url", sa.Text(), nullable=True),
        sa.Column("flac_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        *_rendition_columns(),
    )
    op.create_index("ix_stems_track_id_index", "stems", ["track_id", "index"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notifications_user_id_created_at", "notifications", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("stems")
    op.drop_table("tracks")
    op.drop_table("users")
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        postgresql.ENUM(*values, name=name).drop(bind, checkfirst=True)
