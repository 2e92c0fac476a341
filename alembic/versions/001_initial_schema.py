"""initial schema

Revision ID: 001
Create Date: 2025-06-01 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

album_type = sa.Enum('album', 'compilation', 'single', name='album_type')


def upgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        # levenshtein() for matching by title/name.
        op.execute('CREATE EXTENSION IF NOT EXISTS fuzzystrmatch;')

    op.create_table(
        'artists',
        sa.Column('spotify_id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, server_default=''),
        sa.Column('spotify_uri', sa.String(255), nullable=False, server_default=''),
        sa.Column('followers', sa.Integer, nullable=False, server_default='0'),
        sa.Column('discography_types', sa.String(64)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('followers >= 0', name='chk_artists_followers_positive'),
    )
    op.create_index('idx_artists_name', 'artists', ['name'])

    op.create_table(
        'albums',
        sa.Column('spotify_id', sa.String(64), primary_key=True),
        sa.Column('title', sa.String(512), nullable=False, server_default=''),
        sa.Column('count_tracks', sa.Integer, nullable=False, server_default='0'),
        sa.Column('release_date', sa.Date),
        sa.Column('album_type', album_type, nullable=False, server_default='album'),
        sa.Column('spotify_uri', sa.String(255), nullable=False, server_default=''),
        sa.Column('isrc', sa.String(32), nullable=False, server_default=''),
        sa.Column('ean', sa.String(32), nullable=False, server_default=''),
        sa.Column('upc', sa.String(32), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('count_tracks >= 0', name='chk_albums_count_tracks_positive'),
    )
    op.create_index('idx_albums_title', 'albums', ['title'])
    op.create_index('idx_albums_type', 'albums', ['album_type'])

    op.create_table(
        'tracks',
        sa.Column('spotify_id', sa.String(64), primary_key=True),
        sa.Column('title', sa.String(512), nullable=False, server_default=''),
        sa.Column('duration_ms', sa.Integer, nullable=False, server_default='0'),
        sa.Column('disc_num', sa.Integer, nullable=False, server_default='1'),
        sa.Column('tracklist_num', sa.Integer, nullable=False, server_default='0'),
        sa.Column('explicit', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('popularity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('spotify_uri', sa.String(255), nullable=False, server_default=''),
        sa.Column('isrc', sa.String(32), nullable=False, server_default=''),
        sa.Column('ean', sa.String(32), nullable=False, server_default=''),
        sa.Column('upc', sa.String(32), nullable=False, server_default=''),
        sa.Column('album_id', sa.String(64),
                  sa.ForeignKey('albums.spotify_id', onupdate='CASCADE', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('duration_ms >= 0', name='chk_tracks_duration_positive'),
    )
    op.create_index('idx_tracks_title', 'tracks', ['title'])
    op.create_index('idx_tracks_album_id', 'tracks', ['album_id'])
    op.create_index('idx_tracks_album_position', 'tracks', ['album_id', 'disc_num', 'tracklist_num'])

    op.create_table(
        'track_artist',
        sa.Column('track_id', sa.String(64),
                  sa.ForeignKey('tracks.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True),
        sa.Column('artist_id', sa.String(64),
                  sa.ForeignKey('artists.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True),
        sa.Column('is_main', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
    )
    op.create_index('idx_track_artist_track_id', 'track_artist', ['track_id'])
    op.create_index('idx_track_artist_artist_id', 'track_artist', ['artist_id'])

    op.create_table(
        'album_artist',
        sa.Column('album_id', sa.String(64),
                  sa.ForeignKey('albums.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True),
        sa.Column('artist_id', sa.String(64),
                  sa.ForeignKey('artists.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True),
        sa.Column('is_main', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
    )
    op.create_index('idx_album_artist_album_id', 'album_artist', ['album_id'])
    op.create_index('idx_album_artist_artist_main', 'album_artist', ['artist_id', 'is_main'])

    op.create_table(
        'images',
        sa.Column('image_id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('url', sa.String(1024), nullable=False),
        sa.Column('width', sa.Integer, nullable=False, server_default='0'),
        sa.Column('height', sa.Integer, nullable=False, server_default='0'),
        sa.Column('mime_type', sa.String(128), nullable=False, server_default=''),
        sa.Column('data', sa.LargeBinary),
        sa.UniqueConstraint('owner_id', 'url', 'width', 'height', name='uq_image'),
        sa.CheckConstraint('width >= 0 AND height >= 0', name='chk_images_size_positive'),
    )
    op.create_index('idx_images_owner_id', 'images', ['owner_id'])

    op.create_table(
        'users',
        sa.Column('user_id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(255), nullable=False),
        sa.Column('spotify_id', sa.String(128), unique=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_users_username', 'users', ['username'])

    op.create_table(
        'spotify_tokens',
        sa.Column('user_id', sa.Integer,
                  sa.ForeignKey('users.user_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True),
        sa.Column('access_token', sa.String(1024), nullable=False),
        sa.Column('refresh_token', sa.String(1024), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scope', sa.String(1024), nullable=False, server_default=''),
    )

    op.create_table(
        'plays',
        sa.Column('play_id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer,
                  sa.ForeignKey('users.user_id', onupdate='CASCADE', ondelete='CASCADE'), nullable=False),
        sa.Column('track_id', sa.String(64), nullable=False),
        sa.Column('played_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'played_at', name='uq_play'),
    )
    op.create_index('idx_plays_user_played_at', 'plays', ['user_id', 'played_at'])
    op.create_index('idx_plays_track_id', 'plays', ['track_id'])


def downgrade() -> None:
    for table in ['plays', 'spotify_tokens', 'users', 'images', 'album_artist',
                  'track_artist', 'tracks', 'albums', 'artists']:
        op.drop_table(table)

    album_type.drop(op.get_bind(), checkfirst=True)
    # fuzzystrmatch stays, other things may use it.
