from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Date, Boolean,
    Enum as SQLEnum, LargeBinary, Index,
    CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from musicdash.resources import AlbumType


Base = declarative_base()

SPOTIFY_ID = String(64)


class Artist(Base):
    __tablename__ = 'artists'

    spotify_id = Column(SPOTIFY_ID, primary_key=True)
    name = Column(String(255), nullable=False, default="")
    spotify_uri = Column(String(255), nullable=False, default="")
    followers = Column(Integer, nullable=False, default=0)
    # Comma separated album types the stored discography covers, NULL if it never was stored.
    discography_types = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    tracks = relationship("TrackArtist", back_populates="artist")
    albums = relationship("AlbumArtist", back_populates="artist")

    __table_args__ = (
        Index('idx_artists_name', 'name'),
        CheckConstraint('followers >= 0', name='chk_artists_followers_positive'),
    )

class Album(Base):
    __tablename__ = 'albums'

    spotify_id = Column(SPOTIFY_ID, primary_key=True)
    title = Column(String(512), nullable=False, default="")
    count_tracks = Column(Integer, nullable=False, default=0)
    release_date = Column(Date)
    album_type = Column(SQLEnum(AlbumType, name="album_type",
                                values_callable=lambda e: [m.value for m in e]),
                        nullable=False, default=AlbumType.ALBUM)
    spotify_uri = Column(String(255), nullable=False, default="")
    isrc = Column(String(32), nullable=False, default="")
    ean = Column(String(32), nullable=False, default="")
    upc = Column(String(32), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    artists = relationship("AlbumArtist", back_populates="album", cascade="all, delete-orphan")
    tracks = relationship("Track", back_populates="album")

    __table_args__ = (
        Index('idx_albums_title', 'title'),
        Index('idx_albums_type', 'album_type'),
        CheckConstraint('count_tracks >= 0', name='chk_albums_count_tracks_positive'),
    )

class Track(Base):
    __tablename__ = 'tracks'

    spotify_id = Column(SPOTIFY_ID, primary_key=True)
    title = Column(String(512), nullable=False, default="")
    duration_ms = Column(Integer, nullable=False, default=0)
    disc_num = Column(Integer, nullable=False, default=1)
    tracklist_num = Column(Integer, nullable=False, default=0)
    explicit = Column(Boolean, nullable=False, default=False)
    popularity = Column(Integer, nullable=False, default=0)
    spotify_uri = Column(String(255), nullable=False, default="")
    isrc = Column(String(32), nullable=False, default="")
    ean = Column(String(32), nullable=False, default="")
    upc = Column(String(32), nullable=False, default="")
    album_id = Column(SPOTIFY_ID, ForeignKey('albums.spotify_id', onupdate='CASCADE', ondelete='SET NULL'))
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    album = relationship("Album", back_populates="tracks")
    artists = relationship("TrackArtist", back_populates="track", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_tracks_title', 'title'),
        Index('idx_tracks_album_id', 'album_id'),
        Index('idx_tracks_album_position', 'album_id', 'disc_num', 'tracklist_num'),
        CheckConstraint('duration_ms >= 0', name='chk_tracks_duration_positive'),
    )

class TrackArtist(Base):
    __tablename__ = 'track_artist'

    track_id = Column(SPOTIFY_ID, ForeignKey('tracks.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True)
    artist_id = Column(SPOTIFY_ID, ForeignKey('artists.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True)
    is_main = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)

    track = relationship("Track", back_populates="artists")
    artist = relationship("Artist", back_populates="tracks")

    __table_args__ = (
        Index('idx_track_artist_track_id', 'track_id'),
        Index('idx_track_artist_artist_id', 'artist_id'),
    )

class AlbumArtist(Base):
    __tablename__ = 'album_artist'

    album_id = Column(SPOTIFY_ID, ForeignKey('albums.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True)
    artist_id = Column(SPOTIFY_ID, ForeignKey('artists.spotify_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True)
    is_main = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)

    album = relationship("Album", back_populates="artists")
    artist = relationship("Artist", back_populates="albums")

    __table_args__ = (
        Index('idx_album_artist_album_id', 'album_id'),
        Index('idx_album_artist_artist_main', 'artist_id', 'is_main'),
    )

class Image(Base):
    __tablename__ = 'images'

    image_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(SPOTIFY_ID, nullable=False)  # Track, album or artist, hence no FK.
    url = Column(String(1024), nullable=False)
    width = Column(Integer, nullable=False, default=0)
    height = Column(Integer, nullable=False, default=0)
    mime_type = Column(String(128), nullable=False, default="")
    data = Column(LargeBinary)

    __table_args__ = (
        UniqueConstraint('owner_id', 'url', 'width', 'height', name='uq_image'),
        Index('idx_images_owner_id', 'owner_id'),
        CheckConstraint('width >= 0 AND height >= 0', name='chk_images_size_positive'),
    )


class User(Base):
    __tablename__ = 'users'

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=False)
    spotify_id = Column(String(128), unique=True)
    # Watermark of the last successful play sync, NULL if never synced.
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=func.now())

    spotify_token = relationship("SpotifyToken", back_populates="user", uselist=False, cascade="all, delete-orphan")
    plays = relationship("PlayRecord", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_users_username', 'username'),
    )

class SpotifyToken(Base):
    __tablename__ = 'spotify_tokens'

    user_id = Column(Integer, ForeignKey('users.user_id', onupdate='CASCADE', ondelete='CASCADE'), primary_key=True)
    access_token = Column(String(1024), nullable=False)
    refresh_token = Column(String(1024), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    scope = Column(String(1024), nullable=False, default="")

    user = relationship("User", back_populates="spotify_token")

class PlayRecord(Base):
    __tablename__ = 'plays'

    play_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer,
                     ForeignKey('users.user_id',
                                onupdate='CASCADE',
                                ondelete='CASCADE'),
                     nullable=False)
    # Plain column: plays are stored before (or without) their track being cached.
    track_id = Column(SPOTIFY_ID, nullable=False)
    played_at = Column(DateTime(timezone=True), nullable=False)

    user = relationship("User", back_populates="plays")

    __table_args__ = (
        # A user can't start two plays at the same instant.
        UniqueConstraint('user_id', 'played_at', name='uq_play'),
        Index('idx_plays_user_played_at', 'user_id', 'played_at'),
        Index('idx_plays_track_id', 'track_id'),
    )
