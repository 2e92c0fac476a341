from datetime import timedelta

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import logging
LOGGER = logging.getLogger(__name__)

from musicdash import models
from musicdash.db import DatabaseManager, pass_session_capable
from musicdash.errors import ResourceNotPreserved
from musicdash.providers.base import ResourceProvider, apply_fill_level
from musicdash.resources import (
    Album, AlbumType, Artist, Image, Track,
    normalize_album_types
)

# fuzzystrmatch refuses longer arguments.
MAX_MATCH_LENGTH = 255


def _track_from_row(row: models.Track) -> Track:
    return Track(
        spotify_id=row.spotify_id,
        title=row.title,
        duration=timedelta(milliseconds=row.duration_ms),
        disc_num=row.disc_num,
        tracklist_num=row.tracklist_num,
        explicit=row.explicit,
        popularity=row.popularity,
        spotify_uri=row.spotify_uri,
        isrc=row.isrc,
        ean=row.ean,
        upc=row.upc,
    )

def _album_from_row(row: models.Album) -> Album:
    return Album(
        spotify_id=row.spotify_id,
        title=row.title,
        count_tracks=row.count_tracks,
        release_date=row.release_date,
        album_type=row.album_type,
        spotify_uri=row.spotify_uri,
        isrc=row.isrc,
        ean=row.ean,
        upc=row.upc,
    )

def _artist_from_row(row: models.Artist) -> Artist:
    return Artist(
        spotify_id=row.spotify_id,
        name=row.name,
        spotify_uri=row.spotify_uri,
        followers=row.followers,
    )

def parse_discography_types(value: str | None) -> set[AlbumType]:
    if not value: return set()
    return {AlbumType(t) for t in value.split(",") if t}


class LocalProvider(ResourceProvider):
    """
    Reads from the relational store. Anything not stored raises ResourceNotPreserved.

    Every public method takes an optional session= so nested lookups share
    one session (and with SQLite's single in-memory connection, one transaction).
    """

    name = "database"

    def __init__(self, db: DatabaseManager, match_max_distance: int | None = None):
        self.db = db
        self.match_max_distance = match_max_distance

    async def _images(self, owner_id: str, session: AsyncSession) -> list[Image]:
        # Payload stays in the database, hydrated images are metadata only.
        result = await session.execute(
            select(models.Image.owner_id, models.Image.url, models.Image.width,
                   models.Image.height, models.Image.mime_type)
            .where(models.Image.owner_id == owner_id)
            .order_by(models.Image.width.desc(), models.Image.image_id)
        )
        return [Image(owner_id=r.owner_id, url=r.url, width=r.width,
                      height=r.height, mime_type=r.mime_type)
                for r in result.all()]

    async def _closest(self, model, column, query: str, kind: str, session: AsyncSession) -> str:
        """Spotify id of the row whose column is closest to query (Levenshtein)."""
        query = query[:MAX_MATCH_LENGTH]
        distance = func.levenshtein(query, func.substr(column, 1, MAX_MATCH_LENGTH)).label("distance")

        result = await session.execute(
            select(model.spotify_id, distance)
            .order_by(distance, model.spotify_id)
            .limit(1)
        )
        if (row := result.first()) is None:
            LOGGER.debug(f"No {kind}s stored at all, can't match '{query}'.")
            raise ResourceNotPreserved(kind, query)

        if self.match_max_distance is not None and row.distance > self.match_max_distance:
            LOGGER.debug(f"Closest {kind} to '{query}' is {row.spotify_id} at distance {row.distance}, "
                         f"over the limit of {self.match_max_distance}.")
            raise ResourceNotPreserved(kind, query)

        LOGGER.debug(f"Matched '{query}' to {kind} {row.spotify_id} (distance {row.distance}).")
        return row.spotify_id

    # Tracks

    @pass_session_capable
    async def get_track_by_id(self, track_id: str, session=None, with_album: bool = True) -> Track:
        row = await session.get(models.Track, track_id)
        if row is None:
            raise ResourceNotPreserved("track", track_id)

        track = _track_from_row(row)

        if row.album_id:
            if with_album:
                try:
                    track.album = await self.get_album_by_id(row.album_id, session=session)
                except ResourceNotPreserved:
                    LOGGER.warning(f"Track {track_id} points to album {row.album_id}, which isn't stored.")
                    track.album = Album(spotify_id=row.album_id)
            else:
                track.album = Album(spotify_id=row.album_id)

        artist_ids = await session.execute(
            select(models.TrackArtist.artist_id)
            .where(models.TrackArtist.track_id == track_id)
            .order_by(models.TrackArtist.is_main.desc(), models.TrackArtist.position)
        )
        track.artists = [await self.get_artist_by_id(a, session=session)
                         for a in artist_ids.scalars().all()]

        return track

    @pass_session_capable
    async def get_several_tracks_by_id(self, track_ids: list[str], session=None) -> list[Track]:
        return [await self.get_track_by_id(t, session=session) for t in track_ids]

    @pass_session_capable
    async def get_track_by_match(self, query: str, session=None) -> Track:
        track_id = await self._closest(models.Track, models.Track.title, query, "track", session)
        return await self.get_track_by_id(track_id, session=session)

    # Albums

    @pass_session_capable
    async def get_album_by_id(self, album_id: str, session=None) -> Album:
        row = await session.get(models.Album, album_id)
        if row is None:
            raise ResourceNotPreserved("album", album_id)

        album = _album_from_row(row)

        artist_ids = await session.execute(
            select(models.AlbumArtist.artist_id)
            .where(models.AlbumArtist.album_id == album_id)
            .order_by(models.AlbumArtist.is_main.desc(), models.AlbumArtist.position)
        )
        album.artists = [await self.get_artist_by_id(a, session=session)
                         for a in artist_ids.scalars().all()]
        album.images = await self._images(album_id, session)

        return album

    @pass_session_capable
    async def get_several_albums_by_id(self, album_ids: list[str], session=None) -> list[Album]:
        return [await self.get_album_by_id(a, session=session) for a in album_ids]

    @pass_session_capable
    async def get_album_by_match(self, query: str, session=None) -> Album:
        album_id = await self._closest(models.Album, models.Album.title, query, "album", session)
        return await self.get_album_by_id(album_id, session=session)

    @pass_session_capable
    async def get_album_tracklist(self, album: Album, session=None) -> list[Track]:
        row = await session.get(models.Album, album.spotify_id)
        if row is None:
            raise ResourceNotPreserved("album", album.spotify_id)

        track_ids = (await session.execute(
            select(models.Track.spotify_id)
            .where(models.Track.album_id == album.spotify_id)
            .order_by(models.Track.disc_num, models.Track.tracklist_num)
        )).scalars().all()

        if len(track_ids) < row.count_tracks:
            LOGGER.debug(f"Only {len(track_ids)}/{row.count_tracks} tracks of {album} stored.")
            raise ResourceNotPreserved("tracklist", album.spotify_id)

        return [await self.get_track_by_id(t, session=session, with_album=False) for t in track_ids]

    # Artists

    @pass_session_capable
    async def get_artist_by_id(self, artist_id: str, fill_level: int = 0,
                               album_types: list[AlbumType] | None = None, session=None) -> Artist:
        row = await session.get(models.Artist, artist_id)
        if row is None:
            raise ResourceNotPreserved("artist", artist_id)

        artist = _artist_from_row(row)
        artist.images = await self._images(artist_id, session)

        return await apply_fill_level(self, artist, fill_level, album_types, session=session)

    @pass_session_capable
    async def get_artist_by_match(self, query: str, fill_level: int = 0,
                                  album_types: list[AlbumType] | None = None, session=None) -> Artist:
        artist_id = await self._closest(models.Artist, models.Artist.name, query, "artist", session)
        return await self.get_artist_by_id(artist_id, fill_level, album_types, session=session)

    @pass_session_capable
    async def get_artist_discography(self, artist: Artist,
                                     album_types: list[AlbumType] | None = None, session=None) -> list[Album]:
        album_types = normalize_album_types(album_types)

        row = await session.get(models.Artist, artist.spotify_id)
        if row is None:
            raise ResourceNotPreserved("artist", artist.spotify_id)

        stored_types = parse_discography_types(row.discography_types)
        if not set(album_types) <= stored_types:
            LOGGER.debug(f"Discography of {artist} stored for {sorted(t.value for t in stored_types)}, "
                         f"asked for {[t.value for t in album_types]}.")
            raise ResourceNotPreserved("discography", artist.spotify_id)

        album_ids = await session.execute(
            select(models.Album.spotify_id)
            .join(models.AlbumArtist, models.AlbumArtist.album_id == models.Album.spotify_id)
            .where(models.AlbumArtist.artist_id == artist.spotify_id,
                   models.AlbumArtist.is_main.is_(True),
                   models.Album.album_type.in_(album_types))
            .order_by(models.Album.release_date, models.Album.spotify_id)
        )
        return [await self.get_album_by_id(a, session=session) for a in album_ids.scalars().all()]
