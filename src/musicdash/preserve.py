import asyncio

import requests
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

import logging
LOGGER = logging.getLogger(__name__)

from musicdash import models
from musicdash.db import DatabaseManager, dialect_insert, pass_session_capable
from musicdash.errors import PreserveError
from musicdash.providers.local import parse_discography_types
from musicdash.resources import Album, Artist, Image, Resource, Track, normalize_album_types


def download_image(image: Image, timeout: float = 15.0) -> Image:
    """Fill in image.data and image.mime_type (from Content-Type). Blocking."""
    LOGGER.debug(f"Downloading image {image.url}")
    response = requests.get(image.url, timeout=timeout)
    response.raise_for_status()

    image.data = response.content
    image.mime_type = response.headers.get("Content-Type", "").split(";")[0].strip()
    return image


class Preserver:
    """
    Writes resources, and whatever they reference, to the database.

    A top-level preserve_*() runs in its own transaction and either stores the
    whole graph or nothing (PreserveError). Base rows are upserted, relation
    rows only ever inserted, so preserving the same thing twice changes nothing
    but refreshed attributes.

    Referenced albums and artists are always stored. recurse decides whether an
    album's tracklist and an artist's discography (when filled) go along.
    Images only do when with_images is set, since each one is a download.
    """

    def __init__(self, db: DatabaseManager, with_images: bool = False, download_timeout: float = 15.0):
        self.db = db
        self.with_images = with_images
        self.download_timeout = download_timeout

    # Existence

    async def _exists(self, model, spotify_id: str, session: AsyncSession) -> bool:
        result = await session.execute(select(model.spotify_id).where(model.spotify_id == spotify_id))
        return result.first() is not None

    @pass_session_capable
    async def is_track_preserved(self, track: Track, session=None) -> bool:
        return await self._exists(models.Track, track.spotify_id, session)

    @pass_session_capable
    async def is_album_preserved(self, album: Album, session=None) -> bool:
        return await self._exists(models.Album, album.spotify_id, session)

    @pass_session_capable
    async def is_artist_preserved(self, artist: Artist, session=None) -> bool:
        return await self._exists(models.Artist, artist.spotify_id, session)

    @pass_session_capable
    async def is_image_preserved(self, image: Image, session=None) -> bool:
        result = await session.execute(
            select(models.Image.image_id)
            .where(models.Image.owner_id == image.owner_id,
                   models.Image.url == image.url,
                   models.Image.width == image.width,
                   models.Image.height == image.height)
        )
        return result.first() is not None

    async def is_preserved(self, resource: Resource) -> bool:
        match resource:
            case Track(): return await self.is_track_preserved(resource)
            case Album(): return await self.is_album_preserved(resource)
            case Artist(): return await self.is_artist_preserved(resource)
            case Image(): return await self.is_image_preserved(resource)
            case _: raise TypeError(f"Can't check preservation of {type(resource).__name__}.")

    # Top level

    async def _top_level(self, resource: Resource, preserve, recurse: bool) -> None:
        try:
            async with self.db.get_session() as s:
                await preserve(resource, recurse, s, set())
        except Exception as e:
            raise PreserveError(resource, e) from e

        LOGGER.debug(f"Preserved {type(resource).__name__.lower()} {resource} (recurse={recurse}).")

    async def preserve_track(self, track: Track, recurse: bool = True, session=None, visited=None) -> None:
        if session is None:
            return await self._top_level(track, self._preserve_track, recurse)
        await self._preserve_track(track, recurse, session, visited if visited is not None else set())

    async def preserve_album(self, album: Album, recurse: bool = True, session=None, visited=None) -> None:
        if session is None:
            return await self._top_level(album, self._preserve_album, recurse)
        await self._preserve_album(album, recurse, session, visited if visited is not None else set())

    async def preserve_artist(self, artist: Artist, recurse: bool = True, session=None, visited=None) -> None:
        if session is None:
            return await self._top_level(artist, self._preserve_artist, recurse)
        await self._preserve_artist(artist, recurse, session, visited if visited is not None else set())

    async def preserve_image(self, image: Image, recurse: bool = True, session=None, visited=None) -> None:
        if session is None:
            return await self._top_level(image, self._preserve_image, recurse)
        await self._preserve_image(image, recurse, session, visited if visited is not None else set())

    async def preserve(self, resource: Resource, recurse: bool = True) -> None:
        match resource:
            case Track(): await self.preserve_track(resource, recurse)
            case Album(): await self.preserve_album(resource, recurse)
            case Artist(): await self.preserve_artist(resource, recurse)
            case Image(): await self.preserve_image(resource, recurse)
            case _: raise TypeError(f"Can't preserve {type(resource).__name__}.")

    # Rows

    async def _upsert(self, session: AsyncSession, model, values: dict, index_elements: list[str]) -> None:
        insert = dialect_insert(session)
        update_values = {k: v for k, v in values.items() if k not in index_elements}
        if hasattr(model, "updated_at"):
            update_values["updated_at"] = func.now()

        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=update_values)
        await session.execute(stmt)

    async def _link(self, session: AsyncSession, model, values: dict, index_elements: list[str]) -> None:
        insert = dialect_insert(session)
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        await session.execute(stmt)

    async def _ensure(self, kind: str, model, resource, preserve, recurse: bool,
                      session: AsyncSession, visited: set) -> None:
        # Anything visited already has its row, its cascade is just not done yet.
        if (kind, resource.spotify_id) in visited: return
        if await self._exists(model, resource.spotify_id, session): return

        await preserve(resource, recurse, session, visited)

    async def _preserve_images(self, images: list[Image], session: AsyncSession, visited: set) -> None:
        if not self.with_images: return

        for image in images:
            if not await self.is_image_preserved(image, session=session):
                await self._preserve_image(image, False, session, visited)

    async def _preserve_image(self, image: Image, recurse: bool, session: AsyncSession, visited: set) -> None:
        if image.data is None:
            await asyncio.to_thread(download_image, image, self.download_timeout)

        await self._upsert(session, models.Image, dict(
            owner_id=image.owner_id,
            url=image.url,
            width=image.width,
            height=image.height,
            mime_type=image.mime_type,
            data=image.data,
        ), ['owner_id', 'url', 'width', 'height'])

    async def _preserve_artist(self, artist: Artist, recurse: bool, session: AsyncSession, visited: set) -> None:
        key = ("artist", artist.spotify_id)
        if key in visited: return
        visited.add(key)

        await self._upsert(session, models.Artist, dict(
            spotify_id=artist.spotify_id,
            name=artist.name,
            spotify_uri=artist.spotify_uri,
            followers=artist.followers,
        ), ['spotify_id'])

        await self._preserve_images(artist.images, session, visited)

        if not recurse or artist.discography is None: return

        for album in artist.discography:
            if ("album", album.spotify_id) in visited: continue

            if await self._exists(models.Album, album.spotify_id, session):
                # Stored before, maybe without its tracklist.
                visited.add(("album", album.spotify_id))
                await self._preserve_tracklist(album, recurse, session, visited)
            else:
                await self._preserve_album(album, recurse, session, visited)

        # Only now can the local store answer discography lookups for these types.
        stored = (await session.execute(
            select(models.Artist.discography_types).where(models.Artist.spotify_id == artist.spotify_id)
        )).scalar_one_or_none()
        types = parse_discography_types(stored) | set(normalize_album_types(artist.discography_types))

        await session.execute(
            update(models.Artist)
            .where(models.Artist.spotify_id == artist.spotify_id)
            .values(discography_types=",".join(sorted(t.value for t in types)))
        )

    async def _preserve_album(self, album: Album, recurse: bool, session: AsyncSession, visited: set) -> None:
        key = ("album", album.spotify_id)
        if key in visited: return
        visited.add(key)

        await self._upsert(session, models.Album, dict(
            spotify_id=album.spotify_id,
            title=album.title,
            count_tracks=album.count_tracks,
            release_date=album.release_date,
            album_type=album.album_type,
            spotify_uri=album.spotify_uri,
            isrc=album.isrc,
            ean=album.ean,
            upc=album.upc,
        ), ['spotify_id'])

        for idx, artist in enumerate(album.artists):
            await self._ensure("artist", models.Artist, artist, self._preserve_artist, recurse, session, visited)
            await self._link(session, models.AlbumArtist, dict(
                album_id=album.spotify_id,
                artist_id=artist.spotify_id,
                is_main=idx == 0,
                position=idx,
            ), ['album_id', 'artist_id'])

        await self._preserve_images(album.images, session, visited)

        if not recurse: return
        await self._preserve_tracklist(album, recurse, session, visited)

    async def _preserve_tracklist(self, album: Album, recurse: bool, session: AsyncSession, visited: set) -> None:
        if album.tracks is None: return

        for track in album.tracks:
            await self._ensure("track", models.Track, track, self._preserve_track, recurse, session, visited)

        # Tracks stored earlier without their album still belong to this tracklist.
        if track_ids := [t.spotify_id for t in album.tracks]:
            await session.execute(
                update(models.Track)
                .where(models.Track.spotify_id.in_(track_ids), models.Track.album_id.is_(None))
                .values(album_id=album.spotify_id)
            )

    async def _preserve_track(self, track: Track, recurse: bool, session: AsyncSession, visited: set) -> None:
        key = ("track", track.spotify_id)
        if key in visited: return
        visited.add(key)

        # The album row has to exist before a track can reference it.
        album_id = track.album_id
        if (album_id is not None and ("album", album_id) not in visited
                and not await self._exists(models.Album, album_id, session)):
            if track.album.is_partial:
                LOGGER.debug(f"Album {album_id} of track {track} is unknown and not stored, not linking it.")
                album_id = None
            else:
                await self._preserve_album(track.album, recurse, session, visited)

        values = dict(
            spotify_id=track.spotify_id,
            title=track.title,
            duration_ms=int(track.duration.total_seconds() * 1000),
            disc_num=track.disc_num,
            tracklist_num=track.tracklist_num,
            explicit=track.explicit,
            popularity=track.popularity,
            spotify_uri=track.spotify_uri,
            isrc=track.isrc,
            ean=track.ean,
            upc=track.upc,
        )
        if album_id is not None:
            values["album_id"] = album_id
        await self._upsert(session, models.Track, values, ['spotify_id'])

        for idx, artist in enumerate(track.artists):
            await self._ensure("artist", models.Artist, artist, self._preserve_artist, recurse, session, visited)
            await self._link(session, models.TrackArtist, dict(
                track_id=track.spotify_id,
                artist_id=artist.spotify_id,
                is_main=idx == 0,
                position=idx,
            ), ['track_id', 'artist_id'])
