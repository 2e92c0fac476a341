import traceback
from dataclasses import replace

import logging
LOGGER = logging.getLogger(__name__)

from musicdash.errors import PreserveError, ResourceNotFound, ResourceNotPreserved
from musicdash.preserve import Preserver
from musicdash.providers.base import ResourceProvider
from musicdash.resources import (
    Album, AlbumType, Artist, Resource, Track,
    normalize_album_types
)


class FallbackProvider(ResourceProvider):
    """
    Cache-aside over two providers: the local one first, the remote one when the
    local one misses (ResourceNotPreserved, nothing else). Whatever came from
    remote is written back through the preserver unless preserve_if_not_found is off.
    """

    name = "fallback"

    def __init__(self, local: ResourceProvider, remote: ResourceProvider,
                 preserver: Preserver | None = None, preserve_if_not_found: bool = True):
        self.local = local
        self.remote = remote
        self.preserver = preserver
        self.preserve_if_not_found = preserve_if_not_found

    @property
    def writes_through(self) -> bool:
        return self.preserve_if_not_found and self.preserver is not None

    async def _local_or_remote(self, method: str, *args, **kwargs) -> tuple[object, bool]:
        """Result, and whether it came from remote."""
        try:
            return await getattr(self.local, method)(*args, **kwargs), False
        except ResourceNotPreserved as e:
            LOGGER.debug(f"{method}: {e}, asking {self.remote.name}.")

        return await getattr(self.remote, method)(*args, **kwargs), True

    async def _write_back(self, *resources: Resource) -> None:
        if not self.writes_through: return

        for resource in resources:
            try:
                await self.preserver.preserve(resource, recurse=True)
            except PreserveError:
                LOGGER.error(f"Could not write back {type(resource).__name__.lower()} {resource}: "
                             f"{traceback.format_exc()}")

    async def _get_one(self, method: str, *args, **kwargs):
        resource, remote = await self._local_or_remote(method, *args, **kwargs)
        if remote:
            await self._write_back(resource)
        return resource

    async def _get_many(self, method: str, *args, **kwargs) -> list:
        resources, remote = await self._local_or_remote(method, *args, **kwargs)
        if remote:
            await self._write_back(*resources)
        return resources

    # Tracks

    async def get_track_by_id(self, track_id: str) -> Track:
        return await self._get_one("get_track_by_id", track_id)

    async def get_several_tracks_by_id(self, track_ids: list[str]) -> list[Track]:
        return await self._get_many("get_several_tracks_by_id", track_ids)

    async def get_track_by_match(self, query: str) -> Track:
        return await self._get_one("get_track_by_match", query)

    # Albums

    async def get_album_by_id(self, album_id: str) -> Album:
        return await self._get_one("get_album_by_id", album_id)

    async def get_several_albums_by_id(self, album_ids: list[str]) -> list[Album]:
        return await self._get_many("get_several_albums_by_id", album_ids)

    async def get_album_by_match(self, query: str) -> Album:
        return await self._get_one("get_album_by_match", query)

    async def get_album_tracklist(self, album: Album) -> list[Track]:
        tracks, remote = await self._local_or_remote("get_album_tracklist", album)
        if not remote: return tracks

        if not self.writes_through: return tracks

        # Members only know their album's id, the album itself has to carry them.
        if album.is_partial:
            try:
                album, _ = await self._local_or_remote("get_album_by_id", album.spotify_id)
            except ResourceNotFound:
                LOGGER.warning(f"Album {album.spotify_id} of fetched tracklist not found, "
                               f"writing back its tracks without it.")
                await self._write_back(*tracks)
                return tracks

        await self._write_back(replace(album, tracks=tracks))
        return tracks

    # Artists

    async def get_artist_by_id(self, artist_id: str, fill_level: int = 0,
                               album_types: list[AlbumType] | None = None) -> Artist:
        return await self._get_one("get_artist_by_id", artist_id, fill_level, album_types)

    async def get_artist_by_match(self, query: str, fill_level: int = 0,
                                  album_types: list[AlbumType] | None = None) -> Artist:
        return await self._get_one("get_artist_by_match", query, fill_level, album_types)

    async def get_artist_discography(self, artist: Artist,
                                     album_types: list[AlbumType] | None = None) -> list[Album]:
        albums, remote = await self._local_or_remote("get_artist_discography", artist, album_types)
        if not remote: return albums

        if artist.name:
            await self._write_back(replace(artist, discography=albums,
                                           discography_types=normalize_album_types(album_types)))
        else:
            await self._write_back(*albums)
        return albums
