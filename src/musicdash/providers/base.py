from abc import ABC, abstractmethod

import logging
LOGGER = logging.getLogger(__name__)

from musicdash.resources import Album, AlbumType, Artist, Track, normalize_album_types


class ResourceProvider(ABC):
    """
    Uniform read interface over wherever the music data lives.

    Every lookup raises ResourceNotFound (or a subclass) when the resource does not
    exist at this provider, anything else (database, network, timeouts) is raised
    unchanged. Batch lookups are all or nothing: the first failure aborts.

    Albums never come with their tracklist filled, use get_album_tracklist() or
    fill_tracklist() for that.

    fill_level on artists is a lower bound:
        0   no discography
        1   discography, albums without tracklists
        2+  discography with tracklists
    An implementation may hand out more than asked for, never less.

    album_types filters discographies, empty/None means regular albums only.
    """

    name = "provider"

    @abstractmethod
    async def get_track_by_id(self, track_id: str) -> Track: ...

    @abstractmethod
    async def get_several_tracks_by_id(self, track_ids: list[str]) -> list[Track]: ...

    @abstractmethod
    async def get_track_by_match(self, query: str) -> Track: ...

    @abstractmethod
    async def get_album_by_id(self, album_id: str) -> Album: ...

    @abstractmethod
    async def get_several_albums_by_id(self, album_ids: list[str]) -> list[Album]: ...

    @abstractmethod
    async def get_album_by_match(self, query: str) -> Album: ...

    @abstractmethod
    async def get_artist_by_id(self, artist_id: str, fill_level: int = 0,
                               album_types: list[AlbumType] | None = None) -> Artist: ...

    @abstractmethod
    async def get_artist_by_match(self, query: str, fill_level: int = 0,
                                  album_types: list[AlbumType] | None = None) -> Artist: ...

    @abstractmethod
    async def get_artist_discography(self, artist: Artist,
                                     album_types: list[AlbumType] | None = None) -> list[Album]: ...

    @abstractmethod
    async def get_album_tracklist(self, album: Album) -> list[Track]: ...


async def fill_tracklist(provider: ResourceProvider, album: Album, **kwargs) -> Album:
    album.tracks = await provider.get_album_tracklist(album, **kwargs)
    return album

async def fill_discography(provider: ResourceProvider, artist: Artist,
                           album_types=None, fill_tracklists: bool = False, **kwargs) -> Artist:
    """
    Fetch the artist's discography (and optionally every tracklist) through provider.
    Extra kwargs go to every provider call, LocalProvider uses that to stay in one session.
    """
    album_types = normalize_album_types(album_types)

    discography = await provider.get_artist_discography(artist, list(album_types), **kwargs)
    if fill_tracklists:
        for album in discography:
            if album.tracks is None:
                await fill_tracklist(provider, album, **kwargs)

    artist.discography = discography
    artist.discography_types = album_types
    LOGGER.debug(f"Filled discography of {artist} via {provider.name}: {len(discography)} albums "
                 f"({'with' if fill_tracklists else 'without'} tracklists).")
    return artist

async def apply_fill_level(provider: ResourceProvider, artist: Artist,
                           fill_level: int, album_types=None, **kwargs) -> Artist:
    if fill_level > 0:
        await fill_discography(provider, artist, album_types, fill_tracklists=fill_level > 1, **kwargs)
    return artist
