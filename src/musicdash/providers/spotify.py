import asyncio
from datetime import date, datetime, timedelta, timezone

import spotipy
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError

import logging
LOGGER = logging.getLogger(__name__)

from musicdash.errors import ResourceNotFound, SpotifyAuthError
from musicdash.providers.base import ResourceProvider, apply_fill_level
from musicdash.resources import (
    Album, AlbumType, Artist, CurrentlyPlaying, Image, Play, SearchResults, Track,
    include_groups
)
from musicdash.users import SpotifyCredentials

SCOPES = ['user-read-recently-played',
          'user-read-currently-playing',
          'user-read-playback-state']

MAX_IDS_SEVERAL_ALBUMS = 20
MAX_IDS_SEVERAL_TRACKS = 50
PAGE_SIZE = 50
MAX_RECENTLY_PLAYED = 50


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]

def _parse_release_date(value: str | None, precision: str | None = "day") -> date | None:
    if not value: return None

    try:
        match precision:
            case "year": return date(int(value[:4]), 1, 1)
            case "month": return date(int(value[:4]), int(value[5:7]), 1)
            case _: return date.fromisoformat(value[:10])
    except ValueError:
        LOGGER.warning(f"Unparseable release date '{value}' (precision {precision}).")
        return None


def _image_from_json(data: dict, owner_id: str) -> Image:
    return Image(
        owner_id=owner_id,
        url=data["url"],
        width=data.get("width") or 0,
        height=data.get("height") or 0,
    )

def _artist_from_json(data: dict) -> Artist:
    return Artist(
        spotify_id=data["id"],
        name=data.get("name", ""),
        spotify_uri=data.get("uri", ""),
        followers=(data.get("followers") or {}).get("total") or 0,
        images=[_image_from_json(i, data["id"]) for i in data.get("images") or []],
    )

def _album_from_json(data: dict) -> Album:
    """Tracks are never decoded here: an album's tracklist is only filled on request."""
    external_ids = data.get("external_ids") or {}

    return Album(
        spotify_id=data["id"],
        title=data.get("name", ""),
        count_tracks=data.get("total_tracks") or 0,
        release_date=_parse_release_date(data.get("release_date"), data.get("release_date_precision")),
        album_type=AlbumType.parse(data.get("album_type")),
        spotify_uri=data.get("uri", ""),
        isrc=external_ids.get("isrc", ""),
        ean=external_ids.get("ean", ""),
        upc=external_ids.get("upc", ""),
        artists=[_artist_from_json(a) for a in data.get("artists") or []],
        images=[_image_from_json(i, data["id"]) for i in data.get("images") or []],
    )

def _track_from_json(data: dict) -> Track:
    external_ids = data.get("external_ids") or {}
    album = data.get("album")

    return Track(
        spotify_id=data["id"],
        title=data.get("name", ""),
        duration=timedelta(milliseconds=data.get("duration_ms") or 0),
        disc_num=data.get("disc_number") or 1,
        tracklist_num=data.get("track_number") or 0,
        explicit=bool(data.get("explicit")),
        popularity=data.get("popularity") or 0,
        spotify_uri=data.get("uri", ""),
        isrc=external_ids.get("isrc", ""),
        ean=external_ids.get("ean", ""),
        upc=external_ids.get("upc", ""),
        album=_album_from_json(album) if album and album.get("id") else None,
        artists=[_artist_from_json(a) for a in data.get("artists") or []],
    )

def _play_from_json(data: dict) -> Play:
    return Play(
        played_at=datetime.fromisoformat(data["played_at"]).astimezone(timezone.utc),
        track=_track_from_json(data["track"]),
    )


def _is_not_found(e: SpotifyException) -> bool:
    if e.http_status == 404: return True
    return e.http_status == 400 and "invalid" in str(e.msg).lower()


class SpotifyProvider(ResourceProvider):
    """
    The Spotify Web API through a (per user) spotipy client.

    spotipy blocks, so every request runs in a worker thread and is cut off after timeout seconds.
    """

    name = "spotify"

    def __init__(self, sp: spotipy.Spotify, timeout: float = 15.0, page_delay: float = 0.0):
        self.sp = sp
        self.timeout = timeout
        self.page_delay = page_delay

    async def _call(self, func, *args, **kwargs):
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout)

    async def _get(self, kind: str, identifier: str, func, *args, **kwargs):
        try:
            return await self._call(func, *args, **kwargs)
        except SpotifyException as e:
            if _is_not_found(e):
                raise ResourceNotFound(kind, identifier) from e
            raise

    async def _collect_results(self, chunk: dict, data_type: str) -> list[dict]:
        items = list(chunk["items"])

        i = 0
        while chunk.get("next"):
            i += 1

            chunk = await self._call(self.sp.next, chunk)
            items.extend(chunk["items"])
            LOGGER.debug(f"Collecting {data_type}, chunk {i}.")
            if self.page_delay:
                await asyncio.sleep(self.page_delay)  # Prevent rate-limit.

        return [item for item in items if item]

    async def search(self, query: str, limit: int = 1) -> SearchResults:
        LOGGER.debug(f"Searching Spotify for '{query}' (limit {limit}).")
        res = await self._call(self.sp.search, q=query, limit=limit, type="track,album,artist")

        def items(key: str) -> list[dict]:
            return [i for i in (res.get(key) or {}).get("items", []) if i]

        return SearchResults(
            tracks=[_track_from_json(t) for t in items("tracks")],
            albums=[_album_from_json(a) for a in items("albums")],
            artists=[_artist_from_json(a) for a in items("artists")],
        )

    # Tracks

    async def get_track_by_id(self, track_id: str) -> Track:
        return _track_from_json(await self._get("track", track_id, self.sp.track, track_id))

    async def get_several_tracks_by_id(self, track_ids: list[str]) -> list[Track]:
        tracks = []
        for chunk in _chunks(track_ids, MAX_IDS_SEVERAL_TRACKS):
            res = await self._get("track", ",".join(chunk), self.sp.tracks, chunk)

            for track_id, data in zip(chunk, res["tracks"]):
                if data is None:
                    raise ResourceNotFound("track", track_id)
                tracks.append(_track_from_json(data))

        return tracks

    async def get_track_by_match(self, query: str) -> Track:
        results = await self.search(query, 1)
        if not results.tracks:
            raise ResourceNotFound("track", query)

        return await self.get_track_by_id(results.tracks[0].spotify_id)

    # Albums

    async def get_album_by_id(self, album_id: str) -> Album:
        return _album_from_json(await self._get("album", album_id, self.sp.album, album_id))

    async def get_several_albums_by_id(self, album_ids: list[str]) -> list[Album]:
        albums = []
        for chunk in _chunks(album_ids, MAX_IDS_SEVERAL_ALBUMS):
            res = await self._get("album", ",".join(chunk), self.sp.albums, chunk)

            for album_id, data in zip(chunk, res["albums"]):
                if data is None:
                    raise ResourceNotFound("album", album_id)
                albums.append(_album_from_json(data))

        return albums

    async def get_album_by_match(self, query: str) -> Album:
        results = await self.search(query, 1)
        if not results.albums:
            raise ResourceNotFound("album", query)

        return await self.get_album_by_id(results.albums[0].spotify_id)

    async def get_album_tracklist(self, album: Album) -> list[Track]:
        LOGGER.debug(f"Getting tracks of album {album}.")

        # album_tracks only has simplified tracks, the full ones come from the tracks endpoint.
        first = await self._get("album", album.spotify_id, self.sp.album_tracks, album.spotify_id, limit=PAGE_SIZE)
        items = await self._collect_results(first, "album tracks")
        track_ids = [t["id"] for t in items if t.get("id")]

        tracks = await self.get_several_tracks_by_id(track_ids)
        for track in tracks:
            track.album = Album(spotify_id=album.spotify_id)

        LOGGER.info(f"Found {len(tracks)} tracks in album {album}")
        return tracks

    # Artists

    async def get_artist_by_id(self, artist_id: str, fill_level: int = 0,
                               album_types: list[AlbumType] | None = None) -> Artist:
        artist = _artist_from_json(await self._get("artist", artist_id, self.sp.artist, artist_id))
        return await apply_fill_level(self, artist, fill_level, album_types)

    async def get_artist_by_match(self, query: str, fill_level: int = 0,
                                  album_types: list[AlbumType] | None = None) -> Artist:
        results = await self.search(query, 1)
        if not results.artists:
            raise ResourceNotFound("artist", query)

        return await self.get_artist_by_id(results.artists[0].spotify_id, fill_level, album_types)

    async def get_artist_discography(self, artist: Artist,
                                     album_types: list[AlbumType] | None = None) -> list[Album]:
        LOGGER.debug(f"Getting albums of artist {artist}.")

        first = await self._get("artist", artist.spotify_id, self.sp.artist_albums, artist.spotify_id,
                                include_groups=include_groups(album_types), limit=PAGE_SIZE)
        items = await self._collect_results(first, "artist albums")
        album_ids = list(dict.fromkeys(a["id"] for a in items if a.get("id")))

        albums = await self.get_several_albums_by_id(album_ids)
        LOGGER.info(f"Found {len(albums)} albums for artist {artist}")
        return albums

    # Player, needs a user authorized client.

    async def get_recently_played(self, limit: int = MAX_RECENTLY_PLAYED) -> list[Play]:
        """Most recent plays first."""
        limit = max(1, min(limit, MAX_RECENTLY_PLAYED))
        res = await self._call(self.sp.current_user_recently_played, limit=limit)

        plays = [_play_from_json(p) for p in res.get("items", []) if p.get("track")]
        plays.sort(key=lambda p: p.played_at, reverse=True)
        return plays

    async def get_currently_playing(self) -> CurrentlyPlaying | None:
        res = await self._call(self.sp.current_user_playing_track)

        # Nothing playing (204), or an episode/ad.
        if not res or res.get("currently_playing_type") != "track" or not res.get("item"):
            return None

        return CurrentlyPlaying(
            is_playing=bool(res.get("is_playing")),
            progress=timedelta(milliseconds=res.get("progress_ms") or 0),
            track=_track_from_json(res["item"]),
        )


class SpotifyAuth:
    """Turns stored user credentials into SpotifyProviders, refreshing expired access tokens."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 timeout: float = 15.0, expiry_margin: timedelta = timedelta(minutes=1)):
        self.timeout = timeout
        self.expiry_margin = expiry_margin
        self.oauth = SpotifyOAuth(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            scope=SCOPES,
            cache_handler=MemoryCacheHandler(),
            open_browser=False,
            requests_timeout=timeout,
        )

    async def refresh(self, credentials: SpotifyCredentials) -> SpotifyCredentials:
        LOGGER.info("Refreshing Spotify access token.")
        try:
            token_info = await asyncio.wait_for(
                asyncio.to_thread(self.oauth.refresh_access_token, credentials.refresh_token),
                timeout=self.timeout
            )
        except (SpotifyOauthError, SpotifyException) as e:
            raise SpotifyAuthError(f"Could not refresh Spotify access token: {e}") from e

        return SpotifyCredentials(
            access_token=token_info["access_token"],
            # Spotify only sometimes rotates the refresh token.
            refresh_token=token_info.get("refresh_token") or credentials.refresh_token,
            expires_at=datetime.fromtimestamp(token_info["expires_at"], tz=timezone.utc),
            scope=token_info.get("scope") or credentials.scope,
        )

    async def client_for(self, credentials: SpotifyCredentials | None,
                         now: datetime | None = None) -> tuple[SpotifyProvider, SpotifyCredentials | None]:
        """
        Provider for the user owning credentials, plus the refreshed credentials
        if a refresh was needed (None otherwise), which the caller should save.
        """
        if credentials is None or not credentials.refresh_token:
            raise SpotifyAuthError("No Spotify account linked.")

        now = now or datetime.now(timezone.utc)
        refreshed = None
        if credentials.expires_within(self.expiry_margin, now):
            credentials = refreshed = await self.refresh(credentials)

        sp = spotipy.Spotify(auth=credentials.access_token, requests_timeout=self.timeout)
        return SpotifyProvider(sp, timeout=self.timeout), refreshed
