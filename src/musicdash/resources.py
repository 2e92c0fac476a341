from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum


class AlbumType(Enum):
    ALBUM = "album"
    COMPILATION = "compilation"
    SINGLE = "single"

    @classmethod
    def parse(cls, value: str | None) -> "AlbumType":
        # Spotify also knows "appears_on" as an include group, which never is an album_type.
        try:
            return cls(value)
        except ValueError:
            return cls.ALBUM


DEFAULT_ALBUM_TYPES = (AlbumType.ALBUM,)

def normalize_album_types(album_types) -> tuple[AlbumType, ...]:
    """Empty or missing filters mean regular albums only."""
    if not album_types:
        return DEFAULT_ALBUM_TYPES

    # Keep caller order, drop duplicates.
    return tuple(dict.fromkeys(AlbumType(t) for t in album_types))

def include_groups(album_types) -> str:
    return ",".join(t.value for t in normalize_album_types(album_types))


@dataclass
class Image:
    """
    A picture of the resource identified by owner_id.

    data is None until the image has been downloaded, b"" would mean an empty
    download. Preserving an image downloads it first if needed.
    """
    owner_id: str
    url: str
    width: int = 0
    height: int = 0
    mime_type: str = ""
    data: bytes | None = None

    @property
    def is_downloaded(self) -> bool: return self.data is not None


@dataclass
class Artist:
    spotify_id: str
    name: str = ""
    spotify_uri: str = ""
    followers: int = 0
    images: list[Image] = field(default_factory=list)

    # None: never filled. Filled only on demand (fill level >= 1).
    discography: list["Album"] | None = None
    discography_types: tuple[AlbumType, ...] | None = None

    def __str__(self): return f"{self.name} ({self.spotify_id})"


@dataclass
class Album:
    spotify_id: str
    title: str = ""
    count_tracks: int = 0
    release_date: date | None = None
    album_type: AlbumType = AlbumType.ALBUM
    spotify_uri: str = ""
    isrc: str = ""
    ean: str = ""
    upc: str = ""

    artists: list[Artist] = field(default_factory=list)  # artists[0] is the main performer.
    images: list[Image] = field(default_factory=list)

    # None: tracklist not filled, [] means the album has no tracks.
    tracks: list["Track"] | None = None

    @property
    def main_artist(self) -> Artist | None:
        return self.artists[0] if self.artists else None

    @property
    def is_partial(self) -> bool:
        """Only the id is known, like the album of a tracklist member."""
        return not self.title and not self.artists

    def __str__(self): return f"{self.title} ({self.spotify_id})"


@dataclass
class Track:
    spotify_id: str
    title: str = ""
    duration: timedelta = timedelta(0)
    disc_num: int = 1
    tracklist_num: int = 0
    explicit: bool = False
    popularity: int = 0
    spotify_uri: str = ""
    isrc: str = ""
    ean: str = ""
    upc: str = ""

    # Only album.spotify_id is meaningful for tracks that came out of a tracklist.
    album: Album | None = None
    artists: list[Artist] = field(default_factory=list)  # artists[0] is the main performer.

    @property
    def main_artist(self) -> Artist | None:
        return self.artists[0] if self.artists else None

    @property
    def album_id(self) -> str | None:
        if self.album is None or not self.album.spotify_id:
            return None
        return self.album.spotify_id

    def __str__(self): return f"{self.title} ({self.spotify_id})"


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

@dataclass
class Play:
    played_at: datetime
    track: Track

    @classmethod
    def sentinel(cls) -> "Play":
        """Stand-in for 'no plays stored yet', older than anything Spotify returns."""
        return cls(played_at=EPOCH, track=Track(spotify_id=""))


@dataclass
class CurrentlyPlaying:
    is_playing: bool
    progress: timedelta
    track: Track


@dataclass
class SearchResults:
    """Search hits are usually less complete than their Get<Resource>ById counterparts."""
    tracks: list[Track] = field(default_factory=list)
    albums: list[Album] = field(default_factory=list)
    artists: list[Artist] = field(default_factory=list)


Resource = Track | Album | Artist | Image


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes, everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
