import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from sqlalchemy.exc import OperationalError

from musicdash.errors import ResourceNotFound, ResourceNotPreserved
from musicdash.providers.fallback import FallbackProvider
from musicdash.resources import Album, AlbumType

from tests.mocks.providers import FailingPreserver, RaisingProvider
from tests.mocks.spotify import (
    CAN_ID, EGE_BAMYASI_ID, TAGO_MAGO_ID,
    PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID, PAPERHOUSE_ID, MUSHROOM_ID
)

pytestmark = pytest.mark.fallback


@pytest.fixture
def fallback(local, spotify, preserver):
    return FallbackProvider(local, spotify, preserver)


async def test_local_hit_never_goes_remote(spotify, preserver, spotifake, fallback):
    await preserver.preserve_track(await spotify.get_track_by_id(PINCH_ID))
    spotifake.calls.clear()

    track = await fallback.get_track_by_id(PINCH_ID)

    assert track.spotify_id == PINCH_ID
    assert spotifake.calls == []

async def test_miss_goes_remote_and_writes_through(spotifake, preserver, fallback):
    track = await fallback.get_track_by_id(VITAMIN_C_ID)

    assert track.title == "Vitamin C"
    assert spotifake.called("track") == 1
    assert await preserver.is_track_preserved(track)
    assert await preserver.is_album_preserved(track.album)

    # Second time it's a cache hit.
    again = await fallback.get_track_by_id(VITAMIN_C_ID)
    assert spotifake.called("track") == 1
    assert [a.spotify_id for a in again.artists] == [a.spotify_id for a in track.artists]

async def test_write_through_off(local, spotify, preserver):
    fallback = FallbackProvider(local, spotify, preserver, preserve_if_not_found=False)
    track = await fallback.get_track_by_id(PINCH_ID)

    assert not await preserver.is_track_preserved(track)
    assert not FallbackProvider(local, spotify).writes_through

async def test_missing_everywhere_is_remote_not_found(fallback):
    with pytest.raises(ResourceNotFound) as e:
        await fallback.get_album_by_id("doesnotexist")

    assert not isinstance(e.value, ResourceNotPreserved)
    assert e.value.source == "spotify"

async def test_local_errors_are_not_misses(spotify, spotifake):
    broken = RaisingProvider(OperationalError("SELECT 1", {}, Exception("database is locked")))
    fallback = FallbackProvider(broken, spotify)

    with pytest.raises(OperationalError):
        await fallback.get_track_by_id(PINCH_ID)
    assert spotifake.calls == []

async def test_remote_errors_propagate(local, preserver):
    offline = RaisingProvider(RequestsConnectionError("api.spotify.com unreachable"))
    fallback = FallbackProvider(local, offline, preserver)

    with pytest.raises(RequestsConnectionError):
        await fallback.get_artist_by_id(CAN_ID)
    assert [m for m, _ in offline.calls] == ["get_artist_by_id"]

async def test_failed_write_back_still_returns(local, spotify):
    failing = FailingPreserver()
    fallback = FallbackProvider(local, spotify, failing)

    tracks = await fallback.get_several_tracks_by_id([PINCH_ID, MUSHROOM_ID])

    assert [t.spotify_id for t in tracks] == [PINCH_ID, MUSHROOM_ID]
    assert failing.attempts == 2

async def test_batch_miss_fetches_whole_batch(spotify, preserver, spotifake, fallback):
    await preserver.preserve_album(await spotify.get_album_by_id(EGE_BAMYASI_ID))
    spotifake.calls.clear()

    albums = await fallback.get_several_albums_by_id([EGE_BAMYASI_ID, TAGO_MAGO_ID])

    assert [a.spotify_id for a in albums] == [EGE_BAMYASI_ID, TAGO_MAGO_ID]
    assert spotifake.calls == [("albums", [EGE_BAMYASI_ID, TAGO_MAGO_ID])]

async def test_tracklist_write_back_completes_album(spotifake, local, fallback):
    album = await fallback.get_album_by_id(EGE_BAMYASI_ID)
    tracks = await fallback.get_album_tracklist(album)
    assert [t.spotify_id for t in tracks] == [PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID]

    spotifake.calls.clear()
    cached = await fallback.get_album_tracklist(album)

    assert [t.spotify_id for t in cached] == [PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID]
    assert spotifake.calls == []

async def test_artist_fill_level_write_back(spotifake, local, fallback):
    await fallback.get_artist_by_id(CAN_ID, fill_level=1)

    spotifake.calls.clear()
    artist = await local.get_artist_by_id(CAN_ID, fill_level=1)

    assert {a.spotify_id for a in artist.discography} == {EGE_BAMYASI_ID, TAGO_MAGO_ID}
    assert spotifake.calls == []

    # Singles were never asked for, so that's a miss.
    with pytest.raises(ResourceNotPreserved):
        await local.get_artist_discography(artist, [AlbumType.SINGLE])

async def test_discography_write_back(spotifake, local, fallback):
    artist = await fallback.get_artist_by_id(CAN_ID)
    albums = await fallback.get_artist_discography(artist, [AlbumType.SINGLE])
    assert len(albums) == 1

    spotifake.calls.clear()
    assert len(await fallback.get_artist_discography(artist, [AlbumType.SINGLE])) == 1
    assert spotifake.calls == []

async def test_match(spotifake, fallback):
    track = await fallback.get_track_by_match("Mushroom")
    assert track.spotify_id == MUSHROOM_ID

    spotifake.calls.clear()
    assert (await fallback.get_track_by_match("Mushroom")).spotify_id == MUSHROOM_ID
    assert spotifake.calls == []

async def test_artist_tracklists_fill_for_stored_albums(spotifake, fallback):
    # Ege Bamyasi is stored without its tracklist first.
    await fallback.get_album_by_id(EGE_BAMYASI_ID)
    await fallback.get_artist_by_id(CAN_ID, fill_level=2)

    spotifake.calls.clear()
    artist = await fallback.get_artist_by_id(CAN_ID, fill_level=2)

    assert spotifake.calls == []
    assert [[t.spotify_id for t in a.tracks] for a in artist.discography] == [
        [PAPERHOUSE_ID, MUSHROOM_ID],
        [PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID],
    ]

async def test_partial_album_tracklist_keeps_album(spotifake, fallback):
    tracks = await fallback.get_album_tracklist(Album(spotify_id=EGE_BAMYASI_ID))
    assert len(tracks) == 3

    spotifake.calls.clear()
    track = await fallback.get_track_by_id(PINCH_ID)

    assert spotifake.calls == []
    assert track.album.spotify_id == EGE_BAMYASI_ID
    assert track.album.title == "Ege Bamyasi (Remastered)"

    assert len(await fallback.get_album_tracklist(Album(spotify_id=EGE_BAMYASI_ID))) == 3
    assert spotifake.calls == []

async def test_partial_album_tracklist_without_write_through(spotifake, local, spotify):
    fallback = FallbackProvider(local, spotify)
    await fallback.get_album_tracklist(Album(spotify_id=EGE_BAMYASI_ID))

    assert spotifake.called("album") == 0
