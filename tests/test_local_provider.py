import pytest

from musicdash.errors import ResourceNotPreserved
from musicdash.preserve import Preserver
from musicdash.providers.local import LocalProvider
from musicdash.resources import Album, AlbumType, Artist

from tests.mocks.spotify import (
    CAN_ID, DAMO_ID, EGE_BAMYASI_ID, TAGO_MAGO_ID, SPOON_SINGLE_ID,
    PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID, PAPERHOUSE_ID, MUSHROOM_ID
)

pytestmark = pytest.mark.local


@pytest.fixture
async def stored_can(spotify, preserver):
    """CAN with every album and single (and their tracklists) preserved."""
    artist = await spotify.get_artist_by_id(CAN_ID, fill_level=2,
                                            album_types=[AlbumType.ALBUM, AlbumType.SINGLE])
    await preserver.preserve_artist(artist, recurse=True)
    return artist


@pytest.mark.parametrize("call", [
    lambda p: p.get_track_by_id(PINCH_ID),
    lambda p: p.get_several_tracks_by_id([PINCH_ID]),
    lambda p: p.get_track_by_match("Pinch"),
    lambda p: p.get_album_by_id(EGE_BAMYASI_ID),
    lambda p: p.get_several_albums_by_id([EGE_BAMYASI_ID]),
    lambda p: p.get_album_by_match("Ege Bamyasi"),
    lambda p: p.get_album_tracklist(Album(spotify_id=EGE_BAMYASI_ID)),
    lambda p: p.get_artist_by_id(CAN_ID),
    lambda p: p.get_artist_by_match("CAN"),
    lambda p: p.get_artist_discography(Artist(spotify_id=CAN_ID)),
])
async def test_empty_store_misses(local, call):
    with pytest.raises(ResourceNotPreserved):
        await call(local)

async def test_track_round_trip(spotify, preserver, local):
    remote = await spotify.get_track_by_id(VITAMIN_C_ID)
    await preserver.preserve_track(remote)

    track = await local.get_track_by_id(VITAMIN_C_ID)

    assert (track.title, track.duration, track.tracklist_num) == (remote.title, remote.duration, remote.tracklist_num)
    assert [a.spotify_id for a in track.artists] == [CAN_ID, DAMO_ID]
    assert track.main_artist.name == "CAN"
    assert track.album.title == "Ege Bamyasi (Remastered)"
    assert track.album.main_artist.spotify_id == CAN_ID
    assert track.album.tracks is None

async def test_batch_is_all_or_nothing(spotify, preserver, local):
    await preserver.preserve_track(await spotify.get_track_by_id(PINCH_ID))

    assert [t.spotify_id for t in await local.get_several_tracks_by_id([PINCH_ID])] == [PINCH_ID]
    with pytest.raises(ResourceNotPreserved):
        await local.get_several_tracks_by_id([PINCH_ID, MUSHROOM_ID])

async def test_images_come_without_payload(spotify, db, local):
    album = await spotify.get_album_by_id(EGE_BAMYASI_ID)
    for image in album.images:
        image.data = b"jpeg"
    await Preserver(db, with_images=True).preserve_album(album)

    stored = await local.get_album_by_id(EGE_BAMYASI_ID)
    assert [i.width for i in stored.images] == [640, 64]
    assert all(i.data is None for i in stored.images)

async def test_incomplete_tracklist_misses(spotify, preserver, local):
    # Two of Ege Bamyasi's three tracks.
    for track_id in (PINCH_ID, VITAMIN_C_ID):
        await preserver.preserve_track(await spotify.get_track_by_id(track_id))

    with pytest.raises(ResourceNotPreserved):
        await local.get_album_tracklist(Album(spotify_id=EGE_BAMYASI_ID))

    await preserver.preserve_track(await spotify.get_track_by_id(SING_SWAN_SONG_ID))
    tracks = await local.get_album_tracklist(Album(spotify_id=EGE_BAMYASI_ID))

    assert [t.spotify_id for t in tracks] == [PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID]
    assert all(t.album == Album(spotify_id=EGE_BAMYASI_ID) for t in tracks)

async def test_fill_levels(stored_can, local):
    zero = await local.get_artist_by_id(CAN_ID)
    assert zero.discography is None

    one = await local.get_artist_by_id(CAN_ID, fill_level=1)
    assert [a.spotify_id for a in one.discography] == [TAGO_MAGO_ID, EGE_BAMYASI_ID]  # By release date.
    assert all(a.tracks is None for a in one.discography)

    two = await local.get_artist_by_id(CAN_ID, fill_level=2)
    assert [[t.spotify_id for t in a.tracks] for a in two.discography] == [
        [PAPERHOUSE_ID, MUSHROOM_ID],
        [PINCH_ID, SING_SWAN_SONG_ID, VITAMIN_C_ID],
    ]

    singles = await local.get_artist_by_id(CAN_ID, fill_level=1, album_types=[AlbumType.SINGLE])
    assert [a.spotify_id for a in singles.discography] == [SPOON_SINGLE_ID]

async def test_discography_for_unstored_types_misses(spotify, preserver, local):
    artist = await spotify.get_artist_by_id(CAN_ID, fill_level=1)
    await preserver.preserve_artist(artist, recurse=True)

    assert len(await local.get_artist_discography(artist)) == 2
    with pytest.raises(ResourceNotPreserved):
        await local.get_artist_discography(artist, [AlbumType.ALBUM, AlbumType.SINGLE])

async def test_discography_never_filled_misses(stored_can, local):
    # Damo Suzuki is stored (through Vitamin C), his discography never was.
    with pytest.raises(ResourceNotPreserved):
        await local.get_artist_discography(Artist(spotify_id=DAMO_ID))

async def test_match_closest(stored_can, db):
    local = LocalProvider(db)

    assert (await local.get_track_by_match("Mushrom")).spotify_id == MUSHROOM_ID
    assert (await local.get_album_by_match("Tago Mago (Remastred)")).spotify_id == TAGO_MAGO_ID
    assert (await local.get_artist_by_match("Damo Suzki")).spotify_id == DAMO_ID

async def test_match_max_distance(stored_can, db):
    strict = LocalProvider(db, match_max_distance=2)

    assert (await strict.get_track_by_match("Pinch!")).spotify_id == PINCH_ID
    with pytest.raises(ResourceNotPreserved):
        await strict.get_track_by_match("Halleluhwah")
