from dataclasses import replace
from datetime import timedelta

import pytest
from hypothesis import given, settings, HealthCheck
from sqlalchemy import select

from musicdash import models
from musicdash.errors import PreserveError
from musicdash.preserve import Preserver
from musicdash.resources import Album, AlbumType, Artist, Image, Track

from tests.conftest import fresh_db, count_rows, table_counts
from tests.strategies.resources import track_strat, album_with_tracks_strat

pytestmark = pytest.mark.preserve


def can() -> Artist:
    return Artist(spotify_id="can", name="CAN", followers=612_000)

def damo() -> Artist:
    return Artist(spotify_id="damo", name="Damo Suzuki")

def ege_bamyasi(tracks=None) -> Album:
    return Album(spotify_id="ege", title="Ege Bamyasi", count_tracks=3,
                 album_type=AlbumType.ALBUM, artists=[can()], tracks=tracks)

def vitamin_c(album: Album | None = None) -> Track:
    return Track(spotify_id="vitc", title="Vitamin C", duration=timedelta(seconds=212),
                 tracklist_num=3, album=album if album is not None else ege_bamyasi(),
                 artists=[can(), damo()])

async def relation_flags(db, model, owner_column, owner_id) -> dict[str, bool]:
    async with db.get_session() as s:
        result = await s.execute(select(model.artist_id, model.is_main).where(owner_column == owner_id))
        return dict(result.all())


@given(track=track_strat())
@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
async def test_preserve_is_idempotent(track):
    """Preserving the same track again doesn't add a single row."""
    async with fresh_db() as db:
        preserver = Preserver(db)

        await preserver.preserve_track(track)
        first = await table_counts(db)
        await preserver.preserve_track(track)

        assert await table_counts(db) == first
        assert await preserver.is_track_preserved(track)

@given(track=track_strat(album=None))
@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
async def test_only_first_artist_is_main(track):
    async with fresh_db() as db:
        await Preserver(db).preserve_track(track)

        flags = await relation_flags(db, models.TrackArtist, models.TrackArtist.track_id, track.spotify_id)
        assert flags == {a.spotify_id: idx == 0 for idx, a in enumerate(track.artists)}

        if track.album_id:
            album_flags = await relation_flags(db, models.AlbumArtist, models.AlbumArtist.album_id, track.album_id)
            assert album_flags == {a.spotify_id: idx == 0 for idx, a in enumerate(track.album.artists)}

@given(album=album_with_tracks_strat())
@settings(max_examples=15, deadline=None, suppress_health_check=[HealthCheck.too_slow])
async def test_recursive_album_stores_whole_tracklist(album):
    async with fresh_db() as db:
        await Preserver(db).preserve_album(album, recurse=True)

        stored = await count_rows(db, models.Track, models.Track.album_id == album.spotify_id)
        assert stored == len(album.tracks)


async def test_track_cascades_to_album_and_artists(db, preserver):
    track = vitamin_c()
    await preserver.preserve_track(track)

    assert await preserver.is_album_preserved(track.album)
    assert await preserver.is_artist_preserved(can())
    assert await preserver.is_artist_preserved(damo())

    async with db.get_session() as s:
        assert (await s.get(models.Track, "vitc")).album_id == "ege"

async def test_non_recursive_album_skips_tracks(preserver):
    album = ege_bamyasi(tracks=[vitamin_c(Album(spotify_id="ege"))])
    await preserver.preserve_album(album, recurse=False)

    assert await preserver.is_album_preserved(album)
    assert await preserver.is_artist_preserved(can())
    assert not await preserver.is_track_preserved(album.tracks[0])

async def test_track_without_album(db, preserver):
    for album in (None, Album(spotify_id="")):
        track = replace(vitamin_c(), album=album)
        await preserver.preserve_track(track)

        async with db.get_session() as s:
            assert (await s.get(models.Track, "vitc")).album_id is None

    assert await count_rows(db, models.Album) == 0

async def test_unknown_partial_album_is_not_linked(db, preserver):
    await preserver.preserve_track(vitamin_c(Album(spotify_id="ege")))

    assert await count_rows(db, models.Album) == 0
    async with db.get_session() as s:
        assert (await s.get(models.Track, "vitc")).album_id is None

    # Once the album itself comes along with its tracklist, the track joins it.
    await preserver.preserve_album(ege_bamyasi(tracks=[vitamin_c(Album(spotify_id="ege"))]))
    async with db.get_session() as s:
        assert (await s.get(models.Track, "vitc")).album_id == "ege"

async def test_repeat_refreshes_attributes_not_relations(db, preserver):
    await preserver.preserve_track(vitamin_c())

    renamed = replace(vitamin_c(), title="Vitamin C (Remastered)", popularity=80, artists=[damo()])
    await preserver.preserve_track(renamed)

    async with db.get_session() as s:
        row = await s.get(models.Track, "vitc")
        assert (row.title, row.popularity) == ("Vitamin C (Remastered)", 80)

    flags = await relation_flags(db, models.TrackArtist, models.TrackArtist.track_id, "vitc")
    assert flags == {"can": True, "damo": False}

async def test_failure_rolls_back_everything(db, preserver):
    broken = replace(vitamin_c(), duration=timedelta(seconds=-1))

    with pytest.raises(PreserveError) as e:
        await preserver.preserve_track(broken)

    assert e.value.__cause__ is not None
    assert e.value.resource is broken
    assert set((await table_counts(db)).values()) == {0}

async def test_cyclic_graph_terminates(db, preserver):
    """Artist -> discography -> album -> tracklist -> track -> same album and artist."""
    artist = can()
    album = ege_bamyasi()
    album.artists = [artist]
    album.tracks = [Track(spotify_id=f"t{i}", title=f"Track {i}", tracklist_num=i,
                          album=album, artists=[artist]) for i in range(1, 4)]
    artist.discography = [album]
    artist.discography_types = (AlbumType.ALBUM,)

    await preserver.preserve_artist(artist, recurse=True)

    assert await count_rows(db, models.Track, models.Track.album_id == "ege") == 3
    async with db.get_session() as s:
        assert (await s.get(models.Artist, "can")).discography_types == "album"

async def test_discography_types_accumulate(db, preserver):
    artist = can()
    artist.discography, artist.discography_types = [ege_bamyasi()], (AlbumType.ALBUM,)
    await preserver.preserve_artist(artist)

    single = Album(spotify_id="spoon", title="Spoon", count_tracks=1,
                   album_type=AlbumType.SINGLE, artists=[can()])
    artist.discography, artist.discography_types = [single], (AlbumType.SINGLE,)
    await preserver.preserve_artist(artist)

    async with db.get_session() as s:
        assert (await s.get(models.Artist, "can")).discography_types == "album,single"

async def test_images_only_when_asked(db):
    artist = can()
    artist.images = [Image(owner_id="can", url="https://i.scdn.co/image/can", width=640, height=640,
                           mime_type="image/jpeg", data=b"\xff\xd8")]

    await Preserver(db).preserve_artist(artist)
    assert await count_rows(db, models.Image) == 0

    with_images = Preserver(db, with_images=True)
    await with_images.preserve_artist(artist)
    await with_images.preserve_artist(artist)
    assert await count_rows(db, models.Image) == 1
    assert await with_images.is_image_preserved(artist.images[0])


class FakeResponse:
    content = b"GIF89a"
    headers = {"Content-Type": "image/gif; charset=binary"}

    def raise_for_status(self): pass

async def test_image_is_downloaded_before_preserving(db, preserver, monkeypatch):
    requested = []
    def fake_get(url, timeout):
        requested.append(url)
        return FakeResponse()
    monkeypatch.setattr("musicdash.preserve.requests.get", fake_get)

    image = Image(owner_id="ege", url="https://i.scdn.co/image/ege", width=64, height=64)
    await preserver.preserve(image)

    assert requested == ["https://i.scdn.co/image/ege"]
    async with db.get_session() as s:
        row = (await s.execute(select(models.Image))).scalar_one()
        assert (row.data, row.mime_type) == (b"GIF89a", "image/gif")

async def test_generic_dispatch(preserver):
    album = ege_bamyasi()
    await preserver.preserve(album)
    assert await preserver.is_preserved(album)

    with pytest.raises(TypeError):
        await preserver.preserve("not a resource")
