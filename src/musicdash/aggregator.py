import asyncio
import traceback
from datetime import datetime, timezone
from typing import Awaitable, Callable

import logging
LOGGER = logging.getLogger(__name__)

from musicdash.errors import PreserveError
from musicdash.preserve import Preserver
from musicdash.providers.spotify import MAX_RECENTLY_PLAYED, SpotifyAuth, SpotifyProvider
from musicdash.resources import Play
from musicdash.users import LinkedUser, UserStore

# Nobody finishes a song in under this.
SHORTEST_PLAY_S = 30


def request_size(last_synced: datetime, now: datetime, page_size: int = MAX_RECENTLY_PLAYED) -> int:
    """How many plays could have happened since last_synced, at most page_size."""
    elapsed = (now - last_synced).total_seconds()
    if elapsed < SHORTEST_PLAY_S * page_size:
        # Within SHORTEST_PLAY_S at most one play can have ended, asking for 1 covers it.
        return max(1, int(elapsed / SHORTEST_PLAY_S))
    return page_size

def new_plays(plays: list[Play], most_recent_stored: Play) -> list[Play]:
    """plays is newest first, everything before the first one that isn't newer than what's stored."""
    for idx, play in enumerate(plays):
        if play.played_at <= most_recent_stored.played_at:
            return plays[:idx]
    return plays


class Aggregator:
    """
    Periodically pulls every linked user's recently played tracks from Spotify
    and stores the ones newer than what's already stored.

    client_factory(user) gives the SpotifyProvider to use for a user. The
    default one refreshes (and saves) the user's credentials through auth.
    """

    def __init__(self, users: UserStore,
                 auth: SpotifyAuth | None = None,
                 preserver: Preserver | None = None,
                 interval_s: float = 120.0,
                 page_size: int = MAX_RECENTLY_PLAYED,
                 client_factory: Callable[[LinkedUser], Awaitable[SpotifyProvider]] | None = None,
                 now: Callable[[], datetime] | None = None):
        if client_factory is None and auth is None:
            raise ValueError("Aggregator needs either a SpotifyAuth or a client_factory.")

        self.users = users
        self.auth = auth
        self.preserver = preserver
        self.interval_s = interval_s
        self.page_size = page_size
        self.client_factory = client_factory or self._client_for
        self.now = now or (lambda: datetime.now(timezone.utc))

        self.running = False

    async def _client_for(self, user: LinkedUser) -> SpotifyProvider:
        provider, refreshed = await self.auth.client_for(user.credentials, self.now())
        if refreshed is not None:
            await self.users.save_credentials(user.user_id, refreshed)
            user.credentials = refreshed
        return provider

    async def _cache_tracks(self, plays: list[Play]) -> None:
        """Best effort, a play is stored whether its track can be or not."""
        if self.preserver is None: return

        seen = set()
        for play in plays:
            track = play.track
            if track.spotify_id in seen: continue
            seen.add(track.spotify_id)

            try:
                if not await self.preserver.is_track_preserved(track):
                    await self.preserver.preserve_track(track, recurse=False)
            except PreserveError:
                LOGGER.warning(f"Could not cache played track {track}: {traceback.format_exc()}")

    async def sync_user(self, user: LinkedUser) -> int:
        """One user's delta, returns how many plays were saved."""
        client = await self.client_factory(user)

        last_synced = await self.users.get_last_synced(user.user_id)
        LOGGER.debug(f"Last sync of {user}: {last_synced}")

        count = request_size(last_synced, self.now(), self.page_size)
        LOGGER.debug(f"Requesting {count} recent plays of {user} from Spotify.")
        plays = await client.get_recently_played(count)

        stored = await self.users.get_recent_plays(user.user_id, 1)
        most_recent = stored[0] if stored else Play.sentinel()
        LOGGER.debug(f"Most recent stored play of {user} at {most_recent.played_at}")

        fresh = new_plays(plays, most_recent)
        saved = await self.users.save_plays(user.user_id, fresh)
        await self._cache_tracks(fresh)

        await self.users.set_last_synced(user.user_id, self.now())

        LOGGER.info(f"Saved {saved} new plays of {user}.")
        return saved

    async def run_pass(self) -> dict[int, int]:
        """Sync every linked user once. Users that fail are skipped until the next pass."""
        self.running = True
        saved = {}
        try:
            try:
                users = await self.users.get_users_with_spotify_linked()
            except Exception:
                LOGGER.error(f"Could not list users with Spotify linked: {traceback.format_exc()}")
                return saved

            LOGGER.info(f"Aggregating plays of {len(users)} users.")
            for user in users:
                try:
                    saved[user.user_id] = await self.sync_user(user)
                except Exception:
                    LOGGER.error(f"Could not sync plays of {user}: {traceback.format_exc()}")
        finally:
            self.running = False

        return saved

    async def run(self) -> None:
        LOGGER.info(f"Starting aggregator, one pass every {self.interval_s}s.")
        while True:
            await self.run_pass()
            await asyncio.sleep(self.interval_s)
