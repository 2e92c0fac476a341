from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

import logging
LOGGER = logging.getLogger(__name__)

from musicdash import models
from musicdash.db import DatabaseManager, dialect_insert, pass_session_capable
from musicdash.resources import Play, Track, as_utc

DEFAULT_WATERMARK = datetime(1900, 1, 1, 0, 0, 1, tzinfo=timezone.utc)


@dataclass
class SpotifyCredentials:
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str = ""

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        return as_utc(self.expires_at) - margin <= now


@dataclass
class LinkedUser:
    """A user with a Spotify account linked to it."""
    user_id: int
    username: str
    credentials: SpotifyCredentials

    def __str__(self): return f"{self.username} ({self.user_id})"


class UserStore:
    """Users, their Spotify credentials and their stored plays."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @pass_session_capable
    async def create_user(self, username: str, spotify_id: str | None = None,
                          credentials: SpotifyCredentials | None = None, session=None) -> int:
        user = models.User(username=username, spotify_id=spotify_id)
        if credentials:
            user.spotify_token = models.SpotifyToken(
                access_token=credentials.access_token,
                refresh_token=credentials.refresh_token,
                expires_at=credentials.expires_at,
                scope=credentials.scope,
            )

        session.add(user)
        await session.flush()
        LOGGER.info(f"Created user '{username}' ({user.user_id}).")
        return user.user_id

    @pass_session_capable
    async def get_users_with_spotify_linked(self, session=None) -> list[LinkedUser]:
        result = await session.execute(
            select(models.User)
            .join(models.SpotifyToken)
            .options(selectinload(models.User.spotify_token))
            .order_by(models.User.user_id)
        )

        return [LinkedUser(
            user_id=u.user_id,
            username=u.username,
            credentials=SpotifyCredentials(
                access_token=u.spotify_token.access_token,
                refresh_token=u.spotify_token.refresh_token,
                expires_at=as_utc(u.spotify_token.expires_at),
                scope=u.spotify_token.scope,
            )
        ) for u in result.scalars().all()]

    @pass_session_capable
    async def save_credentials(self, user_id: int, credentials: SpotifyCredentials, session=None) -> None:
        insert = dialect_insert(session)
        values = dict(access_token=credentials.access_token,
                      refresh_token=credentials.refresh_token,
                      expires_at=credentials.expires_at,
                      scope=credentials.scope)

        stmt = insert(models.SpotifyToken).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=['user_id'], set_=values)
        await session.execute(stmt)
        LOGGER.debug(f"Saved Spotify credentials of user {user_id} (expire at {credentials.expires_at}).")

    @pass_session_capable
    async def get_last_synced(self, user_id: int, session=None) -> datetime:
        """Watermark of the last successful sync, or a long gone default if there never was one."""
        result = await session.execute(
            select(models.User.last_synced_at).where(models.User.user_id == user_id)
        )
        return as_utc(result.scalar_one_or_none()) or DEFAULT_WATERMARK

    @pass_session_capable
    async def set_last_synced(self, user_id: int, at: datetime, session=None) -> None:
        await session.execute(
            update(models.User)
            .where(models.User.user_id == user_id)
            .values(last_synced_at=at)
        )

    @pass_session_capable
    async def get_recent_plays(self, user_id: int, limit: int = 1, session=None) -> list[Play]:
        """
        Most recent stored plays first. Only the track id is filled in,
        plays don't require their track to be cached.
        """
        result = await session.execute(
            select(models.PlayRecord.track_id, models.PlayRecord.played_at)
            .where(models.PlayRecord.user_id == user_id)
            .order_by(models.PlayRecord.played_at.desc())
            .limit(limit)
        )
        return [Play(played_at=as_utc(r.played_at), track=Track(spotify_id=r.track_id))
                for r in result.all()]

    @pass_session_capable
    async def save_plays(self, user_id: int, plays: list[Play], session=None) -> int:
        """Insert-or-ignore on (user, played_at). Returns how many were new."""
        if not plays: return 0

        insert = dialect_insert(session)
        saved = 0
        for play in plays:
            stmt = insert(models.PlayRecord).values(
                user_id=user_id,
                track_id=play.track.spotify_id,
                played_at=play.played_at
            ).on_conflict_do_nothing(index_elements=['user_id', 'played_at'])

            result = await session.execute(stmt)
            saved += max(result.rowcount, 0)

        LOGGER.debug(f"Saved {saved}/{len(plays)} plays of user {user_id}.")
        return saved
