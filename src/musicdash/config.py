import os
from dataclasses import dataclass

from dotenv import load_dotenv

import logging
LOGGER = logging.getLogger(__name__)


DEFAULT_REDIRECT_URI = "http://127.0.0.1:8888/callback"
TRUTHY = {"1", "true", "yes", "y", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None: return default
    return value.strip().lower() in TRUTHY

def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip(): return default

    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Expected a number for {name}, not '{value}'.")


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    spotify_client_id: str = ""
    spotify_client_secret: str = ""
    spotify_redirect_uri: str = DEFAULT_REDIRECT_URI

    aggregator_interval_s: float = 120.0
    request_timeout_s: float = 15.0
    preserve_if_not_found: bool = True

    test_mode: bool = False

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()

        settings = cls(
            database_url=os.environ.get("MUSICDASH_DATABASE_URL") or None,
            spotify_client_id=os.environ.get("MUSICDASH_SPOTIFY_CLIENT_ID", ""),
            spotify_client_secret=os.environ.get("MUSICDASH_SPOTIFY_SECRET", ""),
            spotify_redirect_uri=os.environ.get("MUSICDASH_SPOTIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI),
            aggregator_interval_s=_env_float("MUSICDASH_AGGREGATOR_INTERVAL_S", 120.0),
            request_timeout_s=_env_float("MUSICDASH_REQUEST_TIMEOUT_S", 15.0),
            preserve_if_not_found=_env_bool("MUSICDASH_PRESERVE_IF_NOT_FOUND", True),
            test_mode=bool(os.getenv("TEST_MODE")),
        )

        if not settings.spotify_client_id or not settings.spotify_client_secret:
            LOGGER.warning("Spotify client credentials are not configured, "
                           "remote lookups and syncing will fail.")

        return settings
