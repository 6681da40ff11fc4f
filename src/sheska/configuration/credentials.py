"""
Secrets needed by the post platforms, read from the process environment.

``main.load_environment`` loads ``.env`` with python-dotenv before these are
resolved, so values may come from either place.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class PlatformCredentials:
    """Discord webhook target and X (Twitter) OAuth 1.0a keys."""

    discord_webhook: str | None = None
    x_consumer_key: str | None = None
    x_consumer_secret: str | None = None
    x_access_token: str | None = None
    x_access_token_secret: str | None = None

    @classmethod
    def from_env(cls) -> "PlatformCredentials":
        return cls(
            discord_webhook=os.getenv("DISCORD_WEBHOOK"),
            x_consumer_key=os.getenv("X_CONSUMER_KEY"),
            x_consumer_secret=os.getenv("X_CONSUMER_SECRET"),
            x_access_token=os.getenv("X_ACCESS_TOKEN"),
            x_access_token_secret=os.getenv("X_ACCESS_TOKEN_SECRET"),
        )

    @property
    def has_x_credentials(self) -> bool:
        return all(
            (self.x_consumer_key, self.x_consumer_secret, self.x_access_token, self.x_access_token_secret)
        )
