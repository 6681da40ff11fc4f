"""Post types understood by the scheduler, one module per target platform."""

from .discord_webhook import (
    DiscordHookMessage,
    DiscordHookMessageEmbed,
    DiscordWebhookMessage,
    DiscordWebhookMessageSerializer,
    mention_for_role,
)
from .x_post import XPost, XPostSerializer, build_oauth_header

__all__ = [
    "DiscordHookMessage",
    "DiscordHookMessageEmbed",
    "DiscordWebhookMessage",
    "DiscordWebhookMessageSerializer",
    "mention_for_role",
    "XPost",
    "XPostSerializer",
    "build_oauth_header",
]
