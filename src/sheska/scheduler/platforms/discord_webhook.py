"""
Discord webhook messages.

The message is sent as a single embed, optionally preceded by plain content
(usually a role mention so that members get pinged).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

import httpx

from sheska.scheduler.errors import SerializerException
from sheska.scheduler.post import PostOutcome, SchedulablePost, SchedulablePostSerializer, ensure_utc

WEBHOOK_USERNAME = "Sheska"


@dataclass(frozen=True)
class DiscordHookMessageEmbed:
    description: str
    title: Optional[str] = None


@dataclass(frozen=True)
class DiscordHookMessage:
    """Body of a Discord ``Execute Webhook`` request."""

    username: str = WEBHOOK_USERNAME
    content: Optional[str] = None
    embeds: List[DiscordHookMessageEmbed] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"username": self.username}
        if self.content is not None:
            payload["content"] = self.content
        if self.embeds:
            payload["embeds"] = [
                {k: v for k, v in asdict(embed).items() if v is not None} for embed in self.embeds
            ]
        return payload


def mention_for_role(role_id: int, guild_id: int) -> str:
    """Mention markup for a role; the guild's own id is its @everyone role."""
    if role_id == guild_id:
        return "@everyone"
    return f"<@&{role_id}>"


@dataclass(frozen=True)
class DiscordWebhookMessage(SchedulablePost):
    """
    A message posted to a Discord channel through a webhook.

    Attributes:
        content: Plain text placed above the embed, e.g. a mention.
        embed_text: Description of the embed; this is the post's text.
        due_at: When to post.
        webhook_url: Target webhook. Not persisted; the serializer fills it in
            from the configured webhook when a post is loaded.
    """

    IDENTIFIER: ClassVar[str] = "DISCORD_WEBHOOK_MESSAGE"

    content: Optional[str]
    embed_text: str
    due_at: datetime
    webhook_url: Optional[str] = None

    @property
    def text(self) -> str:  # type: ignore[override]
        return self.embed_text

    def build_message(self) -> DiscordHookMessage:
        return DiscordHookMessage(
            content=self.content,
            embeds=[DiscordHookMessageEmbed(description=self.embed_text)],
        )

    async def execute(self, client: httpx.AsyncClient) -> PostOutcome:
        if not self.webhook_url:
            return PostOutcome(0, "No Discord webhook configured")
        response = await client.post(self.webhook_url, json=self.build_message().to_payload())
        return PostOutcome.from_response(response)


class DiscordWebhookMessageSerializer(SchedulablePostSerializer[DiscordWebhookMessage]):
    """Stores ``{"content"?, "embedText"}``."""

    def __init__(self, webhook_url: Optional[str] = None) -> None:
        self.webhook_url = webhook_url

    def from_json(self, content: Dict[str, Any], due_at: datetime) -> DiscordWebhookMessage:
        embed_text = content.get("embedText")
        if not isinstance(embed_text, str):
            raise SerializerException("Discord webhook message document is missing 'embedText'")

        plain = content.get("content")
        return DiscordWebhookMessage(
            content=str(plain) if plain is not None else None,
            embed_text=embed_text,
            due_at=ensure_utc(due_at),
            webhook_url=self.webhook_url,
        )

    def to_json(self, post: DiscordWebhookMessage) -> Dict[str, Any]:
        document: Dict[str, Any] = {"embedText": post.embed_text}
        if post.content is not None:
            document["content"] = post.content
        return document
