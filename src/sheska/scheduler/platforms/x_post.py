"""
Posts published on X (formerly Twitter) through the v2 API.

Requests are signed with OAuth 1.0a (HMAC-SHA1) using the app's consumer
keys and the account's access token. The JSON body is not part of the
signature base string.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from sheska.configuration.credentials import PlatformCredentials
from sheska.scheduler.errors import SerializerException
from sheska.scheduler.post import PostOutcome, SchedulablePost, SchedulablePostSerializer, ensure_utc

X_TWEETS_ENDPOINT = "https://api.twitter.com/2/tweets"


def percent_encode(value: str) -> str:
    """RFC 3986 encoding as required by OAuth 1.0a."""
    return quote(value, safe="~")


def oauth_signature(
    method: str,
    url: str,
    params: List[Tuple[str, str]],
    consumer_secret: str,
    token_secret: str,
) -> str:
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params)
    param_string = "&".join(f"{k}={v}" for k, v in encoded)
    base_string = "&".join((method.upper(), percent_encode(url), percent_encode(param_string)))
    signing_key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(signing_key.encode(), base_string.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def build_oauth_header(
    method: str,
    url: str,
    credentials: PlatformCredentials,
    *,
    nonce: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> str:
    """Build the ``Authorization`` header value for a signed request."""
    params = [
        ("oauth_consumer_key", credentials.x_consumer_key or ""),
        ("oauth_nonce", nonce or base64.b64encode(secrets.token_bytes(32)).decode()),
        ("oauth_signature_method", "HMAC-SHA1"),
        ("oauth_timestamp", str(timestamp if timestamp is not None else int(time.time()))),
        ("oauth_token", credentials.x_access_token or ""),
        ("oauth_version", "1.0"),
    ]
    signature = oauth_signature(
        method,
        url,
        params,
        credentials.x_consumer_secret or "",
        credentials.x_access_token_secret or "",
    )
    signed = sorted(params + [("oauth_signature", signature)])
    return "OAuth " + ", ".join(f'{k}="{percent_encode(v)}"' for k, v in signed)


@dataclass(frozen=True)
class XPost(SchedulablePost):
    """A plain text post on X."""

    IDENTIFIER: ClassVar[str] = "X_POST_WEBHOOK_MESSAGE"

    text: str
    due_at: datetime
    credentials: PlatformCredentials = field(default_factory=PlatformCredentials, repr=False)

    async def execute(self, client: httpx.AsyncClient) -> PostOutcome:
        if not self.credentials.has_x_credentials:
            return PostOutcome(0, "X credentials are not configured")

        response = await client.post(
            X_TWEETS_ENDPOINT,
            json={"text": self.text},
            headers={"Authorization": build_oauth_header("POST", X_TWEETS_ENDPOINT, self.credentials)},
        )
        return PostOutcome.from_response(response)


class XPostSerializer(SchedulablePostSerializer[XPost]):
    """Stores ``{"text"}``; credentials come from the environment, never the registry."""

    def __init__(self, credentials: Optional[PlatformCredentials] = None) -> None:
        self.credentials = credentials or PlatformCredentials()

    def from_json(self, content: Dict[str, Any], due_at: datetime) -> XPost:
        text = content.get("text")
        if not isinstance(text, str):
            raise SerializerException("X post document is missing 'text'")
        return XPost(text=text, due_at=ensure_utc(due_at), credentials=self.credentials)

    def to_json(self, post: XPost) -> Dict[str, Any]:
        return {"text": post.text}
