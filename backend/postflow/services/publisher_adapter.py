"""
Unified publishing layer for social platforms.

Each platform adapter implements the `PublisherAdapter` interface:
    publish(content, reference=...) -> PublishResult
    validate_credentials() -> bool

Results (including errors) are always returned explicitly, never silently dropped.
"""
from __future__ import annotations

import abc
import logging
import re
import uuid
from dataclasses import dataclass, field

import httpx

from postflow.services.domain import Platform
from postflow.settings import get_settings

logger = logging.getLogger(__name__)


# ── Result dataclass ─────────────────────────────────────────

# Errors treated as retryable (network, rate limits, transient upstream)
RETRYABLE_INDICATORS = (
    "timeout", "timed out", "429", "too many requests",
    "502", "503", "504", "connection", "reset by peer",
    "temporary", "service unavailable", "rate limit",
    "network", "ssl", "eof", "broken pipe",
)


def _is_retryable_error(error: str | None) -> bool:
    """Determine if an error message indicates a retryable failure."""
    if not error:
        return False
    lower = error.lower()
    return any(ind in lower for ind in RETRYABLE_INDICATORS)


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    # Generic long tokens (40+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]

_SENSITIVE_KEYS = {
    "access_token", "refresh_token", "client_secret",
    "authorization", "cookie", "cookies", "bearer_token",
}


def _sanitize(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _sanitize_dict(d: dict | None) -> dict | None:
    """Remove sensitive keys from a response dict before persisting."""
    if not d:
        return d
    cleaned = {}
    for k, v in d.items():
        if k.lower() in _SENSITIVE_KEYS:
            cleaned[k] = "***"
        elif isinstance(v, dict):
            cleaned[k] = _sanitize_dict(v)
        elif isinstance(v, str) and len(v) > 60:
            cleaned[k] = v[:8] + "***"
        else:
            cleaned[k] = v
    return cleaned


@dataclass
class PublishResult:
    """Unified result of a publish attempt."""
    success: bool
    external_id: str | None = None
    url: str | None = None
    platform: str | None = None
    error: str | None = None
    retryable: bool = False
    raw_response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "external_id": self.external_id,
            "url": self.url,
            "platform": self.platform,
            "error": self.error,
            "retryable": self.retryable,
        }


# ── Per-platform content rules ────────────────────────────────

LINKEDIN_MAX_LENGTH = 3000
LINKEDIN_DEFAULT_HASHTAGS = "#ContentCreation #SocialMedia #Marketing"
X_MAX_LENGTH = 280


def optimize_content(platform: Platform | str, content: str) -> str:
    """Fit post text to a platform's length and hashtag conventions."""
    platform = Platform.parse(platform)
    text = content.strip()

    if platform is Platform.linkedin:
        if len(text) > LINKEDIN_MAX_LENGTH:
            text = text[:LINKEDIN_MAX_LENGTH - 3] + "..."
        if "#" not in text:
            text = f"{text}\n\n{LINKEDIN_DEFAULT_HASHTAGS}"
        return text

    if platform is Platform.x and len(text) > X_MAX_LENGTH:
        cut = text.rfind(" ", 0, X_MAX_LENGTH - 2)
        if cut <= 0:
            cut = X_MAX_LENGTH - 3
        text = text[:cut] + "..."
    return text


# ── Abstract adapter ─────────────────────────────────────────

class PublisherAdapter(abc.ABC):
    """Base class for platform-specific publishers."""

    platform: str = "unknown"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 30.0):
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @abc.abstractmethod
    async def publish(self, content: str, *, reference: str | None = None) -> PublishResult:
        """Publish text and return result with external_id + url."""
        ...

    @abc.abstractmethod
    async def validate_credentials(self) -> bool:
        ...

    def _fail(self, reference: str | None, msg: str, retryable: bool | None = None) -> PublishResult:
        msg = _sanitize(msg)
        self._error(reference, msg)
        if retryable is None:
            retryable = _is_retryable_error(msg)
        return PublishResult(success=False, platform=self.platform, error=msg, retryable=retryable)

    def _log(self, reference: str | None, msg: str):
        logger.info(f"[{self.platform}][item={reference}] {msg}")

    def _error(self, reference: str | None, msg: str):
        logger.error(f"[{self.platform}][item={reference}] {msg}")


# ── LinkedIn ─────────────────────────────────────────────────

class LinkedInPublisher(PublisherAdapter):
    """Share text via the LinkedIn UGC Posts API.

    Requires LINKEDIN_ACCESS_TOKEN (scope w_member_social). The author URN
    is taken from LINKEDIN_AUTHOR_URN or resolved via /v2/userinfo.
    """

    platform = "linkedin"

    UGC_URL = "https://api.linkedin.com/v2/ugcPosts"
    USERINFO_URL = "https://api.linkedin.com/v2/userinfo"

    def __init__(
        self,
        access_token: str | None = None,
        author_urn: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(transport=transport)
        settings = get_settings()
        self.access_token = access_token or settings.linkedin_access_token
        self.author_urn = author_urn or settings.linkedin_author_urn

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "X-Restli-Protocol-Version": "2.0.0",
        }

    async def _resolve_author(self, client: httpx.AsyncClient) -> str | None:
        if self.author_urn:
            return self.author_urn
        resp = await client.get(self.USERINFO_URL, headers=self._headers())
        if resp.status_code != 200:
            return None
        member_id = resp.json().get("sub")
        if member_id:
            self.author_urn = f"urn:li:person:{member_id}"
        return self.author_urn

    async def validate_credentials(self) -> bool:
        if not self.access_token:
            return False
        try:
            async with self._client() as client:
                resp = await client.get(self.USERINFO_URL, headers=self._headers())
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("[linkedin] Credential check failed: %s", _sanitize(str(exc)))
            return False

    async def publish(self, content: str, *, reference: str | None = None) -> PublishResult:
        if not self.access_token:
            return self._fail(reference, "LinkedIn access token missing", retryable=False)

        try:
            async with self._client() as client:
                author = await self._resolve_author(client)
                if not author:
                    return self._fail(reference, "Unable to resolve LinkedIn author URN", retryable=False)

                payload = {
                    "author": author,
                    "lifecycleState": "PUBLISHED",
                    "specificContent": {
                        "com.linkedin.ugc.ShareContent": {
                            "shareCommentary": {"text": content},
                            "shareMediaCategory": "NONE",
                        },
                    },
                    "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
                }
                resp = await client.post(self.UGC_URL, headers=self._headers(), json=payload)

            if resp.status_code not in (200, 201):
                return self._fail(reference, f"LinkedIn publish failed: {resp.status_code}: {resp.text[:500]}")

            data = resp.json() if resp.content else {}
            post_id = resp.headers.get("x-restli-id") or data.get("id")
            url = f"https://www.linkedin.com/feed/update/{post_id}" if post_id else None
            self._log(reference, f"Published: {url}")
            return PublishResult(
                success=True,
                external_id=post_id,
                url=url,
                platform=self.platform,
                raw_response=_sanitize_dict(data) or {},
            )
        except httpx.HTTPError as exc:
            return self._fail(reference, f"LinkedIn request error: {type(exc).__name__}: {exc}", retryable=True)


# ── X ────────────────────────────────────────────────────────

class XPublisher(PublisherAdapter):
    """Post via the X API v2 (POST /2/tweets) with a user-context bearer token."""

    platform = "x"

    TWEETS_URL = "https://api.twitter.com/2/tweets"
    ME_URL = "https://api.twitter.com/2/users/me"

    def __init__(self, bearer_token: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(transport=transport)
        self.bearer_token = bearer_token or get_settings().x_bearer_token

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.bearer_token}", "Content-Type": "application/json"}

    async def validate_credentials(self) -> bool:
        if not self.bearer_token:
            return False
        try:
            async with self._client() as client:
                resp = await client.get(self.ME_URL, headers=self._headers())
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("[x] Credential check failed: %s", _sanitize(str(exc)))
            return False

    async def publish(self, content: str, *, reference: str | None = None) -> PublishResult:
        if not self.bearer_token:
            return self._fail(reference, "X bearer token missing", retryable=False)

        try:
            async with self._client() as client:
                resp = await client.post(self.TWEETS_URL, headers=self._headers(), json={"text": content})

            if resp.status_code not in (200, 201):
                return self._fail(reference, f"X publish failed: {resp.status_code}: {resp.text[:500]}")

            data = resp.json().get("data") or {}
            tweet_id = data.get("id")
            if not tweet_id:
                return self._fail(reference, "X did not return a tweet id", retryable=False)

            url = f"https://x.com/i/web/status/{tweet_id}"
            self._log(reference, f"Published: {url}")
            return PublishResult(
                success=True,
                external_id=tweet_id,
                url=url,
                platform=self.platform,
                raw_response=_sanitize_dict(data) or {},
            )
        except httpx.HTTPError as exc:
            return self._fail(reference, f"X request error: {type(exc).__name__}: {exc}", retryable=True)


class StubPublisher(PublisherAdapter):
    """Accepts everything and returns a fake external id. For local runs."""

    def __init__(self, platform: str):
        super().__init__()
        self.platform = platform

    async def validate_credentials(self) -> bool:
        return True

    async def publish(self, content: str, *, reference: str | None = None) -> PublishResult:
        external_id = f"stub-{uuid.uuid4().hex[:12]}"
        self._log(reference, f"Stub publish ({len(content)} chars) -> {external_id}")
        return PublishResult(success=True, external_id=external_id, platform=self.platform)


# ── Registry ─────────────────────────────────────────────────

def _default_adapters() -> dict[str, PublisherAdapter]:
    if get_settings().publisher_stub:
        return {p.value: StubPublisher(p.value) for p in Platform}
    return {
        Platform.linkedin.value: LinkedInPublisher(),
        Platform.x.value: XPublisher(),
    }


_ADAPTERS: dict[str, PublisherAdapter] = _default_adapters()


def get_publisher(platform: Platform | str) -> PublisherAdapter | None:
    """Get adapter for a platform name (case-insensitive)."""
    key = getattr(platform, "value", platform)
    return _ADAPTERS.get(str(key).lower())


def register_publisher(platform: Platform | str, adapter: PublisherAdapter) -> None:
    key = getattr(platform, "value", platform)
    _ADAPTERS[str(key).lower()] = adapter


def list_publishers() -> list[str]:
    """Return list of supported platform names."""
    return list(_ADAPTERS.keys())
