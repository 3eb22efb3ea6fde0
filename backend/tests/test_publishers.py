from __future__ import annotations

import json

import httpx
import pytest

from postflow.errors import ValidationError
from postflow.services.domain import Platform
from postflow.services.publisher_adapter import (
    LINKEDIN_DEFAULT_HASHTAGS,
    LinkedInPublisher,
    StubPublisher,
    XPublisher,
    _is_retryable_error,
    _sanitize,
    get_publisher,
    list_publishers,
    optimize_content,
    register_publisher,
)


# ── Content rules ────────────────────────────────────────────

def test_linkedin_adds_default_hashtags():
    assert optimize_content("linkedin", "Ship weekly.") == f"Ship weekly.\n\n{LINKEDIN_DEFAULT_HASHTAGS}"


def test_linkedin_keeps_existing_hashtags():
    assert optimize_content(Platform.linkedin, "Ship weekly. #devops") == "Ship weekly. #devops"


def test_linkedin_truncates_long_text():
    text = optimize_content("linkedin", "a" * 3500)
    assert text.startswith("a" * 2997 + "...")
    assert text.endswith(LINKEDIN_DEFAULT_HASHTAGS)


def test_x_truncates_on_word_boundary():
    text = optimize_content("x", "word " * 100)
    assert len(text) <= 280
    assert text.endswith("word...")


def test_x_cut_includes_space_at_boundary():
    head = "a" * 10 + " " + "a" * 266
    text = optimize_content("x", head + " " + "b" * 20)
    assert text == head + "..."
    assert len(text) == 280


def test_x_short_text_unchanged_and_twitter_alias():
    assert optimize_content("twitter", "  Short and sweet  ") == "Short and sweet"


def test_unknown_platform_rejected():
    with pytest.raises(ValidationError):
        optimize_content("myspace", "hello")


# ── Error helpers ────────────────────────────────────────────

def test_sanitize_strips_credentials():
    cleaned = _sanitize("401 for Bearer abc.def-123 with access_token=xyz%20 and client_secret=s3cr3t")
    assert "abc.def-123" not in cleaned
    assert "Bearer ***" in cleaned
    assert "access_token=***" in cleaned
    assert "client_secret=***" in cleaned


@pytest.mark.parametrize(
    "error, retryable",
    [
        ("LinkedIn publish failed: 429: slow down", True),
        ("X publish failed: 503: Service Unavailable", True),
        ("Read timed out", True),
        ("X publish failed: 401: Unauthorized", False),
        (None, False),
    ],
)
def test_retryable_classification(error, retryable):
    assert _is_retryable_error(error) is retryable


# ── LinkedIn ─────────────────────────────────────────────────

@pytest.mark.anyio
async def test_linkedin_publish_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, headers={"x-restli-id": "urn:li:share:42"}, json={})

    publisher = LinkedInPublisher("token-1", "urn:li:person:abc", transport=httpx.MockTransport(handler))
    result = await publisher.publish("Hello LinkedIn", reference="sp-1")

    assert result.success
    assert result.external_id == "urn:li:share:42"
    assert result.url == "https://www.linkedin.com/feed/update/urn:li:share:42"
    body = json.loads(seen[0].content)
    assert body["author"] == "urn:li:person:abc"
    assert body["specificContent"]["com.linkedin.ugc.ShareContent"]["shareCommentary"]["text"] == "Hello LinkedIn"
    assert seen[0].headers["Authorization"] == "Bearer token-1"


@pytest.mark.anyio
async def test_linkedin_resolves_author_from_userinfo():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url == LinkedInPublisher.USERINFO_URL:
            return httpx.Response(200, json={"sub": "member-9"})
        assert json.loads(request.content)["author"] == "urn:li:person:member-9"
        return httpx.Response(201, json={"id": "urn:li:share:7"})

    publisher = LinkedInPublisher("token-1", transport=httpx.MockTransport(handler))
    publisher.author_urn = None
    result = await publisher.publish("Hello")
    assert result.success
    assert result.external_id == "urn:li:share:7"


@pytest.mark.anyio
async def test_linkedin_server_error_is_retryable():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="Service Unavailable"))
    publisher = LinkedInPublisher("token-1", "urn:li:person:abc", transport=transport)
    result = await publisher.publish("Hello")
    assert not result.success
    assert result.retryable
    assert result.error.startswith("LinkedIn publish failed: 503")


@pytest.mark.anyio
async def test_linkedin_missing_token_is_permanent():
    publisher = LinkedInPublisher("token-1", "urn:li:person:abc")
    publisher.access_token = None
    result = await publisher.publish("Hello")
    assert not result.success
    assert not result.retryable
    assert not await publisher.validate_credentials()


@pytest.mark.anyio
async def test_linkedin_network_error_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    publisher = LinkedInPublisher("token-1", "urn:li:person:abc", transport=httpx.MockTransport(handler))
    result = await publisher.publish("Hello")
    assert not result.success
    assert result.retryable
    assert "ConnectError" in result.error


# ── X ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_x_publish_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"data": {"id": "1799", "text": "Hello X"}})

    publisher = XPublisher("bearer-1", transport=httpx.MockTransport(handler))
    result = await publisher.publish("Hello X")

    assert result.success
    assert result.external_id == "1799"
    assert result.url == "https://x.com/i/web/status/1799"
    assert json.loads(seen[0].content) == {"text": "Hello X"}
    assert str(seen[0].url) == XPublisher.TWEETS_URL


@pytest.mark.anyio
async def test_x_error_text_is_sanitized():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(401, text="Unauthorized: Bearer leaked-token-value")
    )
    publisher = XPublisher("bearer-1", transport=transport)
    result = await publisher.publish("Hello X")
    assert not result.success
    assert not result.retryable
    assert "leaked-token-value" not in result.error
    assert "Bearer ***" in result.error


@pytest.mark.anyio
async def test_x_missing_tweet_id():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": {}}))
    result = await XPublisher("bearer-1", transport=transport).publish("Hello X")
    assert not result.success
    assert result.error == "X did not return a tweet id"


@pytest.mark.anyio
async def test_x_validate_credentials():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": {"id": "1"}}))
    assert await XPublisher("bearer-1", transport=transport).validate_credentials()


# ── Registry ─────────────────────────────────────────────────

@pytest.mark.anyio
async def test_registry_lookup_and_override():
    assert set(list_publishers()) >= {"linkedin", "x"}
    original = get_publisher("x")
    stub = StubPublisher("x")
    register_publisher(Platform.x, stub)
    try:
        assert get_publisher("X") is stub
        result = await stub.publish("hello")
        assert result.success
        assert result.external_id.startswith("stub-")
    finally:
        register_publisher("x", original)
    assert get_publisher("facebook") is None
