import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from forumwatch.collectors.base import Source
from forumwatch.errors import (
    MalformedPayloadError,
    NotJsonError,
    RateLimitedError,
    RedirectError,
    TransportError,
    UpstreamError,
)
from forumwatch.retry import RetryPolicy

FIXTURE = json.loads(
    (Path(__file__).parent.parent / "fixtures" / "discourse_latest.json").read_text()
)

SOURCE = Source(id=1, url="https://gov.example.org/", name="Example DAO")


def _mock_response(data=None, status_code: int = 200, headers: dict | None = None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = {"content-type": "application/json; charset=utf-8"} if headers is None else headers
    response.json.return_value = data
    return response


def _mock_client(mock_client_class, *responses):
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.get = AsyncMock(side_effect=list(responses))
    mock_client_class.return_value = mock_client
    return mock_client


def _make_collector(retry_policy=None):
    retry_policy = retry_policy or RetryPolicy(max_attempts=1)
    from forumwatch.collectors.discourse import DiscourseCollector
    return DiscourseCollector(retry_policy=retry_policy, timeout=5.0, user_agent="forumwatch-test")


@pytest.mark.asyncio
async def test_fetch_page_parses_topics_and_more_flag():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        client = _mock_client(mock_client_class, _mock_response(FIXTURE))
        page = await collector.fetch_page(SOURCE, 0)

    assert page.has_more is True
    assert [t.external_id for t in page.topics] == [4211, 4198]

    first, second = page.topics
    assert first.title == "[RFC] Treasury diversification proposal"
    assert first.reply_count == 9
    assert first.tags == ["governance", "treasury"]
    assert first.category_id == 7
    assert first.created_at is not None
    assert second.reply_count == 4
    assert second.tags == ["delegates", "announcements"]
    assert second.pinned is True

    client.get.assert_awaited_once_with("https://gov.example.org/latest.json", params=None)


@pytest.mark.asyncio
async def test_fetch_page_sends_page_param_and_headers():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        client = _mock_client(mock_client_class, _mock_response(FIXTURE))
        await collector.fetch_page(SOURCE, 3)

    client.get.assert_awaited_once_with("https://gov.example.org/latest.json", params={"page": 3})
    kwargs = mock_client_class.call_args.kwargs
    assert kwargs["follow_redirects"] is False
    assert kwargs["headers"]["Accept"] == "application/json"
    assert kwargs["headers"]["User-Agent"] == "forumwatch-test"


@pytest.mark.asyncio
async def test_last_page_has_no_more():
    data = {"topic_list": {"topics": [{"id": 1, "title": "only"}]}}
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(data))
        page = await collector.fetch_page(SOURCE, 0)

    assert page.has_more is False
    assert len(page.topics) == 1


@pytest.mark.asyncio
async def test_rate_limited_carries_retry_after():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(
            status_code=429, headers={"retry-after": "30", "content-type": "text/plain"},
        ))
        with pytest.raises(RateLimitedError) as exc_info:
            await collector.fetch_page(SOURCE)

    assert exc_info.value.retry_after == 30.0
    assert str(exc_info.value) == "Rate limited"


@pytest.mark.asyncio
async def test_redirect_is_not_followed():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(
            status_code=301, headers={"location": "https://new.example.org/latest.json"},
        ))
        with pytest.raises(RedirectError) as exc_info:
            await collector.fetch_page(SOURCE)

    assert "moved" in str(exc_info.value)
    assert exc_info.value.location == "https://new.example.org/latest.json"


@pytest.mark.asyncio
async def test_server_error_status():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(status_code=503))
        with pytest.raises(UpstreamError) as exc_info:
            await collector.fetch_page(SOURCE)

    assert exc_info.value.status_code == 503
    assert str(exc_info.value) == "HTTP 503"


@pytest.mark.asyncio
async def test_html_response_is_not_json():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(headers={"content-type": "text/html"}))
        with pytest.raises(NotJsonError) as exc_info:
            await collector.fetch_page(SOURCE)

    assert str(exc_info.value) == "Invalid response (not JSON)"


@pytest.mark.asyncio
async def test_undecodable_body_is_malformed():
    collector = _make_collector()
    response = _mock_response()
    response.json.side_effect = ValueError("Expecting value")
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, response)
        with pytest.raises(MalformedPayloadError):
            await collector.fetch_page(SOURCE)


@pytest.mark.asyncio
async def test_missing_topic_list_is_malformed():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response({"errors": ["nope"]}))
        with pytest.raises(MalformedPayloadError):
            await collector.fetch_page(SOURCE)


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, httpx.ConnectTimeout("timed out"))
        with pytest.raises(TransportError):
            await collector.fetch_page(SOURCE)


@pytest.mark.asyncio
async def test_fetch_latest_never_raises():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(status_code=429, headers={}))
        result = await collector.fetch_latest(SOURCE)

    assert not result.ok
    assert result.error == "Rate limited"
    assert result.error_kind == "rate_limited"
    assert result.topics == []


@pytest.mark.asyncio
async def test_fetch_latest_success():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response(FIXTURE))
        result = await collector.fetch_latest(SOURCE)

    assert result.ok
    assert result.usable
    assert len(result.topics) == 2


@pytest.mark.asyncio
async def test_fetch_latest_zero_topics_is_ok_but_not_usable():
    collector = _make_collector()
    with patch("httpx.AsyncClient") as mock_client_class:
        _mock_client(mock_client_class, _mock_response({"topic_list": {"topics": []}}))
        result = await collector.fetch_latest(SOURCE)

    assert result.ok
    assert not result.usable


@pytest.mark.asyncio
async def test_fetch_latest_retries_transient_errors():
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0.0, sleep=_sleep)
    collector = _make_collector(retry_policy=policy)
    with patch("httpx.AsyncClient") as mock_client_class:
        client = _mock_client(
            mock_client_class,
            _mock_response(status_code=502),
            _mock_response(FIXTURE),
        )
        result = await collector.fetch_latest(SOURCE)

    assert result.ok
    assert client.get.await_count == 2
    assert delays == [1.0]
