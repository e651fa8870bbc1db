import base64

import httpx
import pytest

from browser_orchestrator import tool_catalog
from browser_orchestrator.errors import ProviderConnectionError, SessionCreationError
from browser_orchestrator.provider import ToolCallOutcome
from browser_orchestrator.session import SessionClient, extract_session_id

from fakes import PNG_B64, SESSION_ID, FakeProvider, make_client, text


class LinkingProvider(FakeProvider):
    """Answers screenshots with a link instead of inline data."""

    async def call_tool(self, name, arguments):
        if name == tool_catalog.SCREENSHOT:
            self.calls.append((name, dict(arguments)))
            return ToolCallOutcome(content=[text("Screenshot stored at https://cdn.example.com/shot.png")])
        return await super().call_tool(name, arguments)


def test_extract_session_id_from_dashboard_url():
    content = [text("Created: https://www.browserbase.com/sessions/ab12-cd34 (live)")]
    assert extract_session_id(content) == "ab12-cd34"
    assert extract_session_id([text("no identity here")]) is None


@pytest.mark.asyncio
async def test_connect_is_idempotent():
    opened = []

    async def factory():
        opened.append(1)
        return FakeProvider()

    client = SessionClient(factory)
    await client.connect()
    await client.connect()
    assert len(opened) == 1
    assert client.connected


@pytest.mark.asyncio
async def test_connect_failure_raises_provider_error():
    async def factory():
        raise OSError("connection refused")

    client = SessionClient(factory)
    with pytest.raises(ProviderConnectionError, match="connection refused"):
        await client.connect()
    assert not client.connected


@pytest.mark.asyncio
async def test_gateway_html_is_summarised_on_connect():
    async def factory():
        raise RuntimeError("<!DOCTYPE html><title>502 Bad Gateway</title>")

    with pytest.raises(ProviderConnectionError, match="502 Bad Gateway"):
        await SessionClient(factory).connect()


@pytest.mark.asyncio
async def test_list_tools_may_be_empty():
    client = make_client(FakeProvider(tools=[]))
    assert await client.list_tools() == []


@pytest.mark.asyncio
async def test_minted_session_is_injected_into_calls():
    provider = FakeProvider()
    client = make_client(provider)

    session_id = await client.create_session()
    result = await client.call_tool(tool_catalog.NAVIGATE, {"url": "https://example.com"})

    assert session_id == SESSION_ID
    assert provider.calls_to(tool_catalog.SESSION_CREATE) == [{}]
    assert provider.calls_to(tool_catalog.NAVIGATE) == [{"url": "https://example.com", "sessionId": SESSION_ID}]
    assert result.ok
    assert result.arguments == {"url": "https://example.com"}
    assert result.session_id == SESSION_ID


@pytest.mark.asyncio
async def test_adopted_session_makes_no_remote_call():
    provider = FakeProvider()
    client = make_client(provider)

    assert await client.create_session("cafe-0001") == "cafe-0001"
    await client.call_tool(tool_catalog.ACT, {"action": "click"})

    assert provider.names() == [tool_catalog.ACT]
    assert provider.calls_to(tool_catalog.ACT)[0]["sessionId"] == "cafe-0001"


@pytest.mark.asyncio
async def test_session_creation_without_identity_fails():
    provider = FakeProvider()
    provider.session_id = "not a hex id!"
    client = make_client(provider)

    with pytest.raises(SessionCreationError, match="extract sessionId"):
        await client.create_session()
    assert client.session_id is None


@pytest.mark.asyncio
async def test_session_creation_transport_error():
    provider = FakeProvider()
    provider.raise_next(tool_catalog.SESSION_CREATE, RuntimeError("boom"))

    with pytest.raises(SessionCreationError, match="boom"):
        await make_client(provider).create_session()


@pytest.mark.asyncio
async def test_provider_error_result_is_returned_as_data():
    provider = FakeProvider()
    provider.fail_next(tool_catalog.ACT, "Element not found")
    client = make_client(provider)
    await client.create_session()

    result = await client.call_tool(tool_catalog.ACT, {"action": "click the missing button"})

    assert not result.ok
    assert result.error == "Element not found"
    assert result.result is None


@pytest.mark.asyncio
async def test_transport_exception_is_returned_as_data():
    provider = FakeProvider()
    provider.raise_next(tool_catalog.EXTRACT, RuntimeError("stream closed"))
    client = make_client(provider)

    result = await client.call_tool(tool_catalog.EXTRACT, {"instruction": "title"})

    assert result.error == "stream closed"


@pytest.mark.asyncio
async def test_slow_call_times_out_as_data():
    provider = FakeProvider()
    provider.delay = 0.2
    client = make_client(provider, call_timeout=0.01)

    result = await client.call_tool(tool_catalog.OBSERVE, {"instruction": "links"})

    assert not result.ok
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_screenshot_is_normalised_to_data_url():
    client = make_client(FakeProvider())
    await client.create_session()

    result = await client.call_tool(tool_catalog.SCREENSHOT)

    assert result.result == "Screenshot taken"
    assert result.screenshot == f"data:image/png;base64,{PNG_B64}"


@pytest.mark.asyncio
async def test_non_screenshot_text_is_not_mistaken_for_image():
    client = make_client(FakeProvider())
    result = await client.call_tool(tool_catalog.ACT, {"action": "click"})
    assert result.screenshot is None


@pytest.mark.asyncio
async def test_linked_screenshot_is_fetched():
    raw = base64.b64decode(PNG_B64)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=raw, headers={"content-type": "image/png"})

    client = make_client(LinkingProvider(), snapshot_transport=httpx.MockTransport(handler))
    result = await client.call_tool(tool_catalog.SCREENSHOT)

    assert seen == ["https://cdn.example.com/shot.png"]
    assert result.screenshot == "data:image/png;base64," + base64.b64encode(raw).decode("ascii")


@pytest.mark.asyncio
async def test_failed_screenshot_fetch_yields_no_image():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    client = make_client(LinkingProvider(), snapshot_transport=httpx.MockTransport(handler))
    result = await client.call_tool(tool_catalog.SCREENSHOT)

    assert result.ok
    assert result.screenshot is None


@pytest.mark.asyncio
async def test_close_releases_session_once():
    provider = FakeProvider()
    client = make_client(provider)
    await client.create_session()

    await client.close()
    await client.close()

    assert provider.calls_to(tool_catalog.SESSION_CLOSE) == [{"sessionId": SESSION_ID}]
    assert provider.closed == 1
    assert client.session_id is None


@pytest.mark.asyncio
async def test_close_swallows_provider_errors():
    provider = FakeProvider()
    provider.raise_next(tool_catalog.SESSION_CLOSE, RuntimeError("already gone"))
    client = make_client(provider)
    await client.create_session()

    await client.close()

    assert provider.closed == 1
