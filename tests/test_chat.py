"""Tests for rental-gated chat and provider routing."""

import json
from datetime import timedelta

import httpx
import pytest

from dgpu_market.chat import ChatService, ChatTranscript
from dgpu_market.config import Settings
from dgpu_market.exceptions import ProviderError, RentalExpiredError, UnsupportedAgentError
from dgpu_market.llm import ProviderProxy
from dgpu_market.models import ChatMessage, Rental

from conftest import T0, EchoProvider, MemoryChatStore, MemoryRentalStore


@pytest.fixture
def rentals():
    return MemoryRentalStore()


@pytest.fixture
def chat(rentals, clock):
    return ChatService(MemoryChatStore(), rentals, EchoProvider(), clock)


async def rent(rentals, wallet="wallet1", slug="grok-2", hours=1):
    await rentals.insert(Rental.starting_at(wallet, slug, hours, T0, "sig"))


# ============================================================
# Chat gating
# ============================================================

@pytest.mark.asyncio
async def test_chat_without_rental_is_refused(chat):
    with pytest.raises(RentalExpiredError):
        await chat.send_message("wallet1", "grok-2", "hello")
    assert chat.provider.prompts == []


@pytest.mark.asyncio
async def test_chat_with_active_rental(chat, rentals):
    await rent(rentals)

    user_msg, bot_msg = await chat.send_message("wallet1", "grok-2", "hello")

    assert user_msg.content == "hello"
    assert not user_msg.is_bot
    assert bot_msg.content == "echo: hello"
    assert bot_msg.is_bot and bot_msg.is_markdown
    transcript = await chat.history("wallet1")
    assert [m.content for m in transcript.messages] == ["hello", "echo: hello"]


@pytest.mark.asyncio
async def test_chat_refused_once_rental_expires(chat, rentals, clock):
    await rent(rentals)
    clock.advance(timedelta(hours=1).total_seconds())

    with pytest.raises(RentalExpiredError):
        await chat.send_message("wallet1", "grok-2", "still there?")


@pytest.mark.asyncio
async def test_rental_is_per_agent(chat, rentals):
    await rent(rentals, slug="grok-2")
    with pytest.raises(RentalExpiredError):
        await chat.send_message("wallet1", "gpt-4o", "hello")


@pytest.mark.asyncio
async def test_empty_message_rejected(chat, rentals):
    await rent(rentals)
    with pytest.raises(ValueError):
        await chat.send_message("wallet1", "grok-2", "   ")


@pytest.mark.asyncio
async def test_clear_history(chat, rentals):
    await rent(rentals)
    await chat.send_message("wallet1", "grok-2", "hello")

    assert await chat.clear("wallet1") == 2
    assert (await chat.history("wallet1")).messages == ()


@pytest.mark.asyncio
async def test_provider_failure_stores_nothing(rentals, clock):
    class DownProvider(EchoProvider):
        async def query_llm(self, slug, prompt, system_prompt=None):
            raise ProviderError("grok2", "upstream timed out", 504)

    chat = ChatService(MemoryChatStore(), rentals, DownProvider(), clock)
    await rent(rentals)

    with pytest.raises(ProviderError):
        await chat.send_message("wallet1", "grok-2", "hello")

    assert (await chat.history("wallet1")).messages == ()


def test_transcript_is_append_only_copy():
    empty = ChatTranscript(user_wallet="wallet1")
    assert empty.last is None

    msg = ChatMessage(message_id="m1", user_wallet="wallet1", content="hi")
    grown = empty.with_messages(msg)

    assert empty.messages == ()
    assert grown.last == msg


# ============================================================
# Provider routing
# ============================================================

def proxy_with(handler) -> tuple[ProviderProxy, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    settings = Settings(
        openai_api_key="sk-test",
        gemini_api_key="gm-test",
        anthropic_api_key="an-test",
        grok2_api_key="xa-test",
        deepseek_api_key="ds-test",
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return ProviderProxy(settings, client), seen


def openai_reply(text):
    return lambda r: httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


@pytest.mark.asyncio
@pytest.mark.parametrize("slug,host", [
    ("gpt-4o", "api.openai.com"),
    ("grok-2", "api.x.ai"),
    ("deepseek-v3-fw", "api.deepseek.com"),
])
async def test_openai_compatible_routes(slug, host):
    proxy, seen = proxy_with(openai_reply("pong"))

    assert await proxy.query_llm(slug, "ping") == "pong"
    assert seen[0].url.host == host
    body = json.loads(seen[0].content)
    assert body["messages"][-1] == {"role": "user", "content": "ping"}


@pytest.mark.asyncio
async def test_gemini_route_and_specialist_persona():
    reply = {"candidates": [{"content": {"parts": [{"text": "gem"}]}}]}
    proxy, seen = proxy_with(lambda r: httpx.Response(200, json=reply))

    assert await proxy.query_llm("gemini-2-0-flash", "hi") == "gem"
    assert await proxy.query_llm("audit-analys-agent", "check this") == "gem"

    assert seen[0].url.host == "generativelanguage.googleapis.com"
    assert seen[0].url.params["key"] == "gm-test"
    parts = json.loads(seen[1].content)["contents"][0]["parts"]
    assert parts[0]["text"].startswith("[SYSTEM]: You are a security auditor")
    assert parts[1]["text"] == "check this"


@pytest.mark.asyncio
async def test_claude_route():
    reply = {"content": [{"type": "text", "text": "hello "}, {"type": "text", "text": "there"}]}
    proxy, seen = proxy_with(lambda r: httpx.Response(200, json=reply))

    assert await proxy.query_llm("claude-3-5-sonnet", "hi", "be brief") == "hello there"
    assert seen[0].headers["x-api-key"] == "an-test"
    assert json.loads(seen[0].content)["system"] == "be brief"


@pytest.mark.asyncio
async def test_unknown_slug_is_unsupported():
    proxy, seen = proxy_with(openai_reply("unused"))
    with pytest.raises(UnsupportedAgentError):
        await proxy.query_llm("mystery-agent", "hi")
    assert seen == []


@pytest.mark.asyncio
async def test_upstream_failure_is_provider_error():
    proxy, _ = proxy_with(lambda r: httpx.Response(429, text="slow down"))

    with pytest.raises(ProviderError) as exc_info:
        await proxy.query_llm("gpt-4o", "hi")

    assert exc_info.value.status_code == 429
    assert exc_info.value.provider == "openai"


@pytest.mark.asyncio
@pytest.mark.parametrize("slug", ["gpt-4o", "gemini-2-0-flash", "claude-3-5-sonnet"])
async def test_non_json_reply_is_bad_gateway(slug):
    proxy, _ = proxy_with(lambda r: httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(ProviderError) as exc_info:
        await proxy.query_llm(slug, "hi")

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [[], {"choices": [1]}, {"choices": "nope"}])
async def test_odd_reply_shape_is_bad_gateway(reply):
    proxy, _ = proxy_with(lambda r: httpx.Response(200, json=reply))

    with pytest.raises(ProviderError) as exc_info:
        await proxy.query_llm("grok-2", "hi")

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_network_failure_is_provider_error():
    def boom(request):
        raise httpx.ReadTimeout("timed out", request=request)

    proxy, _ = proxy_with(boom)
    with pytest.raises(ProviderError):
        await proxy.query_llm("grok-2", "hi")


@pytest.mark.asyncio
async def test_image_returns_png_bytes():
    proxy, seen = proxy_with(lambda r: httpx.Response(200, content=b"\x89PNG..."))

    assert await proxy.generate_image("a cat") == b"\x89PNG..."
    assert seen[0].url.host == "api.stability.ai"
