"""Tests for agent_relay.relay and agent_relay.conversation."""

import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from agent_relay._common import AttemptFailure, AttemptSuccess
from agent_relay.config import RelayConfig
from agent_relay.conversation import ConversationRegistry
from agent_relay._common import MAX_PROMPT_BYTES
from agent_relay.errors import EscalationExhaustedError, InvalidInputError, PromptTooLongError
from agent_relay.relay import HEALTH_PROMPT, RESET_MESSAGE, AgentRelay


class RecordingRunner:
    """Answers every attempt with the same result and keeps the requests."""

    def __init__(self, result=None):
        self.result = result or AttemptSuccess(json.dumps({"type": "result", "result": "OK"}))
        self.requests = []

    async def __call__(self, request, *, config, on_event=None, attempt=0):
        self.requests.append(request)
        return self.result


def _config(tmp_path: Path, **kwargs) -> RelayConfig:
    kwargs.setdefault("permission_patterns", ["Bash(curl:*)"])
    return RelayConfig(working_dir=str(tmp_path), media_dir=str(tmp_path), **kwargs)


class TestConversationRegistry:
    """Reset flags are per session and fire once."""

    def test_default_continues(self):
        registry = ConversationRegistry()
        assert registry.consume("s1") is True
        assert registry.consume("s1", continue_conversation=False) is False

    def test_reset_fires_once(self):
        registry = ConversationRegistry()
        registry.reset("s1")
        assert registry.is_pending("s1")
        assert registry.consume("s1") is False
        assert registry.consume("s1") is True
        assert not registry.is_pending("s1")

    def test_sessions_isolated(self):
        registry = ConversationRegistry()
        registry.reset("s1")
        assert registry.consume("s2") is True
        assert registry.is_pending("s1")


class TestProcessInput:
    """AgentRelay.process_input() end to end with a fake runner."""

    @pytest.mark.asyncio
    async def test_returns_extracted_text(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        assert await relay.process_input("hi") == "OK"
        assert runner.requests[0].continue_conversation is True
        assert runner.requests[0].prompt == "hi"

    @pytest.mark.asyncio
    async def test_reset_applies_to_next_request_only(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)

        assert relay.reset_conversation("chan") == RESET_MESSAGE
        await relay.process_input("one", session_id="chan")
        await relay.process_input("two", session_id="chan")
        assert [r.continue_conversation for r in runner.requests] == [False, True]

    @pytest.mark.asyncio
    async def test_reset_is_per_session(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)

        relay.reset_conversation("a")
        await relay.process_input("hi", session_id="b")
        assert runner.requests[0].continue_conversation is True
        assert relay.conversations.is_pending("a")

    @pytest.mark.asyncio
    async def test_invalid_input_keeps_reset_pending(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        relay.reset_conversation()

        with pytest.raises(InvalidInputError):
            await relay.process_input("\x00\x01")
        assert runner.requests == []
        assert relay.conversations.is_pending()

    @pytest.mark.asyncio
    async def test_oversized_prompt_rejected_before_any_attempt(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        relay.reset_conversation()

        with pytest.raises(PromptTooLongError):
            await relay.process_input("x" * 200_000)
        assert runner.requests == []
        assert relay.conversations.is_pending()

    @pytest.mark.asyncio
    async def test_oversized_expansion_falls_back_to_raw_prompt(self, tmp_path: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="z" * (MAX_PROMPT_BYTES + 10))

        runner = RecordingRunner()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            relay = AgentRelay(_config(tmp_path, http_preview_chars=MAX_PROMPT_BYTES + 10), runner=runner, http_client=client)
            await relay.process_input("read https://big.test/dump")

        assert runner.requests[0].prompt == "read https://big.test/dump"

    @pytest.mark.asyncio
    async def test_urls_are_inlined(self, tmp_path: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="weather: sunny")

        runner = RecordingRunner()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            relay = AgentRelay(_config(tmp_path), runner=runner, http_client=client)
            await relay.process_input("read https://wx.test/today")

        prompt = runner.requests[0].prompt
        assert "weather: sunny" in prompt
        assert "[HTTP Response from https://wx.test/today]" in prompt

    @pytest.mark.asyncio
    async def test_proxy_disabled_sends_raw_prompt(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        await relay.process_input("read https://wx.test/today")
        assert runner.requests[0].prompt == "read https://wx.test/today"

    @pytest.mark.asyncio
    async def test_preprocess_failure_falls_back(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path), runner=runner)
        with patch("agent_relay.relay.preprocess_http_requests", side_effect=RuntimeError("boom")):
            await relay.process_input("read https://wx.test/today")
        assert runner.requests[0].prompt == "read https://wx.test/today"

    @pytest.mark.asyncio
    async def test_exhausted_propagates(self, tmp_path: Path):
        runner = RecordingRunner(AttemptFailure(exit_code=1, signal=None, stderr="permission denied"))
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        with pytest.raises(EscalationExhaustedError):
            await relay.process_input("hi")


class TestHealth:
    """check_health() is a fresh-conversation round trip."""

    @pytest.mark.asyncio
    async def test_healthy(self, tmp_path: Path):
        runner = RecordingRunner()
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        assert await relay.check_health() is True
        assert runner.requests[0].prompt == HEALTH_PROMPT
        assert runner.requests[0].continue_conversation is False

    @pytest.mark.asyncio
    async def test_unhealthy_on_failure(self, tmp_path: Path):
        runner = RecordingRunner(AttemptFailure(exit_code=127, signal=None, stderr="not found"))
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=runner)
        assert await relay.check_health() is False

    @pytest.mark.asyncio
    async def test_health_does_not_consume_user_reset(self, tmp_path: Path):
        relay = AgentRelay(_config(tmp_path, http_proxy_enabled=False), runner=RecordingRunner())
        relay.reset_conversation()
        await relay.check_health()
        assert relay.conversations.is_pending()
