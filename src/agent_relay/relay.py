"""Relay facade: prompt in, agent response text out."""

from __future__ import annotations

import httpx
import structlog

from agent_relay._common import MAX_PROMPT_BYTES, AttemptRunner, EventCallback, run_agent_attempt, sanitize_prompt
from agent_relay.config import RelayConfig
from agent_relay.conversation import DEFAULT_SESSION, ConversationRegistry
from agent_relay.escalation import PermissionEscalation, default_permission_patterns
from agent_relay.http_proxy import preprocess_http_requests

logger = structlog.get_logger(__name__)

HEALTH_PROMPT = 'Hello, respond with just "OK"'
RESET_MESSAGE = "Conversation history has been reset."


class AgentRelay:
    """Owns the per-session conversation flags and runs requests end to end."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        runner: AttemptRunner = run_agent_attempt,
        conversations: ConversationRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or RelayConfig.load()
        self.runner = runner
        self.conversations = conversations or ConversationRegistry()
        self.http_client = http_client

    async def process_input(
        self,
        text: str,
        *,
        session_id: str = DEFAULT_SESSION,
        continue_conversation: bool = True,
        on_event: EventCallback | None = None,
    ) -> str:
        """Send ``text`` to the agent and return the response to show the user.

        Raises InvalidInputError for unsendable prompts and
        EscalationExhaustedError / AgentProcessError when every attempt fails.
        """
        sanitize_prompt(text)
        continue_conversation = self.conversations.consume(session_id, continue_conversation)
        logger.info(
            "relay_request",
            session_id=session_id,
            continue_conversation=continue_conversation,
            input_len=len(text),
        )

        prompt = await self._preprocess(text)
        escalation = PermissionEscalation(
            default_permission_patterns(self.config),
            config=self.config,
            runner=self.runner,
        )
        response = await escalation.run(prompt, continue_conversation=continue_conversation, on_event=on_event)
        logger.info("relay_response", session_id=session_id, response_len=len(response))
        return response

    async def _preprocess(self, text: str) -> str:
        if not self.config.http_proxy_enabled:
            return text
        try:
            expanded = await preprocess_http_requests(
                text,
                timeout=self.config.http_timeout,
                preview_chars=self.config.http_preview_chars,
                allowed_hosts=self.config.http_allowed_hosts,
                client=self.http_client,
            )
        except Exception as exc:
            logger.error("http_proxy_preprocess_failed", error=str(exc))
            return text
        if len(expanded.encode("utf-8", errors="surrogatepass")) > MAX_PROMPT_BYTES:
            # Raw text already passed the size check in process_input.
            logger.warning("http_proxy_expansion_too_long", size=len(expanded), limit=MAX_PROMPT_BYTES)
            return text
        return expanded

    def reset_conversation(self, session_id: str = DEFAULT_SESSION) -> str:
        """Next request for ``session_id`` starts a fresh agent conversation."""
        self.conversations.reset(session_id)
        return RESET_MESSAGE

    async def check_health(self) -> bool:
        logger.info("health_check_started")
        try:
            response = await self.process_input(HEALTH_PROMPT, session_id="__health__", continue_conversation=False)
        except Exception as exc:
            logger.error("health_check_failed", error=str(exc))
            return False
        healthy = bool(response.strip())
        logger.info("health_check_completed", healthy=healthy)
        return healthy
