"""Permission-escalation controller.

Tries an ordered list of ``--allowedTools`` patterns one at a time. A
permission-class failure moves on to the next pattern; any other failure
stops immediately. Attempts never overlap.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Literal

import structlog
from claude_agent_sdk import CLINotFoundError

from agent_relay._common import (
    AgentRequest,
    AttemptFailure,
    AttemptInProgress,
    AttemptPartialTimeout,
    AttemptRunner,
    AttemptSuccess,
    EventCallback,
    make_request,
    run_agent_attempt,
)
from agent_relay.config import RelayConfig
from agent_relay.errors import AgentProcessError, EscalationExhaustedError, InvalidInputError, PromptTooLongError
from agent_relay.extract import extract_response

logger = structlog.get_logger(__name__)

EscalationState = Literal["attempting", "succeeded", "exhausted_failed"]
ErrorCategory = Literal["permission", "timeout", "network", "mcp", "unknown"]

TIMEOUT_NOTICE = (
    "\n\n⏱️ [Processing exceeded the time limit, but a partial result was recovered]\n\n"
    "If media generation is still running, wait a moment and try again."
)
IN_PROGRESS_MESSAGE = (
    "⏳ Media generation is still in progress.\n\n"
    "The tool service is taking a while to respond. Please wait and send the request again."
)

FALLBACK_MCP_TOOLS: tuple[str, ...] = (
    "mcp__t2i-fal-imagen4-fast",
    "mcp__t2v-fal-veo3-fast",
    "mcp__t2m-google-lyria",
    "mcp__i2v-fal-hailuo-02-pro",
    "mcp__i2i-fal-flux-kontext-max",
    "mcp__r2v-fal-vidu-q1",
)

_PERMISSION_KEYWORDS: tuple[str, ...] = (
    "permission",
    "not allowed",
    "denied",
    "unauthorized",
    "forbidden",
    "access denied",
    "not permitted",
    "command not allowed",
    "tool not allowed",
)


def get_all_mcp_tools(mcp_config: Path) -> str:
    """Comma-separated ``mcp__<server>`` names from the MCP config file."""
    if not mcp_config.exists():
        logger.debug("mcp_config_missing", path=str(mcp_config))
        return ",".join(FALLBACK_MCP_TOOLS)
    try:
        data = json.loads(mcp_config.read_text())
        servers = data.get("mcpServers") or {}
        if not isinstance(servers, dict):
            raise ValueError("mcpServers is not an object")
    except (json.JSONDecodeError, OSError, AttributeError, ValueError) as exc:
        logger.warning("mcp_config_unreadable", path=str(mcp_config), error=str(exc))
        return ",".join(FALLBACK_MCP_TOOLS)
    tools = ",".join(f"mcp__{name}" for name in servers)
    logger.debug("mcp_tools_loaded", tools=tools)
    return tools


def default_permission_patterns(config: RelayConfig) -> list[str]:
    """Patterns in priority order. Configured patterns win over the default."""
    if config.permission_patterns:
        return list(config.permission_patterns)
    mcp_path = Path(config.mcp_config)
    if not mcp_path.is_absolute():
        mcp_path = Path(config.cwd) / mcp_path
    mcp_tools = get_all_mcp_tools(mcp_path)
    # Looser variants ("...,Bash", "...,Bash(*)") and MCP-only can be listed
    # in RELAY_PERMISSION_PATTERNS; curl/open is the default grant.
    return [f"{mcp_tools},Bash(curl:*),Bash(open:*)"]


def _error_text(error: BaseException) -> tuple[str, str]:
    stderr = getattr(error, "stderr", None) or ""
    return str(error).lower(), str(stderr).lower()


def is_permission_error(error: BaseException) -> bool:
    message, stderr = _error_text(error)
    return any(k in message or k in stderr for k in _PERMISSION_KEYWORDS)


def categorize_error(error: BaseException) -> ErrorCategory:
    if is_permission_error(error):
        return "permission"
    message, _ = _error_text(error)
    if "timeout" in message or "sigterm" in message:
        return "timeout"
    if "network" in message or "connection" in message:
        return "network"
    if "mcp" in message or "server" in message:
        return "mcp"
    return "unknown"


def user_friendly_error(error: BaseException, *, attempt_index: int = 0, total_attempts: int = 1) -> str:
    """Short category-specific hint; never a traceback."""
    category = categorize_error(error)
    if category == "permission":
        return (
            "Permission error: the agent lacks the tool permissions it needs. "
            "HTTP requests are performed by the bot on its behalf."
        )
    if category == "timeout":
        return "Timeout: processing took too long. Please try again."
    if category == "network":
        return "Network error: could not connect to the agent's backend."
    if category == "mcp":
        return "Tool service error: an external tool service is having problems. Please wait and retry."
    if attempt_index > 0:
        return (
            f"An error occurred while processing (attempt {attempt_index + 1}/{total_attempts}). "
            "Trying another approach..."
        )
    first_line = (str(error).splitlines() or [""])[0]
    return f"An error occurred while processing: {first_line[:200]}"


class PermissionEscalation:
    """Runs one logical request through the pattern list.

    ``state`` is ``attempting`` while a pattern is in flight (its index in
    ``attempt_index``), then ``succeeded`` or ``exhausted_failed``.
    """

    def __init__(
        self,
        patterns: list[str],
        *,
        config: RelayConfig,
        runner: AttemptRunner = run_agent_attempt,
    ) -> None:
        if not patterns:
            raise ValueError("at least one permission pattern is required")
        self.patterns = list(patterns)
        self.config = config
        self.runner = runner
        self.state: EscalationState = "attempting"
        self.attempt_index = 0
        self.requests: list[AgentRequest] = []

    async def run(
        self,
        prompt: str,
        *,
        continue_conversation: bool = True,
        on_event: EventCallback | None = None,
    ) -> str:
        total = len(self.patterns)
        for index, pattern in enumerate(self.patterns):
            self.state = "attempting"
            self.attempt_index = index
            logger.info("permission_attempt", attempt=index + 1, total=total, pattern=pattern[:120])

            request = make_request(
                prompt,
                continue_conversation=continue_conversation,
                allowed_tools=pattern,
                config=self.config,
            )
            self.requests.append(request)
            result = await self.runner(request, config=self.config, on_event=on_event, attempt=index)

            if not isinstance(result, AttemptFailure):
                self.state = "succeeded"
                logger.info("permission_pattern_succeeded", attempt=index + 1)
                return self._render(result)

            error = result.to_error()
            hint = user_friendly_error(error, attempt_index=index, total_attempts=total)
            logger.warning("permission_pattern_failed", attempt=index + 1, hint=hint)

            if index == total - 1:
                self.state = "exhausted_failed"
                attempts = index + 1
                noun = "attempt" if attempts == 1 else "attempts"
                raise EscalationExhaustedError(
                    f"All permission patterns failed ({attempts} {noun}). {hint}",
                    attempts=attempts,
                ) from error

            if not is_permission_error(error):
                self.state = "exhausted_failed"
                raise error

            logger.info("permission_retry", next_attempt=index + 2, total=total)

    def _render(self, result: AttemptSuccess | AttemptPartialTimeout | AttemptInProgress) -> str:
        if isinstance(result, AttemptInProgress):
            return IN_PROGRESS_MESSAGE
        response = extract_response(result.raw_output, media_dir=self.config.media_path)
        text = response.render()
        if isinstance(result, AttemptPartialTimeout):
            return text + TIMEOUT_NOTICE
        return text


def user_message(error: BaseException) -> str:
    """What the chat user sees for any failure that reached the caller."""
    if isinstance(error, EscalationExhaustedError):
        return error.user_message
    if isinstance(error, AgentProcessError):
        return user_friendly_error(error)
    if isinstance(error, PromptTooLongError):
        return "✂️ Your message is too long for the agent. Please shorten it and try again."
    if isinstance(error, InvalidInputError):
        return "Please enter a message."
    if isinstance(error, CLINotFoundError):
        return "🧠 The agent CLI is not installed or not on PATH."
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return "⏱️ Processing timed out. Please try again."
    return "❌ Sorry, something went wrong while processing your request."
