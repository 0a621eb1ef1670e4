"""Shared agent runner: one spawn-to-exit attempt of the external agent CLI.

The prompt is always passed as a single argv element through
``create_subprocess_exec``; no shell ever sees it.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import errno
import inspect
import os
import re
import signal as _signal
from typing import Awaitable, Callable

import structlog
from claude_agent_sdk import CLINotFoundError

from agent_relay.config import RelayConfig
from agent_relay.errors import AgentProcessError, InvalidInputError, PromptTooLongError
from agent_relay.extract import scan_output
from agent_relay.stream import StreamDecoder, StreamEvent

logger = structlog.get_logger(__name__)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_READ_SIZE = 64 * 1024

MANAGED_TOOL_MARKER = "mcp__"

# Linux caps a single argv element at 128 KiB (MAX_ARG_STRLEN); keep clear of it.
MAX_PROMPT_BYTES = 120 * 1024

# 128 + SIGTERM, as reported by shells and wrappers that exit on the signal.
_SIGTERM_EXIT_CODE = 143

EventCallback = Callable[[StreamEvent], object]


def strip_control_chars(text: str) -> str:
    """Remove NUL and C0 control bytes other than tab, LF and CR."""
    return _CONTROL_CHARS_RE.sub("", text)


def sanitize_prompt(text: str) -> str:
    """Strip control bytes; raise InvalidInputError if nothing sendable is left.

    Raises PromptTooLongError when the UTF-8 encoding exceeds MAX_PROMPT_BYTES.
    """
    if not isinstance(text, str):
        raise InvalidInputError("Invalid input: must be a non-empty string")
    cleaned = strip_control_chars(text)
    if not cleaned.strip():
        raise InvalidInputError("Input became empty after sanitization")
    size = len(cleaned.encode("utf-8", errors="surrogatepass"))
    if size > MAX_PROMPT_BYTES:
        raise PromptTooLongError(f"Prompt is too long ({size} bytes, limit {MAX_PROMPT_BYTES})")
    return cleaned


def get_agent_env() -> dict[str, str]:
    """Env overrides for the agent subprocess only.

    Forces non-interactive, colourless output. CLAUDECODE="" keeps the CLI
    from refusing to start when the relay itself runs inside an agent session.
    """
    return {
        "CI": "true",
        "NON_INTERACTIVE": "1",
        "FORCE_COLOR": "0",
        "NO_COLOR": "1",
        "CLAUDECODE": "",
    }


def build_agent_args(
    prompt: str,
    *,
    continue_conversation: bool,
    allowed_tools: str,
    mcp_config: str,
) -> list[str]:
    args = ["--print"]
    if continue_conversation:
        args.append("-c")
    args += ["--output-format", "stream-json", "--verbose", "--mcp-config", mcp_config]
    # "=" form so the pattern is never mistaken for the positional prompt.
    args.append(f"--allowedTools={allowed_tools}")
    args.append(prompt)
    return args


def timeout_for_pattern(allowed_tools: str, config: RelayConfig) -> float:
    """Managed (MCP) tools get the long ceiling; everything else the short one."""
    if MANAGED_TOOL_MARKER in allowed_tools:
        return config.managed_tool_timeout
    return config.default_timeout


@dataclass(frozen=True)
class AgentRequest:
    prompt: str
    continue_conversation: bool
    allowed_tools: str
    timeout: float


def make_request(
    prompt: str,
    *,
    continue_conversation: bool,
    allowed_tools: str,
    config: RelayConfig,
) -> AgentRequest:
    return AgentRequest(
        prompt=prompt,
        continue_conversation=continue_conversation,
        allowed_tools=allowed_tools,
        timeout=timeout_for_pattern(allowed_tools, config),
    )


@dataclass(frozen=True)
class AttemptSuccess:
    raw_output: str


@dataclass(frozen=True)
class AttemptPartialTimeout:
    """Killed on timeout, but the output so far has something to show."""

    raw_output: str


@dataclass(frozen=True)
class AttemptInProgress:
    """Killed on timeout with nothing extractable yet."""

    raw_output: str


@dataclass(frozen=True)
class AttemptFailure:
    exit_code: int | None
    signal: str | None
    stderr: str

    def to_error(self) -> AgentProcessError:
        message = "Agent execution failed"
        if self.signal:
            message += f" (signal {self.signal})"
        return AgentProcessError(
            message,
            exit_code=self.exit_code,
            signal=self.signal,
            stderr=self.stderr.strip() or None,
        )


AttemptResult = AttemptSuccess | AttemptPartialTimeout | AttemptInProgress | AttemptFailure

AttemptRunner = Callable[..., Awaitable[AttemptResult]]


class _Terminator:
    """Sends SIGTERM at most once, however many paths ask for it."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self.fired = False

    def terminate(self) -> bool:
        if self.fired or self._proc.returncode is not None:
            return False
        self.fired = True
        with contextlib.suppress(ProcessLookupError):
            self._proc.terminate()
        return True

    def kill(self) -> None:
        if self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()


def _signal_name(returncode: int) -> str | None:
    if returncode >= 0:
        return None
    try:
        return _signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


async def run_agent_attempt(
    request: AgentRequest,
    *,
    config: RelayConfig,
    on_event: EventCallback | None = None,
    attempt: int = 0,
) -> AttemptResult:
    """Spawn the agent once and classify how it ended.

    ``on_event`` (sync or async) receives each StreamEvent in the order the
    process wrote it. Raises InvalidInputError before spawning when the
    prompt sanitizes to nothing.
    """
    prompt = sanitize_prompt(request.prompt)
    args = build_agent_args(
        prompt,
        continue_conversation=request.continue_conversation,
        allowed_tools=request.allowed_tools,
        mcp_config=config.mcp_config,
    )
    log = logger.bind(attempt=attempt + 1)
    log.info(
        "agent_attempt_started",
        mode="continue" if request.continue_conversation else "new",
        allowed_tools=request.allowed_tools[:80],
        timeout=request.timeout,
        argc=len(args),
        prompt_preview=prompt[:100],
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            config.command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **get_agent_env()},
            cwd=config.cwd,
        )
    except FileNotFoundError as exc:
        raise CLINotFoundError("Agent command not found", cli_path=config.command) from exc
    except OSError as exc:
        if exc.errno == errno.E2BIG:
            raise PromptTooLongError("Prompt is too long") from exc
        raise

    decoder = StreamDecoder()
    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    terminator = _Terminator(proc)

    async def _emit(events: list[StreamEvent]) -> None:
        if on_event is None:
            return
        for event in events:
            try:
                result = on_event(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.warning("stream_callback_failed", kind=event.kind, error=str(exc))

    async def _pump_stdout() -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_SIZE)
            if not chunk:
                break
            stdout_chunks.append(chunk)
            log.debug(
                "agent_stdout_chunk",
                size=len(chunk),
                preview=chunk[:120].decode("utf-8", errors="replace"),
            )
            await _emit(decoder.feed(chunk))
        await _emit(decoder.flush())

    async def _pump_stderr() -> None:
        assert proc.stderr is not None
        while True:
            chunk = await proc.stderr.read(_READ_SIZE)
            if not chunk:
                break
            stderr_chunks.append(chunk)

    pumps = asyncio.gather(_pump_stdout(), _pump_stderr())
    try:
        try:
            await asyncio.wait_for(asyncio.shield(pumps), timeout=request.timeout)
        except asyncio.TimeoutError:
            log.warning("agent_timeout", timeout=request.timeout)
            terminator.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(pumps), timeout=config.kill_grace)
            except asyncio.TimeoutError:
                log.warning("agent_kill", grace=config.kill_grace)
                terminator.kill()
                await pumps
        returncode = await proc.wait()
    finally:
        if proc.returncode is None:
            terminator.kill()
            pumps.cancel()

    stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    signal_name = _signal_name(returncode)
    # A SIGTERM from outside the relay is handled like our own timeout kill.
    timed_out = terminator.fired or signal_name == "SIGTERM" or returncode == _SIGTERM_EXIT_CODE
    log.info(
        "agent_process_closed",
        code=returncode,
        signal=signal_name,
        timed_out=timed_out,
        stdout_len=len(stdout),
        stderr_len=len(stderr),
    )

    if returncode == 0:
        return AttemptSuccess(stdout)

    if timed_out:
        if stdout.strip():
            log.info("agent_timeout_stdout", preview=stdout[:200])
        if not scan_output(stdout).is_empty:
            log.info("agent_partial_response")
            return AttemptPartialTimeout(stdout)
        log.info("agent_no_partial_response")
        return AttemptInProgress(stdout)

    log.error("agent_failed", code=returncode, signal=signal_name, stderr=stderr[:500])
    return AttemptFailure(
        exit_code=returncode if returncode >= 0 else None,
        signal=signal_name,
        stderr=stderr,
    )
