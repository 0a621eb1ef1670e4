"""Platform-neutral message handling and delivery.

A ``ChatSurface`` is the boundary to a chat platform (Discord, Slack, a
terminal). ``MessageHandler`` decides whether a message is for the bot,
handles the built-in commands, relays the prompt and sends back text and any
generated media files.
"""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass
import re
from typing import Any

import structlog

from agent_relay.conversation import DEFAULT_SESSION
from agent_relay.escalation import user_message
from agent_relay.media import MediaFile, delete_files, file_icon, filter_by_size, find_recent_files
from agent_relay.relay import AgentRelay
from agent_relay.stream import StreamEvent

logger = structlog.get_logger(__name__)

EMPTY_INPUT_MESSAGE = "Please enter a message."
EMPTY_RESPONSE_MESSAGE = "Sorry, no response could be generated."
RESET_REPLY = "🔄 Conversation history reset. Starting a new conversation."

# Room for the "(continued i/n)" line on follow-up chunks.
_CONTINUATION_RESERVE = 24

_MENTION_RE = re.compile(r"<@!?\w+>")


@dataclass(frozen=True)
class PlatformLimits:
    message_length: int
    file_size: int
    file_count: int


DISCORD_LIMITS = PlatformLimits(message_length=2000, file_size=25 * 1024 * 1024, file_count=10)
SLACK_LIMITS = PlatformLimits(message_length=4000, file_size=1024 * 1024 * 1024, file_count=20)


@dataclass(frozen=True)
class IncomingMessage:
    """A chat message normalized by the platform adapter."""

    content: str
    author: str = ""
    session_id: str = DEFAULT_SESSION
    is_bot: bool = False
    is_system: bool = False
    is_dm: bool = False
    is_mentioned: bool = False
    is_slash_command: bool = False
    prefix: str | None = None

    @property
    def has_prefix(self) -> bool:
        return bool(self.prefix) and self.content.startswith(self.prefix)


class ChatSurface(abc.ABC):
    """Where replies go. ``context`` is whatever the platform needs to reply."""

    name: str = "chat"
    limits: PlatformLimits = DISCORD_LIMITS
    # When True, delivered files are deleted locally after upload.
    uploads_files: bool = True

    @abc.abstractmethod
    async def send_text(self, context: Any, text: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def send_files(self, context: Any, files: list[MediaFile], caption: str) -> None:
        raise NotImplementedError

    async def send_error(self, context: Any, error: BaseException) -> None:
        await self.send_text(context, user_message(error))

    async def stream_event(self, context: Any, event: StreamEvent) -> None:
        """Live progress from the agent. Ignored unless a surface overrides it."""
        return None


def should_process(message: IncomingMessage) -> bool:
    if message.is_bot or message.is_system:
        return False
    if not message.content or not message.content.strip():
        return False
    return message.has_prefix or message.is_dm or message.is_mentioned or message.is_slash_command


def clean_input(message: IncomingMessage) -> str:
    text = message.content
    if message.has_prefix and message.prefix:
        return text[len(message.prefix):].strip()
    if message.is_mentioned:
        return _MENTION_RE.sub("", text).strip()
    return text.strip()


def split_message(text: str, max_length: int) -> list[str]:
    """Split on line boundaries; lines longer than ``max_length`` are cut hard."""
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        if len(current) + len(line) + 1 <= max_length:
            current = f"{current}\n{line}" if current else line
            continue
        if current:
            chunks.append(current)
            current = ""
        if len(line) > max_length:
            chunks.extend(line[i:i + max_length] for i in range(0, len(line), max_length))
        else:
            current = line
    if current:
        chunks.append(current)
    return chunks


def help_message(surface_name: str) -> str:
    return (
        "🤖 **Agent Relay help**\n\n"
        "**Usage:**\n"
        "• Mention the bot, use the command prefix, or send a DM\n\n"
        "**Commands:**\n"
        "• `/reset` - reset the conversation history\n"
        "• `/help` - show this help\n\n"
        "**Conversation:**\n"
        "• Conversations continue automatically until reset\n\n"
        f"**Platform:** {surface_name}"
    )


class MessageHandler:
    """Runs one incoming message through the relay and replies on ``surface``."""

    def __init__(self, surface: ChatSurface, relay: AgentRelay) -> None:
        self.surface = surface
        self.relay = relay
        self.config = relay.config

    async def handle(self, message: IncomingMessage, context: Any) -> None:
        log = logger.bind(surface=self.surface.name, session_id=message.session_id)
        try:
            if not should_process(message):
                return
            text = clean_input(message)
            if not text:
                await self.surface.send_text(context, EMPTY_INPUT_MESSAGE)
                return
            log.info("message_received", author=message.author, input_len=len(text))

            if await self.handle_special_command(text, message, context):
                return

            response = await asyncio.wait_for(
                self.relay.process_input(
                    text,
                    session_id=message.session_id,
                    on_event=lambda event: self.surface.stream_event(context, event),
                ),
                timeout=self.config.request_timeout,
            )
            log.info("response_received", response_len=len(response))
            await self.send_response(context, response)

            try:
                await self.attach_generated_files(context)
            except Exception as exc:
                log.error("file_attachment_failed", error=str(exc))
        except Exception as exc:
            log.exception("message_handling_failed", error=str(exc))
            try:
                await self.surface.send_error(context, exc)
            except Exception as send_exc:
                log.error("error_reply_failed", error=str(send_exc))

    async def handle_special_command(self, text: str, message: IncomingMessage, context: Any) -> bool:
        command = text.strip().lower()
        if command == "/reset":
            self.relay.reset_conversation(message.session_id)
            await self.surface.send_text(context, RESET_REPLY)
            return True
        if command == "/help":
            await self.surface.send_text(context, help_message(self.surface.name))
            return True
        return False

    async def send_response(self, context: Any, response: str) -> None:
        if not response or not response.strip():
            logger.warning("empty_response")
            await self.surface.send_text(context, EMPTY_RESPONSE_MESSAGE)
            return

        max_length = self.surface.limits.message_length
        if len(response) <= max_length:
            await self.surface.send_text(context, response)
            return

        chunks = split_message(response, max(1, max_length - _CONTINUATION_RESERVE))
        for i, chunk in enumerate(chunks):
            prefix = "" if i == 0 else f"(continued {i + 1}/{len(chunks)})\n"
            await self.surface.send_text(context, prefix + chunk)
            if i < len(chunks) - 1:
                await asyncio.sleep(self.config.chunk_delay)

    async def attach_generated_files(self, context: Any) -> list[MediaFile]:
        """Upload media produced in the last few minutes, then delete it."""
        recent = find_recent_files(self.config.media_path, self.config.file_detection_minutes)
        limits = self.surface.limits
        files = filter_by_size(recent, limits.file_size)[:limits.file_count]
        if not files:
            return []

        icons = "".join(dict.fromkeys(file_icon(f.name) for f in files))
        caption = f"{icons} Generated files ({len(files)}):"
        logger.info("attaching_files", count=len(files))
        await self.surface.send_files(context, files, caption)
        if self.surface.uploads_files:
            delete_files(files)
        return files
