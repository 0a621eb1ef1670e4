"""Per-session conversation continuation.

Conversation history lives in the agent CLI itself (its ``-c`` flag); the
relay only decides whether the next request continues or starts fresh. A
reset marks one session so that its next request starts fresh exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SESSION = "default"


@dataclass
class ConversationState:
    pending_reset: bool = False


class ConversationRegistry:
    """Map of session id to its pending-reset flag."""

    def __init__(self) -> None:
        self._sessions: dict[str, ConversationState] = {}

    def _state(self, session_id: str) -> ConversationState:
        return self._sessions.setdefault(session_id, ConversationState())

    def reset(self, session_id: str = DEFAULT_SESSION) -> None:
        self._state(session_id).pending_reset = True
        logger.info("conversation_reset_requested", session_id=session_id)

    def consume(self, session_id: str = DEFAULT_SESSION, continue_conversation: bool = True) -> bool:
        """Return the continue flag for the next request, clearing any reset."""
        state = self._state(session_id)
        if state.pending_reset:
            state.pending_reset = False
            logger.info("conversation_starting_fresh", session_id=session_id)
            return False
        return continue_conversation

    def is_pending(self, session_id: str = DEFAULT_SESSION) -> bool:
        state = self._sessions.get(session_id)
        return bool(state and state.pending_reset)
