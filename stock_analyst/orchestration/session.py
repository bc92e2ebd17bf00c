"""Conversation state kept per client session."""
import asyncio
import logging
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from stock_analyst.streaming.relay import StreamRelay

logger = logging.getLogger(__name__)

Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


def normalize_messages(messages: Iterable[Message]) -> List[Message]:
    """Keep the first system message, moved to the front; drop any later ones."""
    system: Optional[Message] = None
    rest: List[Message] = []
    dropped = 0
    for message in messages:
        if message.role == "system":
            if system is None:
                system = message
            else:
                dropped += 1
            continue
        rest.append(message)
    if dropped:
        logger.warning("Dropped %d extra system message(s); the first one is honored", dropped)
    return ([system] if system is not None else []) + rest


class ConversationSession:
    """Ordered, append-only message log replayed on every turn."""

    def __init__(self):
        self._messages: List[Message] = []

    def append_message(self, role: Role, content: str) -> Message:
        message = Message(role=role, content=content)
        self._messages.append(message)
        return message

    def reset(self) -> None:
        self._messages = []

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def to_request_payload(self) -> List[Dict[str, str]]:
        return [m.model_dump() for m in normalize_messages(self._messages)]


class SessionContext:
    """Everything one client session owns: its conversation, ticker and live relay."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.conversation = ConversationSession()
        self.ticker = ""
        self.active_relay: Optional[StreamRelay] = None
        self._lock = asyncio.Lock()

    def reset(self, ticker: str = "") -> None:
        # no await in here: callers never observe messages and ticker out of step
        self.conversation.reset()
        self.ticker = ticker

    async def cancel_active(self) -> None:
        relay, self.active_relay = self.active_relay, None
        if relay is not None and relay.live:
            logger.info("Superseding live relay for session %s", self.session_id)
            await relay.cancel()

    async def start_relay(self, relay: StreamRelay) -> StreamRelay:
        """Start `relay`, aborting the previous one first so only one writes at a time."""
        async with self._lock:
            await self.cancel_active()
            self.active_relay = relay
            relay.start()
        return relay

    def snapshot(self) -> Dict[str, object]:
        return {
            "sessionId": self.session_id,
            "stockCode": self.ticker,
            "messages": [m.model_dump() for m in self.conversation.messages],
            "streaming": bool(self.active_relay and self.active_relay.live),
        }


class SessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, SessionContext] = {}

    def get(self, session_id: str) -> SessionContext:
        context = self._sessions.get(session_id)
        if context is None:
            context = SessionContext(session_id)
            self._sessions[session_id] = context
        return context

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def close(self) -> None:
        for context in self._sessions.values():
            await context.cancel_active()
