import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from backends import BackendError, ChatBackend

logger = logging.getLogger(__name__)


class ExchangeError(Exception):
    """Base error for conversation state problems."""


class ExchangeBusyError(ExchangeError):
    """Raised when a message is submitted while a reply is still outstanding."""


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Turn:
    text: str
    sender: Sender

    def to_dict(self) -> dict:
        return {"text": self.text, "sender": self.sender.value}


class Conversation:
    """Chronological, append-only list of turns."""

    def __init__(self) -> None:
        self._turns: List[Turn] = []

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def clear(self) -> None:
        self._turns = []

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)


@dataclass
class SessionSettings:
    db_config: str = ""
    project_description: str = ""

    def to_dict(self) -> dict:
        return {"db_config": self.db_config, "project_description": self.project_description}


class ExchangeSession:
    """One conversation view: its turns, input draft, settings and pending flag.

    ``backend`` is anything with ``send_message(context, text) -> str``.
    Only one submission may be outstanding at a time. ``reset`` starts a new
    epoch; replies that settle for an older epoch are dropped.
    """

    def __init__(self, backend: ChatBackend, session_id: Optional[str] = None) -> None:
        self.backend = backend
        self.session_id = session_id or uuid.uuid4().hex
        self.conversation = Conversation()
        self.settings = SessionSettings()
        self.input_text = ""
        self._pending = False
        self._epoch = 0
        self._lock = threading.Lock()
        self.last_used = time.monotonic()

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return self.conversation.turns

    def submit(self, text: Optional[str]) -> Optional[Turn]:
        if not text or not text.strip():
            return None

        with self._lock:
            if self._pending:
                raise ExchangeBusyError("A reply is still pending for this conversation.")
            context = self.conversation.turns
            self.conversation.append(Turn(text, Sender.USER))
            self.input_text = ""
            self._pending = True
            epoch = self._epoch

        reply: Optional[Turn] = None
        start_time = perf_counter()
        try:
            reply_text = self.backend.send_message(context, text)
            reply = Turn(reply_text, Sender.ASSISTANT)
            logger.info(
                "Reply received for session %s in %d ms",
                self.session_id,
                int((perf_counter() - start_time) * 1000),
            )
        except BackendError as exc:
            logger.warning("Backend call failed for session %s: %s", self.session_id, exc)
            reply = Turn(f"Error: {_describe(exc)}", Sender.SYSTEM)
        except Exception as exc:
            logger.exception("Unexpected failure while calling backend for session %s", self.session_id)
            reply = Turn(f"Error: {_describe(exc)}", Sender.SYSTEM)
        finally:
            with self._lock:
                if epoch != self._epoch:
                    logger.info("Discarding reply for superseded conversation %s", self.session_id)
                    reply = None
                else:
                    if reply is not None:
                        self.conversation.append(reply)
                    self._pending = False
        return reply

    def reset(self) -> None:
        with self._lock:
            self._epoch += 1
            self.conversation.clear()
            self.input_text = ""
            self.settings = SessionSettings()
            self._pending = False

    def update(
        self,
        input_text: Optional[str] = None,
        db_config: Optional[str] = None,
        project_description: Optional[str] = None,
    ) -> None:
        with self._lock:
            if input_text is not None:
                self.input_text = input_text
            if db_config is not None:
                self.settings.db_config = db_config
            if project_description is not None:
                self.settings.project_description = project_description

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "turns": [turn.to_dict() for turn in self.conversation.turns],
                "pending": self._pending,
                "input": self.input_text,
                "settings": self.settings.to_dict(),
            }


def _describe(exc: Exception) -> str:
    return str(exc).strip() or type(exc).__name__


@dataclass
class SessionStore:
    """Thread-safe map of conversation id to ExchangeSession.

    Conversations idle for longer than ``max_age`` seconds are dropped, and
    at most ``max_sessions`` are kept (least recently used go first).
    """

    backend_factory: Callable[[], ChatBackend]
    max_age: float = 86400.0
    max_sessions: int = 1000
    clock: Callable[[], float] = time.monotonic
    _sessions: Dict[str, ExchangeSession] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def get(self, session_id: str) -> ExchangeSession:
        with self._lock:
            now = self.clock()
            self._prune(now)
            session = self._sessions.get(session_id)
            if session is None:
                if len(self._sessions) >= self.max_sessions:
                    oldest = min(self._sessions.values(), key=lambda s: s.last_used)
                    self._discard(oldest.session_id, "evicted")
                session = ExchangeSession(self.backend_factory(), session_id=session_id)
                self._sessions[session_id] = session
                logger.debug("Created conversation %s", session_id)
            session.last_used = now
            return session

    def peek(self, session_id: Optional[str]) -> Optional[ExchangeSession]:
        """Return an existing conversation without creating one."""
        if not session_id:
            return None
        with self._lock:
            now = self.clock()
            self._prune(now)
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_used = now
            return session

    def _prune(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if now - s.last_used > self.max_age]
        for sid in expired:
            self._discard(sid, "expired")

    def _discard(self, session_id: str, reason: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Conversation %s %s", session_id, reason)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def empty_snapshot() -> dict:
    return {
        "turns": [],
        "pending": False,
        "input": "",
        "settings": SessionSettings().to_dict(),
    }
