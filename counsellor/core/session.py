import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from counsellor.core.records import utcnow


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# The web client labels model turns "ai".
_ROLE_ALIASES = {"ai": Role.ASSISTANT, "model": Role.ASSISTANT, "bot": Role.ASSISTANT}


def normalize_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    raw = str(value or "").strip().lower()
    if raw in _ROLE_ALIASES:
        return _ROLE_ALIASES[raw]
    return Role.ASSISTANT if raw == Role.ASSISTANT.value else Role.USER


def new_session_id() -> str:
    return secrets.token_hex(16)


@dataclass
class ChatSession:
    """Countdown-bounded chat session owned by the SessionManager."""

    student_id: str
    duration_seconds: int
    session_id: str = field(default_factory=new_session_id)
    created_at: datetime = field(default_factory=utcnow)
    message_count: int = 0
    remaining_seconds: int = -1
    state: SessionState = SessionState.ACTIVE
    expired_at: Optional[datetime] = None

    def __post_init__(self):
        if self.remaining_seconds < 0:
            self.remaining_seconds = self.duration_seconds

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def tick(self) -> bool:
        """Advance the countdown by one second.

        Returns True only on the tick that moves the session to EXPIRED.
        """
        if not self.active:
            return False
        if self.remaining_seconds > 0:
            self.remaining_seconds -= 1
        if self.remaining_seconds == 0:
            self.expire()
            return True
        return False

    def expire(self) -> None:
        if not self.active:
            return
        self.remaining_seconds = 0
        self.state = SessionState.EXPIRED
        self.expired_at = utcnow()

    def record_message(self) -> int:
        self.message_count += 1
        return self.message_count

    def to_document(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "studentId": self.student_id,
            "createdAt": self.created_at,
            "messageCount": self.message_count,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "studentId": self.student_id,
            "createdAt": self.created_at.isoformat(),
            "messageCount": self.message_count,
            "remainingSeconds": self.remaining_seconds,
            "active": self.active,
            "state": self.state.value,
        }


def transcript_entry(role: Any, text: Any) -> Dict[str, str]:
    return {"role": normalize_role(role).value, "text": str(text or "")}


def normalize_transcript(turns: Optional[List[Any]]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for turn in turns or []:
        if isinstance(turn, dict):
            out.append(transcript_entry(turn.get("role"), turn.get("text") or turn.get("content")))
        else:
            out.append(transcript_entry(getattr(turn, "role", None), getattr(turn, "text", "")))
    return out
