"""
Session Lifecycle Manager

Handles:
1. Login (validation, aggregation, credential check, persistence)
2. Session creation, restart and the one-tick-per-second countdown
3. Message accounting and transcript persistence around each answer
4. Conversation history
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from counsellor.config import Config
from counsellor.core.errors import (
    AuthFailure,
    CounsellorError,
    NotFound,
    SessionExpired,
    SessionNotFound,
    ValidationError,
)
from counsellor.core.records import StudentRecord, utcnow
from counsellor.core.session import ChatSession, Role, normalize_transcript, transcript_entry
from counsellor.engines.counsellor_engine import CounsellorEngine
from counsellor.engines.data_engine import DataEngine, credentials_match
from counsellor.engines.db_engine import ConversationStore
from counsellor.engines.index_engine import SemanticIndexCache
from counsellor.utils.auth_utils import create_access_token
from counsellor.utils.logging_utils import get_logger, log_audit

logger = get_logger("sessions")

# Expired sessions are kept in memory this long so late requests get
# SessionExpired rather than SessionNotFound.
EXPIRED_SESSION_RETENTION = timedelta(hours=1)
HISTORY_TITLE_LENGTH = 40

_ID_RE = re.compile(Config.STUDENT_ID_PATTERN)
_NAME_RE = re.compile(Config.STUDENT_NAME_PATTERN)


@dataclass
class LoginResult:
    record: StudentRecord
    session: ChatSession
    access_token: str

    def to_response(self) -> Dict[str, Any]:
        summary = self.record.summary()
        return {
            "success": True,
            "student": summary,
            "sessionId": self.session.session_id,
            "remainingSeconds": self.session.remaining_seconds,
            "access_token": self.access_token,
            "token_type": "bearer",
        }


def validate_credentials(student_id: Any, name: Any) -> Tuple[str, str]:
    """Check credential shape before any network call."""
    sid = str(student_id or "").strip()
    full_name = str(name or "").strip()
    if not sid or not full_name:
        raise ValidationError("id", "ID and name are required")
    if not _ID_RE.match(sid):
        raise ValidationError("id", "ID must be exactly 2 digits")
    if not _NAME_RE.match(full_name):
        raise ValidationError("name", "Enter first and last name (alphabets only)")
    return sid, full_name


def _conversation_title(messages: List[Dict[str, Any]]) -> str:
    first = next((m for m in messages if str(m.get("role")) == Role.USER.value and m.get("text")), None)
    if not first:
        return "New conversation"
    text = re.sub(r"\s+", " ", str(first["text"])).strip()
    if len(text) > HISTORY_TITLE_LENGTH:
        text = text[:HISTORY_TITLE_LENGTH].rstrip() + "..."
    return text


class SessionManager:
    def __init__(
        self,
        data_engine: DataEngine,
        store: ConversationStore,
        counsellor: CounsellorEngine,
        index_cache: SemanticIndexCache,
        duration_seconds: Optional[int] = None,
        tick_interval: float = 1.0,
    ):
        self.data_engine = data_engine
        self.store = store
        self.counsellor = counsellor
        self.index_cache = index_cache
        self.duration_seconds = duration_seconds or Config.SESSION_DURATION_SECONDS
        self.tick_interval = tick_interval
        self.sessions: Dict[str, ChatSession] = {}
        self._countdown_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, student_id: Any, name: Any) -> LoginResult:
        sid, full_name = validate_credentials(student_id, name)
        record = await self.data_engine.aggregate(sid, full_name)

        if not credentials_match(record.profile, sid, full_name):
            log_audit("LOGIN_FAILED", sid, f"profile={record.matches.get('profile', 'missing')}")
            raise AuthFailure("Invalid credentials")

        return await self._establish(record)

    async def verify_token(self, token: Any) -> LoginResult:
        """Log in with a token issued by the record provider."""
        raw = str(token or "").strip()
        if not raw:
            raise ValidationError("token", "Token is required")
        identity = await self.data_engine.resolve_token(raw)
        if not identity:
            raise AuthFailure("Invalid user data from token")
        record = await self.data_engine.aggregate(identity["id"], identity["name"])
        return await self._establish(record)

    async def _establish(self, record: StudentRecord) -> LoginResult:
        if not await self.store.upsert_student(record):
            raise CounsellorError("Could not save student record")
        # Fresh data: the next question rebuilds the index.
        self.index_cache.invalidate(record.student_id)

        session = await self.create_session(record.student_id)
        access_token = create_access_token(
            data={
                "sub": record.student_id,
                "student_id": record.student_id,
                "session_id": session.session_id,
                "name": record.name,
                "role": "student",
            }
        )
        log_audit("LOGIN", record.student_id, f"categories={','.join(record.present_categories())}")
        return LoginResult(record=record, session=session, access_token=access_token)

    async def get_student(self, student_id: Any) -> Dict[str, Any]:
        sid = str(student_id or "").strip()
        if not sid:
            raise ValidationError("id", "ID is required")
        record = await self.store.get_student_by_id(sid)
        if record is None:
            raise NotFound("Student not found")
        return {**record.summary(), "profile": record.profile}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, student_id: str) -> ChatSession:
        session = ChatSession(student_id=student_id, duration_seconds=self.duration_seconds)
        self.sessions[session.session_id] = session
        if not await self.store.create_session(session.to_document()):
            logger.warning("Session created without a durable copy")
        log_audit("SESSION_START", student_id, f"session={session.session_id}")
        return session

    def get_session(self, session_id: Any, student_id: Any = None) -> ChatSession:
        session = self.sessions.get(str(session_id or ""))
        if session is None:
            raise SessionNotFound()
        if student_id is not None and session.student_id != str(student_id).strip():
            raise SessionNotFound()
        return session

    async def restart(self, session_id: Any, student_id: Any = None) -> ChatSession:
        """Start a new chat for the same student.

        The old session ends; its stored transcript is kept.
        """
        old = self.get_session(session_id, student_id)
        old.expire()
        session = await self.create_session(old.student_id)
        log_audit("SESSION_RESTART", old.student_id, f"from={old.session_id} to={session.session_id}")
        return session

    def tick(self) -> List[str]:
        """Advance every session's countdown by one second.

        Returns the ids of sessions that expired on this tick.
        """
        expired: List[str] = []
        for session in list(self.sessions.values()):
            if session.tick():
                expired.append(session.session_id)
                log_audit("SESSION_EXPIRED", session.student_id, f"session={session.session_id}")
        self._prune_expired()
        return expired

    def _prune_expired(self) -> None:
        cutoff = utcnow() - EXPIRED_SESSION_RETENTION
        stale = [
            sid for sid, s in self.sessions.items()
            if not s.active and s.expired_at is not None and s.expired_at < cutoff
        ]
        for sid in stale:
            del self.sessions[sid]

    async def run_countdown(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def start_countdown(self) -> None:
        if self._countdown_task is None or self._countdown_task.done():
            self._countdown_task = asyncio.create_task(self.run_countdown())

    async def stop_countdown(self) -> None:
        task, self._countdown_task = self._countdown_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def ask(
        self,
        session_id: Any,
        student_id: Any,
        question: Any,
        prior_turns: Optional[List[Any]] = None,
    ) -> str:
        text = str(question or "").strip()
        if not text:
            raise ValidationError("message", "Message is required")

        session = self.get_session(session_id, student_id)
        if not session.active:
            raise SessionExpired()

        if prior_turns is None:
            history = normalize_transcript(
                await self.store.get_conversation(session.student_id, session.session_id)
            )
        else:
            history = normalize_transcript(prior_turns)

        try:
            reply = await self.counsellor.answer(session.student_id, text, history)
        except NotFound:
            session.expire()
            log_audit("SESSION_INVALIDATED", session.student_id, "student record missing")
            raise

        # Only answered questions count towards the session.
        count = session.record_message()
        await self.store.set_message_count(session.session_id, count)

        transcript = history + [transcript_entry(Role.USER, text), transcript_entry(Role.ASSISTANT, reply)]
        if not await self.store.save_conversation(session.student_id, session.session_id, transcript):
            logger.warning("Reply returned without persisting the transcript")
        return reply

    async def get_history(self, student_id: Any, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        sid = str(student_id or "").strip()
        if not sid:
            raise ValidationError("id", "ID is required")
        limit = max(1, int(limit or Config.HISTORY_DEFAULT_LIMIT))
        conversations = await self.store.list_conversations(sid, limit)

        history: List[Dict[str, Any]] = []
        for conv in conversations[:limit]:
            messages = normalize_transcript(conv.get("messages"))
            updated_at = conv.get("updatedAt")
            history.append({
                "id": conv.get("sessionId"),
                "sessionId": conv.get("sessionId"),
                "title": _conversation_title(messages),
                "messages": messages,
                "messageCount": len(messages),
                "updatedAt": updated_at.isoformat() if isinstance(updated_at, datetime) else updated_at,
            })
        return history
