"""
Counsellor AI chat API.

1. Ask within an active session (countdown-bounded)
2. Restart a chat (new session, old transcript kept)
3. Session countdown state
4. Conversation history
"""

from typing import Optional

from fastapi import APIRouter, Depends

from counsellor.api.dependencies import error_response, get_current_user, get_sessions, require_same_student
from counsellor.core.errors import CounsellorError
from counsellor.engines.session_engine import SessionManager
from counsellor.schemas import ChatRequest, ChatResponse, RestartRequest
from counsellor.utils.auth_utils import token_student_id

router = APIRouter()


@router.post("/chat")
async def chat(
    body: ChatRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    student_id = body.id or token_student_id(current_user)
    require_same_student(current_user, student_id)

    prior_turns = None
    if body.messages is not None:
        prior_turns = [turn.model_dump() for turn in body.messages]

    try:
        reply = await sessions.ask(body.session_id, student_id, body.message, prior_turns)
        session = sessions.get_session(body.session_id)
    except CounsellorError as e:
        return error_response(e)

    return ChatResponse(
        reply=reply,
        sessionId=session.session_id,
        messageCount=session.message_count,
        remainingSeconds=session.remaining_seconds,
    )


@router.post("/session/restart")
async def restart(
    body: RestartRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    try:
        session = await sessions.restart(body.session_id, token_student_id(current_user))
    except CounsellorError as e:
        return error_response(e)
    return {"success": True, **session.status()}


@router.get("/session/{session_id}")
async def session_status(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    try:
        session = sessions.get_session(session_id, token_student_id(current_user))
    except CounsellorError as e:
        return error_response(e)
    return {"success": True, **session.status()}


@router.get("/history")
async def history(
    id: str = "",
    limit: Optional[int] = None,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    student_id = id or token_student_id(current_user)
    require_same_student(current_user, student_id)
    try:
        conversations = await sessions.get_history(student_id, limit)
    except CounsellorError as e:
        return error_response(e)
    return {"success": True, "history": conversations}
