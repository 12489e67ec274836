from fastapi import APIRouter, Depends

from counsellor.api.dependencies import error_response, get_current_user, get_sessions, require_same_student
from counsellor.core.errors import CounsellorError
from counsellor.engines.session_engine import SessionManager
from counsellor.schemas import LoginRequest, VerifyTokenRequest

router = APIRouter()


@router.post("/login")
async def login(request: LoginRequest, sessions: SessionManager = Depends(get_sessions)):
    try:
        result = await sessions.login(request.id, request.name)
    except CounsellorError as e:
        return error_response(e)
    return result.to_response()


@router.post("/verify")
async def verify(request: VerifyTokenRequest, sessions: SessionManager = Depends(get_sessions)):
    """Login with a token issued by the student records service."""
    try:
        result = await sessions.verify_token(request.token)
    except CounsellorError as e:
        return error_response(e)
    return result.to_response()


@router.get("/student")
async def student(
    id: str = "",
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    require_same_student(current_user, id)
    try:
        summary = await sessions.get_student(id)
    except CounsellorError as e:
        return error_response(e)
    return {"success": True, "student": summary}
