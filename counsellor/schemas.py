from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import List, Optional


class LoginRequest(BaseModel):
    id: str = Field(default="", validation_alias=AliasChoices("id", "studentId", "student_id"))
    name: str = ""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


class VerifyTokenRequest(BaseModel):
    token: str = ""

    model_config = ConfigDict(extra="ignore")


class TranscriptTurn(BaseModel):
    role: str = "user"
    text: str = Field(default="", validation_alias=AliasChoices("text", "content"))

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChatRequest(BaseModel):
    message: str = ""
    id: str = Field(default="", validation_alias=AliasChoices("id", "studentId", "student_id"))
    session_id: str = Field(default="", validation_alias=AliasChoices("sessionId", "session_id"))
    # None means "use the stored transcript for this session".
    messages: Optional[List[TranscriptTurn]] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


class ChatResponse(BaseModel):
    success: bool = True
    reply: str
    sessionId: str
    messageCount: int
    remainingSeconds: int


class RestartRequest(BaseModel):
    session_id: str = Field(default="", validation_alias=AliasChoices("sessionId", "session_id"))

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
