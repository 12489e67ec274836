import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default

class Config:
    # Security
    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        raise ValueError("No SECRET_KEY set. Please set SECRET_KEY in .env file for JWT security.")

    # AI Environment
    # Keep backward compatibility with older GOOGLE_API_KEY naming.
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = _env_int("PORT", 5000)
    DEBUG = _env_bool("DEBUG", False)
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    # Embeddings: "sentence-transformers" (local) or "gemini"
    EMBEDDING_BACKEND = os.getenv("EMBEDDING_BACKEND", "sentence-transformers").strip().lower()
    EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "paraphrase-multilingual-MiniLM-L12-v2")
    GEMINI_EMBEDDING_MODEL = os.getenv("GEMINI_EMBEDDING_MODEL", "text-embedding-004")

    # Database
    MONGO_URI = os.getenv("MONGO_URI")
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "studentdb")

    # Record provider (external student information system)
    RECORD_API_BASE = (os.getenv("RECORD_API_BASE") or os.getenv("AUTH_API_URL") or "").rstrip("/")
    RECORD_API_TOKEN = os.getenv("RECORD_API_TOKEN") or os.getenv("API_TOKEN")
    UPSTREAM_TIMEOUT = _env_float("UPSTREAM_TIMEOUT", 10.0)

    # Category endpoints; {base} and {student_id} are substituted per request.
    RECORD_ENDPOINTS = {
        "profile": os.getenv("PROFILE_ENDPOINT", "{base}/students/{student_id}"),
        "attendance": os.getenv(
            "ATTENDANCE_ENDPOINT", "{base}/student/attendance/summary/monthly/{student_id}/"
        ),
        "scores": os.getenv("SCORES_ENDPOINT", "{base}/student/ExamData/{student_id}/"),
        "enrollment": os.getenv("ENROLLMENT_ENDPOINT", "{base}/students/enrollment/"),
        "assignments": os.getenv("ASSIGNMENTS_ENDPOINT", "{base}/student/assignments/{student_id}/"),
        "exam_list": os.getenv("EXAM_LIST_ENDPOINT", "{base}/student/ExamList/{student_id}/"),
    }
    VERIFY_TOKEN_ENDPOINT = os.getenv("VERIFY_TOKEN_ENDPOINT", "{base}/verify-token/{token}/")

    # Sessions
    SESSION_DURATION_SECONDS = max(1, _env_int("SESSION_DURATION_SECONDS", 900))
    HISTORY_DEFAULT_LIMIT = max(1, _env_int("HISTORY_DEFAULT_LIMIT", 10))

    # Retrieval
    RETRIEVAL_TOP_K = max(1, _env_int("RETRIEVAL_TOP_K", 5))
    INDEX_CACHE_MAX_ENTRIES = max(1, _env_int("INDEX_CACHE_MAX_ENTRIES", 500))
    INDEX_CACHE_TTL_SECONDS = max(1, _env_int("INDEX_CACHE_TTL_SECONDS", 6 * 3600))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    AUDIT_LOG_ENABLED = _env_bool("AUDIT_LOG_ENABLED", True)

    # Login policy
    STUDENT_ID_PATTERN = r"^\d{2}$"
    STUDENT_NAME_PATTERN = r"^[A-Za-z]+ [A-Za-z]+$"

    # Constants & Keywords
    IDENTITY_PROBE_PHRASES = [
        "hey chatgpt",
        "are you google",
        "are you gemini",
        "are you openai",
        "are you chatgpt",
        "are you grok",
        "which llm",
        "what model",
        "who made you",
        "who created you",
        "your developer",
        "your creator",
        "your name",
        "identify yourself",
        "who are you",
        "what are you",
        "your purpose",
        "are you a counsellor",
    ]
