import logging
import re

from counsellor.config import Config

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("Counsellor_AI")

# Suppress noisy external libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("sentence_transformers").setLevel(logging.WARNING)

# Patterns to mask
PATTERNS = {
    "SESSION_ID": (r'\b[0-9a-f]{32}\b', '[SESSION_ID]'),
    "STUDENT_ID": (r'\b\d{2,10}\b', '[STUDENT_ID]'),
    "NAME": (r'(?i)(name|student)["\']?\s*[:=]\s*["\']?([a-z\s]+)["\']?', r'\1: [NAME_REDACTED]'),
    "EMAIL": (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b', '[EMAIL]'),
    "PHONE": (r'\b\d{3}[-.]?\d{3}[-.]?\d{4}\b', '[PHONE]')
}

def anonymize_text(text: str) -> str:
    """Mask PII in text"""
    if not isinstance(text, str):
        return str(text)

    for name, (pattern, replacement) in PATTERNS.items():
        text = re.sub(pattern, replacement, text)
    return text

def log_audit(action: str, user: str, details: str = ""):
    """Log an audit event with anonymization"""
    if not Config.AUDIT_LOG_ENABLED:
        return
    user_masked = anonymize_text(user)
    details_masked = anonymize_text(details)
    logger.info(f"AUDIT | Action: {action} | User: {user_masked} | Details: {details_masked}")

def get_logger(name: str = None):
    if name:
        return logger.getChild(name)
    return logger
