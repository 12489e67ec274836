"""
Data Engine - Student Record Aggregation
Gathers the six record categories from the record provider in parallel
and reconciles them into one StudentRecord.
"""
import asyncio
from typing import Any, Dict, Iterable, List, Optional, Tuple

from counsellor.config import Config
from counsellor.core.records import (
    CATEGORY_NAMES,
    MatchKind,
    MatchResult,
    StudentRecord,
    is_empty_document,
    utcnow,
)
from counsellor.engines.upstream_gateway import UpstreamGateway
from counsellor.utils.logging_utils import get_logger

logger = get_logger("data")

# Categories whose endpoint may answer with the whole roster instead of
# the requested student's document.
ROSTER_CATEGORIES = {"profile", "enrollment"}

_REFERENCE_KEYS = ("studentId", "student_id", "STUDENT_ID")
_ID_KEYS = ("id",) + _REFERENCE_KEYS
_FIRST_NAME_KEYS = ("firstname", "first_name", "firstName")
_LAST_NAME_KEYS = ("lastname", "last_name", "lastName")
_FULL_NAME_KEYS = ("name", "full_name", "fullName", "student_name", "STUDENT_NAME")


def _first_value(doc: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = doc.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def split_full_name(full_name: Optional[str]) -> Tuple[str, str]:
    tokens = str(full_name or "").split()
    if not tokens:
        return "", ""
    return tokens[0].lower(), (tokens[-1].lower() if len(tokens) > 1 else "")


def _identity_values(doc: Dict[str, Any]) -> List[str]:
    """Student ids a document claims.

    Roster rows often carry their own primary key in `id` next to a student
    reference; when any reference key is present, `id` is not an identity.
    """
    references = [str(doc[key]).strip() for key in _REFERENCE_KEYS if str(doc.get(key) or "").strip()]
    if references:
        return references
    own = str(doc.get("id") or "").strip()
    return [own] if own else []


def record_id_matches(doc: Any, student_id: str) -> bool:
    if not isinstance(doc, dict):
        return False
    return str(student_id).strip() in _identity_values(doc)


def record_name_matches(doc: Any, full_name: Optional[str]) -> bool:
    """Compare first and last name tokens case-insensitively."""
    if not isinstance(doc, dict):
        return False
    first, last = split_full_name(full_name)
    if not first:
        return False
    doc_first = _first_value(doc, _FIRST_NAME_KEYS)
    doc_last = _first_value(doc, _LAST_NAME_KEYS)
    if doc_first is None and doc_last is None:
        doc_first, doc_last = split_full_name(_first_value(doc, _FULL_NAME_KEYS))
    return str(doc_first or "").lower() == first and str(doc_last or "").lower() == last


def has_name_fields(doc: Any) -> bool:
    if not isinstance(doc, dict):
        return False
    return any(_first_value(doc, keys) for keys in (_FIRST_NAME_KEYS, _LAST_NAME_KEYS, _FULL_NAME_KEYS))


def match_student(payload: Any, student_id: str, full_name: Optional[str] = None) -> MatchResult:
    """Resolve a provider payload into one student's document.

    A single document is used directly. A collection is filtered by id (and
    by name when one is given); without an exact match the first id-filtered
    element, then the first element overall, is returned as a FALLBACK.
    """
    if is_empty_document(payload):
        return MatchResult.not_found()
    if not isinstance(payload, list):
        return MatchResult(MatchKind.MATCHED, payload)

    items = [item for item in payload if item is not None]
    if not items:
        return MatchResult.not_found()

    by_id = [item for item in items if record_id_matches(item, student_id)]
    if full_name:
        pool = by_id or items
        exact = next((item for item in pool if record_name_matches(item, full_name)), None)
        if exact is not None:
            # A name hit outside the id-filtered set is still only a guess.
            return MatchResult(MatchKind.MATCHED if by_id else MatchKind.FALLBACK, exact)
    elif by_id:
        return MatchResult(MatchKind.MATCHED, by_id[0])

    if by_id:
        return MatchResult(MatchKind.FALLBACK, by_id[0])
    return MatchResult(MatchKind.FALLBACK, items[0])


def credentials_match(profile: Any, student_id: str, name: str) -> bool:
    """Check a resolved profile against the credentials given at login.

    Identity fields that are present must agree; a profile without any
    identity fields is accepted.
    """
    if not isinstance(profile, dict):
        return False
    if _identity_values(profile) and not record_id_matches(profile, student_id):
        return False
    if has_name_fields(profile) and not record_name_matches(profile, name):
        return False
    return True


class DataEngine:
    def __init__(self, gateway: UpstreamGateway, endpoints: Optional[Dict[str, str]] = None):
        self.gateway = gateway
        self.endpoints = dict(endpoints or Config.RECORD_ENDPOINTS)
        missing = [c for c in CATEGORY_NAMES if c not in self.endpoints]
        if missing:
            raise ValueError(f"Missing record endpoints for: {', '.join(missing)}")

    def category_url(self, category: str, student_id: str) -> str:
        return self.gateway.build_url(self.endpoints[category], student_id=student_id)

    async def _fetch_category(self, category: str, student_id: str) -> Any:
        return await self.gateway.fetch_resource(self.category_url(category, student_id))

    def reconcile(
        self, category: str, payload: Any, student_id: str, name: Optional[str]
    ) -> Tuple[Any, Optional[MatchKind]]:
        if is_empty_document(payload):
            return None, None
        if category not in ROSTER_CATEGORIES:
            return payload, None

        result = match_student(payload, student_id, name)
        if result.kind is MatchKind.FALLBACK:
            logger.info("%s resolved by fallback for student record", category)
        return result.record, result.kind

    async def aggregate(self, student_id: str, name: Optional[str] = None) -> StudentRecord:
        """Gather every category; failed fetches leave that category empty."""
        student_id = str(student_id).strip()
        payloads: List[Any] = await asyncio.gather(
            *(self._fetch_category(category, student_id) for category in CATEGORY_NAMES)
        )

        record = StudentRecord(student_id=student_id, name=str(name or "").strip(), last_login=utcnow())
        for category, payload in zip(CATEGORY_NAMES, payloads):
            value, kind = self.reconcile(category, payload, student_id, name)
            setattr(record, category, value)
            if kind is not None:
                record.matches[category] = kind

        missing = [c for c in CATEGORY_NAMES if record.category(c) is None]
        if missing:
            logger.info("Aggregated student record with empty categories: %s", ", ".join(missing))
        return record

    async def resolve_token(self, token: str) -> Optional[Dict[str, str]]:
        """Exchange an external login token for {id, name, role}."""
        url = self.gateway.build_url(Config.VERIFY_TOKEN_ENDPOINT, token=token)
        data = await self.gateway.fetch_resource(url)
        if not isinstance(data, dict):
            return None
        student_id = _first_value(data, _ID_KEYS)
        name = _first_value(data, _FULL_NAME_KEYS)
        if not student_id or not name:
            return None
        return {"id": student_id, "name": name, "role": str(data.get("role") or "student")}
