"""
Shared domain types: student records, match results and model responses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# (attribute, stored field, chunk label) in a fixed order
CATEGORIES = [
    ("profile", "profile", "Profile"),
    ("attendance", "attendance", "Attendance"),
    ("enrollment", "enrollment", "Enrollment"),
    ("scores", "scores", "Scores"),
    ("assignments", "assignments", "Assignments"),
    ("exam_list", "examList", "Exam List"),
]

CATEGORY_NAMES = [name for name, _, _ in CATEGORIES]

# Older documents were written with these field names.
_LEGACY_FIELDS = {"examList": ["examlist"], "scores": ["score"]}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_empty_document(value: Any) -> bool:
    return value is None or (isinstance(value, (dict, list, str)) and len(value) == 0)


class MatchKind(str, Enum):
    MATCHED = "matched"
    FALLBACK = "fallback"
    NOT_FOUND = "not_found"


@dataclass
class MatchResult:
    kind: MatchKind
    record: Any = None

    @property
    def confident(self) -> bool:
        return self.kind is MatchKind.MATCHED

    @classmethod
    def not_found(cls) -> "MatchResult":
        return cls(MatchKind.NOT_FOUND, None)


@dataclass
class StudentRecord:
    student_id: str
    name: str = ""
    last_login: datetime = field(default_factory=utcnow)
    profile: Any = None
    attendance: Any = None
    enrollment: Any = None
    scores: Any = None
    assignments: Any = None
    exam_list: Any = None
    matches: Dict[str, MatchKind] = field(default_factory=dict)

    def category(self, name: str) -> Any:
        return getattr(self, name)

    def present_categories(self) -> List[str]:
        return [name for name in CATEGORY_NAMES if not is_empty_document(self.category(name))]

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "studentId": self.student_id,
            "name": self.name,
            "lastLogin": self.last_login,
        }
        for attr, stored, _ in CATEGORIES:
            doc[stored] = self.category(attr)
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "StudentRecord":
        values: Dict[str, Any] = {}
        for attr, stored, _ in CATEGORIES:
            value = doc.get(stored)
            for legacy in _LEGACY_FIELDS.get(stored, []):
                if value is None:
                    value = doc.get(legacy)
            values[attr] = value
        return cls(
            student_id=str(doc.get("studentId") or ""),
            name=str(doc.get("name") or ""),
            last_login=doc.get("lastLogin") or utcnow(),
            **values,
        )

    def summary(self) -> Dict[str, Any]:
        last_login = self.last_login
        return {
            "studentId": self.student_id,
            "name": self.name,
            "lastLogin": last_login.isoformat() if isinstance(last_login, datetime) else last_login,
            "categories": self.present_categories(),
        }


# ---------------------------------------------------------------------------
# Language model responses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Plain:
    text: str


@dataclass(frozen=True)
class Wrapped:
    text: str


@dataclass(frozen=True)
class Part:
    kind: str
    text: Optional[str] = None


@dataclass(frozen=True)
class Parts:
    parts: List[Part]


TextResponse = Union[Plain, Wrapped, Parts]
