import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-counsellor")
os.environ.setdefault("AUDIT_LOG_ENABLED", "false")

import asyncio
import copy
from collections import defaultdict

import httpx
import numpy as np
import pytest

from counsellor.core.records import StudentRecord
from counsellor.engines.counsellor_engine import CounsellorEngine
from counsellor.engines.data_engine import DataEngine
from counsellor.engines.db_engine import ConversationStore
from counsellor.engines.index_engine import SemanticIndexCache
from counsellor.engines.session_engine import SessionManager
from counsellor.engines.upstream_gateway import UpstreamGateway

RECORDS_BASE = "http://records.test"

VOCABULARY = [
    "attendance", "score", "exam", "assignment", "enrol",
    "profile", "gpa", "course", "deadline", "present",
]


class InMemoryDocumentStore:
    """Dict-backed DocumentStore with the same upsert semantics as MongoDB."""

    def __init__(self):
        self.collections = defaultdict(list)
        self.fail = False

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(k) == v for k, v in query.items())

    def _check(self):
        if self.fail:
            raise RuntimeError("store unavailable")

    async def upsert(self, collection, key, fields, on_insert=None):
        self._check()
        for doc in self.collections[collection]:
            if self._matches(doc, key):
                doc.update(copy.deepcopy(fields))
                return
        doc = dict(key)
        doc.update(copy.deepcopy(on_insert or {}))
        doc.update(copy.deepcopy(fields))
        self.collections[collection].append(doc)

    async def find_one(self, collection, key):
        self._check()
        for doc in self.collections[collection]:
            if self._matches(doc, key):
                return copy.deepcopy(doc)
        return None

    async def insert(self, collection, document):
        self._check()
        self.collections[collection].append(copy.deepcopy(document))

    async def find_many(self, collection, query, sort=None, limit=0):
        self._check()
        results = [copy.deepcopy(d) for d in self.collections[collection] if self._matches(d, query)]
        for field, direction in reversed(list(sort or [])):
            results.sort(key=lambda d: d.get(field), reverse=direction < 0)
        return results[:limit] if limit else results


class KeywordEmbedder:
    """Bag-of-keywords vectors; counts every embed call."""

    def __init__(self, delay=0.0):
        self.calls = 0
        self.delay = delay
        self.fail = False

    async def embed(self, text):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("embedding backend down")
        lowered = str(text).lower()
        vector = [float(lowered.count(word)) for word in VOCABULARY]
        vector.append(1.0)
        return np.asarray(vector, dtype="float32")


class ScriptedModel:
    """LanguageModel returning queued replies (or raising queued errors)."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.prompts = []
        self.default = "Here is what I found."

    @property
    def calls(self):
        return len(self.prompts)

    async def generate(self, prompt):
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


def student_payloads(student_id="42", first="Jane", last="Doe"):
    """Provider documents for one student, keyed by category."""
    return {
        "profile": {"id": student_id, "firstname": first, "lastname": last, "programme": "Computing"},
        "attendance": {"month": "March", "rate": "92 percent"},
        "scores": [{"subject": "Maths", "marks": 81}],
        "enrollment": [
            {"id": 1, "student_id": "41", "name": "John Roe", "course": "Law"},
            {"id": 2, "student_id": student_id, "name": f"{first} {last}", "course": "Computing"},
        ],
        "assignments": [{"title": "Essay", "due": "Friday"}],
        "exam_list": [{"paper": "Algorithms", "date": "June 3"}],
    }


def category_paths(student_id="42"):
    return {
        "profile": f"/students/{student_id}",
        "attendance": f"/student/attendance/summary/monthly/{student_id}/",
        "scores": f"/student/ExamData/{student_id}/",
        "enrollment": "/students/enrollment/",
        "assignments": f"/student/assignments/{student_id}/",
        "exam_list": f"/student/ExamList/{student_id}/",
    }


class RecordProvider:
    """httpx.MockTransport handler serving JSON documents by path."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.failing = set()
        self.requests = []
        self.paths = {}

    def serve_student(self, student_id="42", first="Jane", last="Doe"):
        payloads = student_payloads(student_id, first, last)
        self.paths = category_paths(student_id)
        for category, path in self.paths.items():
            self.routes[path] = payloads[category]
        return payloads

    def fail_path(self, path):
        self.failing.add(path)

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path in self.failing:
            return httpx.Response(500, json={"detail": "upstream error"})
        if path not in self.routes:
            return httpx.Response(404, json={"detail": "not found"})
        return httpx.Response(200, json=self.routes[path])

    def gateway(self, token=None):
        return UpstreamGateway(base_url=RECORDS_BASE, token=token, transport=httpx.MockTransport(self))


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def store(document_store):
    return ConversationStore(document_store)


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def provider():
    provider = RecordProvider()
    provider.serve_student()
    return provider


@pytest.fixture
def index_cache(embedder):
    return SemanticIndexCache(embedder, max_entries=10, ttl_seconds=3600)


@pytest.fixture
def counsellor(store, index_cache, embedder, model):
    return CounsellorEngine(store, index_cache, embedder, model, top_k=5)


@pytest.fixture
def manager(provider, store, counsellor, index_cache):
    return SessionManager(
        DataEngine(provider.gateway()),
        store,
        counsellor,
        index_cache,
        duration_seconds=900,
    )


@pytest.fixture
def jane_record():
    payloads = student_payloads()
    return StudentRecord(
        student_id="42",
        name="Jane Doe",
        profile=payloads["profile"],
        attendance=payloads["attendance"],
        enrollment=payloads["enrollment"][1],
        scores=payloads["scores"],
        assignments=payloads["assignments"],
        exam_list=payloads["exam_list"],
    )


@pytest.fixture
def make_provider():
    return RecordProvider


@pytest.fixture
def make_embedder():
    return KeywordEmbedder


@pytest.fixture
def make_model():
    return ScriptedModel
