from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import motor.motor_asyncio
from pymongo.errors import PyMongoError

from counsellor.config import Config
from counsellor.core.records import StudentRecord, utcnow
from counsellor.utils.logging_utils import get_logger

logger = get_logger("db")

STUDENTS_COLLECTION = "students"
SESSIONS_COLLECTION = "sessions"
CONVERSATIONS_COLLECTION = "conversations"


class DocumentStore(Protocol):
    async def upsert(
        self,
        collection: str,
        key: Dict[str, Any],
        fields: Dict[str, Any],
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    async def find_one(self, collection: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    async def insert(self, collection: str, document: Dict[str, Any]) -> None:
        ...

    async def find_many(
        self,
        collection: str,
        query: Dict[str, Any],
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        ...


class MotorDocumentStore:
    """MongoDB-backed DocumentStore using motor's async client."""

    def __init__(self, uri: Optional[str] = None, db_name: Optional[str] = None):
        self.uri = uri or Config.MONGO_URI
        self.db_name = db_name or Config.MONGO_DB_NAME
        self.client = None
        self.db = None

    async def connect(self):
        """Establish connection to MongoDB"""
        if not self.uri:
            raise ValueError("MONGO_URI not found in .env")

        self.client = motor.motor_asyncio.AsyncIOMotorClient(self.uri, serverSelectionTimeoutMS=5000)
        # Verify connection
        await self.client.admin.command('ping')
        self.db = self.client[self.db_name]
        logger.info(f"[AsyncDB] Successfully connected to MongoDB: {self.db_name}")
        await self._ensure_runtime_indexes()

    async def _ensure_runtime_indexes(self) -> None:
        """Unique keys back the per-document atomic upserts."""
        try:
            await self.db[STUDENTS_COLLECTION].create_index(
                [("studentId", 1)], name="students_student_id", unique=True
            )
            await self.db[SESSIONS_COLLECTION].create_index(
                [("sessionId", 1)], name="sessions_session_id", unique=True
            )
            await self.db[CONVERSATIONS_COLLECTION].create_index(
                [("studentId", 1), ("sessionId", 1)], name="conversations_student_session", unique=True
            )
            await self.db[CONVERSATIONS_COLLECTION].create_index(
                [("studentId", 1), ("updatedAt", -1)], name="conversations_student_updated"
            )
        except PyMongoError as e:
            logger.warning(f"Index ensure error: {e}")

    def _coll(self, name: str):
        if self.db is None:
            raise RuntimeError("MongoDB is not connected")
        return self.db[name]

    async def upsert(self, collection, key, fields, on_insert=None) -> None:
        update: Dict[str, Any] = {"$set": dict(fields)}
        if on_insert:
            update["$setOnInsert"] = dict(on_insert)
        await self._coll(collection).update_one(key, update, upsert=True)

    async def find_one(self, collection, key):
        return await self._coll(collection).find_one(key, {"_id": 0})

    async def insert(self, collection, document) -> None:
        await self._coll(collection).insert_one(dict(document))

    async def find_many(self, collection, query, sort=None, limit=0):
        cursor = self._coll(collection).find(query, {"_id": 0})
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(int(limit))
        return await cursor.to_list(length=limit or None)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


class ConversationStore:
    """Durable mirror for students, sessions and transcripts."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def upsert_student(self, record: StudentRecord) -> bool:
        doc = record.to_document()
        student_id = doc.pop("studentId")
        try:
            await self.store.upsert(
                STUDENTS_COLLECTION,
                {"studentId": student_id},
                doc,
                on_insert={"createdAt": utcnow()},
            )
            return True
        except Exception as e:
            logger.error(f"Student upsert error: {e}")
            return False

    async def get_student_by_id(self, student_id: str) -> Optional[StudentRecord]:
        try:
            doc = await self.store.find_one(STUDENTS_COLLECTION, {"studentId": str(student_id)})
        except Exception as e:
            logger.error(f"DB Error: {e}")
            return None
        return StudentRecord.from_document(doc) if doc else None

    async def create_session(self, session_doc: Dict[str, Any]) -> bool:
        try:
            await self.store.insert(SESSIONS_COLLECTION, session_doc)
            return True
        except Exception as e:
            logger.error(f"Session create error: {e}")
            return False

    async def set_message_count(self, session_id: str, message_count: int) -> bool:
        try:
            await self.store.upsert(
                SESSIONS_COLLECTION, {"sessionId": session_id}, {"messageCount": int(message_count)}
            )
            return True
        except Exception as e:
            logger.error(f"Message count update error: {e}")
            return False

    async def save_conversation(self, student_id: str, session_id: str, messages: List[Dict[str, str]]) -> bool:
        """Replace the stored transcript for (student, session) with `messages`."""
        try:
            await self.store.upsert(
                CONVERSATIONS_COLLECTION,
                {"studentId": student_id, "sessionId": session_id},
                {"messages": list(messages), "updatedAt": utcnow()},
                on_insert={"createdAt": utcnow()},
            )
            return True
        except Exception as e:
            logger.error(f"Conversation save error: {e}")
            return False

    async def get_conversation(self, student_id: str, session_id: str) -> List[Dict[str, str]]:
        try:
            doc = await self.store.find_one(
                CONVERSATIONS_COLLECTION, {"studentId": student_id, "sessionId": session_id}
            )
        except Exception as e:
            logger.error(f"Conversation load error: {e}")
            return []
        return list((doc or {}).get("messages") or [])

    async def list_conversations(self, student_id: str, limit: int) -> List[Dict[str, Any]]:
        try:
            return await self.store.find_many(
                CONVERSATIONS_COLLECTION,
                {"studentId": student_id},
                sort=[("updatedAt", -1)],
                limit=max(1, int(limit)),
            )
        except Exception as e:
            logger.error(f"Conversation history error: {e}")
            return []
