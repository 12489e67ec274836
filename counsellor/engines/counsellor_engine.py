"""
Counsellor Engine - grounded answers from a student's own records.

Pipeline per question:
1. Identity guardrail (canned reply, no external calls)
2. Retrieval from the student's semantic index (top-K chunks)
3. Prompt assembly (persona, student context, recent turns, question)
4. Generation through the language model capability
5. Reply normalisation
"""

import re
from typing import Any, Dict, List, Optional

from counsellor.config import Config
from counsellor.core.errors import ModelUnavailable, NotFound
from counsellor.core.records import StudentRecord
from counsellor.core.session import Role, normalize_transcript
from counsellor.engines.ai_engine import NO_RESPONSE_TEXT, LanguageModel, coerce_response, extract_text
from counsellor.engines.db_engine import ConversationStore
from counsellor.engines.embedding_engine import EmbeddingProvider
from counsellor.engines.index_engine import SemanticIndexCache, record_chunks
from counsellor.engines.response_formatter import format_reply
from counsellor.utils.logging_utils import get_logger

logger = get_logger("counsellor")

IDENTITY_REPLY = (
    "I am Counsellor AI, created to support and guide you. "
    "I am not Google, Gemini, or OpenAI. I am your personal counsellor 🤝."
)
APOLOGY_REPLY = "⚠️ Error processing your request."

PERSONA_DIRECTIVE = (
    "You are Counsellor AI, a helpful educational assistant.\n"
    "Please provide a well-structured response with clear paragraph breaks.\n"
    "Use double line breaks between paragraphs, and avoid markdown.\n"
    "Answer using the student context below; if it does not contain the answer, say so."
)


def is_identity_question(question: str, phrases: Optional[List[str]] = None) -> bool:
    q = str(question or "").lower()
    return any(phrase in q for phrase in (phrases or Config.IDENTITY_PROBE_PHRASES))


def format_conversation(prior_turns: Optional[List[Dict[str, Any]]], limit: int = 6) -> str:
    lines: List[str] = []
    for turn in normalize_transcript(prior_turns)[-max(1, int(limit)):]:
        content = re.sub(r"\s+", " ", turn["text"]).strip()[:280]
        if not content:
            continue
        speaker = "Student" if turn["role"] == Role.USER.value else "Counsellor AI"
        lines.append(f"{speaker}: {content}")
    return "\n".join(lines)


def build_prompt(context: str, question: str, conversation: str = "") -> str:
    prompt = (
        f"{PERSONA_DIRECTIVE}\n\n"
        f"Student Context:\n{context or '(no student data available)'}\n\n"
    )
    if conversation:
        prompt += f"Conversation so far:\n{conversation}\n\n"
    return prompt + f"Student Question: {question}"


class CounsellorEngine:
    def __init__(
        self,
        store: ConversationStore,
        index_cache: SemanticIndexCache,
        embedder: EmbeddingProvider,
        model: LanguageModel,
        top_k: Optional[int] = None,
    ):
        self.store = store
        self.index_cache = index_cache
        self.embedder = embedder
        self.model = model
        self.top_k = top_k or Config.RETRIEVAL_TOP_K

    async def load_student(self, student_id: str) -> StudentRecord:
        record = await self.store.get_student_by_id(student_id)
        if record is None:
            raise NotFound()
        return record

    async def retrieve_context(self, student_id: str, question: str, record: StudentRecord) -> str:
        """Top-K chunk texts, most similar first, one per line.

        When embedding is unavailable every category is used in its
        natural order instead.
        """
        try:
            index = await self.index_cache.get_or_build(student_id, record)
            query_vector = await self.embedder.embed(question)
            ranked = index.search(query_vector, self.top_k)
        except Exception as e:
            logger.warning(f"[Retrieval] Falling back to unranked context: {type(e).__name__}: {e}")
            return "\n".join(text for _, text in record_chunks(record))
        return "\n".join(chunk.text for chunk, _ in ranked)

    async def generate(self, prompt: str) -> str:
        try:
            raw = await self.model.generate(prompt)
        except ModelUnavailable as e:
            logger.error(f"ModelUnavailable | {e}")
            return APOLOGY_REPLY
        except Exception as e:
            logger.error(f"ModelUnavailable | unexpected {type(e).__name__}: {e}")
            return APOLOGY_REPLY

        text = extract_text(coerce_response(raw))
        if text == NO_RESPONSE_TEXT:
            return text
        return format_reply(text)

    async def answer(
        self,
        student_id: str,
        question: str,
        prior_turns: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """Answer `question` from the student's records.

        Raises NotFound when the student no longer resolves in the store.
        """
        if is_identity_question(question):
            return IDENTITY_REPLY

        record = await self.load_student(student_id)
        context = await self.retrieve_context(student_id, question, record)
        return await self.generate(build_prompt(context, question, format_conversation(prior_turns)))
