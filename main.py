"""
Counsellor AI - Main Server (FastAPI)
Features:
- Login against the student records service (six categories, fetched in parallel)
- Per-student semantic index with a bounded single-flight cache
- Gemini-backed answers grounded in the student's own records
- Countdown-bounded chat sessions with persisted transcripts
- JWT Authentication and log anonymization
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from counsellor.api import auth, chat
from counsellor.api.dependencies import error_response
from counsellor.config import Config
from counsellor.core.errors import CounsellorError
from counsellor.engines.ai_engine import GeminiLanguageModel
from counsellor.engines.counsellor_engine import CounsellorEngine
from counsellor.engines.data_engine import DataEngine
from counsellor.engines.db_engine import ConversationStore, MotorDocumentStore
from counsellor.engines.embedding_engine import build_embedder
from counsellor.engines.index_engine import SemanticIndexCache
from counsellor.engines.session_engine import SessionManager
from counsellor.engines.upstream_gateway import UpstreamGateway
from counsellor.utils.logging_utils import get_logger

logger = get_logger("server")


async def build_session_manager(document_store: MotorDocumentStore, gateway: UpstreamGateway) -> SessionManager:
    store = ConversationStore(document_store)
    embedder = build_embedder()
    index_cache = SemanticIndexCache(embedder)
    counsellor = CounsellorEngine(store, index_cache, embedder, GeminiLanguageModel())
    return SessionManager(DataEngine(gateway), store, counsellor, index_cache)


def create_app(manager: Optional[SessionManager] = None) -> FastAPI:
    """Build the API. A ready SessionManager skips MongoDB and upstream wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        document_store = None
        gateway = None
        if getattr(app.state, "sessions", None) is None:
            document_store = MotorDocumentStore()
            await document_store.connect()
            gateway = UpstreamGateway()
            app.state.sessions = await build_session_manager(document_store, gateway)

        app.state.sessions.start_countdown()
        logger.info("[Server] Counsellor AI ready")
        yield

        await app.state.sessions.stop_countdown()
        if gateway is not None:
            await gateway.aclose()
        if document_store is not None:
            document_store.close()

    app = FastAPI(title="Counsellor AI", version="1.0.0", lifespan=lifespan)
    app.state.sessions = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(auth.router, prefix="/api", tags=["auth"])
    app.include_router(chat.router, prefix="/api", tags=["chat"])

    @app.exception_handler(CounsellorError)
    async def counsellor_error_handler(request: Request, exc: CounsellorError):
        return error_response(exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=Config.HOST, port=Config.PORT, reload=Config.DEBUG)
