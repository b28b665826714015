"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from chat_assistant.config import get_settings
from chat_assistant.db.session import SessionLocal
from chat_assistant.routers import chats, completions, memory, turns
from chat_assistant.services.chats import list_chats

logger = logging.getLogger(__name__)


def _warm_backend_state() -> None:
    """Prime the DB connection and the chat list query at process start."""

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            list_chats(db)
    except Exception:
        logger.exception("Backend warm-up failed; continuing without startup pre-warm.")


@asynccontextmanager
async def lifespan(_: FastAPI):
    _warm_backend_state()
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chats.router, tags=["chats"])
app.include_router(turns.router, tags=["turns"])
app.include_router(completions.router, tags=["completions"])
app.include_router(memory.router, tags=["memory"])


@app.get("/health")
def health() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}
