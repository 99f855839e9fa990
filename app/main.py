"""
BlogSphere API entry point.

`create_app` wires a storage backend into a FastAPI application. Tests pass
their own store; the module-level `app` builds one from settings.
"""
import logging
from typing import Optional

from fastapi import FastAPI

from app.config import settings
from app.database import make_engine
from app.routes import router
from app.sql_storage import SqlStorage
from app.storage import MemStorage, Storage

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_storage() -> Storage:
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "memory":
        return MemStorage()
    if backend == "sql":
        return SqlStorage(make_engine(settings.DATABASE_URL))
    raise ValueError(f"Unknown STORAGE_BACKEND '{settings.STORAGE_BACKEND}'")


def create_app(storage: Optional[Storage] = None) -> FastAPI:
    app = FastAPI(
        title="BlogSphere API",
        description="Blogging and social features: posts, likes, comments, bookmarks, follows, messages.",
        version="1.0.0",
    )
    app.state.storage = storage if storage is not None else build_storage()
    logger.info("Using %s", type(app.state.storage).__name__)

    app.include_router(router)

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
