import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.staticfiles import StaticFiles

from routes.admin_route import router as admin_router
from routes.scan_route import router as scan_router
from utils.config import ServerSettings
from utils.database_init import AsyncDatabaseInitializer

load_dotenv()  # Load environment variables from .env file if present

LOGGER = logging.getLogger(__name__)


def create_app(settings: Optional[ServerSettings] = None, database_dir: Optional[Path | str] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Args:
        settings: Server settings; read from the environment when omitted.
        database_dir: Directory holding app.db; defaults to DATABASE_DIR.
    """
    settings = settings or ServerSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan manager to initialize the SQLite scan repository and attach
        it, together with the settings, to `app.state`.
        """
        db_initializer = AsyncDatabaseInitializer(database_dir)
        await db_initializer.ensure_database()
        app.state.db_initializer = db_initializer
        LOGGER.info("Scan repository ready at %s", db_initializer.db_path)
        yield

    app = FastAPI(title="Leaf Scan Sync API", lifespan=lifespan)
    app.state.settings = settings

    # Serve model binaries and uploaded images from the public directory.
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    (settings.public_dir / "models").mkdir(parents=True, exist_ok=True)
    app.mount("/public", StaticFiles(directory=settings.public_dir), name="public")

    @app.get("/")
    async def root():
        return {"name": "Leaf Scan Sync API", "status": "ok"}

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check that verifies the database initializer is present.
        """
        has_db = hasattr(request.app.state, "db_initializer")
        return {"ok": True, "db_initialized": has_db}

    # Register application routers
    app.include_router(scan_router)
    app.include_router(admin_router)

    return app


app = create_app()
