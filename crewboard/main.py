from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from crewboard.api.routes import router as api_router, get_rule_cache
from crewboard.config.settings import get_settings
from crewboard.engine.board import BoardService
from crewboard.storage.cache import RuleCache
from crewboard.storage.database import SessionLocal, init_db
from crewboard.storage.rule_source import fetch_rule_tables, seed_board
from crewboard.utils.logging_config import setup_logging


setup_logging()
logger = logging.getLogger(__name__)
settings = get_settings()


def build_board() -> BoardService:
    return BoardService(lock_timeout=settings.lock_timeout_seconds, default_end_time=settings.default_end_time)


def create_app(board: Optional[BoardService] = None) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        description="Rule engine for placing crews, equipment and trucks on construction job boards",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One board per process, handed to routes through app.state
    app.state.board = board or build_board()

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {settings.app_name}...")
        board = app.state.board
        if board.registry.loaded:
            logger.info("Rules already loaded, skipping rule source")
            return
        if settings.rule_source == "database":
            init_db()
            db = SessionLocal()
            try:
                tables = fetch_rule_tables("database", db=db, cache=get_rule_cache(),
                                           ttl_seconds=settings.rule_cache_ttl_seconds)
                seed_board(board, db)
            finally:
                db.close()
        else:
            tables = fetch_rule_tables(settings.rule_source)
        board.load_rules(tables)
        logger.info(f"Rule source: {settings.rule_source}")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(f"Shutting down {settings.app_name}...")

    app.include_router(api_router, prefix="/api/v1", tags=["board"])

    @app.get("/health", tags=["health"])
    def health_check(cache: Optional[RuleCache] = Depends(get_rule_cache)):
        """Health check endpoint for monitoring and load balancers."""
        status = {
            "status": "ok",
            "app": settings.app_name,
            "version": "1.0.0",
            "rules_loaded": app.state.board.registry.loaded,
        }
        if cache is not None:
            cache_ok = cache.health_check()
            status["rule_cache"] = "ok" if cache_ok else "unavailable"
            if not cache_ok:
                status["status"] = "degraded"
        return status

    return app


app = create_app()
