"""
Digest Admin API

Provides:
- Digest records, ingest, dead letters (/api/digest/*)
- Runtime state (/api/digest/state)
- System Health (/health)

DIGEST_RUN_MODE=inline starts the digest worker thread on startup and stops
it on shutdown. Serve with:
    uvicorn digest_admin.app:app --port 8200
or
    python -m digest_admin.app
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from digest_admin.routes import router as digest_router

logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [%(levelname)s] %(message)s'
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Digest Admin API",
        description="Administration API for the notification digest pipeline",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    if config.ENABLE_CORS:
        origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins or ["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if config.get_digest_admin_api_enable():
        app.include_router(digest_router)
    else:
        logger.info("[DigestAPI] disabled (DIGEST_ADMIN_API_ENABLE=false)")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "digest-admin-api"}

    @app.on_event("startup")
    async def startup_event():
        logger.info("Digest Admin API starting — port %s", config.ADMIN_API_PORT)
        try:
            if config.get_digest_enable() and config.get_digest_run_mode() == "inline":
                from core.digest.service import get_service
                if get_service().start():
                    logger.info("[DigestWorker] inline mode started")
        except Exception as _e:
            logger.warning(f"[DigestWorker] inline startup error (fail-open): {_e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Digest Admin API shutting down...")
        try:
            if config.get_digest_run_mode() == "inline":
                from core.digest.service import get_service
                get_service().stop()
        except Exception as _e:
            logger.warning(f"[DigestWorker] inline shutdown error: {_e}")

    return app


app = create_app()


def main() -> None:
    import uvicorn
    uvicorn.run(app, host=config.ADMIN_API_HOST, port=config.ADMIN_API_PORT)


if __name__ == "__main__":
    main()
