"""
Ticket Worker service entry point.

Builds the components from the environment, mounts the admin router and runs
the job worker and prune scheduler for the lifetime of the app.

    uvicorn ticket_worker.main:app
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import router
from .comments import CommentPoster
from .config import ConfigStore, Settings
from .errors import SecretsError, TicketWorkerError
from .models import ActiveKeys
from .orchestrator import SessionOrchestrator
from .prune_scheduler import PruneScheduler
from .secrets import EnvSecretsProvider, SecretsProvider, VaultSecretsProvider, mask_secret
from .worker import JobWorker

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("ticket_worker")


def _secrets_from_env() -> SecretsProvider:
    vault = VaultSecretsProvider.from_env()
    if vault is not None:
        logger.info("Using Azure Key Vault for secrets")
        return vault
    return EnvSecretsProvider()


async def _log_secrets(secrets: SecretsProvider) -> None:
    try:
        env = await secrets.get_env()
    except SecretsError as e:
        logger.error(f"Secrets unavailable at startup: {e.message}")
        return
    for var, value in sorted(env.items()):
        logger.info(f"Secret {var} = {mask_secret(value)}")


def create_app(
    settings: Optional[Settings] = None,
    config_store: Optional[ConfigStore] = None,
    secrets: Optional[SecretsProvider] = None,
    orchestrator: Optional[SessionOrchestrator] = None,
) -> FastAPI:
    """Wire the components. Arguments override the environment-derived defaults."""
    settings = settings or Settings.from_env()
    config_store = config_store or ConfigStore(settings.config_file)
    secrets = secrets or _secrets_from_env()
    active = orchestrator.active if orchestrator else ActiveKeys()
    orchestrator = orchestrator or SessionOrchestrator.from_settings(settings, config_store, secrets, active)
    worker = JobWorker(orchestrator, CommentPoster(secrets))
    pruner = PruneScheduler(orchestrator.store, config_store, active)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Ticket worker {__version__} starting up...")
        logger.info(f"Workspaces directory: {settings.workspaces_dir}")
        logger.info(f"Config file: {settings.config_file}")
        settings.workspaces_dir.mkdir(parents=True, exist_ok=True)
        await _log_secrets(secrets)

        await worker.start()
        await pruner.start()
        try:
            yield
        finally:
            logger.info("Ticket worker shutting down...")
            await pruner.stop()
            await worker.stop()

    app = FastAPI(
        title="Ticket Worker",
        description="Per-ticket Claude CLI sessions with LRU eviction and inactivity pruning",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.config_store = config_store
    app.state.orchestrator = orchestrator
    app.state.worker = worker
    app.state.pruner = pruner
    app.include_router(router)

    @app.exception_handler(TicketWorkerError)
    async def ticket_worker_error_handler(request: Request, exc: TicketWorkerError):
        logger.error(f"Unhandled {exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=500, content=exc.to_dict())

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "worker_running": worker.running,
            "prune_scheduler_running": pruner.running,
        }

    return app


app = create_app()


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
