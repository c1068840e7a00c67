import logging

from fastapi import FastAPI

from .config import get_settings
from .database import engine
from .routers import integrations
from .utils.migrations import get_migration_state, run_migrations_if_enabled

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(title="PMS Sync Engine")

app.include_router(integrations.router)


@app.on_event("startup")
def _startup() -> None:
    run_migrations_if_enabled(engine)


@app.get("/health")
def health():
    return {"status": "ok", **get_migration_state(engine)}
