import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.routes import slack, wrike
from .config import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    bridge = getattr(app.state, "task_bridge", None)
    if bridge is not None:
        logger.info("Draining %d background task(s) before shutdown", bridge.runner.pending)
        await bridge.aclose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(slack.router)
app.include_router(wrike.router)


@app.get("/healthz")
def healthz():
    return {"ok": True, "version": settings.app_version}
