from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

import settings
from implementations import build_orchestrator
from routes import router_metrics, vms_router

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    orch = app.state.orchestrator
    orch.registry.restore()
    orch.watchdog.start()
    try:
        yield
    finally:
        orch.watchdog.stop()
        failures = orch.lifecycle.shutdown(terminate=settings.TERMINATE_ON_SHUTDOWN)
        for failure in failures:
            logger.error("Left behind on shutdown: %s", failure)


# ===== FastAPI app =====
app = FastAPI(title="drafter-service", version="0.1.0", lifespan=lifespan)
app.state.orchestrator = build_orchestrator()


@app.get("/health")
async def health():
    return JSONResponse({"ok": "True"})


app.include_router(router_metrics)
app.include_router(vms_router)

# ===== Entrypoint =====
if __name__ == "__main__":
    os.makedirs(os.path.join(settings.VM_BASE_DIR, "vms"), exist_ok=True)
    logger.info("Starting drafter-service on %s:%s", settings.HOST, settings.PORT)
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=False)
