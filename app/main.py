# app/main.py
from fastapi import FastAPI
from app.core.config import settings
from app.core.version import VERSION
from app.api.endpoints import gas, health, stats
import logging

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
)

# Public endpoints
app.include_router(health.router, tags=["default"])
app.include_router(stats.router, tags=["default"])

# Protected endpoints (x402 payment required)
app.include_router(gas.router, prefix="/api/gas", tags=["gas"])


@app.get("/", summary="Service info", tags=["default"])
def read_root():
    """ Basic landing endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}", "version": VERSION}
