"""
Office Operations Engine - HTTP entry point.

Run with:
    uvicorn office_ops.main:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from . import __version__, SERVICE_NAME
from .api_router import router as office_router
from .office_service import get_office_service
from .policy_config import load_config

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("office_ops")

# -----------------------------------------------------------------------------
# FastAPI Application
# -----------------------------------------------------------------------------
app = FastAPI(
    title=SERVICE_NAME,
    description="Role-scoped lifecycle and policy engine for clients, tasks and billing",
    version=__version__
)

app.include_router(office_router)


# -----------------------------------------------------------------------------
# API Endpoints - Health
# -----------------------------------------------------------------------------
@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": SERVICE_NAME,
        "status": "running",
        "version": __version__
    }


@app.get("/health")
async def health_check():
    """Detailed health check including store counts and scanner state."""
    service = get_office_service()
    status = service.get_status()
    scanner = status["scanner"]
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "api": "operational",
            "store": "persistent" if service.config.state_dir else "in_memory",
            "expiry_scanner": "running" if scanner["running"] else "stopped",
            "notification_channels": status["channels"],
        },
        "counts": status["store"],
        "last_expiry_tick": scanner["last_report"],
        "version": __version__,
    }


# -----------------------------------------------------------------------------
# Error Handlers
# -----------------------------------------------------------------------------
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Failures already carry {"error", "message"}; wrap anything else the same way."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": f"http_{exc.status_code}", "message": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


# -----------------------------------------------------------------------------
# Startup/Shutdown Events
# -----------------------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    """Load config, build the service and start the expiry scanner."""
    logger.info(f"{SERVICE_NAME} starting up...")
    config = load_config()
    service = get_office_service(config)
    logger.info(f"Engine config: {config.to_dict()}")

    if config.scanner_enabled:
        try:
            service.scanner.start()
        except Exception as e:
            logger.error(f"Failed to start expiry scanner: {e}")
    else:
        logger.info("Expiry scanner disabled by config")

    logger.info(f"{SERVICE_NAME} ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info(f"{SERVICE_NAME} shutting down...")
    try:
        get_office_service().scanner.stop()
    except Exception as e:
        logger.error(f"Error stopping expiry scanner: {e}")


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
