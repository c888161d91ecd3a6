"""
ATLAS Forge Control Plane - FastAPI Application

Wires the decision core to HTTP:
- Persistence gateway selected by configuration (JSON file or in-memory)
- One audit sink per application instance
- Model, forge, capture, certificate and license services injected into the
  router through app.state
- An unreadable state file answers 503 and is never overwritten

CONSTRAINTS:
- NO skipping forge states (single-step forward transitions only)
- NO modification of certified forges (ever)
- NO download of preview assets (for any role)
- Every persisted mutation is followed by an audit record
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__, SERVICE_FULL_NAME
from .audit import AuditSink
from .captures import CaptureService
from .certification import CertificateService
from .config import AtlasSettings, load_settings
from .forge_service import ForgeService
from .forge_lifecycle import CAPTURE_TARGET
from .gateway import Gateway, InMemoryGateway, JsonFileGateway, StateLoadError
from .licensing import LicenseService
from .model_registry import ModelRegistry
from .models import FORGE_STATES, utcnow
from .router import router as atlas_router

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("atlas")


def build_gateway(settings: AtlasSettings) -> Gateway:
    if settings.gateway == "memory":
        logger.warning("Using in-memory gateway: nothing will be persisted")
        return InMemoryGateway()
    return JsonFileGateway(settings.state_file)


# -----------------------------------------------------------------------------
# FastAPI Application
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[AtlasSettings] = None,
    gateway: Optional[Gateway] = None,
    audit: Optional[AuditSink] = None,
) -> FastAPI:
    """
    Build an application instance.

    Tests pass their own gateway and audit sink; otherwise both come from
    settings.
    """
    settings = settings or load_settings()
    gateway = gateway or build_gateway(settings)
    audit = audit or AuditSink(settings.audit_log)

    app = FastAPI(
        title="ATLAS Forge Control Plane",
        description=SERVICE_FULL_NAME,
        version=__version__
    )
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.audit = audit
    certificate_service = CertificateService(gateway, audit)
    app.state.certificate_service = certificate_service
    app.state.model_registry = ModelRegistry(gateway, audit)
    app.state.forge_service = ForgeService(gateway, audit, certificates=certificate_service)
    app.state.capture_service = CaptureService(gateway, audit)
    app.state.license_service = LicenseService(gateway, audit)

    app.include_router(atlas_router)

    @app.exception_handler(StateLoadError)
    async def state_unavailable(request: Request, exc: StateLoadError):
        logger.critical(f"State unavailable, refusing {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": {"reason": "STATE_UNAVAILABLE", "message": "Stored state cannot be read"}},
        )

    # -------------------------------------------------------------------------
    # API Endpoints - Health
    # -------------------------------------------------------------------------
    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "service": "ATLAS Forge Control Plane",
            "status": "running",
            "version": __version__
        }

    @app.get("/health")
    async def health_check():
        """Detailed health check."""
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "components": {
                "api": "operational",
                "gateway": settings.gateway,
                "audit_log": str(audit.log_path),
            },
            "version": __version__,
            "forge_states": [state.value for state in FORGE_STATES],
            "capture_target": CAPTURE_TARGET,
            "public_api": bool(settings.public_api_key),
        }

    logger.info(f"{SERVICE_FULL_NAME} ready (gateway: {settings.gateway})")
    return app


app = create_app()


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
