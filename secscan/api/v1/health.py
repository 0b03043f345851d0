"""Health check endpoint with scanner availability."""

import shutil

from fastapi import APIRouter

from secscan.core.config import get_settings
from secscan.schemas.health import HealthResponse

router = APIRouter()


@router.get("/", response_model=HealthResponse)
def get_health() -> HealthResponse:
    """
    Return service health status and whether the configured scanner binaries resolve.
    Used by load balancers and monitoring.
    """
    settings = get_settings()
    binaries = {"trivy": settings.TRIVY_BINARY, "semgrep": settings.SEMGREP_BINARY}
    tools = {
        name: "available" if shutil.which(binary) else "missing"
        for name, binary in binaries.items()
    }
    return HealthResponse(status="ok", environment=settings.APP_ENV, tools=tools)
