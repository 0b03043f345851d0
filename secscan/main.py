"""FastAPI application entrypoint. No business logic; only wiring and middleware."""

from dotenv import load_dotenv

load_dotenv()

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from secscan.api.v1 import router as v1_router
from secscan.core.config import settings
from secscan.core.store import ScanStore
from secscan.services.orchestrator import ScanOrchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """One store and orchestrator per process; running scans are cancelled on shutdown."""
    app.state.store = ScanStore()
    app.state.orchestrator = ScanOrchestrator(app.state.store, settings)
    yield
    await app.state.orchestrator.shutdown()


app = FastAPI(
    title="Secscan API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
def root() -> dict[str, str]:
    """Root route; minimal payload for discovery."""
    return {"message": "Secscan API"}
