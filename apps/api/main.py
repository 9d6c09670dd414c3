"""
Polymarket Capture - API Service

FastAPI backend over the capture store:
- Capture request lifecycle (create, list, delete)
- Captured markets, events and daily prices
- Skew analysis
- Cached tags and curated categories
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from apps.api.dependencies import get_db
from apps.api.limiter import limiter
from apps.api.routers import captures, events, markets, system
from packages.capture.settings import settings
from packages.capture.storage import DatabasePool, apply_schema, get_db_pool, reset_db_pool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    apply_schema(get_db_pool())
    yield
    reset_db_pool()


app = FastAPI(
    title="Polymarket Capture API",
    description="Historical Polymarket capture requests and analysis",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter to app state and exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(captures.router, prefix="/captures", tags=["Captures"])
app.include_router(markets.router, prefix="/markets", tags=["Markets"])
app.include_router(events.router, prefix="/events", tags=["Events"])
app.include_router(system.router, prefix="/system", tags=["System"])


@app.get("/health")
def health_check(db: DatabasePool = Depends(get_db)):
    """Health check endpoint."""
    healthy = db.health_check()
    return {"status": "healthy" if healthy else "degraded", "service": "api", "database": healthy}


@app.get("/")
async def root():
    """API root."""
    return {
        "name": "Polymarket Capture API",
        "version": "1.0.0",
        "docs": "/docs",
    }
