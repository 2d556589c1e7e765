"""
api.py — REST API over the SimGuard device store.

Features:
  - Device registration, location and activity reports (activity is scored)
  - Device lookup with dwell and call history
  - Cohort noting and on-demand cohort detection
  - Named-parameter lookup and suspicion summary
  - API key authentication
  - Rate limiting
  - CORS middleware
  - Structured logging
"""
import time
from datetime import datetime, timezone
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from config import (
    API_HOST, API_PORT, API_KEY, RATE_LIMIT_PER_MINUTE, DB_PATH, CALL_STATUS,
    PARAMETER_DEFAULTS, get_logger,
)
from cohort import CohortDetector
from errors import ConfigurationError, SimGuardError, StateInconsistency, ValidationError
from store import SimGuardStore

logger = get_logger("api")

# ─── Store ────────────────────────────────────────────────────────────

_store: Optional[SimGuardStore] = None


def get_store() -> SimGuardStore:
    """Shared store; opened on first use."""
    global _store
    if _store is None:
        _store = SimGuardStore(DB_PATH)
    return _store


# ─── Rate limiting ────────────────────────────────────────────────────

rate_limit_store = defaultdict(list)


def check_rate_limit(client_ip: str) -> bool:
    """Simple in-memory sliding window rate limiter."""
    now = time.time()
    window = 60  # seconds
    rate_limit_store[client_ip] = [
        t for t in rate_limit_store[client_ip] if now - t < window
    ]
    if len(rate_limit_store[client_ip]) >= RATE_LIMIT_PER_MINUTE:
        return False
    rate_limit_store[client_ip].append(now)
    return True


def enforce_rate_limit(request: Request):
    client_ip = request.client.host if request.client else "unknown"
    if not check_rate_limit(client_ip):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


# ─── App lifecycle ────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: open the store."""
    global _store
    get_store()
    yield
    if _store is not None:
        _store.close()
        _store = None
    logger.info("Shutting down SimGuard API")


# ─── App setup ────────────────────────────────────────────────────────

app = FastAPI(
    title="SimGuard — Simbox Fraud Detection API",
    description="Device movement and call-pattern scoring for simbox detection",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(request: Request, api_key: str = Security(api_key_header)):
    """Validate API key from header. Health and docs bypass auth."""
    if request.url.path in ("/health", "/docs", "/openapi.json", "/redoc"):
        return api_key or ""
    if not api_key or api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key. Set X-API-Key header.")
    return api_key


# ─── Error mapping ────────────────────────────────────────────────────

ERROR_STATUS = {
    ValidationError: 404,
    ConfigurationError: 503,
    StateInconsistency: 409,
}


@app.exception_handler(SimGuardError)
async def simguard_error_handler(request: Request, exc: SimGuardError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


# ─── Request/Response models ─────────────────────────────────────────

class DeviceRegistration(BaseModel):
    device_id: int = Field(..., ge=0, description="Device identifier")
    location_id: int = Field(..., ge=0, description="Cell the device starts in")
    created_at: Optional[float] = Field(None, description="Creation time, epoch seconds (default now)")


class LocationReport(BaseModel):
    location_id: int = Field(..., ge=0, description="Cell the device moved to")


class ActivityReport(BaseModel):
    start_time: Optional[float] = Field(None, description="Call start, epoch seconds (default now)")
    duration_s: int = Field(..., ge=0, description="Call length in seconds")
    direction: str = Field(..., description="'in' or 'out'")
    counterparty_id: int = Field(..., ge=0, description="The other end of the call")
    status: str = Field(CALL_STATUS, description="Call status code")


class LocationsRequest(BaseModel):
    count: int = Field(..., gt=0, description="Create cells 0 .. count-1")


class CohortRequest(BaseModel):
    signatures: list[str] = Field(..., description="Last-6 movement signatures")


class ScoreResponse(BaseModel):
    device_id: int
    scored: bool
    suspicious_because: Optional[str] = None
    suspicious_value: Optional[int] = None
    facts: dict = {}


# ─── Stats ────────────────────────────────────────────────────────────

stats = {"total": 0, "registered": 0, "moves": 0, "activity": 0, "flagged": 0}


# ─── Endpoints ────────────────────────────────────────────────────────

@app.post("/locations", tags=["Devices"], dependencies=[Depends(enforce_rate_limit)])
def create_locations(body: LocationsRequest, store: SimGuardStore = Depends(get_store),
                     api_key: str = Security(verify_api_key)):
    """Create the numbered cells devices can live in."""
    store.create_locations(body.count)
    return {"created": body.count}


@app.post("/devices", status_code=201, tags=["Devices"], dependencies=[Depends(enforce_rate_limit)])
def register_device(body: DeviceRegistration, store: SimGuardStore = Depends(get_store),
                    api_key: str = Security(verify_api_key)):
    """Register (or re-register) a device at a location."""
    created_at = body.created_at if body.created_at is not None else time.time()
    store.register_device(body.device_id, body.location_id, created_at)
    stats["total"] += 1
    stats["registered"] += 1
    return {"device_id": body.device_id, "location_id": body.location_id}


@app.post("/devices/{device_id}/location", tags=["Devices"], dependencies=[Depends(enforce_rate_limit)])
def report_location_change(device_id: int, body: LocationReport,
                           store: SimGuardStore = Depends(get_store),
                           api_key: str = Security(verify_api_key)):
    """Move a device to another cell."""
    store.report_location_change(device_id, body.location_id)
    stats["total"] += 1
    stats["moves"] += 1
    return {"device_id": device_id, "location_id": body.location_id}


@app.post("/devices/{device_id}/activity", response_model=ScoreResponse, tags=["Scoring"],
          dependencies=[Depends(enforce_rate_limit)])
def report_activity(device_id: int, body: ActivityReport,
                    store: SimGuardStore = Depends(get_store),
                    api_key: str = Security(verify_api_key)):
    """Record one call leg and return the device's suspicion state after scoring."""
    start = time.time()
    start_time = body.start_time if body.start_time is not None else start
    result = store.report_activity(device_id, start_time, body.duration_s, body.direction,
                                   body.counterparty_id, body.status)
    elapsed_ms = round((time.time() - start) * 1000, 2)

    stats["total"] += 1
    stats["activity"] += 1
    if result.suspicious_because:
        stats["flagged"] += 1
    logger.info("Scored device %d → %s in %.1fms", device_id,
                result.suspicious_because or "clear", elapsed_ms)
    return result.to_dict()


@app.get("/devices/{device_id}", tags=["Devices"], dependencies=[Depends(enforce_rate_limit)])
def get_device(device_id: int, store: SimGuardStore = Depends(get_store),
               api_key: str = Security(verify_api_key)):
    """Device row with dwell history, calls and recent top counterparties."""
    return store.get_device(device_id)


@app.post("/cohorts", tags=["Cohorts"], dependencies=[Depends(enforce_rate_limit)])
def note_suspicious_cohort(body: CohortRequest, store: SimGuardStore = Depends(get_store),
                           api_key: str = Security(verify_api_key)):
    """Create or extend a cohort for each signature."""
    return {"members": store.note_suspicious_cohort(body.signatures)}


@app.get("/cohorts", tags=["Cohorts"], dependencies=[Depends(enforce_rate_limit)])
def list_cohorts(store: SimGuardStore = Depends(get_store), api_key: str = Security(verify_api_key)):
    return store.get_cohorts()


@app.post("/cohorts/detect", tags=["Cohorts"], dependencies=[Depends(enforce_rate_limit)])
def detect_cohorts(store: SimGuardStore = Depends(get_store), api_key: str = Security(verify_api_key)):
    """Run both detection phases now."""
    report = CohortDetector(store).detect()
    return {"largest": report.largest, "signatures": report.signatures, "members": report.members}


@app.get("/parameters/{name}", tags=["System"], dependencies=[Depends(enforce_rate_limit)])
def get_parameter(name: str, default: Optional[int] = None,
                  store: SimGuardStore = Depends(get_store),
                  api_key: str = Security(verify_api_key)):
    """Look up a tunable integer, falling back to ``default``."""
    if default is None:
        default = PARAMETER_DEFAULTS.get(name, 0)
    return {"name": name, "value": store.get_parameter(name, default)}


@app.get("/suspects/summary", tags=["Scoring"], dependencies=[Depends(enforce_rate_limit)])
def suspects_summary(store: SimGuardStore = Depends(get_store), api_key: str = Security(verify_api_key)):
    """Count of devices per suspicion reason."""
    return store.suspected_device_summary()


@app.get("/health", tags=["System"])
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "simguard",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/stats", tags=["System"])
async def get_stats():
    """Get request statistics."""
    return stats


# ─── Request logging middleware ───────────────────────────────────────

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests with timing."""
    start = time.time()
    response = await call_next(request)
    elapsed = round((time.time() - start) * 1000, 1)
    logger.debug("%s %s -> %d (%.1fms)", request.method, request.url.path, response.status_code, elapsed)
    return response


# ─── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting SimGuard API on %s:%d", API_HOST, API_PORT)
    uvicorn.run(app, host=API_HOST, port=API_PORT)
