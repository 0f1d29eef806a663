"""
FastAPI application for the research desk aggregation layer.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import logging
import re
import time

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
import uvicorn

from research_desk import __version__
from research_desk.config import Settings, load_settings
from research_desk.entities import ArtifactKind, MergedCollection, SavedArtifact
from research_desk.errors import (
    AggregateFetchError,
    ConfigurationError,
    MalformedResponseError,
    OperationAborted,
    PersistenceError,
    ProviderError,
)
from research_desk.fanout import AggregateResult
from research_desk.repair import RepairOutcome
from research_desk.services import ResearchService

# =============================================================================
# Configuration
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("research_desk.api")

# Rate limiting (in-memory, per client IP)
rate_limit_store: Dict[str, List[float]] = {}

TICKER_PATTERN = re.compile(r'^[A-Z]{1,5}(\.[A-Z]{1,2})?$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


# =============================================================================
# App Initialization
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    service = ResearchService.from_settings(settings)
    await service.startup()
    app.state.settings = settings
    app.state.service = service
    logger.info("Research desk service started")
    try:
        yield
    finally:
        await service.aclose()
        logger.info("Research desk service stopped")


app = FastAPI(
    title="Research Desk API",
    version=__version__,
    description="Multi-source market data aggregation, generated research and saved artifacts",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store, max-age=0"

    return response


# =============================================================================
# Helpers
# =============================================================================

def get_service(request: Request) -> ResearchService:
    return request.app.state.service


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or Settings()


def check_rate_limit(client_ip: str, max_requests: int, window: int) -> bool:
    """
    Check if client has exceeded rate limit.
    Returns True if request is allowed, False if rate limited.
    """
    now = time.time()
    window_start = now - window

    if client_ip in rate_limit_store:
        rate_limit_store[client_ip] = [
            ts for ts in rate_limit_store[client_ip] if ts > window_start
        ]
    else:
        rate_limit_store[client_ip] = []

    if len(rate_limit_store[client_ip]) >= max_requests:
        return False

    rate_limit_store[client_ip].append(now)
    return True


def enforce_rate_limit(req: Request, settings: Settings = Depends(get_settings)) -> None:
    client_ip = req.client.host if req.client else "unknown"
    if not check_rate_limit(client_ip, settings.rate_limit_requests, settings.rate_limit_window):
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please wait before making another request."
        )


def validate_ticker(ticker: str) -> str:
    ticker = ticker.strip().upper()
    if not TICKER_PATTERN.match(ticker):
        raise HTTPException(status_code=400, detail="Invalid ticker")
    return ticker


def validate_date(value: Optional[str], name: str) -> Optional[str]:
    if value is not None and not DATE_PATTERN.match(value):
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD")
    return value


def to_jsonable(value: Any) -> Any:
    if isinstance(value, MergedCollection):
        return {
            "domain": value.domain,
            "status": value.status.value,
            "sources": {source: status.value for source, status in value.source_statuses.items()},
            "errors": dict(value.errors),
            "records": value.to_dicts(),
        }
    return value


def aggregate_response(result: AggregateResult) -> Dict[str, Any]:
    body = result.to_dict()
    body["data"] = {key: to_jsonable(value) for key, value in body["data"].items()}
    return body


def repaired_response(symbol: str, outcome: RepairOutcome) -> Dict[str, Any]:
    return {
        "symbol": symbol,
        "data": outcome.data,
        "repaired_fields": outcome.repaired_fields,
    }


def http_error(e: Exception) -> HTTPException:
    """Map a research desk error onto an HTTP error."""
    if isinstance(e, AggregateFetchError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, MalformedResponseError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ProviderError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, OperationAborted):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=500, detail=f"Storage failure during {e.operation}")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail="Internal server error")


# =============================================================================
# Models
# =============================================================================

class GenerateReportRequest(BaseModel):
    """Request model for report generation."""
    ticker: str
    report_type: str = "standard"
    channel: Optional[str] = None

    @field_validator('ticker')
    @classmethod
    def validate_ticker(cls, v: str) -> str:
        ticker = v.strip().upper()
        if not TICKER_PATTERN.match(ticker):
            raise ValueError("Ticker must be 1-5 letters, optionally with a class suffix")
        return ticker

    @field_validator('report_type')
    @classmethod
    def validate_report_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ["quick", "standard", "comprehensive"]:
            raise ValueError("Report type must be 'quick', 'standard' or 'comprehensive'")
        return v


class GeneratePredictionRequest(BaseModel):
    ticker: str
    channel: Optional[str] = None

    @field_validator('ticker')
    @classmethod
    def validate_ticker(cls, v: str) -> str:
        ticker = v.strip().upper()
        if not TICKER_PATTERN.match(ticker):
            raise ValueError("Ticker must be 1-5 letters, optionally with a class suffix")
        return ticker


class SaveArtifactRequest(BaseModel):
    """A generated report or prediction to keep."""
    owner_id: str
    kind: ArtifactKind
    symbol: str
    payload: Dict[str, Any]
    company_name: Optional[str] = None

    @field_validator('owner_id')
    @classmethod
    def validate_owner(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > 128:
            raise ValueError("owner_id must be 1-128 characters")
        return v

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        symbol = v.strip().upper()
        if not TICKER_PATTERN.match(symbol):
            raise ValueError("Symbol must be 1-5 letters, optionally with a class suffix")
        return symbol


class ArtifactInfo(BaseModel):
    id: str
    owner_id: str
    kind: str
    symbol: str
    company_name: Optional[str] = None
    payload: Dict[str, Any]
    created_at: str
    expires_at: str


class SaveArtifactResponse(BaseModel):
    id: str


class ArtifactListResponse(BaseModel):
    owner_id: str
    kind: str
    artifacts: List[ArtifactInfo]


def artifact_info(artifact: SavedArtifact) -> ArtifactInfo:
    return ArtifactInfo(**artifact.to_dict())


# =============================================================================
# Endpoints
# =============================================================================


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Research Desk API", "version": __version__}


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/aggregate/{ticker}")
async def get_aggregate(
    ticker: str,
    channel: Optional[str] = Query(None, max_length=128),
    service: ResearchService = Depends(get_service),
):
    """
    Fetch every slice of the company view.

    Fails with 502 when profile or quote is unavailable; other slices
    degrade to their fallback with an "error" status.
    """
    ticker = validate_ticker(ticker)
    try:
        result = await service.fetch_aggregate(ticker, channel=channel)
    except Exception as e:
        logger.error(f"Aggregate fetch failed for {ticker}: {e}")
        raise http_error(e)
    return aggregate_response(result)


@app.get("/api/alternative/{ticker}")
async def get_alternative_data(
    ticker: str,
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    channel: Optional[str] = Query(None, max_length=128),
    service: ResearchService = Depends(get_service),
):
    """News, sentiment, insider, ownership and merged congressional trades."""
    ticker = validate_ticker(ticker)
    validate_date(from_date, "from")
    validate_date(to_date, "to")
    try:
        result = await service.fetch_alternative_data(ticker, from_date, to_date, channel=channel)
    except Exception as e:
        logger.error(f"Alternative data fetch failed for {ticker}: {e}")
        raise http_error(e)
    return aggregate_response(result)


@app.post("/api/reports/generate", dependencies=[Depends(enforce_rate_limit)])
async def generate_report(request: GenerateReportRequest, service: ResearchService = Depends(get_service)):
    """
    Generate a research report. Rate limited per IP.

    Missing report fields come back as labelled placeholders and are
    listed in repaired_fields.
    """
    try:
        outcome = await service.generate_report(request.ticker, request.report_type, channel=request.channel)
    except Exception as e:
        logger.error(f"Report generation failed for {request.ticker}: {e}")
        raise http_error(e)
    return repaired_response(request.ticker, outcome)


@app.post("/api/predictions/generate", dependencies=[Depends(enforce_rate_limit)])
async def generate_prediction(request: GeneratePredictionRequest, service: ResearchService = Depends(get_service)):
    """Generate a price prediction. Rate limited per IP."""
    try:
        outcome = await service.generate_prediction(request.ticker, channel=request.channel)
    except Exception as e:
        logger.error(f"Prediction generation failed for {request.ticker}: {e}")
        raise http_error(e)
    return repaired_response(request.ticker, outcome)


@app.post("/api/artifacts", response_model=SaveArtifactResponse)
async def save_artifact(request: SaveArtifactRequest, service: ResearchService = Depends(get_service)):
    """Save a report or prediction; the owner's oldest ones are evicted at capacity."""
    try:
        artifact_id = await service.save_artifact(
            request.owner_id, request.kind, request.symbol, request.payload, request.company_name
        )
    except Exception as e:
        logger.error(f"Saving {request.kind.value} {request.symbol} failed: {e}")
        raise http_error(e)
    return {"id": artifact_id}


@app.get("/api/artifacts/{owner_id}", response_model=ArtifactListResponse)
async def list_artifacts(
    owner_id: str,
    kind: ArtifactKind = Query(...),
    service: ResearchService = Depends(get_service),
):
    """Saved artifacts of one kind, newest first."""
    try:
        artifacts = await service.list_artifacts(owner_id, kind)
    except Exception as e:
        logger.error(f"Listing artifacts for {owner_id} failed: {e}")
        raise http_error(e)
    return {
        "owner_id": owner_id,
        "kind": kind.value,
        "artifacts": [artifact_info(a) for a in artifacts],
    }


@app.delete("/api/artifacts/{artifact_id}")
async def delete_artifact(artifact_id: str, service: ResearchService = Depends(get_service)):
    """Delete one saved artifact."""
    try:
        deleted = await service.delete_artifact(artifact_id)
    except Exception as e:
        logger.error(f"Deleting artifact {artifact_id} failed: {e}")
        raise http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return {"deleted": True, "id": artifact_id}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
