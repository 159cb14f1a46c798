"""
DEAL ORACLE - FastAPI Server

Endpoints:
- GET  /health                      - Liveness
- POST /deals                       - Create a deal
- GET  /deals                       - List deals
- GET  /deals/{deal_id}             - Deal status
- POST /deals/{deal_id}/submissions - Submit an answer
- POST /deals/{deal_id}/evaluate    - Score submissions
- POST /deals/{deal_id}/release     - Release escrow to the winner
- POST /deals/{deal_id}/dispute     - Flag a deal as disputed
- GET  /deals/{deal_id}/scoreboard  - Ranked standings
- GET  /deals/{deal_id}/receipt     - Payout receipt
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..core.errors import (
    InvalidTransitionError,
    NoEvaluationsError,
    NotFoundError,
    OracleError,
    PayoutError,
    ValidationError,
)
from ..oracle import DealOracle, build_oracle

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateDealRequest(BaseModel):
    """Request to open a deal."""
    title: str = Field(..., description="Short deal title")
    amount: Decimal = Field(..., description="Escrowed amount, in the payout asset")
    requirements: str = Field(..., description="What a winning submission must contain")
    challenge_minutes: Optional[float] = Field(None, description="Challenge window length")
    require_proof_links: bool = Field(default=True)
    require_official_docs: bool = Field(default=True)
    accept_threshold: Optional[float] = Field(None, description="Minimum winning score in [0, 1]")


class SubmitRequest(BaseModel):
    """Request to add a submission."""
    submission_text: str = Field(..., description="Answer text, may embed payout_address/proof_links lines")
    proof_links: List[str] = Field(default_factory=list)
    payout_address: Optional[str] = Field(None, description="0x + 40 hex chars")


class EvaluateRequest(BaseModel):
    """Request to evaluate submissions."""
    submission_id: Optional[str] = None
    reevaluate_all: bool = False


class DisputeRequest(BaseModel):
    """Request to dispute a deal."""
    reason: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    judge: str
    payments_configured: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, oracle: Optional[DealOracle] = None):
        self.oracle = oracle or build_oracle()
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("deal_oracle_starting", version=__version__)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("deal_oracle_stopping")


ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    NoEvaluationsError: 409,
    PayoutError: 502,
}


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Deal Oracle",
        description="""
# USDC Deal Oracle

Escrowed deals released to the best verified submission.

- **Gate**: deterministic proof and format checks before any scoring
- **Judge**: LLM scoring with a safe fallback when no key is configured
- **Release**: challenge window, dispute and threshold checks, then exactly one payout
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(OracleError)
    async def oracle_error_handler(request: Request, exc: OracleError):
        status_code = 500
        for error_type, code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        logger.warning(
            "request_failed",
            path=request.url.path,
            error=type(exc).__name__,
            detail=str(exc),
            status_code=status_code,
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        judge=type(state.oracle.judge).__name__,
        payments_configured=state.oracle.payments is not None,
        uptime_seconds=uptime,
    )


@app.post("/deals", status_code=201, tags=["Deals"])
def create_deal(
    request: CreateDealRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Open a new deal in OPEN status."""
    deal = state.oracle.create(
        title=request.title,
        amount=request.amount,
        requirements=request.requirements,
        challenge_minutes=request.challenge_minutes,
        require_proof_links=request.require_proof_links,
        require_official_docs=request.require_official_docs,
        accept_threshold=request.accept_threshold,
    )
    return deal.to_dict()


@app.get("/deals", tags=["Deals"])
def list_deals(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """List every deal."""
    deals = state.oracle.status()
    return {
        "total": len(deals),
        "deals": [d.to_dict() for d in deals],
    }


@app.get("/deals/{deal_id}", tags=["Deals"])
def get_deal(deal_id: str, state: AppState = Depends(get_state)) -> Dict[str, Any]:
    """Current status of one deal."""
    return state.oracle.status(deal_id).to_dict()


@app.post("/deals/{deal_id}/submissions", status_code=201, tags=["Submissions"])
def submit(
    deal_id: str,
    request: SubmitRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, str]:
    """
    Add a submission.

    The payout address comes from the request or from a
    `payout_address: 0x...` line in the text.
    """
    return state.oracle.submit(
        deal_id,
        request.submission_text,
        proof_links_csv=",".join(request.proof_links) or None,
        payout_address=request.payout_address,
    )


@app.post("/deals/{deal_id}/evaluate", tags=["Submissions"])
def evaluate(
    deal_id: str,
    request: Optional[EvaluateRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Score pending submissions (or the ones requested) and rank the deal."""
    request = request or EvaluateRequest()
    report = state.oracle.evaluate(
        deal_id,
        submission_id=request.submission_id,
        reevaluate_all=request.reevaluate_all,
    )
    return report.to_dict()


@app.post("/deals/{deal_id}/release", tags=["Release"])
def release(
    deal_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """
    Release escrow to the best submission.

    Returns released=false with a reason while the challenge window is open,
    when the deal is disputed, or when the best score is below threshold.
    Calling it again after a payout replays the recorded outcome.
    """
    return state.oracle.release(deal_id).to_dict()


@app.post("/deals/{deal_id}/dispute", tags=["Release"])
def dispute(
    deal_id: str,
    request: Optional[DisputeRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Flag a deal as disputed."""
    reason = request.reason if request else None
    return state.oracle.dispute(deal_id, reason).to_dict()


@app.get("/deals/{deal_id}/scoreboard", tags=["Deals"])
def scoreboard(deal_id: str, state: AppState = Depends(get_state)) -> Dict[str, Any]:
    """Ranked standings."""
    return state.oracle.scoreboard(deal_id).to_dict()


@app.get("/deals/{deal_id}/receipt", tags=["Release"])
def receipt(deal_id: str, state: AppState = Depends(get_state)) -> Dict[str, Any]:
    """Payout receipt with explorer link when available."""
    return state.oracle.receipt(deal_id).to_dict()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "deal_oracle.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
