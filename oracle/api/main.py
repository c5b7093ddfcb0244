"""
FLEET REWARDS :: Reward Oracle API Gateway
FastAPI server exposing the reward-accounting core to the dApp and backend.

  GET  /health
  GET  /api/v1/rewards/{address}            pending reward estimate
  POST /api/v1/rewards/claim-proof          signed, epoch-scoped claim proof
  POST /api/v1/rewards/verify               off-chain claim proof check
  POST /api/v1/rewards/recalculate          admin: refresh aggregates now
  GET  /api/v1/rewards/aggregate/{chain_id} stored aggregate + staleness
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from engine.errors import (
    ConfigurationError,
    InvalidAddressError,
    TransientUpstreamError,
    UnknownChainError,
)
from engine.reward_service import RewardService, create_reward_service

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s :: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
log = logging.getLogger("fleet.api")

DEFAULT_ADMIN_KEY = "rewards-dev-admin-key"
ADMIN_API_KEY     = os.getenv("ADMIN_API_KEY", DEFAULT_ADMIN_KEY)
ADMIN_KEY_HEADER  = APIKeyHeader(name="X-Rewards-Admin-Key", auto_error=True)

# ─── Rate Limiter ─────────────────────────────────────────────────────────────
RATE_LIMIT_CLAIM   = os.getenv("RATE_LIMIT_CLAIM", "10/minute")
RATE_LIMIT_REWARDS = os.getenv("RATE_LIMIT_REWARDS", "60/minute")
limiter = Limiter(key_func=get_remote_address)

# single service instance, replaced in tests via dependency_overrides
reward_service: RewardService = create_reward_service()


def get_reward_service() -> RewardService:
    return reward_service


app = FastAPI(
    title="Fleet Rewards Oracle API",
    description="Off-chain reward accounting and signed claim proofs",
    version=RewardService.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Error mapping ────────────────────────────────────────────────────────────
# client mistakes → 4xx, retryable upstream trouble → 503, deployment defects → 500
@app.exception_handler(InvalidAddressError)
async def _invalid_address(request: Request, exc: InvalidAddressError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(UnknownChainError)
async def _unknown_chain(request: Request, exc: UnknownChainError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def _configuration_error(request: Request, exc: ConfigurationError):
    log.critical(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})


@app.exception_handler(TransientUpstreamError)
async def _transient_error(request: Request, exc: TransientUpstreamError):
    log.error(f"Upstream failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "retryable": True},
        headers={"Retry-After": "30"},
    )


# ─── Startup / Shutdown ───────────────────────────────────────────────────────
@app.on_event("startup")
async def _startup():
    """Check critical settings at boot, not silently at runtime."""
    service = get_reward_service()
    warnings_found = []

    if service.signer.ephemeral:
        warnings_found.append(
            "NO SERVER_WALLET_PRIVATE_KEY SET: A RANDOM EPHEMERAL KEY IS BEING USED! "
            "The signer address changes on every restart and on-chain claims will revert."
        )
    if ADMIN_API_KEY == DEFAULT_ADMIN_KEY:
        warnings_found.append(
            f"DEFAULT ADMIN KEY IN USE ('{DEFAULT_ADMIN_KEY}'). "
            "Anyone who knows it can trigger recalculations. Set ADMIN_API_KEY."
        )
    if not service.registry.chain_ids():
        warnings_found.append("NO CHAINS CONFIGURED: every reward request will fail.")

    for w in warnings_found:
        log.critical(f"\n{'='*70}\n⚠️  SECURITY WARNING: {w}\n{'='*70}")
    if not warnings_found:
        log.info("✅ Startup validation passed. Signer key and admin key are configured.")

    service.scheduler.start()


@app.on_event("shutdown")
async def _shutdown():
    await get_reward_service().close()


# ─── CORS ─────────────────────────────────────────────────────────────────────
_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]
log.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_admin_key(api_key: str = Security(ADMIN_KEY_HEADER)) -> str:
    if api_key != ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
    return api_key


# ─── Request Models ───────────────────────────────────────────────────────────
class ClaimProofRequest(BaseModel):
    user_address: str
    chain_id:     Optional[int] = Field(default=None, description="Defaults to DEFAULT_CHAIN_ID")


class ClaimData(BaseModel):
    user_address: str
    amount:       str
    epoch:        int
    proof:        str
    chain_id:     int


class VerifyClaimRequest(BaseModel):
    claim: ClaimData


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health(service: RewardService = Depends(get_reward_service)):
    return {
        "status":         "operational",
        "signer_address": service.signer_address,
        "chains":         service.registry.chain_ids(),
        "last_recalc_at": service.job.last_run_at,
        "version":        RewardService.VERSION,
        "timestamp":      int(time.time()),
    }


@app.get("/api/v1/rewards/aggregate/{chain_id}", summary="Stored Chain Aggregate")
async def get_aggregate(
    chain_id: int,
    service:  RewardService = Depends(get_reward_service),
) -> Dict[str, Any]:
    aggregate = await service.get_aggregate(chain_id)
    if aggregate is None:
        raise HTTPException(status_code=404, detail=f"No aggregate computed yet for chain {chain_id}")
    return aggregate


@app.get("/api/v1/rewards/{address}", summary="Pending Reward Estimate")
@limiter.limit(RATE_LIMIT_REWARDS)
async def get_user_rewards(
    request:  Request,                          # required by slowapi
    address:  str,
    chain_id: Optional[int] = None,
    service:  RewardService = Depends(get_reward_service),
) -> Dict[str, Any]:
    """
    Display estimate. Upstream failures degrade to amount "0" with `error`
    set rather than failing the request.
    """
    reward = await service.estimate_pending_rewards(address, chain_id)
    return reward.to_dict()


@app.post("/api/v1/rewards/claim-proof", summary="Generate Claim Proof")
@limiter.limit(RATE_LIMIT_CLAIM)
async def generate_claim_proof(
    request: Request,
    body:    ClaimProofRequest,
    service: RewardService = Depends(get_reward_service),
) -> Dict[str, Any]:
    """
    Returns a server-signed proof the user submits to RewardClaim on-chain.
    Upstream failures surface as 503; a proof is never signed for a
    degraded amount.
    """
    proof = await service.generate_claim_proof(body.user_address, body.chain_id)
    return {
        **proof.to_dict(),
        "signer_address": service.signer_address,
        "contract_args":  proof.to_contract_args(service.decimals),
    }


@app.post("/api/v1/rewards/verify", summary="Verify Claim Proof")
async def verify_claim(
    body:    VerifyClaimRequest,
    service: RewardService = Depends(get_reward_service),
):
    result = service.verify_claim_proof(body.claim.model_dump())
    if not result.valid:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.to_dict())
    return result.to_dict()


@app.post("/api/v1/rewards/recalculate", summary="Trigger Reward Recalculation")
async def recalculate(
    _:       str = Depends(verify_admin_key),
    service: RewardService = Depends(get_reward_service),
) -> Dict[str, Any]:
    started = time.perf_counter()
    results = await service.calculate_all_rewards()
    log.info(f"[ADMIN] Manual recalculation finished for {len(results)} chain(s)")
    return {
        "results":            {str(k): v for k, v in results.items()},
        "processing_time_ms": round((time.perf_counter() - started) * 1000, 2),
    }
