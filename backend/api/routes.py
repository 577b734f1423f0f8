"""REST API routes for the signaling service."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from api.limiter import limiter
from config import SIGNALING_RATE_LIMIT
from signaling.models import (
    HealthResponse,
    SignalPost,
    SignalResponse,
    StatusResponse,
    normalize_pairing_code,
)
from signaling.store import RendezvousStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Signaling"])

# Injected by main.py at startup
_store: Optional[RendezvousStore] = None


def init_routes(store: RendezvousStore) -> None:
    """Inject the rendezvous store into the routes module."""
    global _store
    _store = store


def _require_code(code: Optional[str]) -> str:
    if not code:
        raise HTTPException(status_code=400, detail="Missing code")
    try:
        return normalize_pairing_code(code)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --- Offer slot ---

@router.post("/offer", response_model=StatusResponse)
@limiter.limit(SIGNALING_RATE_LIMIT)
async def post_offer(request: Request, body: SignalPost):
    """Store the initiator's descriptor under its pairing code."""
    _store.store_offer(body.code, body.signal)
    logger.info(f"Offer stored for {body.code}")
    return StatusResponse(status="ok")


@router.get("/poll", response_model=SignalResponse)
@limiter.limit(SIGNALING_RATE_LIMIT)
async def poll_offer(request: Request, code: Optional[str] = None):
    """Return the pending offer for a code, or null if none is available yet."""
    return SignalResponse(signal=_store.read_offer(_require_code(code)))


# --- Answer slot ---

@router.post("/answer", response_model=StatusResponse)
@limiter.limit(SIGNALING_RATE_LIMIT)
async def post_answer(request: Request, body: SignalPost):
    """Store the answerer's descriptor under its pairing code."""
    _store.store_answer(body.code, body.signal)
    logger.info(f"Answer stored for {body.code}")
    return StatusResponse(status="ok")


@router.get("/answer", response_model=SignalResponse)
@limiter.limit(SIGNALING_RATE_LIMIT)
async def get_answer(request: Request, code: Optional[str] = None):
    return SignalResponse(signal=_store.read_answer(_require_code(code)))


# --- Health ---

@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", signals=len(_store))
