import asyncio
import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, StrictBool, ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address

from auth.deps import get_current_user, require_admin
from common.config import BOUNDS_QUERY_LIMIT, DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT
from db.models import AppUser
from db.store import PotholeStore
from orchestrator.exceptions import (
    DuplicateVoteError,
    InvalidLocationError,
    RecordNotFoundError,
    StoreError,
)
from schemas import (
    BoundingBox,
    CamelModel,
    ConfirmationVote,
    PotholeCreate,
    PotholeRecord,
    VoteStatus,
    VoteSummary,
)

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)
router = APIRouter(prefix="/api/potholes", tags=["potholes"])


class VerifyPayload(BaseModel):
    verified: StrictBool


class ConfirmPayload(BaseModel):
    status: VoteStatus


class ConfirmationsResponse(CamelModel):
    confirmations: List[ConfirmationVote]
    summary: VoteSummary


def get_store(request: Request) -> PotholeStore:
    return request.app.state.store


StoreDep = Annotated[PotholeStore, Depends(get_store)]


async def _run(fn, *args):
    """Run a blocking store call and map domain errors to HTTP."""
    try:
        return await asyncio.to_thread(fn, *args)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pothole not found") from exc
    except DuplicateVoteError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="You have already confirmed this pothole",
        ) from exc
    except InvalidLocationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error",
        ) from exc


@router.get("", response_model=List[PotholeRecord])
async def list_potholes(
    store: StoreDep,
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
):
    return await _run(store.list_recent, limit)


@router.get("/bounds", response_model=List[PotholeRecord])
async def list_potholes_in_bounds(
    store: StoreDep,
    north: float = Query(...),
    south: float = Query(...),
    east: float = Query(...),
    west: float = Query(...),
):
    try:
        bounds = BoundingBox(north=north, south=south, east=east, west=west)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid bounds: {exc.errors()[0]['msg']}",
        ) from exc
    return await _run(store.list_in_bounds, bounds, BOUNDS_QUERY_LIMIT)


@router.get("/{pothole_id}", response_model=PotholeRecord)
async def get_pothole(pothole_id: str, store: StoreDep):
    return await _run(store.get_record, pothole_id)


@router.post("", response_model=PotholeRecord, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_pothole(request: Request, payload: PotholeCreate, store: StoreDep):
    record = await _run(
        store.create_record,
        payload.latitude,
        payload.longitude,
        payload.confidence_score,
        payload.images,
        payload.reporter_id,
        payload.verified,
        payload.detection_count,
    )
    logger.info("Pothole %s created manually", record.id)
    return record


@router.patch("/{pothole_id}/verify", response_model=PotholeRecord)
async def verify_pothole(
    pothole_id: str,
    payload: VerifyPayload,
    store: StoreDep,
    current_user: Annotated[AppUser, Depends(get_current_user)],
):
    record = await _run(store.set_verified, pothole_id, payload.verified)
    logger.info("User %s set verified=%s on pothole %s", current_user.id, payload.verified, pothole_id)
    return record


@router.patch("/{pothole_id}/admin-verify", response_model=PotholeRecord)
async def admin_verify_pothole(
    pothole_id: str,
    payload: VerifyPayload,
    store: StoreDep,
    admin_user: Annotated[AppUser, Depends(require_admin)],
):
    record = await _run(store.set_verified, pothole_id, payload.verified)
    logger.info("Admin %s set verified=%s on pothole %s", admin_user.id, payload.verified, pothole_id)
    return record


@router.delete("/{pothole_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pothole(
    pothole_id: str,
    store: StoreDep,
    admin_user: Annotated[AppUser, Depends(require_admin)],
):
    deleted = await _run(store.delete_record, pothole_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pothole not found")
    logger.info("Admin %s deleted pothole %s", admin_user.id, pothole_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{pothole_id}/confirm",
    response_model=ConfirmationVote,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
async def confirm_pothole(
    request: Request,
    pothole_id: str,
    payload: ConfirmPayload,
    store: StoreDep,
    current_user: Annotated[AppUser, Depends(get_current_user)],
):
    return await _run(store.record_vote, pothole_id, current_user.id, payload.status)


@router.get("/{pothole_id}/confirmations", response_model=ConfirmationsResponse)
async def list_confirmations(pothole_id: str, store: StoreDep):
    summary = await _run(store.vote_summary, pothole_id)
    votes = await _run(store.list_votes, pothole_id)
    return ConfirmationsResponse(confirmations=votes, summary=summary)
