"""Stored-procedure style endpoints: order tracking and the admin role update."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from stazama.app.routes.auth import get_current_user_dep, caller_from
from stazama.app.routes.requests import http_error_for
from stazama.domain.models import Profile
from stazama.domain.schemas import (
    RoleUpdateRequest,
    TrackedOrderUpdateRequest,
    TrackingLookup,
    UserWithRoleOut,
)
from stazama.infra.database import get_db
from stazama.services.cache_service import cache_invalidation
from stazama.services.rate_limiter import RateLimits, limiter
from stazama.services.request_store import RequestStore, StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rpc", tags=["rpc"])

# One budget per client across the three tracking procedures
tracking_limit = limiter.shared_limit(RateLimits.TRACKING, scope="tracking")


@router.post("/track_order_by_id")
@tracking_limit
async def track_order_by_id(
    data: TrackingLookup, request: Request, db: AsyncSession = Depends(get_db)
):
    """Look up a request by tracking code. Returns null when nothing matches."""
    return await RequestStore(db).track_order_by_id(data.tracking_id)


@router.post("/update_tracked_order")
@tracking_limit
async def update_tracked_order(
    data: TrackedOrderUpdateRequest, request: Request, db: AsyncSession = Depends(get_db)
):
    try:
        return await RequestStore(db).update_tracked_order(data.tracking_id, data.fields)
    except StoreError as e:
        raise http_error_for(e)


@router.post("/cancel_tracked_order")
@tracking_limit
async def cancel_tracked_order(
    data: TrackingLookup, request: Request, db: AsyncSession = Depends(get_db)
):
    try:
        return await RequestStore(db).cancel_tracked_order(data.tracking_id)
    except StoreError as e:
        raise http_error_for(e)


@router.post("/update_user_role", response_model=UserWithRoleOut)
async def update_user_role(
    data: RoleUpdateRequest,
    user: Profile = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        profile = await RequestStore(db).update_user_role(
            caller_from(user), data.target_user_id, data.new_role
        )
    except StoreError as e:
        raise http_error_for(e)
    cache_invalidation.user_related(data.target_user_id)
    cache_invalidation.directory()
    return UserWithRoleOut.model_validate(profile)
