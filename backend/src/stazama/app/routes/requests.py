"""Inspection request table routes, row-scoped by the caller's role."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from stazama.app.routes.auth import get_caller_dep
from stazama.domain.schemas import InspectionRequestInsert, RequestPatch
from stazama.infra.database import get_db
from stazama.services.permissions import Caller
from stazama.services.request_store import (
    PermissionDeniedError,
    RequestStore,
    RowNotFoundError,
    StoreError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/inspection-requests", tags=["inspection-requests"])


def http_error_for(exc: StoreError) -> HTTPException:
    """Translate a store failure into the matching HTTP error."""
    if isinstance(exc, RowNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("")
async def list_requests(
    owner_id: Optional[str] = None,
    caller: Caller = Depends(get_caller_dep),
    db: AsyncSession = Depends(get_db),
):
    """Requests visible to the caller, newest first."""
    try:
        return await RequestStore(db).list_requests(caller, owner_id)
    except StoreError as e:
        raise http_error_for(e)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_request(
    data: InspectionRequestInsert,
    caller: Caller = Depends(get_caller_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await RequestStore(db).insert_request(caller, data)
    except StoreError as e:
        raise http_error_for(e)


@router.get("/{request_id}")
async def get_request(
    request_id: str,
    caller: Caller = Depends(get_caller_dep),
    db: AsyncSession = Depends(get_db),
):
    row = await RequestStore(db).get_request(caller, request_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return row


@router.patch("/{request_id}")
async def update_request(
    request_id: str,
    patch: RequestPatch,
    caller: Caller = Depends(get_caller_dep),
    db: AsyncSession = Depends(get_db),
):
    """Write the fields present in the body. Explicit nulls are written too."""
    fields = patch.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return await RequestStore(db).update_request(caller, request_id, fields)
    except StoreError as e:
        raise http_error_for(e)
