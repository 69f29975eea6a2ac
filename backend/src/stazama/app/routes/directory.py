"""Profile directory routes: agents, clients and the admin users list."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stazama.app.routes.auth import caller_from, get_current_user_dep
from stazama.app.routes.requests import http_error_for
from stazama.domain.models import Profile
from stazama.domain.schemas import AgentOut, ClientOut, UserWithRoleOut
from stazama.infra.database import get_db
from stazama.services.request_store import RequestStore, StoreError

router = APIRouter(prefix="/api", tags=["directory"])


@router.get("/agents", response_model=list[AgentOut])
async def list_agents(
    user: Profile = Depends(get_current_user_dep), db: AsyncSession = Depends(get_db)
):
    try:
        return await RequestStore(db).list_agents(caller_from(user))
    except StoreError as e:
        raise http_error_for(e)


@router.get("/clients", response_model=list[ClientOut])
async def list_clients(
    user: Profile = Depends(get_current_user_dep), db: AsyncSession = Depends(get_db)
):
    try:
        return await RequestStore(db).list_clients(caller_from(user))
    except StoreError as e:
        raise http_error_for(e)


@router.get("/users", response_model=list[UserWithRoleOut])
async def list_users(
    user: Profile = Depends(get_current_user_dep), db: AsyncSession = Depends(get_db)
):
    try:
        return await RequestStore(db).list_users(caller_from(user))
    except StoreError as e:
        raise http_error_for(e)
