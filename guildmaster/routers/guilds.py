from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from guildmaster.dependencies import get_guild_store, get_reconciler
from guildmaster.exceptions import GuildNotFound, TrialUnavailable
from guildmaster.permissions import (
    GuildPermission,
    can_act,
    is_owner,
    permissions_for_role,
    role_name_for,
)
from guildmaster.schemas import GuildRecord
from guildmaster.storage import GuildStore
from guildmaster.subscription import SubscriptionReconciler, effective_plan

router = APIRouter(prefix="/guilds", tags=["guilds"])


class TrialRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    days: int = Field(gt=0, le=365)


class PermissionsResponse(BaseModel):
    userId: str
    isOwner: bool
    roleName: Optional[str] = None
    permissions: list[str]


class SubscriptionResponse(BaseModel):
    guildId: str
    plan: str
    effectivePlan: str
    status: str
    currentPeriodEnd: Optional[datetime] = None
    trialEndsAt: Optional[datetime] = None
    proTrialUsed: bool


async def _load_guild(guild_id: str, store: GuildStore) -> GuildRecord:
    guild = await store.get(guild_id)
    if guild is None:
        raise HTTPException(status_code=404, detail="Guild not found")
    return guild


def _subscription_response(guild_id: str, state) -> SubscriptionResponse:
    return SubscriptionResponse(
        guildId=guild_id,
        plan=state.plan.value,
        effectivePlan=effective_plan(state).value,
        status=state.status.value,
        currentPeriodEnd=state.current_period_end,
        trialEndsAt=state.trial_ends_at,
        proTrialUsed=state.pro_trial_used,
    )


@router.get("/{guild_id}/permissions", response_model=PermissionsResponse)
async def get_permissions(
    guild_id: str,
    user_id: str = Query(alias="userId"),
    store: GuildStore = Depends(get_guild_store),
):
    guild = await _load_guild(guild_id, store)
    owner = is_owner(user_id, guild)
    role_name = role_name_for(user_id, guild)

    if owner:
        granted = set(GuildPermission)
    else:
        granted = permissions_for_role(role_name, guild.custom_roles)

    return PermissionsResponse(
        userId=user_id,
        isOwner=owner,
        roleName=role_name,
        permissions=sorted(p.value for p in granted),
    )


@router.get("/{guild_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(guild_id: str, store: GuildStore = Depends(get_guild_store)):
    guild = await _load_guild(guild_id, store)
    return _subscription_response(guild.id, guild.subscription)


@router.post("/{guild_id}/trial", response_model=SubscriptionResponse)
async def start_trial(
    guild_id: str,
    body: TrialRequest,
    store: GuildStore = Depends(get_guild_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    guild = await _load_guild(guild_id, store)
    if not body.user_id:
        raise HTTPException(status_code=400, detail="Missing userId")
    if not can_act(body.user_id, guild, GuildPermission.MANAGE_BILLING):
        raise HTTPException(status_code=403, detail="Not allowed to manage billing for this guild")

    try:
        state = await reconciler.grant_trial(guild.id, body.days, actor_id=body.user_id)
    except TrialUnavailable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GuildNotFound:
        raise HTTPException(status_code=404, detail="Guild not found")

    return _subscription_response(guild.id, state)
