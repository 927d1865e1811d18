# Stripe billing endpoints:
# - create-checkout-session: lazily provisions the guild's Stripe customer
# - create-portal-session: self-service billing portal for an existing customer
# - webhook: verifies the signature, then hands the event to the reconciler

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field

from guildmaster.config import get_settings
from guildmaster.dependencies import (
    get_audit_service,
    get_guild_store,
    get_reconciler,
    get_stripe_service,
)
from guildmaster.exceptions import GuildNotFound, MissingGuildReference, WebhookSignatureError
from guildmaster.permissions import GuildPermission, can_act
from guildmaster.services.audit import AuditActionType, AuditService
from guildmaster.services.stripe_service import StripeService, construct_webhook_event
from guildmaster.storage import GuildStore
from guildmaster.subscription import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["billing"])


class CheckoutSessionRequest(BaseModel):
    guild_id: Optional[str] = Field(default=None, alias="guildId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    price_id: Optional[str] = Field(default=None, alias="priceId")


class PortalSessionRequest(BaseModel):
    guild_id: Optional[str] = Field(default=None, alias="guildId")


def _origin(request: Request) -> str:
    return (request.headers.get("origin") or get_settings().frontend_url).rstrip("/")


@router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutSessionRequest,
    request: Request,
    store: GuildStore = Depends(get_guild_store),
    stripe_service: StripeService = Depends(get_stripe_service),
    audit: AuditService = Depends(get_audit_service),
):
    if not (body.guild_id and body.user_id and body.price_id):
        raise HTTPException(status_code=400, detail="Missing guildId, userId, or priceId")

    guild = await store.get(body.guild_id)
    if guild is None:
        raise HTTPException(status_code=404, detail="Guild not found")

    if not can_act(body.user_id, guild, GuildPermission.MANAGE_BILLING):
        raise HTTPException(status_code=403, detail="Not allowed to manage billing for this guild")

    origin = _origin(request)
    try:
        customer_id = guild.subscription.stripe_customer_id
        if not customer_id:
            customer_id = await stripe_service.create_customer(guild.id)
            await store.update(guild.id, {"stripe_customer_id": customer_id})
            await audit.log_standalone(
                guild.id,
                AuditActionType.BILLING_CUSTOMER_CREATED,
                actor_id=body.user_id,
                details={"stripeCustomerId": customer_id},
            )

        session_id = await stripe_service.create_checkout_session(
            customer_id=customer_id,
            price_id=body.price_id,
            guild_id=guild.id,
            user_id=body.user_id,
            success_url=f"{origin}/dashboard/billing?guildId={guild.id}&success=true",
            cancel_url=f"{origin}/dashboard/billing?guildId={guild.id}&canceled=true",
        )
    except Exception as e:
        logger.exception("Stripe checkout error for guild %s", guild.id)
        raise HTTPException(status_code=500, detail=f"Stripe Checkout Error: {e}")

    return {"sessionId": session_id}


@router.post("/create-portal-session")
async def create_portal_session(
    body: PortalSessionRequest,
    request: Request,
    store: GuildStore = Depends(get_guild_store),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    if not body.guild_id:
        raise HTTPException(status_code=400, detail="Missing guildId")

    guild = await store.get(body.guild_id)
    if guild is None:
        raise HTTPException(status_code=404, detail="Guild not found")

    customer_id = guild.subscription.stripe_customer_id
    if not customer_id:
        raise HTTPException(status_code=400, detail="Stripe customer ID not found for this guild.")

    try:
        url = await stripe_service.create_portal_session(
            customer_id=customer_id,
            return_url=f"{_origin(request)}/dashboard/billing?guildId={guild.id}",
        )
    except Exception as e:
        logger.exception("Stripe portal session error for guild %s", guild.id)
        raise HTTPException(status_code=500, detail=f"Stripe Portal Session Error: {e}")

    return {"url": url}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    webhook_secret = get_settings().stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        event = construct_webhook_event(payload, sig_header, webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    try:
        result = await reconciler.handle_event(event)
    except MissingGuildReference as e:
        logger.warning("Webhook Error: %s", e)
        raise HTTPException(status_code=400, detail="Webhook Error: Missing guildId in metadata")
    except GuildNotFound as e:
        logger.warning("Webhook Error: %s (event %s)", e, event.id)
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("Webhook handler error for %s %s", event.type, event.id)
        raise HTTPException(status_code=500, detail="Webhook handler error")

    logger.debug("Stripe event %s: %s", event.id, result.outcome)
    return Response(status_code=200)
