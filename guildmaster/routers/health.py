from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from guildmaster import __version__
from guildmaster.database import get_db
from guildmaster.config import get_settings

router = APIRouter(tags=["core"])

@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception:
        db_status = "error"

    settings = get_settings()
    return {
        "status": "ok",
        "db": db_status,
        "stripe": "configured" if settings.stripe_secret_key and settings.stripe_webhook_secret else "missing",
    }

@router.get("/version")
async def version():
    settings = get_settings()
    return {
        "version": __version__,
        "environment": settings.environment,
        "app_name": "Guildmaster Billing"
    }
