from guildmaster.routers.health import router as health_router
from guildmaster.routers.billing import router as billing_router
from guildmaster.routers.guilds import router as guilds_router

__all__ = ["health_router", "billing_router", "guilds_router"]
