from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import sys
import uvicorn
import os

from guildmaster import __version__
from guildmaster.config import get_settings
from guildmaster.database import init_db
from guildmaster.routers import health_router, billing_router, guilds_router

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield

app = FastAPI(
    title="Guildmaster Billing",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(billing_router)
app.include_router(guilds_router)

@app.get("/")
async def root():
    return {
        "message": "Guildmaster Billing API",
        "version": __version__,
        "environment": settings.environment
    }

if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    uvicorn.run(
        "guildmaster.main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.environment != "production"
    )
