import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tiledecoder.constants import LOG_FORMAT

from backend import config
from backend.routers import tiles
from backend.workers import pool_manager

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool_manager.start()
    try:
        yield
    finally:
        pool_manager.stop()


app = FastAPI(
    title="tiledecoder API",
    description="Decode and reproject 3D Tiles content on a pool of worker threads",
    version="0.1.0",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS -- allow the Vite dev server on localhost:5174
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(tiles.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "tiledecoder API"}
