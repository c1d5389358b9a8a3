import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.config import get_settings
from api.src.db.database import init_db
from api.src.routes import API_ROUTERS, health_router

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Pagesflow API")
    logger.info(f"Pipeline definition: {settings.pipeline_file}")
    await init_db()
    yield
    logger.info("Shutting down Pagesflow API")

app = FastAPI(
    title="Pagesflow",
    description="Build-and-publish pipeline for WebAssembly web projects",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
for router in API_ROUTERS:
    app.include_router(router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Pagesflow",
        "version": "0.1.0",
        "docs": "/docs"
    }
