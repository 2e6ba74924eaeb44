import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from targetgraph.config import settings
from targetgraph.routers.build import router as build_router

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

app = FastAPI(title="TargetGraph API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(build_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
