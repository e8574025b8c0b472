"""
Compliance State Engine — FastAPI Application Entry Point

POST /v1/compliance/entities/{id}/calculate  → compute GREEN / AMBER / RED
GET  /v1/compliance/entities/{id}            → current state
GET  /v1/compliance/health                   → health check
/v1/admin/rules                              → rule catalog admin
GET  /docs                                   → OpenAPI / Swagger UI
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from compliance_engine.api.admin_endpoint import router as admin_router
from compliance_engine.api.compliance_endpoint import router as compliance_router
from compliance_engine.core.config import get_settings
from compliance_engine.services.event_publisher import close_producer

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer() if get_settings().app_env == "development"
        else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(get_settings().log_level),
)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("compliance_engine_starting", engine_version=get_settings().engine_version)
    yield
    await close_producer()
    logger.info("compliance_engine_shutting_down")


app = FastAPI(
    title="Compliance State Engine",
    description="Rule-based GREEN / AMBER / RED compliance classification for registered businesses",
    version=get_settings().engine_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (platform backend + admin console) ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_methods=["POST", "GET", "PUT"],
    allow_headers=["*"],
)

# ── Prometheus metrics ──
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── Routes ──
app.include_router(compliance_router)
app.include_router(admin_router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": get_settings().app_name,
        "version": get_settings().engine_version,
        "docs": "/docs",
        "calculate": "POST /v1/compliance/entities/{entity_id}/calculate",
    }
