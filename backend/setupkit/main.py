from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from setupkit.config import settings
from setupkit.middleware.exceptions import register_exception_handlers
from setupkit.middleware.security import SecurityHeadersMiddleware
from setupkit.routers import auth, bootstrap, health, setup
from setupkit.services.runtime import lifespan

app = FastAPI(
    title="setupkit",
    description="Setup and bootstrap orchestrator for a fresh platform deployment",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(setup.router, prefix="/api/setup", tags=["setup"])
app.include_router(bootstrap.router, prefix="/api/bootstrap", tags=["bootstrap"])
