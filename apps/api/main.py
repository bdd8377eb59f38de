"""
CloudVault - FastAPI Backend
Main application entry point: file storage, sharing and audit trail API.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import audit, auth, files, health, users
from routers.rate_limit import api_rate_limit


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting CloudVault API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="CloudVault API",
    description="Upload, share and audit files backed by object storage",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=list({*settings.CORS_ORIGINS, settings.FRONTEND_URL}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1024)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors (400), not 422."""
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())},
    )


# Include routers
limited = [Depends(api_rate_limit())]
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"], dependencies=limited)
app.include_router(files.router, prefix="/files", tags=["Files"], dependencies=limited)
app.include_router(users.router, prefix="/users", tags=["Users"], dependencies=limited)
app.include_router(audit.router, prefix="/audit", tags=["Audit"], dependencies=limited)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "CloudVault API",
        "version": "0.1.0",
        "status": "running"
    }
