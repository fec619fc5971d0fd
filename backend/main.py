from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from http import HTTPStatus
import logging

from config.settings import settings
from app.exceptions import MailClientError
from app.messaging.producer import event_producer
from app.models.database import create_tables
from app.api import (
    auth_router, users_router, emails_router, labels_router, templates_router, analytics_router, ws_router,
)

APP_NAME = "Mail Client API"
APP_VERSION = "1.0.0"

# Configure logging
handlers = [logging.StreamHandler()]
if settings.LOG_FILE:
    handlers.append(logging.FileHandler(settings.LOG_FILE))
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=handlers
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    create_tables()
    logger.info(f"{APP_NAME} {APP_VERSION} started")
    yield
    await event_producer.stop()
    logger.info(f"{APP_NAME} stopped")

# Create FastAPI app
app = FastAPI(
    title=APP_NAME,
    description="Multi-user email client backend with a Kafka send/receive pipeline",
    version=APP_VERSION,
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

def _error_body(status_code: int, message: str, request: Request) -> dict:
    return {
        "error": HTTPStatus(status_code).phrase,
        "message": message,
        "path": request.url.path
    }

@app.exception_handler(MailClientError)
async def mail_client_error_handler(request: Request, exc: MailClientError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.status_code, exc.message, request))

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, str(exc.detail), request),
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=_error_body(500, "Internal server error", request))

# Include routers
app.include_router(auth_router, prefix="/api/auth", tags=["authentication"])
app.include_router(users_router, prefix="/api/users", tags=["users"])
app.include_router(emails_router, prefix="/api/emails", tags=["emails"])
app.include_router(labels_router, prefix="/api/labels", tags=["labels"])
app.include_router(templates_router, prefix="/api/templates", tags=["templates"])
app.include_router(analytics_router, prefix="/api/analytics", tags=["analytics"])
app.include_router(ws_router, prefix="/api", tags=["realtime"])

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": APP_NAME,
        "version": APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "auth": "/api/auth",
            "users": "/api/users",
            "emails": "/api/emails",
            "labels": "/api/labels",
            "templates": "/api/templates",
            "analytics": "/api/analytics",
            "realtime": "/api/ws"
        }
    }

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": APP_NAME,
        "version": APP_VERSION
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
