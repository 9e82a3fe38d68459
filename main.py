import logging
import subprocess
import sys
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
import uvicorn
from alembic import command
from alembic.config import Config
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.database import Base, SessionLocal, engine
from app.core.exceptions import QuizDomainError
from app.core.limiter import custom_rate_limit_exceeded_handler, limiter
from app.core.schedular import (
    expire_overdue_challenges,
    shutdown_scheduler,
    start_scheduler,
)
from app.models import *
from app.routers import routes
from app.utils.ai import ai_service

# ============================================================================
# Directory Setup
# ============================================================================
BASE_DIR = Path(__file__).parent
LOG_FILE = Path(settings.log_file)
if not LOG_FILE.is_absolute():
    LOG_FILE = BASE_DIR / LOG_FILE
LOG_FILE.parent.mkdir(parents=True, exist_ok=True)


# ============================================================================
# Logging Configuration
# ============================================================================
def setup_logging():
    """Configure logging for the application."""
    log_level = (
        logging.DEBUG
        if settings.debug
        else getattr(logging, settings.log_level.upper(), logging.INFO)
    )
    log_format = "%(asctime)s - %(levelname)s - [%(name)s:%(lineno)d] %(message)s"

    handlers = [
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            LOG_FILE,
            mode="a",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        ),
    ]

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    # Suppress verbose third-party logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return logging.getLogger(__name__)


logger = setup_logging()


# ============================================================================
# Application Lifespan
# ============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, start the expiry sweep, and release clients on shutdown."""
    logger.info(f"Starting {settings.app_name} {settings.app_version}")

    scheduler = None
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✓ Database tables ready")

        if settings.challenge_sweep_enabled:
            scheduler = start_scheduler()
            logger.info(
                f"✓ Challenge expiry sweep every {settings.challenge_sweep_minutes} min"
            )
    except Exception as e:
        logger.error(f"✗ Startup failed: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down...")
    shutdown_scheduler(scheduler)
    await ai_service.close()
    logger.info("✓ Shutdown complete")


# ============================================================================
# FastAPI Application
# ============================================================================
app = FastAPI(
    title=settings.app_name,
    description=settings.app_description,
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    debug=settings.debug,
    lifespan=lifespan,
)

# ============================================================================
# Middleware Configuration
# ============================================================================
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = f"{process_time:.4f}"
    return response


# Request ID middleware for tracing
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(time.time()))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# Exception Handlers
# ============================================================================
@app.exception_handler(QuizDomainError)
async def quiz_domain_exception_handler(request: Request, exc: QuizDomainError):
    logger.info(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    details = []
    for error in exc.errors():
        if isinstance(error, dict):
            details.append({k: v for k, v in error.items() if k != "ctx"})
        else:
            details.append({"error": str(error)})
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "type": "validation_error",
            "details": details,
        },
    )


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"SQLAlchemy error: {type(exc).__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Database error occurred",
            "type": str(type(exc).__name__),
        },
    )


app.add_exception_handler(RateLimitExceeded, custom_rate_limit_exceeded_handler)


# ============================================================================
# Health Check Endpoints
# ============================================================================
@app.get("/")
async def root():
    """Root endpoint with basic application info."""
    return {
        "app_name": settings.app_name,
        "version": settings.app_version,
        "status": "healthy",
        "environment": "production" if settings.production else "development",
    }


@app.get("/health")
@limiter.limit("10/minute")
async def health_check(request: Request):
    """Detailed health check endpoint."""
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        db_status = "healthy"
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "timestamp": time.time(),
        "environment": "production" if settings.production else "development",
        "database": db_status,
        "ai": "configured" if ai_service.is_configured() else "not_configured",
    }


# ============================================================================
# Routes
# ============================================================================
for router in routes:
    app.include_router(router)

logger.info(f"✓ Registered {len(routes)} routers")


# ============================================================================
# CLI Commands
# ============================================================================
@click.group()
def cli():
    """Quiz Arena management CLI."""


def run_migrations():
    alembic_cfg = Config(str(BASE_DIR / "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("✓ Database is at the latest revision")


def gunicorn_command(host: str, port: int, workers: int) -> list:
    return [
        "gunicorn", "main:app",
        "--worker-class", "uvicorn.workers.UvicornWorker",
        "--workers", str(workers),
        "--bind", f"{host}:{port}",
        "--access-logfile", "-",
        "--error-logfile", "-",
        "--log-level", settings.log_level.lower(),
        "--timeout", "120",
        "--graceful-timeout", "30",
        "--keep-alive", "5",
    ]


@cli.command()
@click.option("--host", default="127.0.0.1", help="Interface to listen on")
@click.option("--port", default=8000, help="Port to listen on")
@click.option("--reload", is_flag=True, help="Restart on code changes")
def dev(host: str, port: int, reload: bool):
    """Serve the API with a single Uvicorn process."""
    logger.info(f"Development server on {host}:{port} (reload={reload})")
    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="debug",
        access_log=True,
    )


@cli.command()
@click.option("--host", default="0.0.0.0", help="Interface to listen on")
@click.option("--port", default=8000, help="Port to listen on")
@click.option("--workers", default=4, help="Gunicorn worker processes")
def prod(host: str, port: int, workers: int):
    """Apply migrations, then serve the API with Gunicorn."""
    logger.info("Applying database migrations...")
    try:
        run_migrations()
    except Exception as e:
        logger.error(f"✗ Migration failed: {e}")
        raise click.ClickException(f"Migration failed: {e}")

    logger.info(f"Production server on {host}:{port} with {workers} worker(s)")
    try:
        subprocess.run(gunicorn_command(host, port, workers), check=True)
    except subprocess.CalledProcessError as e:
        logger.error(f"✗ Gunicorn exited with an error: {e}")
        raise click.ClickException(str(e))
    except FileNotFoundError:
        raise click.ClickException("Gunicorn is not installed")


@cli.command()
def info():
    """Show the effective configuration."""
    click.echo(f"Application: {settings.app_name} {settings.app_version}")
    click.echo(f"Debug: {settings.debug}")
    click.echo(f"Database: {settings.db_connection}")
    click.echo(f"AI configured: {ai_service.is_configured()}")
    click.echo(f"Accept window: {settings.challenge_accept_hours}h")
    click.echo(f"Completion window: {settings.challenge_completion_hours}h")
    click.echo(
        f"Expiry sweep: every {settings.challenge_sweep_minutes} min"
        if settings.challenge_sweep_enabled
        else "Expiry sweep: disabled"
    )
    click.echo(f"Logs: {LOG_FILE.absolute()}")


@cli.command("expire-challenges")
def expire_challenges():
    """Expire and settle every overdue challenge once."""
    expired = expire_overdue_challenges()
    click.echo(f"Expired {expired} challenge(s)")


if __name__ == "__main__":
    cli()
