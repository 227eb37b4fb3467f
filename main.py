import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

from core.config import settings
from core.logging import configure_logging
from core.db import Base, engine
from core.celery import celery_app
from core.errors import ConfigurationError, PaymentRequestError, ProviderError, ProviderTimeout
from routes.payments import router as payments_router
import models  # noqa: F401  registers every table on Base.metadata

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Refuse to start with an enabled gateway that cannot sign
settings.validate_payment_providers()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
from fastapi.openapi.utils import get_openapi

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

# Ensure tables exist (for dev/test; in prod use Alembic)
Base.metadata.create_all(bind=engine)

app.include_router(payments_router)


@app.exception_handler(PaymentRequestError)
async def payment_request_error_handler(request: Request, exc: PaymentRequestError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ProviderTimeout)
async def provider_timeout_handler(request: Request, exc: ProviderTimeout):
    return JSONResponse(status_code=504, content={"detail": "Payment provider did not respond in time"})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "result_code": exc.result_code},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Payment configuration error: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Payment provider is not configured"})


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "payment_providers": list(settings.PAYMENT_PROVIDERS),
    }


@app.get("/celery-health")
async def celery_health_check():
    """Check Celery worker status"""
    try:
        inspect = celery_app.control.inspect()
        stats = inspect.stats()
        if stats:
            return {"status": "healthy", "workers": len(stats)}
        else:
            return {"status": "no_workers", "message": "No Celery workers running"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
        log_config=None,
    )
