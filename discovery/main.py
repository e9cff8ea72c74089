from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging, os

from discovery.core.config import get_settings
from discovery.core.errors import HTTP_STATUS, InvalidArgument, RecoError
from discovery.core.lifespan import lifespan
from discovery.core.logging import configure_logging
from discovery.api.v1.routers.engagement import router as engagement_router
from discovery.api.v1.routers.health import router as health_router
from discovery.api.v1.routers.recommendations import router as recommendations_router
from discovery.api.v1.routers.search import router as search_router
from discovery.api.v1.routers.sessions import router as sessions_router

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(level=logging.DEBUG if settings.DEBUG else logging.INFO)

app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# ------- CORS -------
# ALLOWED_ORIGINS is a CSV list, e.g. "https://discover.example.com,https://www.discover.example.com"
allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "")
allowed_origins = [o.strip() for o in allowed_origins_env.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins or ["http://localhost:3000"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)


# ------- Errors -------
@app.exception_handler(RecoError)
async def reco_error_handler(request: Request, exc: RecoError):
    status = HTTP_STATUS.get(exc.kind, 500)
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if status >= 500:
        logger.error("request failed path=%s kind=%s msg=%s", request.url.path, exc.kind.value, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    err = InvalidArgument(f"{'.'.join(str(p) for p in first.get('loc', []))}: {first.get('msg', 'invalid request')}")
    return JSONResponse(status_code=400, content=err.to_dict())


# ------- Routes -------
app.include_router(health_router)
app.include_router(recommendations_router, prefix=settings.api_prefix)
app.include_router(search_router, prefix=settings.api_prefix)
app.include_router(engagement_router, prefix=settings.api_prefix)
app.include_router(sessions_router, prefix=settings.api_prefix)
