# discovery/api/v1/routers/health.py
import time
import subprocess
from fastapi import APIRouter
from discovery.core.config import get_settings
from discovery.db import mongo
from discovery.db.redis import get_redis  # returns Redis instance or None

router = APIRouter()
START_TIME = time.time()


def _git_sha(short: bool = True) -> str:
    try:
        cmd = ["git", "rev-parse", "--short" if short else "HEAD"]
        return subprocess.check_output(cmd, stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


@router.get("/health")
async def health():
    """
    Tolerant health check:
    - Mongo ping through Motor
    - Redis ping, or 'skipped' when the cache is disabled
    """
    settings = get_settings()
    checks: dict[str, object] = {
        "app_name": settings.APP_NAME,
        "env": settings.APP_ENV,
        "debug": settings.DEBUG,
        "version": settings.GIT_SHA if settings.GIT_SHA != "unknown" else _git_sha(),
        "uptime_seconds": int(time.time() - START_TIME),
    }

    # --- Mongo ---
    try:
        db = mongo.get_db()
        await db.command("ping")
        checks["mongodb"] = "ok"
    except Exception as e:
        checks["mongodb"] = f"error: {e}"

    # --- Redis (optional) ---
    try:
        r = get_redis()
        if r:
            await r.ping()
            checks["redis"] = "ok"
        else:
            checks["redis"] = "skipped"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "ok" if all(checks.get(k) in ("ok", "skipped") for k in ("mongodb", "redis")) else "error"
    return {"status": status, "checks": checks, "timestamp": int(time.time())}
