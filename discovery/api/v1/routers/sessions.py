# discovery/api/v1/routers/sessions.py
from fastapi import APIRouter, Depends

from discovery.api.deps import services_dep
from discovery.core.lifespan import Services

router = APIRouter(tags=["sessions"])


@router.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str, services: Services = Depends(services_dep)):
    """Forget what this session has already been shown (new render cycle)."""
    await services.recommendations.reset_session(session_id)
    return {"ok": True, "session_id": session_id}
