# discovery/api/deps.py
from typing import Optional

from fastapi import Header, Request

from discovery.core.config import get_settings
from discovery.core.deadline import Deadline
from discovery.core.errors import InvalidArgument
from discovery.core.lifespan import Services
from discovery.domain.models.reco import UserCtx


# Services are built once in the lifespan and kept on app.state
def services_dep(request: Request) -> Services:
    return request.app.state.services


def user_ctx(
    x_user_id: Optional[str] = Header(default=None),
    x_visitor_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
) -> UserCtx:
    # Authentication happens upstream; the user id header is trusted as given
    return UserCtx(
        user_id=(x_user_id or "").strip() or None,
        visitor_id=(x_visitor_id or "").strip() or None,
        session_id=(x_session_id or "").strip() or None,
    )


def deadline_dep(x_timeout_ms: Optional[str] = Header(default=None)) -> Deadline:
    """Per-request deadline from X-Timeout-Ms, else the configured default."""
    if x_timeout_ms is None:
        return Deadline.after(get_settings().request.default_timeout_s)
    try:
        ms = int(x_timeout_ms)
    except ValueError:
        raise InvalidArgument("X-Timeout-Ms must be an integer")
    if ms <= 0:
        raise InvalidArgument("X-Timeout-Ms must be positive")
    return Deadline.after(ms / 1000.0)
