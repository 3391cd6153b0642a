"""Health check endpoint.

Learn: Open to anyone, so load balancers can probe it. The server and
database checks are always returned; the realtime pipeline's internals
(subscriber count, broadcaster counters, source gaps) only go to callers
holding system.monitor.
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderstream import __version__
from orderstream.auth.dependencies import CurrentIdentity, get_current_user_optional
from orderstream.auth.permissions import SYSTEM_MONITOR
from orderstream.db.engine import get_db

router = APIRouter()


@router.get("/health")
async def health_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    state = request.app.state
    broadcaster = getattr(state, "broadcaster", None)
    broadcaster_state = broadcaster.state.value if broadcaster else "absent"
    healthy = checks["database"] == "ok" and broadcaster_state in ("idle", "dispatching")
    body = {"status": "healthy" if healthy else "degraded", **checks}

    if identity is None or not identity.can(SYSTEM_MONITOR):
        return body

    realtime = {
        "subscribers": state.registry.count() if hasattr(state, "registry") else 0,
        "broadcaster": broadcaster_state,
    }
    if broadcaster:
        realtime.update(asdict(broadcaster.stats))
    gaps = getattr(getattr(state, "change_source", None), "gaps", None)
    if gaps is not None:
        realtime["source_gaps"] = gaps
    return {**body, "realtime": realtime}
