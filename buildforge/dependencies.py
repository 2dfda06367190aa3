from __future__ import annotations

from fastapi import HTTPException, Request, status

from .orchestration.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator: Orchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator is not initialised",
        )
    return orchestrator
