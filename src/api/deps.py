"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from src.vetting.orchestrator import VettingOrchestrator


async def get_orchestrator(request: Request) -> VettingOrchestrator:
    """Dependency for the orchestrator created at startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vetting service not initialized"
        )
    return orchestrator
