"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from jobrelay.admin.service import AdminService
from jobrelay.engine import JobEngine


def get_job_engine(request: Request) -> JobEngine:
    """Get the job engine attached to the application."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job engine not initialized",
        )
    return engine


def get_admin_service(engine: Annotated[JobEngine, Depends(get_job_engine)]) -> AdminService:
    return engine.admin


# Type aliases for dependency injection
EngineDep = Annotated[JobEngine, Depends(get_job_engine)]
AdminDep = Annotated[AdminService, Depends(get_admin_service)]
