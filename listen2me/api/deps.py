"""
Listen2Me - API Dependencies
============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from listen2me.core.services import Services


def get_services(request: Request) -> Services:
    """The service container the app was started with."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


ServicesDep = Annotated[Services, Depends(get_services)]
