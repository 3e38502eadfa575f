"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from ai_jobs.services import Services


def get_services(request: Request) -> Services:
    """Service graph attached to the application at startup."""
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]
