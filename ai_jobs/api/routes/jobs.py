"""
Job submission and status routes.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Query, status

from ai_jobs.api.deps import ServicesDep
from ai_jobs.constants import API_V1_PREFIX, REQUESTER_KEY_HEADER
from ai_jobs.errors import JobNotFound, JobValidationError, StoreUnavailable
from ai_jobs.types.api import (
    JobListResponse,
    JobView,
    KindListResponse,
    SubmitJobRequest,
    SubmitResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])

RequesterKeyHeader = Annotated[str | None, Header(alias=REQUESTER_KEY_HEADER)]


def _unavailable(e: StoreUnavailable) -> HTTPException:
    logger.warning("Request failed, store unavailable", extra={"store": e.store, "error": str(e)})
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{e.store} store unavailable",
    )


@router.post(
    "",
    response_model=SubmitResult,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a job",
    description="Submit an AI job for asynchronous execution. Returns the job id immediately.",
)
async def submit_job(
    request: SubmitJobRequest,
    services: ServicesDep,
    requester_key: RequesterKeyHeader = None,
) -> SubmitResult:
    """
    Submit a new job.

    Args:
        request: Kind, payload and options.
        services: Application services.
        requester_key: Optional key used later to list this caller's jobs.

    Returns:
        SubmitResult with the job id and ``queued`` status.
    """
    try:
        return await services.dispatcher.submit(
            request.kind,
            request.payload,
            request.options(),
            requester_key=requester_key,
        )
    except JobValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": str(e), "errors": e.errors},
        ) from e
    except StoreUnavailable as e:
        raise _unavailable(e) from e


@router.get(
    "/kinds",
    response_model=KindListResponse,
    summary="List job kinds",
    description="List the job kinds this deployment accepts.",
)
async def list_kinds(services: ServicesDep) -> KindListResponse:
    return KindListResponse(kinds=services.handlers.kinds())


@router.get(
    "/{job_id}",
    response_model=JobView,
    summary="Get job status",
    description="Get the current status, attempts and result of a job.",
)
async def get_job(job_id: UUID, services: ServicesDep) -> JobView:
    """
    Get job details by ID.

    Raises:
        HTTPException: 404 if the job does not exist.
    """
    try:
        return await services.status.get(job_id)
    except JobNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        ) from e
    except StoreUnavailable as e:
        raise _unavailable(e) from e


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List a requester's jobs, newest first.",
)
async def list_jobs(
    services: ServicesDep,
    requester_key: str | None = Query(default=None),
    header_key: RequesterKeyHeader = None,
    limit: int = Query(default=50, ge=1, le=200),
) -> JobListResponse:
    """
    List jobs submitted under a requester key.

    The key comes from the ``requester_key`` query parameter or, failing
    that, the requester key header.
    """
    key = requester_key or header_key
    if not key:
        raise HTTPException(
            status_code=422,
            detail="requester_key is required",
        )

    try:
        jobs = await services.status.list_by_requester(key, limit=limit)
    except StoreUnavailable as e:
        raise _unavailable(e) from e

    return JobListResponse(jobs=jobs, count=len(jobs))
