"""
Job handler registry and the built-in AI job handlers.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or expired leases.

A handler receives a ``JobContext`` and returns JSON-serializable output
(or a ``JobResult``). It signals failure by raising ``HandlerTransientError``
or ``HandlerPermanentError``; any other exception is treated as transient.
Handlers may be coroutine functions or plain functions; plain functions run
in a worker thread.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ai_jobs.constants import JobKind
from ai_jobs.errors import HandlerError, HandlerPermanentError, JobValidationError
from ai_jobs.types.job import JobContext, JobResult
from ai_jobs.types.payloads import (
    GenerateClassPagePayload,
    GenerateExplanationPayload,
    GenerateTocPayload,
    GradeProblemSetPayload,
    SummarizeSelectionPayload,
)
from ai_jobs.worker.ai_client import AICapability

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Any]


@dataclass(frozen=True)
class JobHandlerSpec:
    """A registered handler with its payload contract and retry default."""

    kind: str
    handler: JobHandler
    payload_model: type[BaseModel] | None = None
    max_attempts: int | None = None


class HandlerRegistry:
    """
    Mapping from job kind to handler, populated at startup.

    Example:
        handlers = HandlerRegistry()

        @handlers.register("generate-toc", payload_model=GenerateTocPayload)
        async def generate_toc(context: JobContext) -> dict:
            ...
    """

    def __init__(self):
        self._specs: dict[str, JobHandlerSpec] = {}

    def register(
        self,
        kind: str,
        *,
        payload_model: type[BaseModel] | None = None,
        max_attempts: int | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator registering a handler for ``kind``.

        Args:
            kind: The job kind this handler processes.
            payload_model: Pydantic model submissions are validated against.
            max_attempts: Kind-level retry ceiling used when the submitter
                gives none.
        """
        def decorator(handler: JobHandler) -> JobHandler:
            if kind in self._specs:
                raise ValueError(f"Handler already registered for job kind: {kind}")
            self._specs[kind] = JobHandlerSpec(
                kind=kind,
                handler=handler,
                payload_model=payload_model,
                max_attempts=max_attempts,
            )
            logger.info("Registered handler", extra={"kind": kind})
            return handler
        return decorator

    def get(self, kind: str) -> JobHandlerSpec | None:
        return self._specs.get(kind)

    def kinds(self) -> list[str]:
        """List all registered job kinds."""
        return sorted(self._specs)

    def __contains__(self, kind: object) -> bool:
        return kind in self._specs

    def validate(self, kind: str, payload: Any) -> dict[str, Any]:
        """
        Check ``payload`` against the kind's contract.

        Returns:
            The normalized payload to store.

        Raises:
            JobValidationError: Unknown kind or payload violating the contract.
        """
        spec = self._specs.get(kind)
        if spec is None:
            raise JobValidationError(f"Unknown job kind: {kind}")
        if not isinstance(payload, dict):
            raise JobValidationError("Payload must be a JSON object")
        if spec.payload_model is None:
            return dict(payload)

        try:
            model = spec.payload_model.model_validate(payload)
        except PydanticValidationError as e:
            raise JobValidationError(
                f"Invalid payload for job kind: {kind}",
                errors=e.errors(include_url=False, include_context=False),
            ) from e
        return model.model_dump(mode="json")


async def execute_job(handlers: HandlerRegistry, context: JobContext) -> JobResult:
    """
    Execute a job using the appropriate handler.

    This is the isolation boundary: whatever the handler does, the caller
    gets a JobResult back.

    Args:
        handlers: Registry to look the handler up in.
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    spec = handlers.get(context.kind)
    if spec is None:
        logger.error(
            "No handler for job kind",
            extra={"job_id": str(context.job_id), "kind": context.kind},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job kind: {context.kind}",
            retryable=False,
        )

    start = time.perf_counter()
    try:
        if inspect.iscoroutinefunction(spec.handler):
            output = await spec.handler(context)
        else:
            output = await asyncio.to_thread(spec.handler, context)
    except HandlerError as e:
        logger.warning(
            "Handler reported failure",
            extra={
                "job_id": str(context.job_id),
                "kind": context.kind,
                "retryable": e.retryable,
                "error": str(e),
            },
        )
        return JobResult(
            success=False,
            error=str(e),
            retryable=e.retryable,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "kind": context.kind, "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
            retryable=True,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
    except (asyncio.CancelledError, KeyboardInterrupt):
        raise
    except BaseException as e:
        # SystemExit and similar raised from handler code must not end the claim loop
        logger.error(
            "Handler raised exception",
            exc_info=e,
            extra={"job_id": str(context.job_id), "kind": context.kind, "error": repr(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e!r}",
            retryable=True,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    duration_ms = (time.perf_counter() - start) * 1000
    if isinstance(output, JobResult):
        if output.duration_ms is None:
            output = output.model_copy(update={"duration_ms": duration_ms})
        return output
    return JobResult(success=True, output=output, duration_ms=duration_ms)


def _require(output: dict[str, Any], field: str, task: str) -> Any:
    if field not in output:
        raise HandlerPermanentError(f"AI response for {task} is missing '{field}'")
    return output[field]


# ============================================================================
# Built-in job handlers
# ============================================================================


def build_default_handlers(ai: AICapability) -> HandlerRegistry:
    """
    Registry with the built-in AI job kinds, all delegating to ``ai``.
    """
    handlers = HandlerRegistry()

    @handlers.register(JobKind.GRADE_PROBLEM_SET, payload_model=GradeProblemSetPayload)
    async def grade_problem_set(context: JobContext) -> dict[str, Any]:
        output = await ai.complete(JobKind.GRADE_PROBLEM_SET, context.payload)
        return {
            "course_id": context.payload["course_id"],
            "problem_set_id": context.payload["problem_set_id"],
            "score": output.get("score"),
            "feedback": _require(output, "feedback", JobKind.GRADE_PROBLEM_SET),
        }

    @handlers.register(JobKind.GENERATE_EXPLANATION, payload_model=GenerateExplanationPayload)
    async def generate_explanation(context: JobContext) -> dict[str, Any]:
        output = await ai.complete(JobKind.GENERATE_EXPLANATION, context.payload)
        return {
            "course_id": context.payload["course_id"],
            "problem_id": context.payload["problem_id"],
            "explanation": _require(output, "explanation", JobKind.GENERATE_EXPLANATION),
        }

    @handlers.register(JobKind.GENERATE_TOC, payload_model=GenerateTocPayload)
    async def generate_toc(context: JobContext) -> dict[str, Any]:
        logger.info(
            "Generating table of contents",
            extra={"job_id": str(context.job_id), "book_id": context.payload["book_id"]},
        )
        output = await ai.complete(JobKind.GENERATE_TOC, context.payload)
        return {
            "book_id": context.payload["book_id"],
            "toc": _require(output, "toc", JobKind.GENERATE_TOC),
        }

    @handlers.register(JobKind.SUMMARIZE_SELECTION, payload_model=SummarizeSelectionPayload)
    async def summarize_selection(context: JobContext) -> dict[str, Any]:
        output = await ai.complete(JobKind.SUMMARIZE_SELECTION, context.payload)
        return {
            "book_id": context.payload["book_id"],
            "page_number": context.payload["page_number"],
            "summary": _require(output, "summary", JobKind.SUMMARIZE_SELECTION),
        }

    @handlers.register(JobKind.GENERATE_CLASS_PAGE, payload_model=GenerateClassPagePayload)
    async def generate_class_page(context: JobContext) -> dict[str, Any]:
        output = await ai.complete(JobKind.GENERATE_CLASS_PAGE, context.payload)
        return {
            "course_id": context.payload["course_id"],
            "topic": context.payload["topic"],
            "content": _require(output, "content", JobKind.GENERATE_CLASS_PAGE),
        }

    return handlers
