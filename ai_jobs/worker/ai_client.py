"""
AI capability used by the built-in job handlers.

``HttpAICapability`` posts ``{"task": ..., "inputs": ...}`` to a configured
model endpoint and maps transport and HTTP failures onto transient or
permanent handler errors. Without an endpoint the worker falls back to
``PlaceholderAICapability``, which returns fixed content.
"""

import logging
from typing import Any, Protocol

import httpx

from ai_jobs.config import Settings, get_settings
from ai_jobs.constants import JobKind
from ai_jobs.errors import HandlerPermanentError, HandlerTransientError

logger = logging.getLogger(__name__)


class AICapability(Protocol):
    """Something that can run an AI task and return a JSON object."""

    async def complete(self, task: str, inputs: dict[str, Any]) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


class HttpAICapability:
    """AI capability backed by an HTTP model endpoint."""

    def __init__(
        self,
        endpoint_url: str,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            endpoint_url: URL receiving task requests.
            timeout_seconds: Per-request timeout.
            client: Pre-built client (tests pass one with a mock transport).
        """
        self.endpoint_url = endpoint_url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def complete(self, task: str, inputs: dict[str, Any]) -> dict[str, Any]:
        """
        Run ``task`` on the endpoint.

        Raises:
            HandlerTransientError: Timeout, transport failure, 429 or 5xx.
            HandlerPermanentError: Other 4xx, or a body that is not a JSON object.
        """
        try:
            response = await self._client.post(
                self.endpoint_url,
                json={"task": task, "inputs": inputs},
            )
        except httpx.TimeoutException as e:
            raise HandlerTransientError(f"AI request timed out: {e}") from e
        except httpx.TransportError as e:
            raise HandlerTransientError(f"AI request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise HandlerTransientError(f"AI endpoint returned HTTP {response.status_code}")
        if response.is_error:
            raise HandlerPermanentError(f"AI endpoint rejected the request: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise HandlerPermanentError("AI endpoint returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise HandlerPermanentError("AI endpoint returned a non-object JSON body")

        logger.debug(
            "AI task completed",
            extra={"task": task, "status_code": response.status_code},
        )
        return body

    async def close(self) -> None:
        await self._client.aclose()


class PlaceholderAICapability:
    """Deterministic stand-in used when no model endpoint is configured."""

    async def complete(self, task: str, inputs: dict[str, Any]) -> dict[str, Any]:
        logger.info("Returning placeholder AI output", extra={"task": task})

        if task == JobKind.GENERATE_TOC:
            return {
                "toc": [
                    {"title": "Chapter 1: Introduction", "page": 1},
                    {"title": "Chapter 2: Foundations", "page": 15},
                ]
            }
        if task == JobKind.SUMMARIZE_SELECTION:
            return {
                "summary": (
                    "This is a placeholder summary of the selected text. "
                    "A configured model endpoint would generate it."
                )
            }
        if task == JobKind.GENERATE_CLASS_PAGE:
            return {
                "content": (
                    f"<h1>{inputs.get('topic', '')}</h1>\n"
                    "<p>This is a placeholder for the generated content of this topic.</p>\n"
                    f"<blockquote>{inputs.get('prompt', '')}</blockquote>"
                )
            }
        if task == JobKind.GRADE_PROBLEM_SET:
            return {
                "score": None,
                "feedback": "This is placeholder feedback. A configured model endpoint would grade the submission.",
            }
        if task == JobKind.GENERATE_EXPLANATION:
            return {
                "explanation": "This is a placeholder explanation. A configured model endpoint would write it.",
            }
        raise HandlerPermanentError(f"No placeholder output for task: {task}")

    async def close(self) -> None:
        return None


def build_ai_capability(settings: Settings | None = None) -> AICapability:
    """HTTP capability when an endpoint is configured, placeholder otherwise."""
    settings = settings or get_settings()
    if settings.ai_endpoint_url:
        return HttpAICapability(
            settings.ai_endpoint_url,
            timeout_seconds=settings.ai_request_timeout_seconds,
        )
    logger.warning("No AI endpoint configured, using placeholder output")
    return PlaceholderAICapability()
