"""
Payload contracts for the built-in AI job kinds.

The dispatcher validates submissions against these models; the stored payload
is the normalized model dump.
"""

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class GradeProblemSetPayload(_Payload):
    """Grade a student's submission for a problem set."""

    course_id: str = Field(..., min_length=1)
    problem_set_id: str = Field(..., min_length=1)
    submission: str = Field(..., min_length=1)
    rubric: str | None = None


class GenerateExplanationPayload(_Payload):
    """Explain the solution to a single problem."""

    course_id: str = Field(..., min_length=1)
    problem_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)


class GenerateTocPayload(_Payload):
    """Generate a table of contents for an uploaded book."""

    book_id: str = Field(..., min_length=1)
    page_count: int = Field(..., gt=0)


class SummarizeSelectionPayload(_Payload):
    """Summarize a text selection from a book page."""

    book_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    page_number: int = Field(..., ge=1)


class GenerateClassPagePayload(_Payload):
    """Generate the content page for a course topic."""

    course_id: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
