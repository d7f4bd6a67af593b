"""Tutor matching collaborator.

The selection policy lives outside the pipeline; the coordinator only needs a
tutor id back. Any failure (timeout, transport error, non-2xx, no tutor) is a
TutorMatchingError, which the coordinator's retry budget treats as transient.
"""

from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import TutorMatchingError

logger = structlog.get_logger(__name__)


@runtime_checkable
class TutorMatcher(Protocol):
    async def select_tutor(self, student_id: str, course_id: str, criteria: dict[str, Any]) -> str:
        """Return the id of the tutor to assign; raise TutorMatchingError if none can be chosen."""
        ...


class HttpTutorMatcher:
    """Calls ``POST {base_url}/select`` and reads ``tutorId`` from the JSON response."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self._base_url = (base_url or settings.tutor_matcher_url).rstrip("/")
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.tutor_matcher_timeout_seconds
        self._transport = transport

    async def select_tutor(self, student_id: str, course_id: str, criteria: dict[str, Any]) -> str:
        body = {"studentId": student_id, "courseId": course_id, "criteria": criteria}
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post("/select", json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise TutorMatchingError(f"Tutor matching timed out after {self._timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise TutorMatchingError(f"Tutor matching returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TutorMatchingError(f"Tutor matching request failed: {exc}") from exc

        tutor_id = data.get("tutorId") if isinstance(data, dict) else None
        if not tutor_id:
            raise TutorMatchingError(f"No tutor available for student {student_id} on course {course_id}")

        logger.info("tutor_selected", student_id=student_id, course_id=course_id, tutor_id=tutor_id)
        return str(tutor_id)
