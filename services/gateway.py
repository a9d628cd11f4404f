"""Typed wrapper around the spreadsheet-backed Apps Script endpoint.

Every operation is a POST of ``{"action": ..., "data": ...}`` to one URL.
Responses are JSON objects; ``{"ok": false, "error": ...}`` marks a failure.
"""

import json
from typing import Any, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

import config
from core.models import Assignment, ClassGroup, Submission, SubmissionStatusValue, TeacherAccount, User
from utils.logger import get_logger
from utils.error_handler import (ApplicationError, ConfigError, ConfigurationError,
                                 EmptyDataSourceError, TransportError)

logger = get_logger()

M = TypeVar("M", bound=BaseModel)


class RemoteGateway:
    """Issues named actions against the remote data endpoint."""

    SERVICE_NAME = 'gateway'

    def __init__(
        self,
        api_url: Optional[str] = config.API_URL,
        timeout: float = config.API_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initializes the gateway.

        Args:
            api_url: The web app URL. Defaults to the value from config.
            timeout: Seconds allowed per request.
            client: Optional preconfigured ``httpx.AsyncClient`` (tests inject one
                with a mock transport). A client created here is closed by ``aclose``.

        Raises:
            ConfigError: If no URL is provided or configured.
        """
        if not api_url:
            logger.critical("GRADER_API_URL is not set. Check config.py and environment variables.")
            raise ConfigError("GRADER_API_URL not found or provided.")
        self.api_url = api_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        logger.debug(f"RemoteGateway initialized for {api_url}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RemoteGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def call(self, action: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Sends one action and returns the decoded response object.

        Args:
            action: Action name, e.g. ``"classes.list"``.
            payload: Action data; an empty object when omitted.

        Returns:
            The JSON response object.

        Raises:
            TransportError: The endpoint could not be reached.
            ConfigurationError: The endpoint answered with something other than
                a JSON object, or with the doGet health-check body.
            EmptyDataSourceError: The backing sheet has no rows.
            ApplicationError: Any other failure reported by the server.
        """
        request_body = {"action": action, "data": payload or {}}
        if config.DEBUG:
            logger.debug(f"[API Request] -> {action}: {json.dumps(request_body, ensure_ascii=False)[:500]}")
        else:
            logger.debug(f"[API Request] -> {action}")

        try:
            response = await self._client.post(
                self.api_url,
                content=json.dumps(request_body),
                # text/plain keeps the Apps Script web app from requiring a CORS preflight
                headers={"Content-Type": "text/plain;charset=utf-8", "Cache-Control": "no-cache"},
            )
        except httpx.TransportError as e:
            logger.error(f"Could not reach the data endpoint for '{action}': {e}", exc_info=config.DEBUG)
            raise TransportError(
                f"Could not connect to the server ({type(e).__name__}). Check the network and GRADER_API_URL.",
                service=self.SERVICE_NAME,
            ) from e

        if response.is_error:
            logger.error(f"HTTP {response.status_code} for '{action}': {response.text[:200]}")
            raise ApplicationError(
                f"HTTP error {response.status_code}: {response.reason_phrase}. {response.text[:200]}".strip(),
                status_code=response.status_code,
                service=self.SERVICE_NAME,
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error(f"Non-JSON response for '{action}' (content-type '{content_type}'): {response.text[:200]}")
            raise ConfigurationError(
                "The server returned data that is not JSON.\n\n" + config.API_SETUP_GUIDANCE,
                status_code=response.status_code,
                service=self.SERVICE_NAME,
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Malformed JSON for '{action}': {response.text[:200]}")
            raise ConfigurationError(
                "The server returned malformed JSON.\n\n" + config.API_SETUP_GUIDANCE,
                service=self.SERVICE_NAME,
            ) from e

        if not isinstance(body, dict):
            raise ConfigurationError(
                f"Expected a JSON object from '{action}', got {type(body).__name__}.",
                service=self.SERVICE_NAME,
            )

        logger.debug(f"[API Response] <- {action}: ok={body.get('ok')}")

        if body.get("ok") is False:
            message = str(body.get("error") or "Unknown error reported by the server.")
            lowered = message.lower()
            if any(marker.lower() in lowered for marker in config.EMPTY_SHEET_MARKERS):
                raise EmptyDataSourceError(message, service=self.SERVICE_NAME)
            logger.warning(f"Server rejected '{action}': {message}")
            raise ApplicationError(message, service=self.SERVICE_NAME)

        status = body.get("status")
        if isinstance(status, str) and status.startswith(config.HEALTH_CHECK_SENTINEL):
            logger.error(f"Health-check body returned for '{action}'; POST is not reaching doPost.")
            raise ConfigurationError(
                "Server configuration error: the API returned its default response instead of the "
                "requested data.\n\n" + config.API_SETUP_GUIDANCE,
                service=self.SERVICE_NAME,
            )

        return body

    # --- Response schemas ---

    def _parse_rows(self, action: str, body: dict[str, Any], model: Type[M]) -> list[M]:
        rows = body.get("data")
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise ConfigurationError(
                f"'{action}' returned 'data' of type {type(rows).__name__}, expected a list.",
                service=self.SERVICE_NAME,
            )
        try:
            return [model.model_validate(row) for row in rows]
        except SchemaError as e:
            logger.error(f"'{action}' returned rows that do not match {model.__name__}: {e}", exc_info=config.DEBUG)
            raise ConfigurationError(
                f"'{action}' returned rows that do not match the expected {model.__name__} columns.",
                service=self.SERVICE_NAME,
            ) from e

    # --- Auth ---

    async def login(self, username: str, password: str) -> User:
        body = await self.call("login", {"username": username, "password": password})
        raw_user = body.get("user")
        if not isinstance(raw_user, dict):
            raise ConfigurationError("'login' response has no 'user' object.", service=self.SERVICE_NAME)
        try:
            return User.model_validate({
                "username": raw_user.get("username") or username,
                "role": raw_user.get("role"),
                "name": raw_user.get("name") or raw_user.get("displayName"),
            })
        except SchemaError as e:
            raise ConfigurationError("'login' returned an unexpected user shape.", service=self.SERVICE_NAME) from e

    # --- Teachers ---

    async def list_teachers(self) -> list[TeacherAccount]:
        return self._parse_rows("teachers.list", await self.call("teachers.list"), TeacherAccount)

    async def upsert_teacher(self, username: str, password: str, teacher_id: Optional[str] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"username": username, "password": password}
        if teacher_id:
            payload["id"] = teacher_id
        return await self.call("teachers.upsert", payload)

    async def delete_teacher(self, username: str) -> dict[str, Any]:
        return await self.call("teachers.delete", {"username": username})

    # --- Classes ---

    async def list_classes(self) -> list[ClassGroup]:
        return self._parse_rows("classes.list", await self.call("classes.list"), ClassGroup)

    async def create_class(self, name: str) -> dict[str, Any]:
        return await self.call("classes.create", {"name": name})

    async def update_class(self, class_id: str, name: str) -> dict[str, Any]:
        return await self.call("classes.update", {"id": class_id, "name": name})

    async def delete_class(self, class_id: str) -> dict[str, Any]:
        return await self.call("classes.delete", {"id": class_id})

    # --- Students (reserved; no current flow uses them) ---

    async def list_students(self, class_id: Optional[str] = None) -> list[dict[str, Any]]:
        body = await self.call("students.list", {"classId": class_id} if class_id else {})
        rows = body.get("data") or []
        if not isinstance(rows, list):
            raise ConfigurationError("'students.list' returned non-list data.", service=self.SERVICE_NAME)
        return rows

    async def create_student(self, student: dict[str, Any]) -> dict[str, Any]:
        return await self.call("students.create", student)

    async def update_student(self, student: dict[str, Any]) -> dict[str, Any]:
        return await self.call("students.update", student)

    async def delete_student(self, student_id: str) -> dict[str, Any]:
        return await self.call("students.delete", {"id": student_id})

    # --- Assignments ---

    async def list_assignments(self, class_id: Optional[str] = None) -> list[Assignment]:
        body = await self.call("assign.list", {"classId": class_id} if class_id else {})
        return self._parse_rows("assign.list", body, Assignment)

    async def create_assignment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.call("assign.create", payload)

    async def update_assignment(self, assignment_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.call("assign.update", {**payload, "id": assignment_id})

    async def delete_assignment(self, assignment_id: str) -> dict[str, Any]:
        return await self.call("assign.delete", {"id": assignment_id})

    # --- Submissions & scoring ---

    async def list_submissions(self, assignment_id: Optional[str] = None) -> list[Submission]:
        body = await self.call("submit.list", {"assignId": assignment_id} if assignment_id else {})
        return self._parse_rows("submit.list", body, Submission)

    async def create_submission(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.call("submit.create", payload)

    async def delete_submission(self, submission_id: str) -> dict[str, Any]:
        return await self.call("submit.delete", {"id": submission_id})

    async def update_score(
        self,
        submission_id: str,
        *,
        score: Optional[float] = None,
        feedback: Optional[str] = None,
        status: Optional[SubmissionStatusValue] = None,
        content_mismatched: Optional[bool] = None,
        transcript: Optional[str] = None,
    ) -> dict[str, Any]:
        """Writes grading fields of one submission; omitted fields are left untouched."""
        payload: dict[str, Any] = {"submissionId": submission_id}
        if score is not None:
            payload["score"] = score
        if feedback is not None:
            payload["feedback"] = feedback
        if status is not None:
            payload["status"] = status
        if content_mismatched is not None:
            payload["contentMismatched"] = content_mismatched
        if transcript is not None:
            payload["transcript"] = transcript
        return await self.call("score.update", payload)
