"""Teacher and student actions: validate, call the gateway, reload the cache.

Every mutating action ends with a full ``reload_all`` so the cache never
diverges from the backing store.
"""

import hmac
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import config
from core.cache_store import FALLBACK_SNAPSHOT, CacheStore
from core.grading import GradingPipeline
from core.models import MediaFile, User
from core.status import parse_when
from services.gateway import RemoteGateway
from utils.logger import get_logger
from utils.error_handler import (ApplicationError, AuthenticationError, ConfigurationError,
                                 TransportError, ValidationError)

logger = get_logger()


@dataclass
class AssignmentDraft:
    """Form fields of the create/edit assignment dialog."""

    title: str
    class_id: str
    assigned_date: str
    due_date: str
    is_freestyle: bool = False
    sample_video_transcript: Optional[str] = None


def _require(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if value is None or (isinstance(value, str) and not value.strip())]
    if missing:
        raise ValidationError(f"Please fill in all required fields: {', '.join(missing)}.")


def _created_id(response: Any) -> Optional[str]:
    """Id of a newly created row, read from either {id} or {data: {id}}."""
    if not isinstance(response, dict):
        return None
    value = response.get("id")
    data = response.get("data")
    if value is None and isinstance(data, dict):
        value = data.get("id")
    if value is None or value == "":
        return None
    return str(value)


class ClassroomManager:
    """Commands issued by the teacher and student screens."""

    def __init__(self, gateway: RemoteGateway, store: CacheStore, pipeline: GradingPipeline):
        self.gateway = gateway
        self.store = store
        self.pipeline = pipeline

    # --- Session ---

    async def login(self, username: str, password: str) -> User:
        """Authenticates a teacher and reloads data.

        When the server cannot be reached, credentials matching a built-in
        account log in offline with the fallback dataset.

        Raises:
            ValidationError: Empty username or password.
            AuthenticationError: The server rejected the credentials, or the account is not a teacher.
            TransportError, ConfigurationError: Server unreachable and no offline match.
        """
        _require(username=username, password=password)
        try:
            user = await self.gateway.login(username.strip(), password)
        except (TransportError, ConfigurationError) as e:
            logger.warning(f"API login failed, trying the built-in accounts: {e}")
            account = next((t for t in FALLBACK_SNAPSHOT.teachers if t.username == username.strip()), None)
            # Built-in accounts are stored in cleartext, as on the server
            if account is None or not hmac.compare_digest(account.password.encode(), password.encode()):
                raise
            user = User(username=account.username, role="teacher", name=account.username)
            self.store.save_user(user)
            await self.store.load_fallback()
            logger.info(f"Offline login for {user.username}.")
            return user
        except ApplicationError as e:
            logger.info(f"Login rejected for {username}: {e}")
            raise AuthenticationError(str(e)) from e

        if not user.is_teacher:
            logger.warning(f"Login refused for {user.username}: role '{user.role}' cannot open the teacher screens.")
            raise AuthenticationError("This account does not have teacher access.")

        self.store.save_user(user)
        logger.info(f"Logged in as {user.username} (role: {user.role}).")
        await self.store.reload_all()
        return user

    def logout(self) -> None:
        self.store.clear_user()

    # --- Classes ---

    async def save_class(self, name: str, class_id: Optional[str] = None) -> None:
        _require(name=name)
        if class_id:
            await self.gateway.update_class(class_id, name.strip())
        else:
            await self.gateway.create_class(name.strip())
        await self.store.reload_all()

    async def delete_class(self, class_id: str) -> None:
        _require(class_id=class_id)
        await self.gateway.delete_class(class_id)
        await self.store.reload_all()

    # --- Assignments ---

    def _validate_assignment(self, draft: AssignmentDraft) -> None:
        _require(title=draft.title, class_id=draft.class_id,
                 assigned_date=draft.assigned_date, due_date=draft.due_date)
        if self.store.get_snapshot().find_class(draft.class_id) is None:
            raise ValidationError(f"Class {draft.class_id} does not exist.")
        assigned, due = parse_when(draft.assigned_date), parse_when(draft.due_date)
        if assigned is None or due is None:
            raise ValidationError("Dates must be in YYYY-MM-DD format.")
        if due.date() < assigned.date():
            raise ValidationError("The due date cannot be before the assigned date.")

    async def save_assignment(
        self,
        draft: AssignmentDraft,
        videos: Sequence[MediaFile] = (),
        assignment_id: Optional[str] = None,
    ) -> None:
        """Creates or updates an assignment, transcribing any new sample videos."""
        self._validate_assignment(draft)
        transcript = (draft.sample_video_transcript or "").strip()
        if videos and not transcript:
            transcript = await self.pipeline.transcribe_samples(videos)

        payload: dict[str, Any] = {
            "title": draft.title.strip(),
            "classId": draft.class_id,
            "date": draft.assigned_date,
            "dueDate": draft.due_date,
            "isFreestyle": draft.is_freestyle,
            "files": [video.as_upload() for video in videos],
        }
        if transcript:
            payload["sampleVideoTranscript"] = transcript

        if assignment_id:
            await self.gateway.update_assignment(assignment_id, payload)
        else:
            await self.gateway.create_assignment(payload)
        logger.info(f"Saved assignment '{draft.title.strip()}' with {len(videos)} sample video(s).")
        await self.store.reload_all()

    async def delete_assignment(self, assignment_id: str) -> None:
        _require(assignment_id=assignment_id)
        await self.gateway.delete_assignment(assignment_id)
        await self.store.reload_all()

    # --- Teacher accounts ---

    async def save_teacher(self, username: str, password: str, teacher_id: Optional[str] = None) -> None:
        if not username.strip() or not password.strip():
            raise ValidationError("Username and password cannot be empty.")
        await self.gateway.upsert_teacher(username.strip(), password, teacher_id)
        await self.store.reload_all()

    async def delete_teacher(self, username: str) -> None:
        _require(username=username)
        await self.gateway.delete_teacher(username)
        await self.store.reload_all()

    # --- Submissions ---

    async def delete_submission(self, submission_id: str) -> None:
        _require(submission_id=submission_id)
        await self.gateway.delete_submission(submission_id)
        await self.store.reload_all()

    async def submit_recording(
        self,
        student_name: str,
        class_id: str,
        assignment_id: str,
        media: Optional[MediaFile],
    ) -> Optional[str]:
        """Transcribes a student's recording and creates the submission.

        Returns the new submission id: the one the server reported, or else the
        newest matching pending row after the reload. None if neither is found.

        Raises:
            ValidationError: Missing field, unknown assignment, or empty file.
            PipelineStepError: Transcription failed; nothing was created.
        """
        _require(student_name=student_name, class_id=class_id, assignment_id=assignment_id)
        if media is None or not media.data:
            raise ValidationError("Please upload a recording.")
        assignment = self.store.get_snapshot().find_assignment(assignment_id)
        if assignment is None or assignment.class_id != class_id:
            raise ValidationError("The selected assignment was not found.")

        transcript = await self.pipeline.transcribe_submission(media)
        payload = {
            "studentName": student_name.strip(),
            "assignmentId": assignment_id,
            "classId": class_id,
            "transcript": transcript,
            "submissionFileName": media.name,
            "file": media.as_upload(),
        }
        response = await self.gateway.create_submission(payload)
        logger.info(f"Created submission for {student_name.strip()} on '{assignment.title}'.")
        if config.DEBUG:
            logger.debug(f"Transcript preview: {transcript[:200]}")
        await self.store.reload_all()

        snapshot = self.store.get_snapshot()
        created_id = _created_id(response)
        if created_id is not None and snapshot.find_submission(created_id) is not None:
            return created_id
        # Server gave no usable id; match the row we just wrote
        matches = [s for s in snapshot.submissions
                   if s.student_name == payload["studentName"] and s.assignment_id == assignment_id
                   and s.submission_file_name == media.name and s.status == "pending"]
        if created_id is not None:
            logger.warning(f"Created submission {created_id} is not in the reloaded data.")
        return matches[-1].id if matches else created_id
