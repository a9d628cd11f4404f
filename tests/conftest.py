"""Shared fixtures: in-memory gateway and AI service fakes, and a seeded cache store."""

import asyncio
from typing import Any, Optional

import pytest

from core.cache_store import CacheStore, RemoteDataSource
from core.classroom import ClassroomManager
from core.grading import GradingPipeline
from core.models import Assignment, ClassGroup, MediaFile, Snapshot, Submission, TeacherAccount, User
from services.gemini_ai import GradeResult
from utils.error_handler import ApplicationError


class FakeGateway:
    """Keeps the four collections in memory and records every action it receives."""

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot.model_copy(deep=True)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: Optional[Exception] = None
        self.login_user: Optional[User] = None
        self.return_ids = True
        self._next_id = 100

    def _record(self, action: str, payload: Optional[dict[str, Any]] = None) -> None:
        self.calls.append((action, payload or {}))
        if self.fail_with is not None:
            raise self.fail_with

    def actions(self) -> list[str]:
        return [action for action, _ in self.calls]

    def writes(self, action: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.calls if name == action]

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    # --- Reads ---

    async def list_classes(self):
        self._record("classes.list")
        return [c.model_copy() for c in self.snapshot.classes]

    async def list_assignments(self, class_id=None):
        self._record("assign.list")
        return [a.model_copy(deep=True) for a in self.snapshot.assignments]

    async def list_submissions(self, assignment_id=None):
        self._record("submit.list")
        return [s.model_copy() for s in self.snapshot.submissions]

    async def list_teachers(self):
        self._record("teachers.list")
        return [t.model_copy() for t in self.snapshot.teachers]

    # --- Writes ---

    async def login(self, username, password):
        self._record("login", {"username": username, "password": password})
        if self.login_user is None:
            raise ApplicationError("Invalid username or password.", service="gateway")
        return self.login_user

    async def create_class(self, name):
        self._record("classes.create", {"name": name})
        self.snapshot.classes.append(ClassGroup(id=self._new_id("c"), name=name))
        return {"ok": True}

    async def update_class(self, class_id, name):
        self._record("classes.update", {"id": class_id, "name": name})
        return {"ok": True}

    async def delete_class(self, class_id):
        self._record("classes.delete", {"id": class_id})
        self.snapshot.classes = [c for c in self.snapshot.classes if c.id != class_id]
        return {"ok": True}

    async def create_assignment(self, payload):
        self._record("assign.create", payload)
        self.snapshot.assignments.append(Assignment.model_validate({**payload, "id": self._new_id("a")}))
        return {"ok": True}

    async def update_assignment(self, assignment_id, payload):
        self._record("assign.update", {**payload, "id": assignment_id})
        return {"ok": True}

    async def delete_assignment(self, assignment_id):
        self._record("assign.delete", {"id": assignment_id})
        return {"ok": True}

    async def upsert_teacher(self, username, password, teacher_id=None):
        self._record("teachers.upsert", {"username": username, "password": password, "id": teacher_id})
        return {"ok": True}

    async def delete_teacher(self, username):
        self._record("teachers.delete", {"username": username})
        return {"ok": True}

    async def create_submission(self, payload):
        self._record("submit.create", payload)
        fields = {k: v for k, v in payload.items() if k != "file"}
        new_id = self._new_id("s")
        self.snapshot.submissions.append(Submission.model_validate({**fields, "id": new_id}))
        return {"ok": True, "data": {"id": new_id}} if self.return_ids else {"ok": True}

    async def delete_submission(self, submission_id):
        self._record("submit.delete", {"id": submission_id})
        self.snapshot.submissions = [s for s in self.snapshot.submissions if s.id != submission_id]
        return {"ok": True}

    async def update_score(self, submission_id, *, score=None, feedback=None, status=None, content_mismatched=None,
                           transcript=None):
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
        self._record("score.update", payload)
        for index, sub in enumerate(self.snapshot.submissions):
            if sub.id == submission_id:
                self.snapshot.submissions[index] = sub.model_copy(update=_to_field_names(payload))
        return {"ok": True}


def _to_field_names(payload: dict[str, Any]) -> dict[str, Any]:
    names = {"score": "score", "feedback": "feedback", "status": "status", "contentMismatched": "content_mismatched",
             "transcript": "transcript"}
    return {names[k]: v for k, v in payload.items() if k in names}


class FakeAIService:
    """Scriptable AI backend: per-file transcripts and a topic keyword for the similarity check."""

    def __init__(self):
        self.transcripts: dict[str, str] = {}
        self.default_transcript = "I like to talk about my hobbies, like painting and hiking."
        self.failing_files: set[str] = set()
        self.topic_keyword: Optional[str] = None
        self.similarity_error: Optional[Exception] = None
        self.result = GradeResult(score=8.0, feedback="Clear pronunciation, watch your ending sounds.")
        self.grade_error: Optional[Exception] = None
        self.calls: list[tuple[str, Any]] = []

    async def transcribe(self, media: MediaFile, learner: bool = True) -> str:
        self.calls.append(("transcribe", media.name))
        await asyncio.sleep(0)
        if media.name in self.failing_files:
            raise RuntimeError(f"cannot decode {media.name}")
        return self.transcripts.get(media.name, self.default_transcript)

    async def check_similarity(self, student_transcript: str, sample_transcript: str) -> bool:
        self.calls.append(("similarity", student_transcript))
        if self.similarity_error is not None:
            raise self.similarity_error
        if self.topic_keyword is None:
            return True
        return self.topic_keyword in student_transcript.lower()

    async def grade(self, student_name, assignment_title, transcript, sample_transcript, is_freestyle):
        self.calls.append(("grade", {"student": student_name, "sample": sample_transcript, "freestyle": is_freestyle}))
        await asyncio.sleep(0)
        if self.grade_error is not None:
            raise self.grade_error
        return self.result

    def steps(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def snapshot() -> Snapshot:
    return Snapshot(
        classes=[
            ClassGroup(id="c1", name="Communicative English 1"),
            ClassGroup(id="c2", name="Advanced Conversation"),
        ],
        assignments=[
            Assignment(id="a1", class_id="c1", title="My hobbies", assigned_date="2024-07-19",
                       due_date="2024-07-26", sample_video_transcript="A talk about hobbies: reading and hiking."),
            Assignment(id="a2", class_id="c2", title="Free talk", assigned_date="2024-08-03",
                       due_date="2024-08-10", is_freestyle=True),
        ],
        submissions=[
            Submission(id="s1", student_name="Maria Lopez", assignment_id="a1", class_id="c1",
                       submission_file_name="maria.mp4", transcript="My hobby is hiking."),
            Submission(id="s2", student_name="Tom Nguyen", assignment_id="a1", class_id="c1",
                       submission_file_name="tom.mp4", transcript="I enjoy reading.",
                       score=9.0, feedback="Great.", status="graded"),
            Submission(id="s3", student_name="Linh Tran", assignment_id="a2", class_id="c2",
                       submission_file_name="linh.m4a", transcript="Let me tell you about my weekend."),
        ],
        teachers=[TeacherAccount(id="t1", username="admin", password="admin")],
    )


@pytest.fixture
def gateway(snapshot) -> FakeGateway:
    return FakeGateway(snapshot)


@pytest.fixture
def ai_service() -> FakeAIService:
    return FakeAIService()


@pytest.fixture
def store(gateway) -> CacheStore:
    cache = CacheStore(RemoteDataSource(gateway), state_file=None)
    cache.replace(gateway.snapshot.model_copy(deep=True))
    return cache


@pytest.fixture
def pipeline(gateway, ai_service, store) -> GradingPipeline:
    return GradingPipeline(gateway, ai_service, store)


@pytest.fixture
def manager(gateway, store, pipeline) -> ClassroomManager:
    return ClassroomManager(gateway, store, pipeline)


@pytest.fixture
def make_media():
    def factory(name: str = "recording.mp4", data: bytes = b"\x00\x01fake-media") -> MediaFile:
        return MediaFile(name=name, mime_type="video/mp4", data=data)
    return factory
