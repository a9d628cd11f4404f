"""Domain models shared by the gateway, the cache store and the grading logic.

Rows come from a spreadsheet-backed API, so every model is lenient on input:
blank cells become ``None``, ``"TRUE"``/``"FALSE"`` become booleans, numeric
ids become strings. Wire names are camelCase; attributes are snake_case.
"""

import base64
import json
import mimetypes
import os
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SubmissionStatusValue = Literal["pending", "graded"]


def blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


class WireModel(BaseModel):
    """Base for models exchanged with the remote data gateway."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ClassGroup(WireModel):
    id: str
    name: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value


class Assignment(WireModel):
    id: str
    class_id: str
    title: str
    assigned_date: Optional[str] = Field(default=None, alias="date")
    due_date: Optional[str] = None
    is_freestyle: bool = False
    sample_video_urls: list[str] = Field(default_factory=list)
    sample_video_transcript: Optional[str] = None

    @field_validator("id", "class_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("assigned_date", "due_date", "sample_video_transcript", mode="before")
    @classmethod
    def _blank(cls, value: Any) -> Any:
        return blank_to_none(value)

    @field_validator("is_freestyle", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> bool:
        return to_bool(value)

    @field_validator("sample_video_urls", mode="before")
    @classmethod
    def _url_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return []
            if text.startswith("["):
                return json.loads(text)
            return [part.strip() for part in text.replace("\n", ",").split(",") if part.strip()]
        return value


class Submission(WireModel):
    id: str
    student_name: str
    assignment_id: str
    class_id: str
    submission_file_url: str = ""
    submission_file_name: str = ""
    transcript: Optional[str] = None
    score: Optional[float] = None
    feedback: Optional[str] = None
    status: SubmissionStatusValue = "pending"
    content_mismatched: bool = False

    @field_validator("id", "assignment_id", "class_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("submission_file_url", "submission_file_name", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("transcript", "score", "feedback", mode="before")
    @classmethod
    def _blank(cls, value: Any) -> Any:
        return blank_to_none(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "pending"
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("content_mismatched", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> bool:
        return to_bool(value)


class TeacherAccount(WireModel):
    id: str = ""
    username: str
    password: str = ""

    @field_validator("id", "username", "password", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return str(value) if isinstance(value, (int, float)) else value


class User(WireModel):
    """The logged-in identity kept in the durable client state."""

    username: str
    role: Optional[str] = None
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.username

    @property
    def is_teacher(self) -> bool:
        return self.role in ("admin", "teacher")


class Snapshot(WireModel):
    """One consistent copy of every collection held by the backing store."""

    classes: list[ClassGroup] = Field(default_factory=list)
    assignments: list[Assignment] = Field(default_factory=list)
    submissions: list[Submission] = Field(default_factory=list)
    teachers: list[TeacherAccount] = Field(default_factory=list)

    def find_class(self, class_id: str) -> Optional[ClassGroup]:
        return next((c for c in self.classes if c.id == class_id), None)

    def find_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return next((a for a in self.assignments if a.id == assignment_id), None)

    def find_submission(self, submission_id: str) -> Optional[Submission]:
        return next((s for s in self.submissions if s.id == submission_id), None)

    def assignments_for_class(self, class_id: str) -> list[Assignment]:
        return [a for a in self.assignments if a.class_id == class_id]


@dataclass(frozen=True)
class MediaFile:
    """An uploaded recording: raw bytes plus the name and MIME type the browser would send."""

    name: str
    mime_type: str
    data: bytes

    @classmethod
    def from_path(cls, path: str) -> "MediaFile":
        mime_type, _ = mimetypes.guess_type(path)
        with open(path, "rb") as fh:
            data = fh.read()
        return cls(name=os.path.basename(path), mime_type=mime_type or "application/octet-stream", data=data)

    def as_upload(self) -> dict[str, str]:
        """File payload in the shape the backend stores to Drive."""
        return {
            "data": base64.b64encode(self.data).decode("ascii"),
            "name": self.name,
            "type": self.mime_type,
        }
