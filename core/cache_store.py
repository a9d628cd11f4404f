"""Local read replica of the remote collections, persisted between sessions."""

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol, TypeVar

from pydantic import ValidationError as SchemaError

import config
from core.models import Assignment, ClassGroup, Snapshot, Submission, TeacherAccount, User
from services.gateway import RemoteGateway
from utils.logger import get_logger
from utils.error_handler import EmptyDataSourceError

logger = get_logger()

T = TypeVar("T")

# Built-in dataset used when the remote store cannot be reached
FALLBACK_SNAPSHOT = Snapshot(
    classes=[
        ClassGroup(id="c1", name="Communicative English - Level 1"),
        ClassGroup(id="c2", name="Advanced Conversation"),
    ],
    assignments=[
        Assignment(id="a1", class_id="c1", title="Introduce your hobbies",
                   assigned_date="2024-07-19", due_date="2024-07-26"),
        Assignment(id="a2", class_id="c2", title="Talk about your weekend plans",
                   assigned_date="2024-08-03", due_date="2024-08-10"),
    ],
    submissions=[
        Submission(id="s1", student_name="student-001", assignment_id="a1", class_id="c1",
                   submission_file_url="https://example.com/your-record.mp4",
                   submission_file_name="your-record.mp4", score=8.5,
                   feedback="Good pronunciation, try to speak a little more slowly.", status="graded"),
    ],
    teachers=[
        TeacherAccount(id="t1", username="admin", password="admin"),
    ],
)

FALLBACK_WARNING = "Sample data was loaded because the server could not be reached. Some features may not work."


@dataclass(frozen=True)
class StoreNotice:
    severity: Literal["critical", "warning"]
    message: str

    @property
    def is_critical(self) -> bool:
        return self.severity == "critical"


class DataSource(Protocol):
    """Produces a complete snapshot of the four collections."""

    async def fetch_all(self) -> Snapshot: ...


class RemoteDataSource:
    """Loads every collection from the remote gateway in parallel."""

    def __init__(self, gateway: RemoteGateway):
        self.gateway = gateway

    async def _fetch_safely(self, fetch: Callable[[], Awaitable[list[T]]], name: str) -> list[T]:
        try:
            return await fetch()
        except EmptyDataSourceError as e:
            logger.warning(f"'{name}' failed because its sheet is empty; using an empty list. ({e})")
            return []

    async def fetch_all(self) -> Snapshot:
        classes, assignments, submissions, teachers = await asyncio.gather(
            self._fetch_safely(self.gateway.list_classes, "classes"),
            self._fetch_safely(self.gateway.list_assignments, "assignments"),
            self._fetch_safely(self.gateway.list_submissions, "submissions"),
            self._fetch_safely(self.gateway.list_teachers, "teachers"),
        )
        return Snapshot(classes=classes, assignments=assignments, submissions=submissions, teachers=teachers)


class FallbackDataSource:
    """Returns a fixed dataset; used only when the caller explicitly opts in."""

    def __init__(self, snapshot: Snapshot = FALLBACK_SNAPSHOT):
        self.snapshot = snapshot

    async def fetch_all(self) -> Snapshot:
        return self.snapshot.model_copy(deep=True)


def setup_warnings(snapshot: Snapshot) -> Optional[str]:
    """Describes collections that must be filled in before the system is usable."""
    warnings = []
    if not snapshot.classes:
        warnings.append("The 'Classes' sheet is empty. Create at least one class for the system to work.")
    if not snapshot.teachers:
        warnings.append("The 'Teachers' sheet is empty. Create at least one teacher account (e.g. admin) to be able to log in.")
    if not warnings:
        return None
    return (
        "Connected successfully, but some setup is missing:\n- "
        + "\n- ".join(warnings)
        + "\n\nPlease fill in the corresponding sheets of the Google Sheet."
    )


class CacheStore:
    """Holds the last snapshot and the logged-in user; ``replace`` is the only way to change data."""

    def __init__(self, source: DataSource, state_file: Optional[str] = config.STATE_FILE):
        """Initializes the store and restores any previously persisted state.

        Args:
            source: Where ``reload_all`` fetches from (normally a ``RemoteDataSource``).
            state_file: JSON file for durable state; None keeps everything in memory.
        """
        self.source = source
        self.state_file = state_file
        self._snapshot = Snapshot()
        self._user: Optional[User] = None
        self.notice: Optional[StoreNotice] = None
        self._restore()

    # --- Durable state ---

    def _restore(self) -> None:
        if not self.state_file or not os.path.exists(self.state_file):
            return
        try:
            with open(self.state_file, "r", encoding="utf-8") as fh:
                state = json.load(fh)
            self._snapshot = Snapshot.model_validate(state.get("snapshot") or {})
            raw_user = state.get("user")
            self._user = User.model_validate(raw_user) if raw_user else None
            logger.debug(f"Restored cached state from {self.state_file}")
        except (OSError, ValueError, SchemaError) as e:
            logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")

    def _persist(self) -> None:
        if not self.state_file:
            return
        state: dict[str, Any] = {
            "snapshot": self._snapshot.model_dump(by_alias=True),
            "user": self._user.model_dump(by_alias=True) if self._user else None,
        }
        tmp_path = f"{self.state_file}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(state, fh, ensure_ascii=False)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            logger.error(f"Failed to write state file {self.state_file}: {e}", exc_info=config.DEBUG)

    # --- Snapshot ---

    def get_snapshot(self) -> Snapshot:
        return self._snapshot

    def replace(self, snapshot: Snapshot) -> None:
        """Swaps in a whole new snapshot and persists it."""
        self._snapshot = snapshot
        self._persist()

    async def reload_all(self) -> Snapshot:
        """Fetches every collection and replaces the snapshot.

        On failure the previous snapshot stays in place, a critical notice is
        recorded and the error is re-raised for the caller to classify.
        """
        logger.info("Reloading all collections...")
        try:
            snapshot = await self.source.fetch_all()
        except Exception as e:
            logger.error(f"Reload failed, keeping the previous snapshot: {e}", exc_info=config.DEBUG)
            self.notice = StoreNotice("critical", str(e) or "An unknown error occurred. Please try again.")
            raise
        self.replace(snapshot)
        warning = setup_warnings(snapshot)
        self.notice = StoreNotice("warning", warning) if warning else None
        logger.info(
            f"Reloaded {len(snapshot.classes)} classes, {len(snapshot.assignments)} assignments, "
            f"{len(snapshot.submissions)} submissions, {len(snapshot.teachers)} teachers."
        )
        return snapshot

    async def load_fallback(self, source: Optional[DataSource] = None) -> Snapshot:
        """Installs the built-in dataset and flags a non-fatal warning."""
        logger.warning("Loading the built-in fallback dataset.")
        snapshot = await (source or FallbackDataSource()).fetch_all()
        self.replace(snapshot)
        self.notice = StoreNotice("warning", FALLBACK_WARNING)
        return snapshot

    def dismiss_notice(self) -> None:
        if self.notice and not self.notice.is_critical:
            self.notice = None

    # --- Logged-in user ---

    def current_user(self) -> Optional[User]:
        return self._user

    def save_user(self, user: User) -> None:
        self._user = user
        self._persist()

    def clear_user(self) -> None:
        self._user = None
        self._persist()
