"""Main execution script for the Speaking Assignment Grader."""

import asyncio
import sys
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv() # Load variables from .env into environment before config reads them

import config
from utils.logger import setup_logger
from utils.error_handler import (APIError, AuthenticationError, BaseGraderException, ConfigError,
                                 ConfigurationError, PipelineStepError, TransportError,
                                 UserCancelledError, ValidationError)
from core.cache_store import CacheStore, RemoteDataSource
from core.classroom import AssignmentDraft, ClassroomManager
from core.dashboard import aggregate
from core.grading import GradingPipeline, InFlightTracker
from core.models import Assignment, MediaFile, Submission
from core.status import can_auto_grade
from core.views import SubmissionQuery, filter_assignments, student_submissions, view
from services.gateway import RemoteGateway
from services.gemini_ai import GeminiClient, build_ai_service
import ui.cli as cli

# Initialize logger as early as possible after config is loaded
logger = setup_logger()

# Errors an action can report inline and then be retried
RECOVERABLE_ERRORS = (ValidationError, PipelineStepError, AuthenticationError, APIError)


@dataclass
class Session:
    """Everything the interactive screens need, wired once at startup."""

    gateway: RemoteGateway
    store: CacheStore
    pipeline: GradingPipeline
    manager: ClassroomManager
    tracker: InFlightTracker = field(default_factory=InFlightTracker)


def show_notice(session: Session):
    notice = session.store.notice
    if notice and not notice.is_critical:
        cli.display_warning(notice.message)
        session.store.dismiss_notice()


async def initial_load(session: Session) -> bool:
    """Loads every collection; on failure offers a retry or the built-in dataset.

    Returns:
        True once some snapshot is installed, False if the user gave up.
    """
    while True:
        try:
            await session.store.reload_all()
            return True
        except (TransportError, ConfigurationError) as e:
            logger.critical(f"Initial data load failed: {e}", exc_info=config.DEBUG)
            cli.display_connection_error(str(e))
        except APIError as e:
            logger.critical(f"Initial data load failed: {e}", exc_info=config.DEBUG)
            cli.display_error(str(e))

        choice = cli.prompt_menu("What would you like to do?", [
            ("r", "Retry the connection"),
            ("f", "Continue with sample data"),
            ("q", "Quit"),
        ])
        if choice == "f":
            await session.store.load_fallback()
            return True
        if choice == "q":
            return False


# --- Teacher screens ---

async def teacher_login(session: Session) -> bool:
    cli.display_step("Teacher login")
    username = cli.prompt_text("Username")
    password = cli.prompt_text("Password", password=True)
    try:
        user = await session.manager.login(username, password)
    except (TransportError, ConfigurationError) as e:
        cli.display_connection_error(str(e))
        return False
    except RECOVERABLE_ERRORS as e:
        cli.log_and_display(e, "Login failed")
        return False
    cli.display_success(f"Welcome, {user.display_name}.")
    return True


def show_dashboard(session: Session):
    snapshot = session.store.get_snapshot()
    class_group = cli.prompt_for_selection(snapshot.classes, cli.format_class_for_display, "Select a class:")
    if class_group:
        cli.display_dashboard(class_group, aggregate(snapshot.submissions, class_group.id))


def build_query(session: Session) -> SubmissionQuery:
    snapshot = session.store.get_snapshot()
    search_text = cli.prompt_text("Search (student, file or assignment; blank for all)", default="")
    class_id = None
    if snapshot.classes and cli.confirm_action("Filter by class?", default=False):
        class_group = cli.prompt_for_selection(snapshot.classes, cli.format_class_for_display, "Select a class:")
        class_id = class_group.id if class_group else None
    status = cli.prompt_menu("Status", [("all", "All"), ("pending", "Pending"), ("graded", "Graded")])
    sort_key = cli.prompt_menu("Sort by", [("newest", "Newest first"), ("oldest", "Oldest first"),
                                           ("dueDate", "Due date")])
    return SubmissionQuery(search_text=search_text, class_id=class_id, status=status, sort_key=sort_key)


async def auto_grade(session: Session, submission: Submission):
    with session.tracker.hold(submission.id):
        cli.console.print(f"[cyan]Grading {submission.student_name}'s recording with AI...[/cyan]")
        run = await session.pipeline.auto_grade(submission.id)
    if run.mismatched:
        cli.display_warning("The recording does not match the assignment topic. It was flagged for the teacher.")
    else:
        cli.display_success(f"Score {run.score:.1f}/10.\n{run.feedback}")


async def review_submission(session: Session, submission: Submission):
    snapshot = session.store.get_snapshot()
    cli.display_submission_detail(submission, snapshot.find_assignment(submission.assignment_id))
    choice = cli.prompt_menu("Submission actions", [
        ("g", "Enter a grade"),
        ("a", "Grade automatically with AI"),
        ("d", "Delete this submission"),
        ("b", "Back"),
    ])
    if choice == "g":
        score = cli.prompt_score("Score (0-10)", default=submission.score or 0.0)
        feedback = cli.prompt_text("Feedback", default=submission.feedback or "")
        await session.pipeline.grade_manually(submission.id, score, feedback)
        cli.display_success("Grade saved.")
    elif choice == "a":
        await auto_grade(session, submission)
    elif choice == "d" and cli.confirm_action("Delete this submission permanently?", default=False):
        await session.manager.delete_submission(submission.id)
        cli.display_success("Submission deleted.")


async def browse_submissions(session: Session):
    query = build_query(session)
    page = 1
    while True:
        snapshot = session.store.get_snapshot()
        result = view(snapshot.submissions, snapshot.assignments, snapshot.classes, query, page=page)
        page = result.page
        cli.display_submission_page(result)
        choice = cli.prompt_menu("Submissions", [
            ("o", "Open a submission"),
            ("n", "Next page"),
            ("p", "Previous page"),
            ("f", "Change filters"),
            ("b", "Back"),
        ])
        if choice == "o":
            row = cli.prompt_for_selection(result.items, lambda r: cli.format_submission_for_display(r.submission),
                                           "Select a submission:")
            if row:
                try:
                    await review_submission(session, row.submission)
                except RECOVERABLE_ERRORS as e:
                    cli.log_and_display(e, "Action failed")
        elif choice == "n":
            page += 1
        elif choice == "p":
            page -= 1
        elif choice == "f":
            query = build_query(session)
            page = 1
        else:
            return


def read_media(path: str) -> MediaFile:
    try:
        return MediaFile.from_path(path)
    except OSError as e:
        raise ValidationError(f"Could not read '{path}': {e}") from e


def prompt_media_files(message: str) -> list[MediaFile]:
    paths = cli.prompt_text(message, default="")
    return [read_media(path.strip()) for path in paths.split(",") if path.strip()]


async def edit_assignment(session: Session, existing: Optional[Assignment] = None):
    snapshot = session.store.get_snapshot()
    class_group = cli.prompt_for_selection(snapshot.classes, cli.format_class_for_display, "Class for this assignment:")
    if not class_group:
        return
    draft = AssignmentDraft(
        title=cli.prompt_text("Title", default=existing.title if existing else None),
        class_id=class_group.id,
        assigned_date=cli.prompt_text("Assigned date (YYYY-MM-DD)", default=existing.assigned_date if existing else None),
        due_date=cli.prompt_text("Due date (YYYY-MM-DD)", default=existing.due_date if existing else None),
        is_freestyle=cli.confirm_action("Freestyle (students choose the topic)?",
                                        default=existing.is_freestyle if existing else False),
    )
    videos: list[MediaFile] = []
    if not draft.is_freestyle:
        videos = prompt_media_files("Sample video paths, comma separated (blank for none)")
        if not videos and existing and existing.sample_video_transcript:
            draft.sample_video_transcript = existing.sample_video_transcript
    await session.manager.save_assignment(draft, videos, assignment_id=existing.id if existing else None)
    cli.display_success("Assignment saved.")


async def manage_assignments(session: Session):
    snapshot = session.store.get_snapshot()
    search_text = cli.prompt_text("Search by title (blank for all)", default="")
    assignments = filter_assignments(snapshot.assignments, search_text)
    cli.display_assignments(assignments, snapshot.classes)
    choice = cli.prompt_menu("Assignments", [("c", "Create"), ("e", "Edit"), ("d", "Delete"), ("b", "Back")])
    if choice == "c":
        await edit_assignment(session)
    elif choice == "e":
        assignment = cli.prompt_for_selection(assignments, cli.format_assignment_for_display, "Select an assignment:")
        if assignment:
            await edit_assignment(session, assignment)
    elif choice == "d":
        assignment = cli.prompt_for_selection(assignments, cli.format_assignment_for_display, "Select an assignment:")
        if assignment and cli.confirm_action(f"Delete '{assignment.title}'?", default=False):
            await session.manager.delete_assignment(assignment.id)
            cli.display_success("Assignment deleted.")


async def manage_classes(session: Session):
    snapshot = session.store.get_snapshot()
    cli.display_classes(snapshot.classes)
    choice = cli.prompt_menu("Classes", [("c", "Create"), ("r", "Rename"), ("d", "Delete"), ("b", "Back")])
    if choice == "c":
        await session.manager.save_class(cli.prompt_text("Class name"))
        cli.display_success("Class created.")
    elif choice == "r":
        class_group = cli.prompt_for_selection(snapshot.classes, cli.format_class_for_display, "Select a class:")
        if class_group:
            await session.manager.save_class(cli.prompt_text("New name", default=class_group.name), class_group.id)
            cli.display_success("Class renamed.")
    elif choice == "d":
        class_group = cli.prompt_for_selection(snapshot.classes, cli.format_class_for_display, "Select a class:")
        if class_group and cli.confirm_action(f"Delete '{class_group.name}'?", default=False):
            await session.manager.delete_class(class_group.id)
            cli.display_success("Class deleted.")


async def manage_teachers(session: Session):
    snapshot = session.store.get_snapshot()
    cli.display_teachers(snapshot.teachers)
    choice = cli.prompt_menu("Teacher accounts", [("a", "Add or change password"), ("d", "Delete"), ("b", "Back")])
    if choice == "a":
        username = cli.prompt_text("Username")
        password = cli.prompt_text("Password", password=True)
        existing = next((t for t in snapshot.teachers if t.username == username), None)
        await session.manager.save_teacher(username, password, existing.id if existing else None)
        cli.display_success(f"Account '{username}' saved.")
    elif choice == "d":
        teacher = cli.prompt_for_selection(snapshot.teachers, cli.format_teacher_for_display, "Select an account:")
        if teacher and cli.confirm_action(f"Delete '{teacher.username}'?", default=False):
            await session.manager.delete_teacher(teacher.username)
            cli.display_success("Account deleted.")


async def teacher_menu(session: Session):
    user = session.store.current_user()
    if user is not None and not user.is_teacher:
        logger.warning(f"Stored user {user.username} has role '{user.role}'; asking for a teacher login.")
        session.manager.logout()
        user = None
    if user is None and not await teacher_login(session):
        return
    actions = {
        "s": browse_submissions,
        "a": manage_assignments,
        "c": manage_classes,
        "t": manage_teachers,
    }
    while True:
        show_notice(session)
        choice = cli.prompt_menu("Teacher menu", [
            ("d", "Dashboard"),
            ("s", "Submissions"),
            ("a", "Assignments"),
            ("c", "Classes"),
            ("t", "Teacher accounts"),
            ("r", "Reload data"),
            ("l", "Log out"),
            ("q", "Quit"),
        ])
        if choice == "q":
            raise UserCancelledError("User quit.")
        try:
            if choice == "d":
                show_dashboard(session)
            elif choice == "r":
                await session.store.reload_all()
                cli.display_success("Data reloaded.")
            elif choice == "l":
                session.manager.logout()
                return
            else:
                await actions[choice](session)
        except UserCancelledError as e:
            logger.info(f"Action cancelled by user: {e}")
        except RECOVERABLE_ERRORS as e:
            cli.log_and_display(e, "Action failed")


# --- Student screens ---

async def upload_recording(session: Session, student_name: str, class_id: str, assignment: Assignment):
    path = cli.prompt_text("Path to your recording")
    media = read_media(path)

    cli.console.print("[cyan]Uploading and transcribing your recording...[/cyan]")
    new_id = await session.manager.submit_recording(student_name, class_id, assignment.id, media)
    cli.display_success("Your recording was submitted.")

    created = session.store.get_snapshot().find_submission(new_id) if new_id else None
    if created is None:
        cli.display_warning("Your recording was saved. Grade it from 'My submissions' once it shows up.")
        return
    if cli.confirm_action("Grade it now with AI?", default=True):
        await auto_grade(session, created)


async def submit_recording(session: Session, student_name: str):
    snapshot = session.store.get_snapshot()
    class_group = cli.prompt_for_selection(snapshot.classes, cli.format_class_for_display, "Select your class:")
    if not class_group:
        return
    assignment = cli.prompt_for_selection(snapshot.assignments_for_class(class_group.id),
                                          cli.format_assignment_for_display, "Select the assignment:")
    if not assignment:
        return
    await upload_recording(session, student_name, class_group.id, assignment)


async def student_history(session: Session, student_name: str):
    snapshot = session.store.get_snapshot()
    mine = student_submissions(snapshot.submissions, snapshot.assignments, student_name)
    cli.display_student_history(mine, snapshot.assignments)
    if not mine:
        return

    choice = cli.prompt_menu("History actions", [
        ("g", "Grade a pending recording with AI"),
        ("u", "Resubmit for an assignment"),
        ("b", "Back"),
    ])
    if choice == "g":
        gradable = [s for s in mine if can_auto_grade(s)]
        if not gradable:
            cli.display_warning("No pending recordings can be graded automatically.")
            return
        submission = cli.prompt_for_selection(gradable, cli.format_submission_for_display, "Select a recording:")
        if submission:
            await auto_grade(session, submission)
    elif choice == "u":
        # Flagged recordings first; those are the ones waiting for a new take
        ordered = sorted(mine, key=lambda s: not s.content_mismatched)
        submission = cli.prompt_for_selection(ordered, cli.format_submission_for_display,
                                              "Select the submission to redo:")
        if not submission:
            return
        assignment = snapshot.find_assignment(submission.assignment_id)
        if assignment is None:
            cli.display_warning("That assignment no longer exists.")
            return
        await upload_recording(session, student_name, submission.class_id, assignment)


async def student_menu(session: Session):
    student_name = cli.prompt_text("Your full name")
    while True:
        show_notice(session)
        choice = cli.prompt_menu(f"Student menu ({student_name})", [
            ("s", "Submit a recording"),
            ("h", "My submissions"),
            ("r", "Reload data"),
            ("b", "Back"),
        ])
        try:
            if choice == "s":
                await submit_recording(session, student_name)
            elif choice == "h":
                await student_history(session, student_name)
            elif choice == "r":
                await session.store.reload_all()
            else:
                return
        except UserCancelledError as e:
            logger.info(f"Action cancelled by user: {e}")
        except RECOVERABLE_ERRORS as e:
            cli.log_and_display(e, "Action failed")


async def main():
    """Main function: wires the services, loads data and runs the role menus."""
    logger.info("Starting Speaking Assignment Grader.")
    cli.display_welcome()

    try:
        gateway = RemoteGateway()
        ai_service = build_ai_service()
        if isinstance(ai_service, GeminiClient):
            cli.display_success("Gemini AI Client initialized.")
        else:
            cli.display_warning("GEMINI_API_KEY not found. Transcripts and grades will be placeholders.")

        async with gateway:
            store = CacheStore(RemoteDataSource(gateway))
            pipeline = GradingPipeline(gateway, ai_service, store)
            session = Session(gateway, store, pipeline, ClassroomManager(gateway, store, pipeline))

            if not await initial_load(session):
                return
            while True:
                show_notice(session)
                role = cli.prompt_menu("Who are you?", [("t", "Teacher"), ("s", "Student"), ("q", "Quit")])
                if role == "t":
                    await teacher_menu(session)
                elif role == "s":
                    await student_menu(session)
                else:
                    return

    except ConfigError as e:
        logger.critical(f"Setup Error: {e}", exc_info=config.DEBUG)
        cli.display_error(f"Setup Error: {e}")
    except APIError as e:
        logger.error(f"API Error: {e}", exc_info=config.DEBUG)
        cli.display_error(f"API Error ({e.service or 'Unknown'}): {e}")
    except UserCancelledError as e:
        logger.info(f"Operation cancelled by user: {e}")
    except BaseGraderException as e:
        logger.error(f"Unhandled application error: {e}", exc_info=config.DEBUG)
        cli.display_error(str(e))
    finally:
        cli.display_farewell()

def cli_entry():
    if not config.API_URL:
        print("[ERROR] GRADER_API_URL environment variable not set.", file=sys.stderr)
        print("Set it to the Web App URL of the Apps Script deployment (see .env.example).", file=sys.stderr)
        sys.exit(1)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Operation interrupted by user (Ctrl+C).")
        cli.display_warning("Operation interrupted.")


if __name__ == "__main__":
    cli_entry()
