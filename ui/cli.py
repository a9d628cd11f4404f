"""Command Line Interface (CLI) for the teacher and student screens."""

from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from rich.console import Console
from rich.table import Table
from rich.prompt import Prompt, Confirm, IntPrompt, FloatPrompt
from rich.panel import Panel
from rich.text import Text

import config
from core.dashboard import DashboardStats
from core.models import Assignment, ClassGroup, Submission, TeacherAccount
from core.status import SubmissionState, derive_status, is_overdue_by_datetime
from core.views import SubmissionPage
from utils.logger import get_logger
from utils.error_handler import UserCancelledError

logger = get_logger()
console = Console()

T = TypeVar('T') # Generic type for selection items

STATE_STYLES = {
    SubmissionState.GRADED: ("Graded", "green"),
    SubmissionState.CONTENT_MISMATCHED: ("Awaiting teacher", "yellow"),
    SubmissionState.OVERDUE: ("Overdue", "red"),
    SubmissionState.PENDING: ("Pending", "yellow"),
}

def display_welcome():
    """Displays a welcome message."""
    console.print(Panel(
        "[bold green]Speaking Assignment Grader[/bold green]",
        title="Welcome",
        border_style="blue"
    ))
    console.print("Teachers manage classes and grade recordings; students submit and auto-grade them.")
    console.rule()

def display_farewell():
    console.rule()
    console.print("[bold cyan]Goodbye.[/bold cyan]")

def display_error(message: str):
    """Displays an error message in a standard format."""
    console.print(Panel(f"[bold red]Error:[/bold red] {message}", title="Error", border_style="red"))

def display_warning(message: str):
    console.print(Panel(message, title="Notice", border_style="yellow"))

def display_success(message: str):
    console.print(f"[green]Success:[/green] {message}")

def display_step(title: str):
    console.print(f"\n[bold blue]{title}[/bold blue]")
    console.rule()

def display_connection_error(message: str):
    """Blocking explanation shown when the initial data load fails."""
    console.print(Panel(
        f"[bold red]Detailed error:[/bold red]\n{message}\n\n"
        "[bold]How to fix it:[/bold]\n"
        "This usually means the app and the Apps Script backend are not configured to match.\n"
        "  1. Make sure GRADER_API_URL holds the NEWEST Web App URL of the Apps Script project.\n"
        "  2. In the deployment settings, \"Who has access\" MUST be \"Anyone\".\n"
        "  3. After any change to the script, create a new deployment (Deploy > New deployment)\n"
        "     and update GRADER_API_URL.\n"
        "Then retry the connection.",
        title="Server Connection Error",
        border_style="red"
    ))

def prompt_for_selection(items: List[T], display_func: Callable[[T], str], prompt_message: str) -> Optional[T]:
    """Prompts the user to select an item from a list.

    Args:
        items: The list of items to choose from.
        display_func: A function that takes an item and returns a string representation for display.
        prompt_message: The message to display before the list.

    Returns:
        The selected item, or None if no items are available.

    Raises:
        UserCancelledError: If the user explicitly cancels (by entering 0).
    """
    if not items:
        console.print("[yellow]No items available for selection.[/yellow]")
        return None

    console.print(prompt_message)
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", width=4)
    table.add_column("Item Details", style="cyan")

    choices = []
    for i, item in enumerate(items):
        table.add_row(str(i + 1), display_func(item))
        choices.append(str(i + 1))

    console.print(table)
    console.print("Enter 0 to cancel.")

    choice = IntPrompt.ask("Select item number", choices=choices + ["0"], show_choices=False)
    if choice == 0:
        raise UserCancelledError("User cancelled selection.")
    return items[choice - 1]

def prompt_menu(title: str, options: Sequence[tuple[str, str]]) -> str:
    """Shows a keyed menu and returns the chosen key."""
    console.print(f"\n[bold]{title}[/bold]")
    for key, label in options:
        console.print(f"  [cyan]{key}[/cyan]  {label}")
    return Prompt.ask("Choose", choices=[key for key, _ in options], show_choices=False)

def prompt_text(message: str, default: Optional[str] = None, password: bool = False) -> str:
    if default is None:
        return Prompt.ask(message, password=password).strip()
    return Prompt.ask(message, default=default, password=password).strip()

def prompt_score(message: str, default: float = 0.0) -> float:
    return FloatPrompt.ask(message, default=default)

def confirm_action(message: str, default: bool = True) -> bool:
    return Confirm.ask(message, default=default)

# --- Teacher screens ---

def display_dashboard(class_group: ClassGroup, stats: DashboardStats):
    """Shows the per-class counts and score distribution."""
    summary = Table(title=f"Dashboard: {class_group.name}", show_header=True, header_style="bold magenta")
    summary.add_column("Submissions", justify="right")
    summary.add_column("Graded", justify="right", style="green")
    summary.add_column("Pending", justify="right", style="yellow")
    summary.add_column("Average score", justify="right", style="cyan")
    summary.add_row(str(stats.total), str(stats.num_graded), str(stats.num_pending), f"{stats.average_score:.1f}")
    console.print(summary)

    if not stats.has_graded:
        console.print("[dim]No graded submissions yet.[/dim]")
        return
    chart = Table(title="Score distribution", show_header=True, header_style="bold magenta")
    chart.add_column("Range")
    chart.add_column("Count", justify="right")
    chart.add_column("")
    for bucket in stats.histogram:
        chart.add_row(bucket.label, str(bucket.count), "#" * bucket.count)
    console.print(chart)

def display_submission_page(page: SubmissionPage, now: Optional[datetime] = None):
    """Shows one page of the teacher's submission list."""
    if page.total_items == 0:
        console.print("[yellow]No submissions match the current filters.[/yellow]")
        return

    table = Table(
        title=f"Submissions (page {page.page}/{max(page.total_pages, 1)}, {page.total_items} total)",
        show_header=True, header_style="bold magenta",
    )
    table.add_column("ID", style="dim")
    table.add_column("Student", style="cyan")
    table.add_column("Class")
    table.add_column("Assignment")
    table.add_column("File", style="dim")
    table.add_column("Status")

    for row in page.items:
        state = derive_status(row.submission, row.assignment, now=now, date_only=True)
        label, style = STATE_STYLES[state]
        if state is SubmissionState.GRADED:
            label = f"Graded: {row.submission.score:.1f}/10"
        table.add_row(
            row.submission.id,
            row.submission.student_name,
            row.class_group.name,
            row.assignment.title,
            row.submission.submission_file_name or "-",
            Text(label, style=style),
        )
    console.print(table)

def display_submission_detail(submission: Submission, assignment: Optional[Assignment]):
    lines = [
        f"[bold]Student:[/bold] {submission.student_name}",
        f"[bold]Assignment:[/bold] {assignment.title if assignment else '(deleted)'}",
        f"[bold]File:[/bold] {submission.submission_file_url or submission.submission_file_name or '-'}",
    ]
    if assignment and assignment.is_freestyle:
        lines.append("[bold]Mode:[/bold] freestyle (topic chosen by the student)")
    if submission.content_mismatched:
        lines.append("[yellow]AI flagged this recording as off-topic compared to the sample.[/yellow]")
    lines.append(f"\n[bold]Transcript:[/bold]\n{submission.transcript or '(none)'}")
    if submission.feedback:
        lines.append(f"\n[bold]Feedback:[/bold]\n{submission.feedback}")
    console.print(Panel("\n".join(lines), title=f"Submission {submission.id}", border_style="blue"))

def display_assignments(assignments: Sequence[Assignment], classes: Sequence[ClassGroup], now: Optional[datetime] = None):
    names = {c.id: c.name for c in classes}
    table = Table(title="Assignments", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Class")
    table.add_column("Assigned")
    table.add_column("Due")
    table.add_column("Mode")
    for a in assignments:
        due = Text(a.due_date or "-", style="red" if is_overdue_by_datetime(a, now) else "")
        mode = "Freestyle" if a.is_freestyle else ("Sample" if a.sample_video_transcript else "-")
        table.add_row(a.id, a.title, names.get(a.class_id, "?"), a.assigned_date or "-", due, mode)
    console.print(table)

def display_classes(classes: Sequence[ClassGroup]):
    table = Table(title="Classes", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    for c in classes:
        table.add_row(c.id, c.name)
    console.print(table)

def display_teachers(teachers: Sequence[TeacherAccount]):
    table = Table(title="Teacher accounts", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Username", style="cyan")
    for t in teachers:
        table.add_row(t.id or "-", t.username)
    console.print(table)

# --- Student screens ---

def display_student_history(submissions: Sequence[Submission], assignments: Sequence[Assignment], now: Optional[datetime] = None):
    """Shows a student's own submissions with the submission-screen status rules."""
    if not submissions:
        console.print("[dim]You have not submitted anything yet.[/dim]")
        return
    by_id = {a.id: a for a in assignments}
    table = Table(title="Your submissions", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Assignment", style="cyan")
    table.add_column("File", style="dim")
    table.add_column("Status")
    for s in submissions:
        assignment = by_id.get(s.assignment_id)
        state = derive_status(s, assignment, now=now, date_only=False)
        label, style = STATE_STYLES[state]
        if state is SubmissionState.GRADED:
            label = f"{s.score:.1f}/10"
        table.add_row(s.id, assignment.title if assignment else "?", s.submission_file_name or "-", Text(label, style=style))
    console.print(table)

# --- Display functions for specific items ---

def format_class_for_display(class_group: ClassGroup) -> str:
    return f"{class_group.name} (ID: {class_group.id})"

def format_assignment_for_display(assignment: Assignment) -> str:
    due = f", due {assignment.due_date}" if assignment.due_date else ""
    return f"{assignment.title} (ID: {assignment.id}{due})"

def format_submission_for_display(submission: Submission) -> str:
    flag = ", off-topic" if submission.content_mismatched else ""
    return f"{submission.student_name}: {submission.submission_file_name or submission.id} [{submission.status}{flag}]"

def format_teacher_for_display(teacher: TeacherAccount) -> str:
    return teacher.username

def log_and_display(exc: Exception, context: str, extra: Any = None):
    """Logs a recoverable action error and shows it next to the action."""
    logger.error(f"{context}: {exc}", exc_info=config.DEBUG)
    display_error(f"{context}: {exc}" if extra is None else f"{context}: {exc} ({extra})")
