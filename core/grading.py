"""Grading pipeline: transcribe, check the topic against the sample, score, persist."""

import asyncio
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Sequence
from contextlib import contextmanager

import config
from core.cache_store import CacheStore
from core.models import Assignment, MediaFile, Submission
from services.gateway import RemoteGateway
from services.gemini_ai import AIService, clamp_score
from utils.logger import get_logger
from utils.error_handler import PipelineStepError, ValidationError

logger = get_logger()


class PipelineState(str, Enum):
    SUBMITTED = "submitted"
    TRANSCRIBED = "transcribed"
    SIMILARITY_CHECKED = "similarity_checked"
    MISMATCHED = "mismatched"
    SCORED = "scored"
    PERSISTED = "persisted"


@dataclass
class GradingRun:
    """Trace of one pipeline run for a single submission."""

    submission_id: str
    state: PipelineState = PipelineState.SUBMITTED
    transcript: Optional[str] = None
    score: Optional[float] = None
    feedback: Optional[str] = None
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.SUBMITTED])

    def advance(self, state: PipelineState) -> None:
        logger.debug(f"Submission {self.submission_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def mismatched(self) -> bool:
        return self.state is PipelineState.MISMATCHED


class InFlightTracker:
    """Caller-held marker preventing two grading runs for the same submission at once."""

    def __init__(self) -> None:
        self._active: set[str] = set()

    def is_running(self, submission_id: str) -> bool:
        return submission_id in self._active

    @contextmanager
    def hold(self, submission_id: str) -> Iterator[None]:
        if submission_id in self._active:
            raise ValidationError(f"Submission {submission_id} is already being graded.")
        self._active.add(submission_id)
        try:
            yield
        finally:
            self._active.discard(submission_id)


def transcript_error_marker(file_name: str) -> str:
    return f"[Error: could not transcribe {file_name}]"


class GradingPipeline:
    """Runs the grading steps against the AI service and writes results through the gateway."""

    def __init__(self, gateway: RemoteGateway, ai_service: AIService, store: CacheStore):
        self.gateway = gateway
        self.ai_service = ai_service
        self.store = store

    # --- Transcription ---

    async def transcribe_submission(self, media: MediaFile) -> str:
        """Transcribes a student recording. A failure aborts the submission."""
        try:
            transcript = await self.ai_service.transcribe(media, learner=True)
        except PipelineStepError:
            raise
        except Exception as e:
            logger.error(f"Transcription of '{media.name}' failed: {e}", exc_info=config.DEBUG)
            raise PipelineStepError(f"Could not transcribe '{media.name}': {e}", step="transcribe") from e
        if not transcript.strip():
            raise PipelineStepError(f"Transcript of '{media.name}' is empty.", step="transcribe")
        return transcript.strip()

    async def transcribe_samples(self, videos: Sequence[MediaFile]) -> str:
        """Transcribes teacher sample videos independently and joins the results.

        A video that fails contributes an error marker instead of its transcript, so
        the teacher can see which file to retry.
        """
        async def transcribe_one(video: MediaFile) -> str:
            try:
                return (await self.ai_service.transcribe(video, learner=False)).strip()
            except Exception as e:
                logger.error(f"Transcript for sample '{video.name}' failed: {e}", exc_info=config.DEBUG)
                return transcript_error_marker(video.name)

        parts = await asyncio.gather(*(transcribe_one(video) for video in videos))
        return config.TRANSCRIPT_SEPARATOR.join(parts)

    # --- Grading ---

    def _lookup(self, submission_id: str) -> tuple[Submission, Assignment]:
        snapshot = self.store.get_snapshot()
        submission = snapshot.find_submission(submission_id)
        if submission is None:
            raise ValidationError(f"Submission {submission_id} not found.")
        assignment = snapshot.find_assignment(submission.assignment_id)
        if assignment is None:
            raise ValidationError(f"Assignment {submission.assignment_id} for submission {submission_id} not found.")
        return submission, assignment

    async def auto_grade(self, submission_id: str, media: Optional[MediaFile] = None) -> GradingRun:
        """Runs the AI pipeline for one submission.

        Args:
            submission_id: Submission to grade; looked up in the cache store.
            media: Recording to transcribe when the stored submission has no transcript.

        Returns:
            The finished run, in state PERSISTED or MISMATCHED.

        Raises:
            ValidationError: Unknown submission/assignment, or nothing to transcribe.
            PipelineStepError: An AI step failed; nothing was written.
            APIError: Persisting failed; the submission can be graded again.
        """
        submission, assignment = self._lookup(submission_id)
        run = GradingRun(submission_id=submission_id)
        logger.info(f"Auto-grading submission {submission_id} ({submission.student_name}, '{assignment.title}')")

        # A transcript made here is written back with the result
        new_transcript = None
        if submission.transcript:
            run.transcript = submission.transcript
        elif media is not None:
            run.transcript = new_transcript = await self.transcribe_submission(media)
        else:
            raise ValidationError(f"Submission {submission_id} has no transcript to grade.")
        run.advance(PipelineState.TRANSCRIBED)

        sample_transcript = assignment.sample_video_transcript or ""
        if not assignment.is_freestyle and sample_transcript:
            try:
                is_match = await self.ai_service.check_similarity(run.transcript, sample_transcript)
            except Exception as e:
                raise PipelineStepError(f"Topic check failed: {e}", step="similarity") from e
            run.advance(PipelineState.SIMILARITY_CHECKED)
            if not is_match:
                logger.warning(f"Submission {submission_id} does not match the sample topic; flagging for teacher review.")
                await self.gateway.update_score(submission_id, content_mismatched=True, status="pending",
                                               transcript=new_transcript)
                run.advance(PipelineState.MISMATCHED)
                await self.store.reload_all()
                return run

        try:
            result = await self.ai_service.grade(
                submission.student_name,
                assignment.title,
                run.transcript,
                sample_transcript or None,
                assignment.is_freestyle,
            )
        except PipelineStepError:
            raise
        except Exception as e:
            logger.error(f"Scoring of submission {submission_id} failed: {e}", exc_info=config.DEBUG)
            raise PipelineStepError(f"Could not grade automatically: {e}", step="score") from e
        if not (result.feedback or "").strip():
            raise PipelineStepError("The AI returned a grade without feedback.", step="score")
        run.score = clamp_score(result.score)
        run.feedback = result.feedback.strip()
        run.advance(PipelineState.SCORED)

        await self._persist_grade(submission_id, run.score, run.feedback, transcript=new_transcript)
        run.advance(PipelineState.PERSISTED)
        return run

    async def grade_manually(self, submission_id: str, score: float, feedback: str) -> GradingRun:
        """Stores a teacher-entered grade; also clears any content-mismatch flag."""
        if not isinstance(score, (int, float)) or not math.isfinite(score):
            raise ValidationError("Score must be a number.")
        if not config.MIN_SCORE <= score <= config.MAX_SCORE:
            raise ValidationError(f"Score must be between {config.MIN_SCORE:g} and {config.MAX_SCORE:g}.")
        if feedback is None or not feedback.strip():
            raise ValidationError("Feedback is required.")
        submission, _ = self._lookup(submission_id)
        run = GradingRun(submission_id=submission_id, transcript=submission.transcript,
                         score=float(score), feedback=feedback.strip())
        run.advance(PipelineState.SCORED)
        await self._persist_grade(submission_id, run.score, run.feedback)
        run.advance(PipelineState.PERSISTED)
        return run

    async def _persist_grade(self, submission_id: str, score: float, feedback: str,
                             transcript: Optional[str] = None) -> None:
        await self.gateway.update_score(
            submission_id, score=score, feedback=feedback, status="graded", content_mismatched=False,
            transcript=transcript,
        )
        logger.info(f"Saved grade {score:g} for submission {submission_id}.")
        await self.store.reload_all()
