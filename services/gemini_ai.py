"""Wrapper for Google Gemini API interactions: transcription, topic matching and grading."""

import json
import textwrap
from dataclasses import dataclass
from typing import Any, Optional, Protocol

# Use the official Google Generative AI library
import google.generativeai as genai
from google.api_core import exceptions as google_api_exceptions

import config
from core.models import MediaFile
from utils.logger import get_logger
from utils.error_handler import ConfigError, PipelineStepError

logger = get_logger()

SAFETY_SETTINGS = {
    genai.types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: genai.types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    genai.types.HarmCategory.HARM_CATEGORY_HATE_SPEECH: genai.types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    genai.types.HarmCategory.HARM_CATEGORY_HARASSMENT: genai.types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    genai.types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: genai.types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}


def clamp_score(score: float) -> float:
    """Forces a score into the 0-10 scale."""
    return max(config.MIN_SCORE, min(config.MAX_SCORE, score))


@dataclass(frozen=True)
class GradeResult:
    score: float
    feedback: str


class AIService(Protocol):
    """What the grading pipeline needs from a transcription/grading backend."""

    async def transcribe(self, media: MediaFile, learner: bool = True) -> str: ...

    async def check_similarity(self, student_transcript: str, sample_transcript: str) -> bool: ...

    async def grade(
        self,
        student_name: str,
        assignment_title: str,
        transcript: str,
        sample_transcript: Optional[str],
        is_freestyle: bool,
    ) -> GradeResult: ...


def build_grading_prompt(
    student_name: str,
    assignment_title: str,
    transcript: str,
    sample_transcript: Optional[str],
    is_freestyle: bool,
) -> str:
    if is_freestyle or not sample_transcript:
        context_note = config.FREESTYLE_NOTE
    else:
        context_note = config.SAMPLE_NOTE_TEMPLATE.format(sample_transcript=sample_transcript)
    return config.GRADING_PROMPT_TEMPLATE.format(
        student_name=student_name,
        assignment_title=assignment_title,
        context_note=context_note,
        transcript=transcript,
        language=config.FEEDBACK_LANGUAGE,
    )


def parse_grade(text: str) -> GradeResult:
    """Parses the model's JSON answer into a clamped grade.

    Raises:
        PipelineStepError: If the text is not a JSON object with a numeric score and non-blank feedback.
    """
    try:
        payload = json.loads(text)
        score = float(payload["score"])
        feedback = payload["feedback"]
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Unparseable grading response: {textwrap.shorten(text, width=200)}")
        raise PipelineStepError(f"Could not read the grading result: {e}", step="score") from e
    if not isinstance(feedback, str) or not feedback.strip():
        raise PipelineStepError("Grading result has no feedback text.", step="score")
    if score != score:  # NaN
        raise PipelineStepError("Grading result score is not a number.", step="score")
    return GradeResult(score=clamp_score(score), feedback=feedback.strip())


class GeminiClient:
    """Provides methods to interact with the Google Gemini API."""

    def __init__(self, api_key: Optional[str] = config.GEMINI_API_KEY, model_name: str = config.GEMINI_MODEL):
        """Initializes the GeminiClient.

        Args:
            api_key: The Gemini API key. Defaults to the value from config.
            model_name: Gemini model used for every call.

        Raises:
            ConfigError: If the API key is not provided or found.
        """
        logger.debug("Initializing GeminiClient...")
        if not api_key:
            logger.critical("Gemini API Key is missing. Check config.py and environment variables.")
            raise ConfigError("GEMINI_API_KEY not found or provided.")
        try:
            genai.configure(api_key=api_key)
            self.model = genai.GenerativeModel(model_name)
            logger.info(f"GeminiClient initialized successfully with model: {model_name}")
        except Exception as e:
            logger.critical(f"Failed to configure Gemini API: {e}", exc_info=config.DEBUG)
            raise ConfigError(f"Failed to configure Gemini API: {e}") from e

    def _response_text(self, response: Any, step: str) -> str:
        """Extracts the text of the first candidate, turning blocked or empty answers into errors."""
        if not response.candidates:
            try:
                logger.error(f"Gemini response missing candidates. Prompt Feedback: {response.prompt_feedback}")
            except ValueError:
                logger.error("Gemini response missing candidates; prompt feedback unavailable.")
            raise PipelineStepError("Gemini returned no answer (empty or blocked response).", step=step)

        candidate = response.candidates[0]
        if not (candidate.content and candidate.content.parts):
            if getattr(candidate, "finish_reason", None) == genai.types.FinishReason.SAFETY:
                logger.error(f"Gemini stopped for safety. Ratings: {candidate.safety_ratings}")
                raise PipelineStepError("Gemini blocked the request due to safety settings.", step=step)
            logger.error(f"Unexpected Gemini response structure or empty parts: {candidate}")
            raise PipelineStepError("Unexpected Gemini response structure.", step=step)

        text = "".join(getattr(part, "text", "") for part in candidate.content.parts).strip()
        if not text:
            raise PipelineStepError("Gemini returned empty text.", step=step)
        return text

    async def _generate(self, contents: Any, step: str, json_output: bool = False) -> str:
        generation_config = genai.GenerationConfig(response_mime_type="application/json") if json_output else None
        try:
            response = await self.model.generate_content_async(
                contents,
                safety_settings=SAFETY_SETTINGS,
                generation_config=generation_config,
            )
        except google_api_exceptions.GoogleAPIError as e:
            logger.error(f"Gemini API error during '{step}': {e}", exc_info=config.DEBUG)
            if isinstance(e, google_api_exceptions.PermissionDenied):
                raise PipelineStepError("Permission denied calling Gemini API (403). Check API key/permissions.", step=step) from e
            if isinstance(e, google_api_exceptions.ResourceExhausted):
                raise PipelineStepError("Gemini API rate limit exceeded (429). Please try again later.", step=step) from e
            if isinstance(e, google_api_exceptions.InvalidArgument):
                raise PipelineStepError(f"Invalid request sent to Gemini API (400): {e}", step=step) from e
            raise PipelineStepError(f"Gemini API error: {e}", step=step) from e
        return self._response_text(response, step)

    async def transcribe(self, media: MediaFile, learner: bool = True) -> str:
        """Transcribes a recording.

        Args:
            media: The uploaded audio/video file.
            learner: True for student recordings (keeps learner mistakes), False for teacher samples.

        Raises:
            PipelineStepError: If Gemini fails or returns nothing.
        """
        logger.info(f"Transcribing '{media.name}' ({media.mime_type}, {len(media.data)} bytes)...")
        prompt = config.STUDENT_TRANSCRIBE_PROMPT if learner else config.TRANSCRIBE_PROMPT
        media_part = {"mime_type": media.mime_type, "data": media.data}
        transcript = await self._generate([media_part, prompt], step="transcribe")
        logger.info(f"Transcribed '{media.name}' ({len(transcript)} chars).")
        return transcript

    async def check_similarity(self, student_transcript: str, sample_transcript: str) -> bool:
        """Asks whether the student talks about the same core topic as the sample.

        Fails open: no sample, an API error or an unreadable answer all count as a match.
        """
        if not sample_transcript:
            return True
        prompt = config.SIMILARITY_PROMPT_TEMPLATE.format(
            sample_transcript=sample_transcript, student_transcript=student_transcript
        )
        try:
            text = await self._generate(prompt, step="similarity", json_output=True)
            verdict = json.loads(text)["isMatch"]
        except (PipelineStepError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Similarity check failed, treating as a match: {e}")
            return True
        if not isinstance(verdict, bool):
            logger.warning(f"Similarity verdict is not a boolean ({verdict!r}), treating as a match.")
            return True
        logger.info(f"Similarity verdict: {'match' if verdict else 'mismatch'}")
        return verdict

    async def grade(
        self,
        student_name: str,
        assignment_title: str,
        transcript: str,
        sample_transcript: Optional[str],
        is_freestyle: bool,
    ) -> GradeResult:
        """Generates a 0-10 score and feedback for a transcript.

        Raises:
            PipelineStepError: If Gemini fails or the answer cannot be parsed.
        """
        prompt = build_grading_prompt(student_name, assignment_title, transcript, sample_transcript, is_freestyle)
        logger.info(f"Grading '{assignment_title}' for {student_name} with {self.model.model_name}...")
        if config.DEBUG:
            logger.debug(f"Generated prompt (first 500 chars):\n{prompt[:500]}...")
        result = parse_grade(await self._generate(prompt, step="score", json_output=True))
        logger.info(f"Generated grade {result.score} ({len(result.feedback)} chars of feedback).")
        return result


class PlaceholderAIService:
    """Stand-in used when no Gemini key is configured, so the flows still complete."""

    PLACEHOLDER_SCORE = 7.5

    async def transcribe(self, media: MediaFile, learner: bool = True) -> str:
        logger.warning(f"No Gemini key; returning a placeholder transcript for '{media.name}'.")
        return (
            f'This is a placeholder transcript for "{media.name}" because the Gemini API key is not '
            "configured. Set GEMINI_API_KEY to get a real transcript."
        )

    async def check_similarity(self, student_transcript: str, sample_transcript: str) -> bool:
        return True

    async def grade(
        self,
        student_name: str,
        assignment_title: str,
        transcript: str,
        sample_transcript: Optional[str],
        is_freestyle: bool,
    ) -> GradeResult:
        logger.warning("No Gemini key; returning a placeholder grade.")
        return GradeResult(
            score=self.PLACEHOLDER_SCORE,
            feedback=(
                f"Dear {student_name}, this is sample feedback because the AI key is not configured.\n"
                "You expressed the main ideas well, but pay more attention to ending sounds.\n"
                "Keep practicing!"
            ),
        )


def build_ai_service(api_key: Optional[str] = config.GEMINI_API_KEY) -> AIService:
    """Returns a Gemini client, or the placeholder service when no usable key exists."""
    if not api_key:
        logger.warning("GEMINI_API_KEY not found. Placeholder transcripts and grades will be used.")
        return PlaceholderAIService()
    try:
        return GeminiClient(api_key)
    except ConfigError as e:
        logger.error(f"Gemini configuration error: {e}. Falling back to placeholder AI.")
        return PlaceholderAIService()
