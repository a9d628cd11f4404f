"""Configuration settings for the Speaking Assignment Grader."""

import os
import logging
from typing import Final

# Debug flag: 1 = debug mode (verbose logging), 0 = production mode
DEBUG: Final[int] = int(os.environ.get("GRADER_DEBUG", "0"))

# --- Remote Data Gateway Settings ---

# URL of the deployed Apps Script web app (must be a "Web app" deployment with access "Anyone")
API_URL: Final[str | None] = os.environ.get("GRADER_API_URL")
API_TIMEOUT: Final[float] = float(os.environ.get("GRADER_API_TIMEOUT", "30"))

# Body returned by the script's doGet when POST requests are not being routed to doPost
HEALTH_CHECK_SENTINEL: Final[str] = "API is ready"

# Spreadsheet error raised by the backend when a sheet has no data rows
EMPTY_SHEET_MARKERS: Final[tuple[str, ...]] = (
    "Số hàng trong dải ô phải tối thiểu là 1",
    "number of rows in the range must be at least 1",
)

API_SETUP_GUIDANCE: Final[str] = """The server answered, but not with the requested data. Check the Apps Script project:

1. Deployment: use the LATEST "Web app" deployment. Every code change needs Deploy > New deployment.
2. Access: "Who has access" must be set to "Anyone".
3. doPost: the project must define doPost(e). The response you are seeing probably comes from doGet(e).
4. Set GRADER_API_URL to the new web app URL after redeploying."""

# --- File Paths ---
# Durable client-side state (last snapshot + logged-in user)
STATE_FILE: Final[str] = os.environ.get("GRADER_STATE_FILE", ".grader_state.json")
# Define log file path within a /logs subdirectory
LOG_DIR: Final[str] = os.environ.get("GRADER_LOG_DIR", "logs")
LOG_FILE: Final[str] = os.path.join(LOG_DIR, "speaking_grader.log")

# --- Gemini AI Settings ---

# Load Gemini API Key from environment variable
GEMINI_API_KEY: Final[str | None] = os.environ.get("GEMINI_API_KEY")
GEMINI_MODEL: Final[str] = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")

if not GEMINI_API_KEY and DEBUG:
    logging.warning("GEMINI_API_KEY environment variable not set. Placeholder transcripts and grades will be used.")

# Language the generated feedback is written in
FEEDBACK_LANGUAGE: Final[str] = os.environ.get("GRADER_FEEDBACK_LANGUAGE", "Vietnamese")

TRANSCRIBE_PROMPT: Final[str] = (
    "You are a speech-to-text service. Transcribe the audio of the provided file accurately. "
    "Output only the plain transcript text."
)

# Student speakers are learners, so the transcriber must keep their mistakes
STUDENT_TRANSCRIBE_PROMPT: Final[str] = (
    "You are a speech-to-text service. Transcribe the audio of the provided file accurately. "
    "The speaker is most likely a B1-level English learner, so expect some non-standard "
    "pronunciation or grammar and keep it as spoken. Output only the plain transcript text."
)

SIMILARITY_PROMPT_TEMPLATE: Final[str] = """You are an AI assistant. Compare the student's transcript with the teacher's model transcript for a speaking assignment.
Teacher's Model Transcript: "{sample_transcript}"
Student's Transcript: "{student_transcript}"

Determine if the student is talking about the same core topic as the model. The student doesn't need to use the exact same words, but the subject must be the same (e.g., both are about hobbies, both are about a vacation).
Respond ONLY with a JSON object with a single key "isMatch" which is a boolean."""

FREESTYLE_NOTE: Final[str] = (
    "This is a freestyle (open topic) assignment, so there is no model transcript for comparison. "
    "Evaluate the student on the general speaking skills shown in their transcript (pronunciation, "
    "grammar, vocabulary usage and fluency). Do not penalize them for the topic choice."
)

SAMPLE_NOTE_TEMPLATE: Final[str] = 'Teacher\'s Model Transcript (for context on what was expected): "{sample_transcript}"'

GRADING_PROMPT_TEMPLATE: Final[str] = """You are a friendly and encouraging English teacher grading a speaking assignment for your student.

Student's Name: "{student_name}"
Assignment Title: "{assignment_title}"
{context_note}
Student's Transcript to evaluate: "{transcript}"

Your task:
1. Address the student directly and warmly by their name.
2. The main grading focus is pronunciation. Look for likely pronunciation mistakes in the transcript (missing ending sounds such as /s/, /t/, /k/, incorrect vowel sounds).
3. Give a score out of 10, based primarily on pronunciation clarity and accuracy.
4. Write detailed, constructive feedback in {language}. Separate the introduction, each point and the conclusion with newline characters.
5. For every pronunciation issue, explain the error simply and give clear, actionable advice on how to fix it.
6. Keep a warm, supportive tone and end with an encouraging sentence.

Output your response as a JSON object with two keys: "score" (a number from 0 to 10) and "feedback" (a string in {language})."""

# --- Application Settings ---

# Page size of the teacher's submission list
SUBMISSIONS_PER_PAGE: Final[int] = 15
# Separator placed between transcripts of several sample videos
TRANSCRIPT_SEPARATOR: Final[str] = "\n\n---\n\n"
MIN_SCORE: Final[float] = 0.0
MAX_SCORE: Final[float] = 10.0

# --- Logging Configuration ---
# LOG_LEVEL applies to both the console and the file handler
LOG_LEVEL = logging.DEBUG if DEBUG else logging.INFO
# Structured log format: timestamp, level, logger, module.function:line, message
LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s'
