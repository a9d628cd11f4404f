import json
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as google_api_exceptions

import config
from core.models import MediaFile
from services.gemini_ai import (GeminiClient, PlaceholderAIService, build_ai_service, build_grading_prompt,
                                parse_grade)
from utils.error_handler import ConfigError, PipelineStepError


def text_response(text: str):
    part = SimpleNamespace(text=text)
    candidate = SimpleNamespace(content=SimpleNamespace(parts=[part]), finish_reason=None, safety_ratings=[])
    return SimpleNamespace(candidates=[candidate], prompt_feedback=None)


class FakeModel:
    model_name = "models/fake"

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    async def generate_content_async(self, contents, **kwargs):
        self.requests.append((contents, kwargs))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def client():
    gemini = GeminiClient(api_key="test-key")
    gemini.model = FakeModel()
    return gemini


class TestParseGrade:
    @pytest.mark.parametrize("raw,expected", [(12, 10.0), (-3, 0.0), ("8.5", 8.5)])
    def test_score_is_clamped(self, raw, expected):
        result = parse_grade(json.dumps({"score": raw, "feedback": " Well done. "}))
        assert result.score == expected
        assert result.feedback == "Well done."

    @pytest.mark.parametrize("text", [
        "not json",
        json.dumps({"feedback": "missing score"}),
        json.dumps({"score": "high", "feedback": "x"}),
        json.dumps({"score": 5}),
        json.dumps({"score": 5, "feedback": 42}),
        json.dumps({"score": 5, "feedback": ""}),
        json.dumps({"score": 5, "feedback": "   "}),
        json.dumps([5, "x"]),
    ])
    def test_unusable_answers_raise(self, text):
        with pytest.raises(PipelineStepError) as exc_info:
            parse_grade(text)
        assert exc_info.value.step == "score"

    def test_nan_score_raises(self):
        with pytest.raises(PipelineStepError):
            parse_grade('{"score": NaN, "feedback": "x"}')


class TestGradingPrompt:
    def test_sample_transcript_is_included(self):
        prompt = build_grading_prompt("An", "Hobbies", "I like chess.", "A talk about hobbies.", False)
        assert "A talk about hobbies." in prompt
        assert config.FEEDBACK_LANGUAGE in prompt

    def test_freestyle_ignores_sample(self):
        prompt = build_grading_prompt("An", "Free talk", "I like chess.", "Ignored sample.", True)
        assert "Ignored sample." not in prompt
        assert config.FREESTYLE_NOTE in prompt


class TestGeminiClient:
    def test_requires_key(self):
        with pytest.raises(ConfigError):
            GeminiClient(api_key=None)

    @pytest.mark.asyncio
    async def test_transcribe_sends_media_part(self, client):
        client.model.reply = text_response("Hello, my name is An.")
        media = MediaFile(name="an.webm", mime_type="audio/webm", data=b"bytes")

        transcript = await client.transcribe(media, learner=True)

        assert transcript == "Hello, my name is An."
        contents, _ = client.model.requests[0]
        assert contents[0] == {"mime_type": "audio/webm", "data": b"bytes"}
        assert contents[1] == config.STUDENT_TRANSCRIBE_PROMPT

    @pytest.mark.asyncio
    async def test_grade_parses_json_answer(self, client):
        client.model.reply = text_response('{"score": 11, "feedback": "Great job"}')
        result = await client.grade("An", "Hobbies", "I like chess.", None, True)

        assert result.score == 10.0
        _, kwargs = client.model.requests[0]
        assert kwargs["generation_config"] is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply,expected", [
        ('{"isMatch": false}', False),
        ('{"isMatch": true}', True),
        ('{"isMatch": "no"}', True),
        ("garbage", True),
    ])
    async def test_similarity_verdicts(self, client, reply, expected):
        client.model.reply = text_response(reply)
        assert await client.check_similarity("I cook pho.", "Hobbies talk.") is expected

    @pytest.mark.asyncio
    async def test_similarity_fails_open_on_api_error(self, client):
        client.model.error = google_api_exceptions.ResourceExhausted("quota")
        assert await client.check_similarity("I cook pho.", "Hobbies talk.") is True

    @pytest.mark.asyncio
    async def test_similarity_without_sample_skips_the_call(self, client):
        assert await client.check_similarity("anything", "") is True
        assert client.model.requests == []

    @pytest.mark.asyncio
    async def test_api_errors_become_step_errors(self, client):
        client.model.error = google_api_exceptions.PermissionDenied("bad key")
        with pytest.raises(PipelineStepError) as exc_info:
            await client.grade("An", "Hobbies", "text", None, True)
        assert "403" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_candidates_raise(self, client):
        client.model.reply = SimpleNamespace(candidates=[], prompt_feedback="blocked")
        with pytest.raises(PipelineStepError):
            await client.transcribe(MediaFile(name="a.mp3", mime_type="audio/mpeg", data=b"x"))


class TestPlaceholder:
    @pytest.mark.asyncio
    async def test_flows_complete_without_a_key(self):
        service = build_ai_service(api_key=None)
        assert isinstance(service, PlaceholderAIService)

        transcript = await service.transcribe(MediaFile(name="rec.mp4", mime_type="video/mp4", data=b"x"))
        assert "rec.mp4" in transcript
        assert await service.check_similarity(transcript, "sample") is True
        result = await service.grade("An", "Hobbies", transcript, None, True)
        assert result.score == PlaceholderAIService.PLACEHOLDER_SCORE
        assert "An" in result.feedback
