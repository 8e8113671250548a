"""
DVM Protocol Unit Tests
=======================

[UNIT] Tests for core/protocol.py: advertisement, job request parsing,
result and feedback events.
"""

import json

import pytest

from conftest import MODEL, make_request
from core.event import Event, EventKind
from core.protocol import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
    JobStatus,
    build_advertisement,
    build_feedback,
    build_result,
    parse_job_request,
)

MODELS = [MODEL, "mixtral-8x7b-32768"]


class TestAdvertisement:
    """Test kind 31990 handler announcement."""

    def test_advertisement_shape(self, identity):
        """Announcement carries k, web and d tags and JSON content."""
        event = build_advertisement(identity, MODELS, "Groq DVM", "LLM service", "https://x", 1700000000)

        assert event.kind == EventKind.HANDLER_INFO
        assert event.tag_value("k") == "5050"
        assert event.tag_value("web") == "https://x"
        assert event.tag_value("d")
        content = json.loads(event.content)
        assert content == {
            "name": "Groq DVM",
            "about": "LLM service",
            "nip90Params": {"models": MODELS},
        }
        assert event.verify()

    def test_deterministic_except_timestamp(self, identity):
        """Same inputs produce the same event apart from created_at."""
        a = build_advertisement(identity, MODELS, "n", "a", "w", 100)
        b = build_advertisement(identity, MODELS, "n", "a", "w", 100)
        c = build_advertisement(identity, MODELS, "n", "a", "w", 200)

        assert a.id == b.id
        assert a.tags == c.tags and a.content == c.content
        assert a.id != c.id


class TestParseJobRequest:
    """Test inbound request validation."""

    def test_valid_request_defaults(self, requester):
        """Missing optional params fall back to defaults."""
        event = make_request(requester, "Tell me a joke")
        job = parse_job_request(event, MODELS)

        assert job is not None
        assert job.job_id == event.id
        assert job.requester == requester.pubkey
        assert job.input == "Tell me a joke"
        assert job.input_type == "text"
        assert job.params.model == MODEL
        assert job.params.temperature == DEFAULT_TEMPERATURE
        assert job.params.max_tokens == DEFAULT_MAX_TOKENS
        assert job.params.top_p == DEFAULT_TOP_P
        assert job.params.top_k is None
        assert job.raw is event

    def test_explicit_params(self, requester):
        """Numeric params are parsed, dash names are accepted."""
        event = make_request(
            requester,
            params={"temperature": "0.2", "max_tokens": "64", "top-p": "0.9", "top_k": "5",
                    "frequency_penalty": "0.1"},
        )
        job = parse_job_request(event, MODELS)

        assert job.params.temperature == 0.2
        assert job.params.max_tokens == 64
        assert job.params.top_p == 0.9
        assert job.params.top_k == 5
        assert job.params.frequency_penalty == 0.1

    def test_relay_hint_and_marker(self, requester):
        """Optional i-tag fields are kept."""
        event = make_request(requester, extra_tags=[])
        tags = [list(t) for t in event.tags]
        tags[0] = ["i", "hi", "text", "wss://hint", "m1"]
        event = Event.create(requester, EventKind.JOB_REQUEST, tags)

        job = parse_job_request(event, MODELS)
        assert job.relay_hint == "wss://hint"
        assert job.marker == "m1"

    def test_wrong_kind(self, requester):
        """Only kind 5050 is accepted."""
        event = Event.create(requester, EventKind.JOB_RESULT, [["i", "x", "text"], ["param", "model", MODEL]])
        assert parse_job_request(event, MODELS) is None

    def test_missing_input(self, requester):
        """Requests without input are rejected."""
        event = Event.create(requester, EventKind.JOB_REQUEST, [["param", "model", MODEL]])
        assert parse_job_request(event, MODELS) is None

        event = Event.create(requester, EventKind.JOB_REQUEST, [["i", ""], ["param", "model", MODEL]])
        assert parse_job_request(event, MODELS) is None

    def test_missing_model(self, requester):
        """Model parameter is mandatory."""
        assert parse_job_request(make_request(requester, model=None), MODELS) is None

    def test_unsupported_model(self, requester):
        """Models outside the advertised set are rejected."""
        assert parse_job_request(make_request(requester, model="gpt-4"), MODELS) is None

    @pytest.mark.parametrize("name", ["temperature", "max_tokens", "top_p"])
    def test_unparseable_number(self, requester, name):
        """Non-numeric values invalidate the request."""
        event = make_request(requester, params={name: "lots"})
        assert parse_job_request(event, MODELS) is None

    def test_encrypted_tag(self, requester):
        """Requests flagged as encrypted are not processed."""
        event = make_request(requester, extra_tags=[["encrypted"]])
        assert parse_job_request(event, MODELS) is None

    def test_encrypted_marker(self, requester):
        """Encryption marker in the input tag is detected."""
        event = Event.create(
            requester,
            EventKind.JOB_REQUEST,
            [["i", "ciphertext", "text", "", "encrypted"], ["param", "model", MODEL]],
        )
        assert parse_job_request(event, MODELS) is None


class TestResultAndFeedback:
    """Test outbound job events."""

    def test_result_event(self, identity, requester):
        """Result references the job, requester and original request."""
        request = make_request(requester)
        event = build_result(identity, request.id, requester.pubkey, "42", request)

        assert event.kind == EventKind.JOB_RESULT
        assert event.content == "42"
        assert event.tag_value("e") == request.id
        assert event.tag_value("p") == requester.pubkey
        assert Event.from_json(event.tag_value("request")) == request
        assert event.verify()

    def test_empty_result(self, identity, requester):
        """Empty provider output yields empty content."""
        request = make_request(requester)
        assert build_result(identity, request.id, requester.pubkey, None, request).content == ""
        assert build_result(identity, request.id, requester.pubkey, "", request).content == ""

    @pytest.mark.parametrize("status", list(JobStatus))
    def test_feedback_status(self, identity, status):
        """Feedback carries the status tag."""
        event = build_feedback(identity, "ab" * 32, "cd" * 32, status)

        assert event.kind == EventKind.JOB_FEEDBACK
        assert event.get_tag("status") == ("status", status.value, "")
        assert event.tag_value("e") == "ab" * 32
        assert event.tag_value("p") == "cd" * 32
        assert event.content == ""

    def test_feedback_detail(self, identity):
        """Error detail goes into the status tag."""
        event = build_feedback(identity, "ab" * 32, "cd" * 32, JobStatus.ERROR, "timeout after 60s")
        assert event.get_tag("status") == ("status", "error", "timeout after 60s")
