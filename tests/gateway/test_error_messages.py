"""Tests for error classification and user-facing messages."""

import asyncio
import logging

import pytest

from agent.errors import CapacityExceeded, RunAborted, TransportTimeout, WorkerFault
from gateway.error_messages import (
    DEFAULT_MESSAGE,
    classify_error,
    error_severity,
    humanize_error,
    is_transient_error,
    log_level_for,
)


class TestClassifyError:
    @pytest.mark.parametrize("exc, kind", [
        (TransportTimeout("run-1", 100), "transport_timeout"),
        (RunAborted("stop"), "aborted"),
        (WorkerFault("bad"), "worker_fault"),
        (CapacityExceeded("full"), "capacity"),
        (asyncio.TimeoutError(), "transport_timeout"),
        (ConnectionResetError(), "connection"),
        (KeyError("x"), "internal"),
    ])
    def test_kinds(self, exc, kind):
        assert classify_error(exc) == kind


class TestHumanizeError:
    @pytest.mark.parametrize("text, fragment", [
        ("connect ECONNREFUSED 127.0.0.1:443", "trouble connecting"),
        ("Rate limit exceeded", "slow down"),
        ("HTTP 429 Too Many Requests", "rate limited"),
        ("context_length_exceeded", "conversation got too long"),
        ("Invalid API key provided", "configuration issue"),
        ("model not found: gpt-x", "isn't available"),
        ("upstream 503", "temporarily unavailable"),
        ("Out of memory", "more memory"),
    ])
    def test_patterns(self, text, fragment):
        assert fragment in humanize_error(text)

    def test_own_error_kinds(self):
        assert "took too long" in humanize_error(TransportTimeout("run-1", 10))
        assert "too many requests" in humanize_error(CapacityExceeded("queue full"))

    def test_unknown_falls_back_to_default(self):
        assert humanize_error(ValueError("weird")) == DEFAULT_MESSAGE

    def test_status_codes_need_word_boundaries(self):
        assert humanize_error("processed 15000 items") == DEFAULT_MESSAGE


class TestTransienceAndSeverity:
    @pytest.mark.parametrize("text", ["ECONNRESET", "rate-limit hit", "502 Bad Gateway", "model overloaded"])
    def test_transient(self, text):
        assert is_transient_error(text) is True
        assert error_severity(text) == "warning"
        assert log_level_for(text) == logging.WARNING

    def test_timeouts_are_transient(self):
        assert is_transient_error(TransportTimeout("run-1", 10)) is True

    def test_auth_is_error(self):
        assert is_transient_error("Unauthorized") is False
        assert error_severity("Unauthorized") == "error"
        assert log_level_for("Unauthorized") == logging.ERROR

    def test_user_caused_is_info(self):
        assert error_severity("token limit reached") == "info"
        assert log_level_for("token limit reached") == logging.INFO

    def test_abort_is_info(self):
        assert error_severity(RunAborted("user left")) == "info"
