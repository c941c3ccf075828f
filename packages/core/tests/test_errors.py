"""Tests for the error taxonomy and classification."""

import asyncio

from repopanel_core.errors import (
    AuthenticationFailure,
    InvocationTimeout,
    NoModelAvailable,
    ProviderError,
    classify_error,
)


class _StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class TestClassifyError:
    def test_invocation_failure_passes_through(self):
        original = ProviderError("boom")
        classified = classify_error(original, "m1")
        assert classified is original
        assert classified.model_id == "m1"

    def test_existing_model_id_is_kept(self):
        original = ProviderError("boom", "first")
        assert classify_error(original, "second").model_id == "first"

    def test_timeout_becomes_invocation_timeout(self):
        assert isinstance(classify_error(asyncio.TimeoutError(), "m1"), InvocationTimeout)
        assert isinstance(classify_error(TimeoutError("slow"), "m1"), InvocationTimeout)

    def test_status_code_401_is_authentication(self):
        assert isinstance(classify_error(_StatusError("nope", 401), "m1"), AuthenticationFailure)

    def test_status_code_403_is_authentication(self):
        assert isinstance(classify_error(_StatusError("nope", 403), "m1"), AuthenticationFailure)

    def test_auth_marker_in_message(self):
        failure = classify_error(RuntimeError("Invalid API key provided"), "m1")
        assert isinstance(failure, AuthenticationFailure)
        assert failure.model_id == "m1"

    def test_other_errors_are_provider_errors(self):
        failure = classify_error(_StatusError("rate limited", 429), "m1")
        assert isinstance(failure, ProviderError)
        assert "rate limited" in str(failure)

    def test_empty_message_uses_class_name(self):
        assert str(classify_error(RuntimeError(), "m1")) == "RuntimeError"


def test_no_model_available_message():
    err = NoModelAvailable("lead", "pipeline_diagnosis")
    assert err.role == "lead"
    assert err.mode == "pipeline_diagnosis"
    assert "lead" in str(err)
