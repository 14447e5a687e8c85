"""Tests for failure classification and reporting."""

from __future__ import annotations

import logging

import pytest
from conftest import http_error, network_error

from resilient_client import (
    ErrorClassifier,
    ErrorKind,
    ManualClock,
    NotificationCenter,
    Severity,
    TransportFailure,
)
from resilient_client.classifier import NETWORK_ERROR_MESSAGE


@pytest.fixture
def notifier(clock: ManualClock) -> NotificationCenter:
    return NotificationCenter(clock)


@pytest.fixture
def classifier(notifier: NotificationCenter, clock: ManualClock) -> ErrorClassifier:
    return ErrorClassifier(notifier=notifier, clock=clock)


class TestClassify:
    """Tests for ErrorClassifier.classify."""

    def test_network_failure(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(network_error())

        assert verdict.kind is ErrorKind.NETWORK
        assert verdict.retryable is True
        assert verdict.status is None
        assert verdict.code == "NETWORK_ERROR"
        assert verdict.message == NETWORK_ERROR_MESSAGE
        assert verdict.title == "Connection Problem"
        assert verdict.severity is Severity.WARNING

    def test_statusless_failure_with_body_is_network(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(TransportFailure("connection reset", body={"message": "partial"}))

        assert verdict.kind is ErrorKind.NETWORK
        assert verdict.message == NETWORK_ERROR_MESSAGE
        assert verdict.details == "connection reset"

    def test_network_backoff_is_exponential_and_capped(self, classifier: ErrorClassifier) -> None:
        delays = [classifier.classify(network_error(), attempt=n).backoff_ms for n in (1, 2, 3, 4, 10)]

        assert delays == [1000, 2000, 4000, 8000, 30000]

    def test_server_error_backoff_is_linear(self, classifier: ErrorClassifier) -> None:
        delays = [classifier.classify(http_error(500), attempt=n).backoff_ms for n in (1, 2, 3, 40)]

        assert delays == [1000, 2000, 3000, 30000]

    def test_server_error(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(http_error(500, {"message": "db down"}))

        assert verdict.kind is ErrorKind.SERVER
        assert verdict.retryable is True
        assert verdict.message == "Internal server error. Please try again later."
        assert verdict.code == "HTTP_500"
        assert verdict.title == "Server Issue"

    @pytest.mark.parametrize(
        ("status", "kind", "title"),
        [
            (401, ErrorKind.AUTH, "Authentication Required"),
            (403, ErrorKind.PERMISSION, "Access Denied"),
            (404, ErrorKind.VALIDATION, "Error"),
            (422, ErrorKind.VALIDATION, "Error"),
            (302, ErrorKind.UNKNOWN, "Error"),
        ],
    )
    def test_terminal_statuses(
        self, classifier: ErrorClassifier, status: int, kind: ErrorKind, title: str
    ) -> None:
        verdict = classifier.classify(http_error(status))

        assert verdict.kind is kind
        assert verdict.retryable is False
        assert verdict.backoff_ms == 0
        assert verdict.title == title
        assert verdict.severity is Severity.ERROR

    def test_server_message_wins_for_plain_statuses(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(
            http_error(422, {"message": "email is invalid", "code": "BAD_EMAIL", "details": {"field": "email"}})
        )

        assert verdict.message == "email is invalid"
        assert verdict.code == "BAD_EMAIL"
        assert verdict.details == {"field": "email"}

    def test_fixed_texts_override_server_message(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(http_error(404, {"message": "no row 7"}))

        assert verdict.message == "The requested resource was not found."

    def test_default_text_when_server_is_silent(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify(http_error(502)).message == "Bad gateway. Please try again later."
        assert classifier.classify(http_error(418)).message == "An unexpected error occurred."

    def test_rate_limited_without_retry_after(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(http_error(429), attempt=3)

        assert verdict.kind is ErrorKind.SERVER
        assert verdict.retryable is True
        assert verdict.backoff_ms == 4000

    def test_rate_limited_honors_retry_after(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(http_error(429, headers={"Retry-After": "5"}))

        assert verdict.backoff_ms == 5000

    def test_retry_after_is_capped(self, classifier: ErrorClassifier) -> None:
        verdict = classifier.classify(http_error(429, headers={"Retry-After": "600"}))

        assert verdict.backoff_ms == 30000

    def test_timestamp_comes_from_clock(self, classifier: ErrorClassifier, clock: ManualClock) -> None:
        assert classifier.classify(http_error(500)).timestamp == clock.now()


class TestReport:
    """Tests for ErrorClassifier.report."""

    def test_retryable_notification_stays(
        self, classifier: ErrorClassifier, notifier: NotificationCenter
    ) -> None:
        notification_id = classifier.report(classifier.classify(network_error()), "GET /x")

        [notification] = notifier.active()
        assert notification.id == notification_id
        assert notification.severity is Severity.WARNING
        assert notification.title == "Connection Problem"
        assert notification.auto_hide_ms is None

    async def test_terminal_notification_auto_hides(
        self, classifier: ErrorClassifier, notifier: NotificationCenter, clock: ManualClock
    ) -> None:
        classifier.report(classifier.classify(http_error(403)))

        [notification] = notifier.active()
        assert notification.severity is Severity.ERROR
        assert notification.auto_hide_ms == 5000

        await clock.advance(5)
        assert notifier.active() == []

    def test_opt_out_still_logs(self, classifier: ErrorClassifier, notifier: NotificationCenter) -> None:
        result = classifier.report(classifier.classify(http_error(500)), "POST /x", notify=False)

        assert result is None
        assert notifier.active() == []
        [entry] = classifier.error_log()
        assert entry.context == "POST /x"

    def test_error_log_is_bounded(self, notifier: NotificationCenter, clock: ManualClock) -> None:
        classifier = ErrorClassifier(notifier=notifier, clock=clock, error_log_size=2)
        for status in (400, 404, 500):
            classifier.report(classifier.classify(http_error(status)), notify=False)

        assert [entry.verdict.status for entry in classifier.error_log()] == [404, 500]

        classifier.clear_error_log()
        assert classifier.error_log() == []

    def test_report_logs_failure(
        self, classifier: ErrorClassifier, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="resilient_client.classifier"):
            classifier.report(classifier.classify(http_error(500)), "GET /reports")

        assert "REQUEST_FAILED" in caplog.text
        assert "GET /reports" in caplog.text
