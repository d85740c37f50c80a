"""Sentry helpers used on the error paths of the driver and webhook delivery."""
import sentry_sdk

from meetingflow import sentry_config
from meetingflow.sentry_config import capture_exception, capture_message


class ActiveClient:
    def is_active(self):
        return True


def test_helpers_are_no_ops_without_dsn():
    assert not sentry_sdk.get_client().is_active()

    try:
        raise RuntimeError("driver crashed")
    except RuntimeError:
        capture_exception(request_id="req-1")
    capture_message("Webhook auto-disabled", level="warning")


def test_helpers_report_when_client_is_active(monkeypatch):
    captured = []
    monkeypatch.setattr(sentry_config.sentry_sdk, "get_client", lambda: ActiveClient())
    monkeypatch.setattr(sentry_config.sentry_sdk, "capture_message", lambda message, level: captured.append((message, level)))
    monkeypatch.setattr(sentry_config.sentry_sdk, "capture_exception", lambda exc_info: captured.append(("exception", exc_info)))

    capture_message("Webhook auto-disabled", level="warning")
    capture_exception(request_id="req-1")

    assert captured == [("Webhook auto-disabled", "warning"), ("exception", None)]
