# Overview: Pytest coverage for notification event building and dispatch.

import pytest

from schoolbilling.services.notification_service import (
    KIND_INVOICE_SENT,
    NotificationEvent,
    Notifier,
    RecordingNotifier,
    dispatch_notification,
    format_amount,
)


def _event(recipients=("linh@example.test",)):
    return NotificationEvent(
        kind=KIND_INVOICE_SENT,
        school_id=1,
        invoice_id=1,
        recipients=recipients,
        payload={"total": "$120.00"},
    )


@pytest.mark.parametrize("cents,expected", [
    (0, "$0.00"),
    (5, "$0.05"),
    (12000, "$120.00"),
    (123456, "$1,234.56"),
    (-250, "-$2.50"),
])
def test_format_amount(cents, expected):
    assert format_amount(cents) == expected


class TestDispatch:
    def test_delivered(self, app):
        notifier = RecordingNotifier()
        assert dispatch_notification(notifier, _event) is True
        assert notifier.events == [_event()]

    def test_no_recipients_skipped(self, app):
        notifier = RecordingNotifier()
        assert dispatch_notification(notifier, _event, ()) is False
        assert notifier.events == []

    def test_failure_swallowed(self, app):
        class Broken(Notifier):
            def send(self, event):
                raise ConnectionError("mail relay unreachable")

        assert dispatch_notification(Broken(), _event) is False

    def test_default_notifier_logs(self, app):
        assert dispatch_notification(None, _event) is True

    def test_build_failure_swallowed(self, app):
        notifier = RecordingNotifier()

        def explode():
            raise LookupError("family school not loaded")

        assert dispatch_notification(notifier, explode) is False
        assert notifier.events == []


def test_notifier_requires_send():
    class Silent(Notifier):
        pass

    with pytest.raises(TypeError):
        Silent()
