"""
test_dispatcher.py — Alert fan-out dispatcher, notification helpers and
SMS gateway backends.

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from backend.carenest.alerts.channels.sms_gateway import (
    HttpSmsGateway,
    SimulatedSmsGateway,
    build_sms_gateway,
)
from backend.carenest.alerts.dispatcher import AlertDispatcher
from backend.carenest.alerts.models import Alert, AlertType, DeliveryStatus
from backend.carenest.alerts.notifications import (
    Recipient,
    build_alert_text,
    fan_out,
    is_valid_phone,
)
from backend.carenest.core.config import Settings
from backend.carenest.core.errors import DependencyError
from backend.carenest.storage.entity_store import Collection, InMemoryStore
from backend.carenest.storage.models import Role, Subject

NOW = datetime(2026, 3, 1, 9, 30, 0, tzinfo=timezone.utc)
GUARDIAN_PHONE = "+919876543210"


def _make_alert(
    alert_id: str = "child-1:gf-home:ENTRY:child-1-1",
    alert_type: AlertType = AlertType.GEOFENCE_ENTRY,
    guardian_id: str = "parent-1",
    message: str = "Maya entered Home",
) -> Alert:
    return Alert(
        alert_id=alert_id,
        subject_id="child-1",
        guardian_id=guardian_id,
        alert_type=alert_type,
        latitude=0.0,
        longitude=0.0,
        message=message,
        timestamp=NOW,
        geofence_id="gf-home",
        geofence_name="Home",
    )


def _seed_guardian(store, phone=GUARDIAN_PHONE, guardian_id="parent-1"):
    store.put(Collection.SUBJECTS, Subject(
        subject_id=guardian_id, name="Asha", role=Role.GUARDIAN, contact_phone=phone,
    ).to_dict())


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    return SimulatedSmsGateway()


# ═══════════════════════════════════════════════════════════════════════════
# Notification helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestPhoneValidation:

    @pytest.mark.parametrize("phone", ["+919876543210", "+14155550100", "+12"])
    def test_valid(self, phone):
        assert is_valid_phone(phone)

    @pytest.mark.parametrize("phone", [
        None, "", "919876543210", "+0919876543", "+91 98765 43210",
        "+1234567890123456", "+1",
    ])
    def test_invalid(self, phone):
        assert not is_valid_phone(phone)


class TestFanOut:

    def test_statuses_per_recipient(self, gateway):
        attempts = fan_out(
            gateway,
            [
                Recipient("guardian", GUARDIAN_PHONE),
                Recipient("trusted_contact:A", None),
                Recipient("trusted_contact:B", "12345"),
            ],
            "hello",
            alert_id="a1",
        )
        assert [a.status for a in attempts] == [
            DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED, DeliveryStatus.SKIPPED,
        ]
        assert gateway.messages_to(GUARDIAN_PHONE) == ["hello"]

    def test_send_exception_recorded_as_failed(self):
        failing = MagicMock()
        failing.send.side_effect = DependencyError("sms_gateway", "HTTP 500")
        attempts = fan_out(failing, [Recipient("guardian", GUARDIAN_PHONE)], "hi", alert_id="a1")
        assert attempts[0].status == DeliveryStatus.FAILED
        assert "HTTP 500" in attempts[0].error_message

    def test_alert_text(self):
        assert build_alert_text(_make_alert()) == "CareNest Alert: Maya entered Home"


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertDispatcher:

    def test_sends_one_message_to_guardian(self, store, gateway):
        _seed_guardian(store)
        report = AlertDispatcher(store, gateway).handle_inserted_alerts([_make_alert().to_dict()])

        assert report.sent == 1
        assert gateway.messages_to(GUARDIAN_PHONE) == ["CareNest Alert: Maya entered Home"]

    def test_guardian_without_phone(self, store, gateway):
        _seed_guardian(store, phone=None)
        report = AlertDispatcher(store, gateway).handle_inserted_alerts([_make_alert()])

        assert report.total == 1
        assert report.sent == 0
        assert report.skipped == 1
        assert gateway.sent == []

    def test_malformed_guardian_phone_skipped(self, store, gateway):
        _seed_guardian(store, phone="98765")
        report = AlertDispatcher(store, gateway).handle_inserted_alerts([_make_alert()])
        assert report.skipped == 1
        assert gateway.sent == []

    def test_unknown_guardian_skipped(self, store, gateway):
        report = AlertDispatcher(store, gateway).handle_inserted_alerts([_make_alert()])
        assert report.skipped == 1

    def test_send_failure_isolated(self, store):
        _seed_guardian(store)
        _seed_guardian(store, phone="+14155550100", guardian_id="parent-2")
        gateway = MagicMock()
        gateway.send.side_effect = [DependencyError("sms_gateway", "timeout"), None]

        report = AlertDispatcher(store, gateway).handle_inserted_alerts([
            _make_alert("a1"),
            _make_alert("a2", guardian_id="parent-2"),
        ])

        assert report.failed == 1
        assert report.sent == 1
        assert gateway.send.call_count == 2

    def test_malformed_record_isolated(self, store, gateway):
        _seed_guardian(store)
        good = _make_alert("a2").to_dict()
        broken = {"id": "a1", "type": "NOT_A_TYPE"}

        report = AlertDispatcher(store, gateway).handle_inserted_alerts([broken, good])

        assert report.failed == 1
        assert report.sent == 1

    def test_skip_types(self, store, gateway):
        _seed_guardian(store)
        dispatcher = AlertDispatcher(store, gateway, skip_types=(AlertType.PANIC,))

        report = dispatcher.handle_inserted_alerts([
            _make_alert("panic-child-1-1", alert_type=AlertType.PANIC, message="Help"),
        ])

        assert report.skipped == 1
        assert gateway.sent == []

    def test_custom_prefix(self, store, gateway):
        _seed_guardian(store)
        AlertDispatcher(store, gateway, message_prefix="Family Alert").handle_inserted_alerts([_make_alert()])
        assert gateway.messages_to(GUARDIAN_PHONE) == ["Family Alert: Maya entered Home"]


# ═══════════════════════════════════════════════════════════════════════════
# SMS gateways
# ═══════════════════════════════════════════════════════════════════════════

class TestHttpSmsGateway:

    def _make_gateway(self, handler) -> HttpSmsGateway:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpSmsGateway("https://sms.example.test/send", sender_id="CareNest", client=client)

    def test_posts_json_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(200, json={"status": "queued"})

        self._make_gateway(handler).send(GUARDIAN_PHONE, "hello")

        assert seen["url"] == "https://sms.example.test/send"
        assert b'"to":"+919876543210"' in seen["body"].replace(b" ", b"")
        assert b'"from":"CareNest"' in seen["body"].replace(b" ", b"")

    def test_error_status_raises_dependency_error(self):
        gateway = self._make_gateway(lambda request: httpx.Response(503))
        with pytest.raises(DependencyError) as exc_info:
            gateway.send(GUARDIAN_PHONE, "hello")
        assert "503" in exc_info.value.message

    def test_transport_error_raises_dependency_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DependencyError):
            self._make_gateway(handler).send(GUARDIAN_PHONE, "hello")


class TestBuildSmsGateway:

    def test_simulation_default(self):
        assert isinstance(build_sms_gateway(Settings()), SimulatedSmsGateway)

    def test_http_requires_url(self):
        with pytest.raises(ValueError):
            build_sms_gateway(Settings(SMS_PROVIDER="http", SMS_GATEWAY_URL=None))

    def test_http(self):
        gateway = build_sms_gateway(Settings(SMS_PROVIDER="http", SMS_GATEWAY_URL="https://sms.example.test"))
        assert isinstance(gateway, HttpSmsGateway)
        gateway.close()

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_sms_gateway(Settings(SMS_PROVIDER="pigeon"))
