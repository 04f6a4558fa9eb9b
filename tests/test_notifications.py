"""Tests for the alert store, live push channel and notification service."""

from unittest.mock import Mock

import pytest

from common.alert_store import AlertStore, AlertType, AuditAction, CriticalDirection
from common.channels import LivePushChannel, PushMessage
from encounter_src.database import ClinicDatabase
from encounter_src.models import StaffRole
from encounter_src.notifications import NotificationService


class TestAlertStore:
    """Tests for AlertStore."""

    @pytest.fixture
    def store(self, tmp_path):
        return AlertStore(str(tmp_path / "alerts.db"))

    def test_save_and_list_unread(self, store):
        alert, _ = store.save_alert(AlertType.PATIENT_READY, "doc-1", "Ready", encounter_id="enc-1")

        unread = store.list_unread("doc-1")

        assert [a.id for a in unread] == [alert.id]
        assert store.count_unread("doc-1") == 1
        assert store.list_unread("doc-2") == []

    def test_dedupe_key_returns_existing(self, store):
        first, created = store.save_alert(AlertType.CUSTOM, "doc-1", "Hello", dedupe_key="effect-1")
        second, created_again = store.save_alert(AlertType.CUSTOM, "doc-1", "Hello", dedupe_key="effect-1")

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert store.count_unread("doc-1") == 1

    def test_mark_read_only_touches_own_alerts(self, store):
        mine, _ = store.save_alert(AlertType.CUSTOM, "doc-1", "Mine")
        theirs, _ = store.save_alert(AlertType.CUSTOM, "nurse-1", "Theirs")

        assert store.mark_read("doc-1", [mine.id, theirs.id]) == 1
        assert store.get_alert(theirs.id).is_read is False
        assert store.get_alert(mine.id).read_at is not None

    def test_mark_all_read(self, store):
        store.save_alert(AlertType.CUSTOM, "doc-1", "One")
        store.save_alert(AlertType.CUSTOM, "doc-1", "Two")

        assert store.mark_read("doc-1") == 2
        assert store.mark_read("doc-1") == 0

    def test_mark_encounter_read_by_type(self, store):
        ready, _ = store.save_alert(AlertType.PATIENT_READY, "doc-1", "Ready", encounter_id="enc-1")
        vitals, _ = store.save_alert(AlertType.VITALS_CRITICAL, "doc-1", "Hot", encounter_id="enc-1")

        assert store.mark_encounter_read("enc-1", AlertType.PATIENT_READY) == 1
        assert store.get_alert(ready.id).is_read is True
        assert store.get_alert(vitals.id).is_read is False

    def test_audit_trail(self, store):
        alert, _ = store.save_alert(AlertType.CUSTOM, "doc-1", "Hi", sender_id="nurse-1")
        store.mark_read("doc-1")

        actions = [entry.action for entry in store.get_audit_log(alert.id)]

        assert actions == [AuditAction.CREATED, AuditAction.READ]

    def test_critical_result_unique_per_direction(self, store):
        first, created = store.save_critical_result(
            "order-1", CriticalDirection.CRITICAL_HIGH, "potassium", 7.0
        )
        again, created_again = store.save_critical_result(
            "order-1", CriticalDirection.CRITICAL_HIGH, "glucose", 500
        )
        low, _ = store.save_critical_result(
            "order-1", CriticalDirection.CRITICAL_LOW, "sodium", 110
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert low.id != first.id


class TestLivePushChannel:
    """Tests for LivePushChannel."""

    def test_publish_reaches_every_connection(self):
        channel = LivePushChannel()
        tab_one = channel.subscribe("doc-1")
        tab_two = channel.subscribe("doc-1")

        delivered = channel.publish("doc-1", PushMessage("notification", {"id": "a1"}))

        assert delivered == 2
        assert tab_one.get(timeout=0.1).data["id"] == "a1"
        assert tab_two.get(timeout=0.1).data["id"] == "a1"

    def test_offline_user_gets_nothing(self):
        channel = LivePushChannel()
        assert channel.publish("doc-1", PushMessage("notification")) == 0

    def test_full_queue_drops(self):
        channel = LivePushChannel(queue_size=1)
        channel.subscribe("doc-1")

        assert channel.publish("doc-1", PushMessage("one")) == 1
        assert channel.publish("doc-1", PushMessage("two")) == 0

    def test_unsubscribe(self):
        channel = LivePushChannel()
        subscription = channel.subscribe("doc-1")

        channel.unsubscribe(subscription)
        channel.unsubscribe(subscription)

        assert subscription.closed
        assert not channel.is_connected("doc-1")
        assert subscription.get(timeout=0.01) is None
        assert channel.connection_count() == 0

    def test_sse_frame(self):
        frame = PushMessage("notification", {"id": "a1"}).to_sse()

        assert frame.startswith("event: notification\ndata: ")
        assert frame.endswith("\n\n")
        assert '"id": "a1"' in frame


class TestNotificationService:
    """Tests for NotificationService delivery."""

    @pytest.fixture
    def db(self, tmp_path):
        db = ClinicDatabase(str(tmp_path / "clinic.db"))
        db.add_staff("Nurse A", StaffRole.NURSE, staff_id="nurse-1")
        db.add_staff("Nurse B", StaffRole.NURSE, staff_id="nurse-2")
        db.add_staff("Nurse C", StaffRole.NURSE, staff_id="nurse-3", is_active=False)
        return db

    def test_send_pushes_to_live_connection(self, db):
        service = NotificationService(db)
        subscription = service.subscribe("nurse-1")

        alert = service.send(AlertType.PATIENT_ASSIGNED, "nurse-1", "Room 3")

        message = subscription.get(timeout=0.1)
        assert message.event == "notification"
        assert message.data["id"] == alert.id

    def test_push_failure_keeps_stored_alert(self, db):
        push = Mock()
        push.publish.side_effect = RuntimeError("socket closed")
        service = NotificationService(db, push=push)

        alert = service.send(AlertType.CUSTOM, "nurse-1", "Hello")

        assert [a.id for a in service.list_unread("nurse-1")] == [alert.id]

    def test_send_to_role_skips_inactive(self, db):
        service = NotificationService(db)

        alerts = service.send_to_role(StaffRole.NURSE, AlertType.PATIENT_CHECKED_IN, "New patient")

        assert sorted(a.recipient_id for a in alerts) == ["nurse-1", "nurse-2"]
        assert service.list_unread("nurse-3") == []

    def test_send_to_empty_role(self, db):
        service = NotificationService(db)
        assert service.send_to_role(StaffRole.DOCTOR, AlertType.CUSTOM, "Anyone?") == []

    def test_role_delivery_is_deduplicated(self, db):
        service = NotificationService(db)

        service.send_to_role(StaffRole.NURSE, AlertType.CUSTOM, "Once", dedupe_prefix="effect-1")
        service.send_to_role(StaffRole.NURSE, AlertType.CUSTOM, "Once", dedupe_prefix="effect-1")

        assert len(service.list_unread("nurse-1")) == 1
        assert len(service.list_unread("nurse-2")) == 1

    def test_live_alert_from_workflow(self, clinic):
        subscription = clinic.subscribe("nurse-1")

        encounter = clinic.check_in("pat-1")

        message = subscription.get(timeout=0.1)
        assert message.data["alert_type"] == "patient_checked_in"
        assert message.data["encounter_id"] == encounter.id
        clinic.unsubscribe(subscription)
