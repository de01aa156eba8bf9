"""
Integration tests for zauth.

Tests end-to-end workflows combining the credential store, session guard,
TOTP manager and audit trail.
"""

import json
import logging

import pytest

from zauth.auth.records import UserRecord
from zauth.auth.session_guard import MemorySession, LOGIN_FAILED_MESSAGE
from zauth.integration.event_logger import (
    EventLogger, EventType, SecurityEvent, get_user_hash
)


T0 = 1_700_000_010
PASSWORD = "longenough1"


class TestAuthWorkflow:
    """Integration tests for the login workflow."""

    def test_register_authenticate_record_login(self, credentials, users):
        """New user -> save -> authenticate -> record_login."""
        user = UserRecord(email="a@example.com", password="longenough1",
                          password_confirmation="longenough1")
        assert credentials.save(user)['success']

        found = credentials.authenticate("a@example.com", "longenough1")
        assert found is not None
        assert found.id == user.id

        credentials.record_login(found)
        assert users.find_by_id(user.id).login_count == 1

    def test_password_login(self, make_guard, make_user, users):
        user = make_user()
        guard = make_guard()

        result = guard.login("a@example.com", PASSWORD, now=T0)

        assert result['success']
        assert result['user_id'] == user.id
        assert result['totp_cookie'] is None
        assert guard.is_logged_in()
        stored = users.find_by_id(user.id)
        assert stored.login_count == 1
        assert stored.last_login_at == T0

    def test_failed_login_changes_nothing(self, make_guard, make_user, users):
        user = make_user()
        guard = make_guard()

        result = guard.login("a@example.com", "wrongpassword")

        assert not result['success']
        assert result['message'] == LOGIN_FAILED_MESSAGE
        assert not guard.is_logged_in()
        assert users.find_by_id(user.id).login_count == 0

    def test_totp_required(self, make_guard, make_user, totp):
        user = make_user()
        totp.activate_totp(user, "app")
        guard = make_guard()

        result = guard.login("a@example.com", PASSWORD, now=T0)

        assert not result['success']
        assert result['requires_totp']
        assert not guard.is_logged_in()

    def test_totp_login(self, make_guard, make_user, totp):
        user = make_user()
        totp.activate_totp(user, "app")
        guard = make_guard()

        result = guard.login("a@example.com", PASSWORD,
                             totp_code=totp.current_code(user, T0), now=T0)

        assert result['success']
        assert guard.is_logged_in()

    def test_wrong_totp_rejected(self, make_guard, make_user, totp):
        user = make_user()
        totp.activate_totp(user, "app")
        stale = totp.current_code(user, T0 - 60)
        guard = make_guard()

        result = guard.login("a@example.com", PASSWORD, totp_code=stale, now=T0)

        assert not result['success']
        assert result['message'] == LOGIN_FAILED_MESSAGE

    def test_remembered_device_skips_totp(self, make_guard, make_user, totp):
        user = make_user()
        totp.activate_totp(user, "app")

        first = make_guard().login("a@example.com", PASSWORD,
                                   totp_code=totp.current_code(user, T0),
                                   remember_device=True, now=T0)
        assert first['totp_cookie']

        second = make_guard().login("a@example.com", PASSWORD,
                                    totp_cookie=first['totp_cookie'], now=T0 + 86400)
        assert second['success']

    def test_expired_remembered_device_needs_code(self, make_guard, make_user, totp):
        user = make_user()
        totp.activate_totp(user, "app")
        cookie = make_guard().login("a@example.com", PASSWORD,
                                    totp_code=totp.current_code(user, T0),
                                    remember_device=True, now=T0)['totp_cookie']

        later = make_guard().login("a@example.com", PASSWORD,
                                   totp_cookie=cookie, now=T0 + 31 * 86400)
        assert later['requires_totp']

    def test_login_without_totp_manager(self, make_guard, make_user, totp):
        user = make_user()
        totp.activate_totp(user, "app")
        guard = make_guard(totp=None)
        assert guard.login("a@example.com", PASSWORD)['success']

    def test_single_device_login_evicts_previous(self, make_guard, make_user):
        make_user()
        laptop, phone = MemorySession(), MemorySession()

        make_guard(laptop, single_device_sessions=True).login("a@example.com", PASSWORD)
        make_guard(phone, single_device_sessions=True).login("a@example.com", PASSWORD)

        assert make_guard(phone, single_device_sessions=True).is_logged_in()
        assert not make_guard(laptop, single_device_sessions=True).is_logged_in()

    def test_login_redirects_back(self, make_guard, make_user):
        make_user()
        session = MemorySession()
        denied = make_guard(session, request_path="/reports")
        assert not denied.require_login()
        denied.store_location()

        guard = make_guard(session)
        guard.login("a@example.com", PASSWORD)
        assert guard.redirect_back_or_default("/").location == "/reports"

    def test_logout(self, make_guard, make_user, events):
        make_user()
        session = MemorySession()
        guard = make_guard(session)
        guard.login("a@example.com", PASSWORD)
        old_id = session.session_id

        guard.logout()

        assert session.session_id != old_id
        assert not guard.is_logged_in()
        assert not make_guard(session).is_logged_in()
        assert events.get_events_by_type(EventType.LOGOUT)


class TestEventLogger:
    """Tests for the audit trail."""

    def test_login_events_recorded(self, make_guard, make_user, events):
        make_user()
        make_guard().login("a@example.com", "wrongpassword")
        make_guard().login("a@example.com", PASSWORD)

        user_events = [e.event_type for e in events.get_user_events("a@example.com")]
        assert EventType.LOGIN_FAILED in user_events
        assert EventType.LOGIN_SUCCESS in user_events

    def test_empty_trail_still_records(self, make_guard, make_user):
        """A brand-new logger is falsy by length but must still be used."""
        fresh = EventLogger()
        make_user()
        make_guard(event_logger=fresh).login("a@example.com", "wrongpassword")
        assert len(fresh.get_events_by_type(EventType.LOGIN_FAILED)) == 1

    def test_kernel_operations_recorded(self, credentials, totp, make_user, events):
        user = make_user()
        totp.activate_totp(user, "app")
        totp.update_totp_cookie(user, T0)
        credentials.create_password_reset_code(user)
        credentials.clear_password_reset_code(user)

        recorded = [e.event_type for e in events.get_all_events()]
        assert recorded == [
            EventType.TOTP_ACTIVATED,
            EventType.TOTP_COOKIE_ISSUED,
            EventType.PASSWORD_RESET_REQUESTED,
            EventType.PASSWORD_RESET_CLEARED,
        ]

    def test_handles_hashed(self, make_guard, make_user, events):
        make_user()
        make_guard().login("a@example.com", PASSWORD)
        exported = events.export_log()
        assert "a@example.com" not in exported
        assert get_user_hash("a@example.com")[:16] in exported

    def test_secrets_never_logged(self, make_guard, make_user, totp, events, caplog):
        user = make_user()
        totp.activate_totp(user, "app")
        code = totp.current_code(user, T0)

        with caplog.at_level(logging.DEBUG, logger="zauth"):
            result = make_guard().login("a@example.com", PASSWORD, totp_code=code,
                                        remember_device=True, now=T0)

        assert events.get_events_by_type(EventType.TOTP_VERIFIED)
        assert events.get_events_by_type(EventType.TOTP_COOKIE_ISSUED)
        for text in (PASSWORD, user.totp_secret_key, result['totp_cookie']):
            assert text not in caplog.text
            assert text not in events.export_log()
        for event in events.get_all_events():
            assert code not in json.dumps(event.details)

    def test_mirrored_to_logging(self, events, caplog):
        with caplog.at_level(logging.INFO, logger="zauth.audit"):
            events.log_logout("a@example.com")
        assert "logout" in caplog.text

    def test_failures_logged_as_warnings(self, events, caplog):
        with caplog.at_level(logging.INFO, logger="zauth.audit"):
            events.log_login("a@example.com", success=False)
        assert caplog.records[-1].levelno == logging.WARNING

    def test_session_rotation_recorded(self, make_guard, events):
        session = MemorySession({'created_at': T0 - 3 * 3600})
        make_guard(session).setup_session(now=T0)
        assert events.get_events_by_type(EventType.SESSION_ROTATED)

    def test_callbacks(self, events):
        seen = []
        events.add_callback(seen.append)
        events.log_totp("a@example.com", True)
        events.remove_callback(seen.append)
        events.log_totp("a@example.com", False)
        assert [e.event_type for e in seen] == [EventType.TOTP_VERIFIED]

    def test_broken_callback_does_not_break_logging(self, events):
        def broken(event):
            raise RuntimeError("subscriber down")

        events.add_callback(broken)
        events.log_logout("a@example.com")
        assert len(events) == 1

    def test_trail_is_bounded(self):
        events = EventLogger(max_events=3)
        for _ in range(5):
            events.log_logout("a@example.com")
        assert len(events) == 3

    def test_record_round_trip(self, events):
        event = events.log(EventType.TOTP_ACTIVATED, "a@example.com", method="app")
        parsed = SecurityEvent.from_record(event.to_record())
        assert parsed.event_type is EventType.TOTP_ACTIVATED
        assert parsed.details == {'method': 'app'}
        assert json.loads(event.to_record())['user'] == event.user_hash[:16]
