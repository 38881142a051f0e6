"""End-to-end tests for IdentityService operations.

Covers:
- Registration, email and phone verification
- Login, lockout and unlock
- Password reset and password change
- Pending contact changes
- Audit trail contents and redaction
- Boundary behaviour (no exceptions escape)
"""

from datetime import timedelta

import pytest

from verigate.service.audit import RequestOrigin
from verigate.service.identity import AuthContext
from verigate.service.results import GenericAck, OperationError
from verigate.service.tokens import hash_token

PASSWORD = "Correct-Horse1"
NEW_PASSWORD = "Battery-Staple2"


def _admin(service):
    result = service.register("Grace Hopper", "grace@example.com", "Admin-Pass99")
    assert result.ok
    identity_id = result.value.identity_id
    stored = service.store.get_identity(identity_id)
    stored.role = "admin"
    assert service.store.compare_and_swap(stored, stored.version)
    return AuthContext(identity_id=identity_id, role="admin")


class TestRegistration:
    def test_register_stores_only_token_hashes(self, service, memory_store, registered):
        identity_id, email_token, phone_code = registered
        identity = memory_store.get_identity(identity_id)

        assert identity.email == "ada@example.com"
        assert identity.email_verified is False
        assert identity.phone_verified is False
        assert identity.email_verification.token_hash == hash_token(email_token)
        assert identity.email_verification.token_hash != email_token
        assert identity.phone_verification.token_hash == hash_token(phone_code)
        assert identity.password_hash != PASSWORD
        assert identity.password_hash.startswith("$argon2id$")

    def test_register_reports_pending_verifications(self, service):
        result = service.register("Alan Turing", "alan@example.com", PASSWORD, phone="+447700900123")

        assert result.ok
        assert result.value.pending_verifications == ["email", "phone"]
        assert result.value.delivery_failed == []

    def test_register_normalizes_email(self, service, memory_store):
        result = service.register("Alan Turing", "  Alan@Example.COM ", PASSWORD)

        assert result.ok
        assert memory_store.get_identity(result.value.identity_id).email == "alan@example.com"

    def test_register_duplicate_email_rejected(self, service, registered):
        result = service.register("Someone Else", "ADA@example.com", PASSWORD)

        assert not result.ok
        assert result.error.code == "duplicate_identity"
        assert result.error.field == "email"

    def test_register_duplicate_phone_rejected(self, service, registered):
        result = service.register("Someone Else", "else@example.com", PASSWORD, phone="+15551234567")

        assert not result.ok
        assert result.error.code == "duplicate_identity"
        assert result.error.field == "phone"

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"email": "not-an-email"}, "email"),
            ({"password": "short1A"}, "password"),
            ({"password": "alllowercase1"}, "password"),
            ({"password": "NoDigitsHere"}, "password"),
            ({"name": "A"}, "name"),
            ({"phone": "12345"}, "phone"),
        ],
    )
    def test_register_validation_errors_name_the_field(self, service, kwargs, field):
        payload = {"name": "Valid Name", "email": "valid@example.com", "password": PASSWORD}
        payload.update(kwargs)

        result = service.register(**payload)

        assert not result.ok
        assert result.error.code == "validation_error"
        assert result.error.field == field

    def test_delivery_failure_keeps_token_valid(self, service, gateway):
        gateway.fail_email = True

        result = service.register("Ada Lovelace", "ada@example.com", PASSWORD)

        assert result.ok
        assert result.value.delivery_failed == ["email"]
        failures = [e for e in result.audit if e.details.get("error") == "transport_failure"]
        assert len(failures) == 1

        consumed = service.consume_email_token(gateway.last_email_token())
        assert consumed.ok


class TestEmailVerification:
    def test_consume_marks_verified_and_clears_token(self, service, memory_store, registered):
        identity_id, email_token, _ = registered

        result = service.consume_email_token(email_token)

        assert result.ok
        assert result.value.identity_id == identity_id
        identity = memory_store.get_identity(identity_id)
        assert identity.email_verified is True
        assert identity.email_verification is None

    def test_token_cannot_be_consumed_twice(self, service, registered):
        _, email_token, _ = registered

        assert service.consume_email_token(email_token).ok
        again = service.consume_email_token(email_token)

        assert not again.ok
        assert again.error.code == "invalid_or_expired_token"

    def test_expired_token_rejected(self, service, clock, registered):
        _, email_token, _ = registered
        clock.advance(timedelta(hours=25))

        result = service.consume_email_token(email_token)

        assert result.error.code == "invalid_or_expired_token"

    def test_unknown_token_rejected(self, service, registered):
        result = service.consume_email_token("definitely-not-a-token")

        assert result.error.code == "invalid_or_expired_token"

    def test_resend_invalidates_previous_token(self, service, gateway, registered):
        identity_id, first_token, _ = registered

        resent = service.resend_verification(identity_id, "email")
        second_token = gateway.last_email_token()

        assert resent.ok
        assert second_token != first_token
        assert service.consume_email_token(first_token).error.code == "invalid_or_expired_token"
        assert service.consume_email_token(second_token).ok

    def test_resend_after_verification_reports_already_verified(self, service, registered):
        identity_id, email_token, _ = registered
        service.consume_email_token(email_token)

        result = service.resend_verification(identity_id, "email")

        assert result.error.code == "already_verified"

    def test_public_resend_is_generic(self, service, gateway, registered):
        sent_before = len(gateway.emails)

        known = service.resend_verification_by_email("ada@example.com")
        unknown = service.resend_verification_by_email("nobody@example.com")

        assert known.ok and unknown.ok
        assert known.value == unknown.value == GenericAck()
        assert len(gateway.emails) == sent_before + 1


class TestPhoneVerification:
    def test_wrong_code_leaves_code_pending(self, service, memory_store, registered):
        identity_id, _, code = registered
        wrong = "000000" if code != "000000" else "111111"

        result = service.consume_phone_code(identity_id, wrong)

        assert result.error.code == "invalid_or_expired_token"
        identity = memory_store.get_identity(identity_id)
        assert identity.phone_verification is not None
        assert service.consume_phone_code(identity_id, code).ok

    def test_correct_code_verifies_phone(self, service, memory_store, registered):
        identity_id, _, code = registered

        result = service.consume_phone_code(identity_id, code)

        assert result.ok
        identity = memory_store.get_identity(identity_id)
        assert identity.phone_verified is True
        assert identity.phone_verification is None
        assert identity.email_verified is False

    def test_code_expires_after_ten_minutes(self, service, clock, registered):
        identity_id, _, code = registered
        clock.advance(timedelta(minutes=11))

        assert service.consume_phone_code(identity_id, code).error.code == "invalid_or_expired_token"

    def test_code_for_unknown_identity_rejected(self, service, registered):
        _, _, code = registered

        result = service.consume_phone_code("missing-id", code)

        assert result.error.code == "invalid_or_expired_token"

    def test_resend_phone_without_number_is_validation_error(self, service):
        result = service.register("No Phone", "nophone@example.com", PASSWORD)

        resent = service.resend_verification(result.value.identity_id, "phone")

        assert resent.error.code == "validation_error"
        assert resent.error.field == "phone"


class TestLogin:
    def test_login_succeeds_with_correct_password(self, service, registered):
        result = service.login("ada@example.com", PASSWORD)

        assert result.ok
        assert result.value.token.count(".") == 2

    def test_wrong_password_and_unknown_email_are_indistinguishable(self, service, registered):
        wrong = service.login("ada@example.com", "Wrong-Password1")
        unknown = service.login("nobody@example.com", PASSWORD)

        assert wrong.error.code == unknown.error.code == "invalid_credentials"
        assert wrong.error.message == unknown.error.message
        assert wrong.error.detail == unknown.error.detail == {}

    def test_five_failures_lock_the_account(self, service, memory_store, registered):
        identity_id, _, _ = registered

        for _ in range(5):
            assert service.login("ada@example.com", "Wrong-Password1").error.code == "invalid_credentials"

        identity = memory_store.get_identity(identity_id)
        assert identity.locked is True
        assert identity.login_attempts == 5

        locked = service.login("ada@example.com", PASSWORD)
        assert locked.error.code == "account_locked"
        assert memory_store.get_identity(identity_id).login_attempts == 5
        assert memory_store.list_audit_entries(actor_id=identity_id, action="account_locked")

    def test_success_resets_attempts(self, service, memory_store, registered):
        identity_id, _, _ = registered
        for _ in range(3):
            service.login("ada@example.com", "Wrong-Password1")

        assert service.login("ada@example.com", PASSWORD).ok

        identity = memory_store.get_identity(identity_id)
        assert identity.login_attempts == 0
        assert identity.last_login is not None

    def test_admin_unlock_requires_admin(self, service, registered):
        identity_id, _, _ = registered
        user = AuthContext(identity_id=identity_id, role="user")

        result = service.admin_unlock(user, identity_id)

        assert result.error.code == "forbidden"

    def test_admin_unlock_restores_login(self, service, memory_store, registered):
        identity_id, _, _ = registered
        admin = _admin(service)
        for _ in range(5):
            service.login("ada@example.com", "Wrong-Password1")

        result = service.admin_unlock(admin, identity_id, origin=RequestOrigin(ip="10.0.0.1"))

        assert result.ok
        assert result.value.locked is False
        assert service.login("ada@example.com", PASSWORD).ok
        entries = memory_store.list_audit_entries(actor_id=admin.identity_id, action="admin_action")
        assert entries[0].details["target_id"] == identity_id
        assert entries[0].origin.ip == "10.0.0.1"


class TestSessions:
    def test_authenticate_returns_context(self, service, registered):
        identity_id, _, _ = registered
        token = service.login("ada@example.com", PASSWORD).value.token

        result = service.authenticate(token)

        assert result.ok
        assert result.value.identity_id == identity_id
        assert result.value.role == "user"

    def test_tampered_session_rejected(self, service, registered):
        token = service.login("ada@example.com", PASSWORD).value.token
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])

        assert service.authenticate(tampered).error.code == "invalid_credentials"

    def test_non_ascii_signature_rejected(self, service, registered):
        token = service.login("ada@example.com", PASSWORD).value.token

        result = service.authenticate(token[:-1] + "\u00e9")

        assert result.error.code == "invalid_credentials"

    def test_logout_is_audited(self, service, memory_store, registered):
        identity_id, _, _ = registered

        assert service.logout(identity_id).ok
        assert memory_store.list_audit_entries(actor_id=identity_id, action="logout")

    def test_require_verified(self, service, registered):
        identity_id, email_token, _ = registered

        assert service.require_verified(identity_id).error.code == "forbidden"
        service.consume_email_token(email_token)
        assert service.require_verified(identity_id).ok


class TestPasswordReset:
    def test_request_reset_shape_is_identical(self, service, gateway, registered):
        sent_before = len(gateway.emails)

        known = service.request_reset("ada@example.com")
        unknown = service.request_reset("nobody@example.com")
        malformed = service.request_reset("not-an-email")
        missing = service.request_reset(None)

        assert known.ok == unknown.ok == malformed.ok is True
        assert known.value == unknown.value == malformed.value == missing.value
        assert missing.ok is True
        assert known.error is unknown.error is None
        assert len(gateway.emails) == sent_before + 1

    def test_reset_with_valid_token(self, service, gateway, memory_store, registered):
        identity_id, _, _ = registered
        for _ in range(5):
            service.login("ada@example.com", "Wrong-Password1")
        service.request_reset("ada@example.com")
        token = gateway.last_email_token()

        result = service.reset_password(token, NEW_PASSWORD)

        assert result.ok
        identity = memory_store.get_identity(identity_id)
        assert identity.locked is False
        assert identity.login_attempts == 0
        assert identity.password_reset is None
        assert service.login("ada@example.com", NEW_PASSWORD).ok
        assert service.login("ada@example.com", PASSWORD).error.code == "invalid_credentials"

    def test_tampered_token_leaves_password_unchanged(self, service, gateway, registered):
        service.request_reset("ada@example.com")
        token = gateway.last_email_token()

        result = service.reset_password(token + "x", NEW_PASSWORD)

        assert result.error.code == "invalid_or_expired_token"
        assert service.login("ada@example.com", PASSWORD).ok

    def test_reset_token_expires(self, service, gateway, clock, registered):
        service.request_reset("ada@example.com")
        token = gateway.last_email_token()
        clock.advance(timedelta(minutes=11))

        assert service.reset_password(token, NEW_PASSWORD).error.code == "invalid_or_expired_token"

    def test_weak_password_does_not_consume_token(self, service, gateway, registered):
        service.request_reset("ada@example.com")
        token = gateway.last_email_token()

        weak = service.reset_password(token, "weak")

        assert weak.error.code == "validation_error"
        assert service.reset_password(token, NEW_PASSWORD).ok

    def test_email_token_cannot_reset_password(self, service, registered):
        _, email_token, _ = registered

        assert service.reset_password(email_token, NEW_PASSWORD).error.code == "invalid_or_expired_token"

    def test_change_password(self, service, registered):
        identity_id, _, _ = registered

        wrong = service.change_password(identity_id, "Wrong-Password1", NEW_PASSWORD)
        same = service.change_password(identity_id, PASSWORD, PASSWORD)
        changed = service.change_password(identity_id, PASSWORD, NEW_PASSWORD)

        assert wrong.error.code == "invalid_credentials"
        assert same.error.code == "validation_error"
        assert changed.ok
        assert service.login("ada@example.com", NEW_PASSWORD).ok


class TestContactChange:
    def test_email_change_is_provisional_until_confirmed(self, service, gateway, memory_store, registered):
        identity_id, email_token, code = registered
        service.consume_email_token(email_token)
        service.consume_phone_code(identity_id, code)

        result = service.request_contact_change(identity_id, "email", "ada.new@example.com")

        assert result.ok
        assert gateway.emails[-1]["to"] == "ada.new@example.com"
        identity = memory_store.get_identity(identity_id)
        assert identity.email == "ada@example.com"
        assert identity.email_verified is True
        assert identity.phone_verified is True
        assert identity.pending_email_change.new_value == "ada.new@example.com"

        confirmed = service.consume_email_token(gateway.last_email_token())

        assert confirmed.ok
        assert confirmed.value.purpose == "email_change"
        identity = memory_store.get_identity(identity_id)
        assert identity.email == "ada.new@example.com"
        assert identity.email_verified is True
        assert identity.phone_verified is True
        assert identity.pending_email_change is None
        assert identity.change_history[-1].field == "email"
        assert identity.change_history[-1].old_value == "ada@example.com"
        assert service.login("ada.new@example.com", PASSWORD).ok

    def test_phone_change_confirmed_by_code(self, service, gateway, memory_store, registered):
        identity_id, _, code = registered
        service.consume_phone_code(identity_id, code)

        assert service.request_contact_change(identity_id, "phone", "+15559876543").ok
        assert memory_store.get_identity(identity_id).phone == "+15551234567"

        confirmed = service.consume_phone_code(identity_id, gateway.last_sms_code())

        assert confirmed.ok
        assert confirmed.value.purpose == "phone_change"
        identity = memory_store.get_identity(identity_id)
        assert identity.phone == "+15559876543"
        assert identity.phone_verified is True
        assert identity.pending_phone_change is None

    def test_change_to_address_in_use_is_duplicate(self, service, registered):
        identity_id, _, _ = registered
        service.register("Alan Turing", "alan@example.com", PASSWORD)

        result = service.request_contact_change(identity_id, "email", "alan@example.com")

        assert result.error.code == "duplicate_identity"

    def test_change_to_current_value_rejected(self, service, registered):
        identity_id, _, _ = registered

        result = service.request_contact_change(identity_id, "email", "ADA@example.com")

        assert result.error.code == "validation_error"

    def test_lost_race_for_staged_email_is_duplicate(self, service, gateway, memory_store, registered):
        identity_id, _, _ = registered
        service.request_contact_change(identity_id, "email", "taken@example.com")
        token = gateway.last_email_token()
        service.register("Late Comer", "taken@example.com", PASSWORD)

        result = service.consume_email_token(token)

        assert result.error.code == "duplicate_identity"
        assert memory_store.get_identity(identity_id).email == "ada@example.com"

    def test_resend_prefers_staged_change(self, service, gateway, registered):
        identity_id, _, _ = registered
        service.request_contact_change(identity_id, "email", "ada.new@example.com")

        result = service.resend_verification(identity_id, "email")

        assert result.ok
        assert result.value.purpose == "email_change"
        assert gateway.emails[-1]["to"] == "ada.new@example.com"

    def test_invalid_channel_is_validation_error(self, service, registered):
        identity_id, _, _ = registered

        result = service.request_contact_change(identity_id, "fax", "12345")

        assert result.error.code == "validation_error"
        assert result.error.field == "channel"


class TestProfile:
    def test_profile_hides_secrets(self, service, registered):
        identity_id, _, _ = registered

        profile = service.get_profile(identity_id).value
        dumped = profile.model_dump()

        assert dumped["email"] == "ada@example.com"
        assert "password_hash" not in dumped
        assert "email_verification" not in dumped

    def test_update_name_records_history(self, service, memory_store, registered):
        identity_id, _, _ = registered

        result = service.update_name(identity_id, "Augusta Ada King")

        assert result.ok
        assert result.value.name == "Augusta Ada King"
        record = memory_store.get_identity(identity_id).change_history[-1]
        assert (record.field, record.old_value, record.new_value) == (
            "name",
            "Ada Lovelace",
            "Augusta Ada King",
        )

    def test_missing_identity_is_not_found(self, service):
        assert service.get_profile("missing").error.code == "not_found"

    def test_admin_create_identity(self, service, memory_store):
        admin = _admin(service)

        created = service.admin_create_identity(
            admin, "Support Agent", "agent@example.com", PASSWORD, role="admin"
        )

        assert created.ok
        assert memory_store.get_identity(created.value.identity_id).role == "admin"
        denied = service.admin_create_identity(
            AuthContext(identity_id=created.value.identity_id, role="user"),
            "Another One",
            "another@example.com",
            PASSWORD,
        )
        assert denied.error.code == "forbidden"


class TestAuditTrail:
    def test_secrets_never_reach_audit_entries(self, service, gateway, memory_store, registered):
        identity_id, email_token, code = registered
        service.consume_email_token(email_token)
        service.consume_phone_code(identity_id, code)
        service.login("ada@example.com", "Wrong-Password1")
        service.request_reset("ada@example.com")
        reset_token = gateway.last_email_token()
        service.reset_password(reset_token, NEW_PASSWORD)

        dumped = repr(memory_store.list_audit_entries(limit=1000))

        for secret in (PASSWORD, NEW_PASSWORD, "Wrong-Password1", email_token, reset_token):
            assert secret not in dumped
        assert hash_token(email_token) not in dumped

    def test_events_are_returned_and_persisted(self, service, memory_store, registered):
        identity_id, _, _ = registered

        result = service.login("ada@example.com", PASSWORD, origin=RequestOrigin("203.0.113.9", "pytest"))

        assert [e.action.value for e in result.audit] == ["login"]
        entry = memory_store.list_audit_entries(actor_id=identity_id, action="login")[0]
        assert entry.origin.ip == "203.0.113.9"
        assert entry.origin.user_agent == "pytest"

    def test_audit_failure_does_not_fail_operation(self, service, memory_store, registered, monkeypatch):
        def _broken(entry):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(memory_store, "append_audit_entry", _broken)

        assert service.login("ada@example.com", PASSWORD).ok


class TestBoundary:
    def test_validation_error_carries_field(self, service):
        result = service.register("Ada Lovelace", "ada@example.com", "weak")

        assert result.error == OperationError(
            code="validation_error",
            message=result.error.message,
            field="password",
            detail={},
            status_code=400,
        )
        assert result.value is None
        assert result.audit == []

    def test_unexpected_exception_becomes_internal_error(self, service, memory_store, monkeypatch):
        def _boom(email):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(memory_store, "get_identity_by_email", _boom)

        result = service.login("ada@example.com", PASSWORD)

        assert not result.ok
        assert result.error.code == "internal_error"
        assert result.error.status_code == 500
        assert "connection reset" not in result.error.message

    def test_request_reset_survives_storage_failure(self, service, memory_store, monkeypatch):
        from verigate.storage.errors import StorageError

        def _down(email):
            raise StorageError("database unavailable")

        monkeypatch.setattr(memory_store, "get_identity_by_email", _down)

        result = service.request_reset("ada@example.com")

        assert result.ok
        assert result.value == GenericAck()

    def test_corrupt_password_hash_is_internal_error(self, service, memory_store, registered):
        identity_id, _, _ = registered
        identity = memory_store.get_identity(identity_id)
        identity.password_hash = "not-a-hash"
        memory_store.compare_and_swap(identity, identity.version)

        assert service.login("ada@example.com", PASSWORD).error.code == "internal_error"
