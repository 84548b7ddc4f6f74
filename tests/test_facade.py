"""
tests/test_facade.py -- Scenario and property tests for AuthFacade.

Covers:
  - signup -> confirm (pending, no tokens) -> approve -> sign-in returns tokens
  - sign_in succeeds iff email_verified and status == active
  - uniform InvalidCredentials for unknown email and wrong password
  - reset_password revokes every refresh token; a weak password keeps the link
  - a failed reset write leaves the link and the old sessions intact
  - update_password and refresh re-check the login gate
  - a 10-minute reset link redeemed after 11 simulated minutes fails
  - update_password, sign_out, resend_confirmation, forgot_password
  - OAuth pass-through matches existing accounts only
  - notifications are dispatched with the expected templates and recipients
  - storage failures surface as Internal
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from auth.errors import (
    AccountRejected,
    DuplicateEmail,
    EmailNotVerified,
    Internal,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidRefreshToken,
    NotFound,
    PendingApproval,
    Unauthorized,
    ValidationError,
)
from auth.facade import FORGOT_PASSWORD_MESSAGE, AuthFacade
from auth.models import ProfileStatus, Role
from auth.notifier import NotificationDispatcher
from auth.store import SqlStore
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, PASSWORD, active_employee, make_settings, signup_verified


class TestSignupScenario:
    def test_signup_confirm_approve_signin(self, facade, recorder, admin) -> None:
        """Full happy path: tokens only appear after both verification and approval."""
        admin_account, _ = admin
        signed_up = facade.sign_up("new.hire@corp.test", PASSWORD, "New Hire")
        assert signed_up.tokens is None
        assert signed_up.requires_email_verification is True
        assert signed_up.profile.status == ProfileStatus.pending

        facade.dispatcher.flush()
        confirmed = facade.confirm_email(recorder.last_token("new.hire@corp.test", "email_confirmation"))
        assert confirmed.tokens is None
        assert "pending approval" in confirmed.message

        with pytest.raises(PendingApproval):
            facade.sign_in("new.hire@corp.test", PASSWORD)

        facade.admin_approve(confirmed.profile.id, admin_account.id)
        result = facade.sign_in("new.hire@corp.test", PASSWORD)
        assert result.tokens is not None
        assert facade.sessions.decode_access(result.tokens.access_token).subject == confirmed.account.id

    def test_signup_never_returns_tokens_even_when_auto_activated(self, store, dispatcher, recorder) -> None:
        facade = AuthFacade(store, make_settings(auto_activate_employees=True), dispatcher)
        result = facade.sign_up("auto@corp.test", PASSWORD, "Auto")
        assert result.tokens is None
        assert result.profile.status == ProfileStatus.active

    def test_auto_activated_confirmation_signs_in(self, store, dispatcher, recorder) -> None:
        facade = AuthFacade(store, make_settings(auto_activate_employees=True), dispatcher)
        facade.sign_up("auto@corp.test", PASSWORD, "Auto")
        dispatcher.flush()
        confirmed = facade.confirm_email(recorder.last_token("auto@corp.test", "email_confirmation"))
        assert confirmed.tokens is not None
        assert facade.store.get_account(confirmed.account.id).last_login is not None

    @pytest.mark.parametrize("variant", ["dup@corp.test", "DUP@CORP.TEST", "Dup@Corp.test"])
    def test_duplicate_signup_in_any_casing(self, facade, variant: str) -> None:
        facade.sign_up("dup@corp.test", PASSWORD, "First")
        with pytest.raises(DuplicateEmail):
            facade.sign_up(variant, PASSWORD, "Second")

    def test_confirmation_link_redeems_once(self, facade, recorder) -> None:
        facade.sign_up("once@corp.test", PASSWORD, "Once")
        facade.dispatcher.flush()
        token = recorder.last_token("once@corp.test", "email_confirmation")
        facade.confirm_email(token)
        with pytest.raises(InvalidOrExpiredToken):
            facade.confirm_email(token)

    def test_confirmation_expires_after_one_hour(self, facade, recorder, clock) -> None:
        facade.sign_up("late@corp.test", PASSWORD, "Late")
        facade.dispatcher.flush()
        clock.advance(minutes=61)
        with pytest.raises(InvalidOrExpiredToken):
            facade.confirm_email(recorder.last_token("late@corp.test", "email_confirmation"))


class TestSignInPolicy:
    def test_unverified_email_blocked(self, facade) -> None:
        facade.sign_up("unverified@corp.test", PASSWORD, "U")
        with pytest.raises(EmailNotVerified):
            facade.sign_in("unverified@corp.test", PASSWORD)

    def test_verified_but_pending_blocked(self, facade, recorder) -> None:
        signup_verified(facade, recorder, "pending@corp.test")
        with pytest.raises(PendingApproval):
            facade.sign_in("pending@corp.test", PASSWORD)

    def test_rejected_blocked(self, facade, recorder, admin) -> None:
        profile = signup_verified(facade, recorder, "rejected@corp.test")
        facade.admin_reject(profile.id, admin[0].id, "Unknown person")
        with pytest.raises(AccountRejected):
            facade.sign_in("rejected@corp.test", PASSWORD)

    def test_approved_but_unverified_blocked(self, facade, admin) -> None:
        """Approval alone is not enough; the mailbox must be proven too."""
        result = facade.sign_up("approved-first@corp.test", PASSWORD, "A")
        facade.admin_approve(result.profile.id, admin[0].id)
        with pytest.raises(EmailNotVerified):
            facade.sign_in("approved-first@corp.test", PASSWORD)

    def test_admin_signs_in(self, facade, admin) -> None:
        assert facade.sign_in(ADMIN_EMAIL.upper(), "adminpass123").tokens is not None

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "real@corp.test")
        with pytest.raises(InvalidCredentials) as unknown:
            facade.sign_in("ghost@corp.test", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            facade.sign_in("real@corp.test", "wrong-password-1")
        assert unknown.value.message == wrong.value.message

    def test_wrong_password_reveals_nothing_about_state(self, facade) -> None:
        """An unverified account with a wrong password still gets InvalidCredentials."""
        facade.sign_up("quiet@corp.test", PASSWORD, "Q")
        with pytest.raises(InvalidCredentials):
            facade.sign_in("quiet@corp.test", "wrong-password-1")

    def test_sign_in_stamps_last_login(self, facade, recorder, admin) -> None:
        profile = active_employee(facade, recorder, admin[0].id, "stamp@corp.test")
        assert facade.store.get_account(profile.account_id).last_login is None
        facade.sign_in("stamp@corp.test", PASSWORD)
        assert facade.store.get_account(profile.account_id).last_login is not None


class TestPasswordReset:
    def _request_reset(self, facade, recorder, email: str) -> str:
        facade.forgot_password(email)
        facade.dispatcher.flush()
        return recorder.last_token(email, "password_reset")

    def test_reset_revokes_all_refresh_tokens(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "reset@corp.test")
        laptop = facade.sign_in("reset@corp.test", PASSWORD).tokens
        phone = facade.sign_in("reset@corp.test", PASSWORD).tokens

        facade.reset_password(self._request_reset(facade, recorder, "reset@corp.test"), "fresh-password-7")

        for tokens in (laptop, phone):
            with pytest.raises(InvalidRefreshToken):
                facade.refresh(tokens.refresh_token)
        with pytest.raises(InvalidCredentials):
            facade.sign_in("reset@corp.test", PASSWORD)
        assert facade.sign_in("reset@corp.test", "fresh-password-7").tokens is not None

    def test_reset_link_redeems_once(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "twice@corp.test")
        token = self._request_reset(facade, recorder, "twice@corp.test")
        facade.reset_password(token, "fresh-password-7")
        with pytest.raises(InvalidOrExpiredToken):
            facade.reset_password(token, "another-password-8")

    def test_reset_link_expired_after_eleven_minutes(self, facade, recorder, clock, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "slow@corp.test")
        token = self._request_reset(facade, recorder, "slow@corp.test")
        clock.advance(minutes=11)
        with pytest.raises(InvalidOrExpiredToken):
            facade.reset_password(token, "fresh-password-7")
        assert facade.sign_in("slow@corp.test", PASSWORD).tokens is not None

    def test_weak_password_does_not_burn_the_link(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "weak@corp.test")
        token = self._request_reset(facade, recorder, "weak@corp.test")
        with pytest.raises(ValidationError):
            facade.reset_password(token, "weak")
        facade.reset_password(token, "strong-enough-9")
        assert facade.sign_in("weak@corp.test", "strong-enough-9").tokens is not None

    def test_forgot_password_is_uniform(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "known@corp.test")
        known = facade.forgot_password("known@corp.test")
        unknown = facade.forgot_password("unknown@corp.test")
        malformed = facade.forgot_password("not-an-email")
        assert known.message == unknown.message == malformed.message == FORGOT_PASSWORD_MESSAGE
        facade.dispatcher.flush()
        assert recorder.to("known@corp.test", "password_reset")
        assert recorder.to("unknown@corp.test") == []

    def test_reset_sends_password_changed_notice(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "notice@corp.test")
        facade.reset_password(self._request_reset(facade, recorder, "notice@corp.test"), "fresh-password-7")
        facade.dispatcher.flush()
        assert recorder.to("notice@corp.test", "password_changed")


    def test_failed_write_keeps_the_link(self, tmp_path, settings, dispatcher, recorder, clock) -> None:
        """Token, password and sessions change together or not at all."""
        store = SqlStore(f"sqlite:///{tmp_path / 'reset.db'}")
        facade = AuthFacade(store, settings, dispatcher, clock)
        admin_id = facade.create_admin(ADMIN_EMAIL, ADMIN_PASSWORD, "Ada Admin").account.id
        active_employee(facade, recorder, admin_id, "atomic@corp.test")
        session = facade.sign_in("atomic@corp.test", PASSWORD).tokens
        token = self._request_reset(facade, recorder, "atomic@corp.test")

        def fail_password_write(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("UPDATE accounts"):
                raise OperationalError(statement, parameters, Exception("disk full"))

        event.listen(store.engine, "before_cursor_execute", fail_password_write)
        try:
            with pytest.raises(Internal):
                facade.reset_password(token, "fresh-password-7")
        finally:
            event.remove(store.engine, "before_cursor_execute", fail_password_write)

        assert facade.sign_in("atomic@corp.test", PASSWORD).tokens is not None
        session = facade.refresh(session.refresh_token)

        facade.reset_password(token, "fresh-password-7")
        with pytest.raises(InvalidRefreshToken):
            facade.refresh(session.refresh_token)
        assert facade.sign_in("atomic@corp.test", "fresh-password-7").tokens is not None
        store.close()


class TestUpdatePassword:
    def test_update_password_rotates_sessions(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "change@corp.test")
        other_device = facade.sign_in("change@corp.test", PASSWORD).tokens
        this_device = facade.sign_in("change@corp.test", PASSWORD).tokens

        result = facade.update_password(this_device.access_token, PASSWORD, "changed-password-3")

        assert result.tokens is not None
        with pytest.raises(InvalidRefreshToken):
            facade.refresh(other_device.refresh_token)
        assert facade.refresh(result.tokens.refresh_token).access_token
        assert facade.sign_in("change@corp.test", "changed-password-3").tokens is not None

    def test_wrong_current_password(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "wrongcur@corp.test")
        tokens = facade.sign_in("wrongcur@corp.test", PASSWORD).tokens
        with pytest.raises(InvalidCredentials):
            facade.update_password(tokens.access_token, "not-the-password-1", "changed-password-3")

    def test_same_password_rejected(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "same@corp.test")
        tokens = facade.sign_in("same@corp.test", PASSWORD).tokens
        with pytest.raises(ValidationError):
            facade.update_password(tokens.access_token, PASSWORD, PASSWORD)

    def test_rejected_account_cannot_change_password(self, facade, recorder, admin) -> None:
        """The access token outlives the rejection; the gate does not."""
        profile = active_employee(facade, recorder, admin[0].id, "gone@corp.test")
        tokens = facade.sign_in("gone@corp.test", PASSWORD).tokens
        facade.admin_override(profile.id, admin[0].id, status=ProfileStatus.rejected, reason="Left company")

        with pytest.raises(AccountRejected):
            facade.update_password(tokens.access_token, PASSWORD, "changed-password-3")
        assert facade.store.get_account(profile.account_id).refresh_tokens == frozenset()
        with pytest.raises(AccountRejected):
            facade.sign_in("gone@corp.test", PASSWORD)

    def test_pending_account_cannot_change_password(self, facade, recorder, admin) -> None:
        profile = active_employee(facade, recorder, admin[0].id, "paused@corp.test")
        tokens = facade.sign_in("paused@corp.test", PASSWORD).tokens
        facade.store.update_profile(profile.id, {"status": ProfileStatus.pending})
        with pytest.raises(PendingApproval):
            facade.update_password(tokens.access_token, PASSWORD, "changed-password-3")

    def test_requires_valid_access_token(self, facade) -> None:
        with pytest.raises(Unauthorized):
            facade.update_password("garbage", PASSWORD, "changed-password-3")


class TestSessions:
    def test_refresh_rotation_through_facade(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "rotate@corp.test")
        first = facade.sign_in("rotate@corp.test", PASSWORD).tokens
        second = facade.refresh(first.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            facade.refresh(first.refresh_token)
        assert facade.refresh(second.refresh_token).access_token

    def test_refresh_refused_when_no_longer_active(self, facade, recorder, admin) -> None:
        """Sessions still registered for a rejected profile cannot be extended."""
        profile = active_employee(facade, recorder, admin[0].id, "lapsed@corp.test")
        tokens = facade.sign_in("lapsed@corp.test", PASSWORD).tokens
        facade.store.update_profile(profile.id, {"status": ProfileStatus.rejected})
        with pytest.raises(InvalidRefreshToken):
            facade.refresh(tokens.refresh_token)

    def test_sign_out_revokes_refresh_tokens(self, facade, recorder, admin) -> None:
        active_employee(facade, recorder, admin[0].id, "bye@corp.test")
        tokens = facade.sign_in("bye@corp.test", PASSWORD).tokens
        facade.sign_out(tokens.access_token)
        with pytest.raises(InvalidRefreshToken):
            facade.refresh(tokens.refresh_token)

    def test_sign_out_requires_access_token(self, facade) -> None:
        with pytest.raises(Unauthorized):
            facade.sign_out("not-a-token")

    def test_me(self, facade, admin) -> None:
        tokens = facade.sign_in(ADMIN_EMAIL, "adminpass123").tokens
        result = facade.me(tokens.access_token)
        assert result.account.email == ADMIN_EMAIL
        assert result.profile.role == Role.admin


class TestResendConfirmation:
    def test_unknown_email(self, facade) -> None:
        with pytest.raises(NotFound):
            facade.resend_confirmation("nobody@corp.test")

    def test_already_verified(self, facade, recorder) -> None:
        signup_verified(facade, recorder, "done@corp.test")
        recorder.clear()
        result = facade.resend_confirmation("done@corp.test")
        assert "already verified" in result.message
        facade.dispatcher.flush()
        assert recorder.sent == []

    def test_resend_replaces_previous_link(self, facade, recorder) -> None:
        facade.sign_up("again@corp.test", PASSWORD, "Again")
        facade.dispatcher.flush()
        old = recorder.last_token("again@corp.test", "email_confirmation")
        facade.resend_confirmation("AGAIN@corp.test")
        facade.dispatcher.flush()
        new = recorder.last_token("again@corp.test", "email_confirmation")
        assert old != new
        with pytest.raises(InvalidOrExpiredToken):
            facade.confirm_email(old)
        facade.confirm_email(new)


class TestOAuth:
    def test_existing_account_is_verified_and_signed_in(self, store, dispatcher) -> None:
        facade = AuthFacade(store, make_settings(auto_activate_employees=True), dispatcher)
        facade.sign_up("sso@corp.test", PASSWORD, "SSO User")
        result = facade.sign_in_with_oauth("SSO@corp.test")
        assert result.tokens is not None
        assert store.get_account_by_email("sso@corp.test").email_verified is True

    def test_unknown_email_is_not_provisioned(self, facade) -> None:
        with pytest.raises(InvalidCredentials):
            facade.sign_in_with_oauth("stranger@corp.test")
        assert facade.store.get_account_by_email("stranger@corp.test") is None

    def test_approval_gate_still_applies(self, facade) -> None:
        facade.sign_up("gated@corp.test", PASSWORD, "Gated")
        with pytest.raises(PendingApproval):
            facade.sign_in_with_oauth("gated@corp.test")


class TestAdministration:
    def test_signup_notifies_active_admins(self, facade, recorder, admin) -> None:
        facade.sign_up("queue@corp.test", PASSWORD, "Queued Person")
        facade.dispatcher.flush()
        (mail,) = recorder.to(ADMIN_EMAIL, "approval_request")
        assert mail.variables["employee_email"] == "queue@corp.test"
        assert mail.variables["employee_name"] == "Queued Person"

    def test_approve_and_reject_notify_employee(self, facade, recorder, admin) -> None:
        approved = signup_verified(facade, recorder, "yes@corp.test")
        rejected = signup_verified(facade, recorder, "no@corp.test")
        facade.admin_approve(approved.id, admin[0].id)
        facade.admin_reject(rejected.id, admin[0].id, "Contractor")
        facade.dispatcher.flush()
        assert recorder.to("yes@corp.test", "account_approved")
        (mail,) = recorder.to("no@corp.test", "account_rejected")
        assert mail.variables["reason"] == "Contractor"

    def test_override_out_of_active_revokes_sessions(self, facade, recorder, admin) -> None:
        profile = active_employee(facade, recorder, admin[0].id, "suspend@corp.test")
        tokens = facade.sign_in("suspend@corp.test", PASSWORD).tokens
        facade.admin_override(profile.id, admin[0].id, status=ProfileStatus.rejected, reason="Left company")
        with pytest.raises(InvalidRefreshToken):
            facade.refresh(tokens.refresh_token)
        with pytest.raises(AccountRejected):
            facade.sign_in("suspend@corp.test", PASSWORD)

    def test_list_and_audit(self, facade, recorder, admin) -> None:
        profile = signup_verified(facade, recorder, "listed@corp.test")
        assert [p.id for p in facade.list_profiles(status=ProfileStatus.pending)] == [profile.id]
        facade.admin_approve(profile.id, admin[0].id)
        assert facade.list_profiles(status=ProfileStatus.pending) == []
        (event,) = facade.audit_trail(profile.id)
        assert event.to_status == ProfileStatus.active

    def test_create_admin_is_verified_and_active(self, facade, admin) -> None:
        account, profile = admin
        assert facade.store.get_account(account.id).email_verified is True
        assert profile.status == ProfileStatus.active
        assert profile.role == Role.admin


class TestFailures:
    def test_storage_error_becomes_internal(self, facade) -> None:
        with patch.object(
            facade.store, "get_account_by_email", side_effect=OperationalError("SELECT", {}, Exception("db down"))
        ):
            with pytest.raises(Internal):
                facade.sign_in("any@corp.test", PASSWORD)

    def test_notifier_failure_does_not_fail_signup(self, store, settings, caplog) -> None:
        class BrokenNotifier:
            def send(self, to, template_id, variables):
                raise ConnectionRefusedError("smtp down")

        dispatcher = NotificationDispatcher(BrokenNotifier(), max_workers=1)
        try:
            facade = AuthFacade(store, settings, dispatcher)
            with caplog.at_level("ERROR", logger="staffgate.notify"):
                result = facade.sign_up("resilient@corp.test", PASSWORD, "R")
                dispatcher.flush()
            assert result.account.email == "resilient@corp.test"
            assert "Failed to send email_confirmation email" in caplog.text
        finally:
            dispatcher.close()
