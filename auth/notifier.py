"""
auth/notifier.py -- Outbound email: the Notifier capability and its dispatcher.

Notifier is the collaborator interface: send(to, template_id, variables).
Two implementations ship:
  SmtpNotifier -- renders Jinja2 templates and sends through smtplib
  LogNotifier  -- logs what would be sent; used when SMTP is not configured

NotificationDispatcher makes every send fire-and-forget. dispatch() hands the
send to a small thread pool and returns immediately, so no HTTP response waits
on mail-transport latency. Failures are logged, never raised to the caller and
never retried here -- retry, if wanted, belongs inside a Notifier.
"""

from __future__ import annotations

import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from threading import Condition
from typing import Protocol

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from core.config import Settings

logger = logging.getLogger("staffgate.notify")

# ---------------------------------------------------------------------------
# Templates -- (subject, body) pairs keyed by template id
# ---------------------------------------------------------------------------

EMAIL_CONFIRMATION = "email_confirmation"
APPROVAL_REQUEST = "approval_request"
ACCOUNT_APPROVED = "account_approved"
ACCOUNT_REJECTED = "account_rejected"
PASSWORD_RESET = "password_reset"
PASSWORD_CHANGED = "password_changed"

_TEMPLATES: dict[str, tuple[str, str]] = {
    EMAIL_CONFIRMATION: (
        "Confirm your email address",
        "Hi {{ full_name }},\n\n"
        "Thanks for signing up. Confirm your email address by opening the link below:\n\n"
        "{{ confirmation_url }}\n\n"
        "The link expires in {{ expires_minutes }} minutes.\n"
        "{% if pending_approval %}\nAfter confirming, an administrator still needs to approve your account.\n{% endif %}",
    ),
    APPROVAL_REQUEST: (
        "New employee awaiting approval: {{ employee_name }}",
        "Hi {{ admin_name }},\n\n"
        "{{ employee_name }} ({{ employee_email }}) signed up on {{ signup_date }} and is waiting for approval.\n\n"
        "Review pending employees here: {{ approval_url }}\n",
    ),
    ACCOUNT_APPROVED: (
        "Your account has been approved",
        "Hi {{ full_name }},\n\n"
        "An administrator approved your account. You can now sign in:\n\n"
        "{{ login_url }}\n",
    ),
    ACCOUNT_REJECTED: (
        "Your account request was not approved",
        "Hi {{ full_name }},\n\n"
        "An administrator reviewed your account request and did not approve it."
        "{% if reason %}\n\nReason: {{ reason }}{% endif %}\n",
    ),
    PASSWORD_RESET: (
        "Reset your password",
        "Hi {{ full_name }},\n\n"
        "We received a request to reset your password. Open the link below to choose a new one:\n\n"
        "{{ reset_url }}\n\n"
        "The link expires in {{ expires_minutes }} minutes. If you did not ask for this, ignore this email.\n",
    ),
    PASSWORD_CHANGED: (
        "Your password was changed",
        "Hi {{ full_name }},\n\n"
        "Your password was just changed and all other sessions were signed out.\n"
        "If this wasn't you, reset your password immediately.\n",
    ),
}


class Notifier(Protocol):
    def send(self, to: str, template_id: str, variables: dict) -> None: ...


def _build_environment() -> Environment:
    loader = DictLoader({f"{name}.subject": subject for name, (subject, _) in _TEMPLATES.items()})
    loader.mapping.update({f"{name}.body": body for name, (_, body) in _TEMPLATES.items()})
    return Environment(
        loader=loader,
        autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )


class TemplateRenderer:
    """Render (subject, body) for a template id. Unknown ids raise KeyError."""

    def __init__(self) -> None:
        self._env = _build_environment()

    def render(self, template_id: str, variables: dict) -> tuple[str, str]:
        if template_id not in _TEMPLATES:
            raise KeyError(f"Unknown email template: {template_id!r}")
        subject = self._env.get_template(f"{template_id}.subject").render(**variables)
        body = self._env.get_template(f"{template_id}.body").render(**variables)
        return subject.strip(), body


# ---------------------------------------------------------------------------
# Notifier implementations
# ---------------------------------------------------------------------------


class LogNotifier:
    """Development notifier: logs the rendered subject instead of sending.

    The body is not logged because it contains single-use links.
    """

    def __init__(self) -> None:
        self._renderer = TemplateRenderer()

    def send(self, to: str, template_id: str, variables: dict) -> None:
        subject, _body = self._renderer.render(template_id, variables)
        logger.info("Email not configured -- would send %r to %s (template=%s)", subject, to, template_id)


class SmtpNotifier:
    """Render with Jinja2 and deliver over SMTP (STARTTLS when enabled)."""

    def __init__(self, settings: Settings, timeout: float = 10.0) -> None:
        self._host = settings.smtp_host
        self._port = settings.smtp_port
        self._user = settings.smtp_user
        self._password = settings.smtp_password
        self._use_tls = settings.smtp_use_tls
        self._sender = settings.mail_from
        self._timeout = timeout
        self._renderer = TemplateRenderer()

    def send(self, to: str, template_id: str, variables: dict) -> None:
        subject, body = self._renderer.render(template_id, variables)
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._sender
        message["To"] = to
        message.set_content(body)

        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._user:
                smtp.login(self._user, self._password)
            smtp.send_message(message)
        logger.info("Sent %s email to %s", template_id, to)


def build_notifier(settings: Settings) -> Notifier:
    if settings.smtp_configured:
        return SmtpNotifier(settings)
    logger.warning("SMTP is not configured -- outbound email will only be logged")
    return LogNotifier()


# ---------------------------------------------------------------------------
# Fire-and-forget dispatch
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Run Notifier.send on a thread pool and log any failure.

    Usage:
        dispatcher = NotificationDispatcher(notifier, max_workers=2)
        dispatcher.dispatch("a@x.com", EMAIL_CONFIRMATION, {...})   # returns at once
        dispatcher.close()                                           # on shutdown
    """

    def __init__(self, notifier: Notifier, max_workers: int = 2) -> None:
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="staffgate-mail")
        self._pending: set[Future] = set()
        self._idle = Condition()

    def dispatch(self, to: str, template_id: str, variables: dict) -> Future:
        future = self._executor.submit(self.notifier.send, to, template_id, variables)
        with self._idle:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._finished(f, to, template_id))
        return future

    def _finished(self, future: Future, to: str, template_id: str) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to send %s email to %s: %s", template_id, to, exc, exc_info=exc)
        with self._idle:
            self._pending.discard(future)
            if not self._pending:
                self._idle.notify_all()

    def flush(self, timeout: float | None = None) -> None:
        """Block until every dispatched send has finished (tests and shutdown)."""
        with self._idle:
            self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
