"""
Email-code authentication flow.

`AuthFlowController` drives one sign-in/sign-up attempt against the
identity provider:

  COLLECTING_IDENTIFIER --submit_identifier--> PENDING_VERIFICATION (SIGN_IN | SIGN_UP)
                                          \\--> AUTHENTICATED | FAILED
  PENDING_VERIFICATION --submit_verification_code--> AUTHENTICATED | FAILED
  any state --cancel--> COLLECTING_IDENTIFIER

Whether the attempt is a sign-in or a sign-up is decided by the provider's
answer to the first sign-in call, never by the user. Once a code is pending
the kind is fixed for that attempt. A FAILED flow that still holds a pending
attempt accepts another code; one without accepts a new identifier.

The controller keeps no session of its own: on success it hands the
provider's session id to the activator and forgets the attempt. The state
between requests lives in a `FlowSnapshot`, which is plain data so the web
layer can keep it in the user's session.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterator

from .fallback import Attempt, FallbackExhausted, FallbackPolicy
from .provider import (
    STATUS_NEEDS_FIRST_FACTOR,
    STATUS_TRANSFERABLE,
    IdentityProvider,
    ProviderError,
    ProviderErrorKind,
    SignInAttempt,
)

LOG = logging.getLogger(__name__)

MSG_SIGN_IN_CODE_SENT = "Verification code sent to your email!"
MSG_SIGN_UP_CODE_SENT = "Account created! Verification code sent to your email."
MSG_SIGNED_IN = "Successfully signed in!"
MSG_ACCOUNT_CREATED = "Account created and signed in!"
MSG_GENERIC = "An error occurred"
MSG_SIGN_UP_FAILED = "Error creating account"
MSG_NO_EMAIL_FACTOR = "This account cannot sign in with an email code."
MSG_SIGN_IN_VERIFICATION_FAILED = "Sign in verification failed. Please try again."
MSG_INVALID_CODE = "Invalid verification code. Please check and try again."
MSG_VERIFICATION_FAILED = "Verification failed. Please try again or contact support."
MSG_ACCOUNT_SETUP_INCOMPLETE = "Email verified but account setup incomplete. Please try signing in manually."
MSG_EXTERNAL_FAILED = "Google sign in failed"

INVALID_CODE_HINTS = ("code", "invalid", "incorrect")


class FlowState(enum.Enum):
    COLLECTING_IDENTIFIER = "collecting_identifier"
    PENDING_VERIFICATION = "pending_verification"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class FlowKind(enum.Enum):
    SIGN_IN = "sign_in"
    SIGN_UP = "sign_up"


class AuthErrorKind(enum.Enum):
    INVALID_CODE = "invalid_code"
    PROVIDER_ERROR = "provider_error"
    ACCOUNT_SETUP_INCOMPLETE = "account_setup_incomplete"


ERROR_MESSAGES = {
    AuthErrorKind.INVALID_CODE: MSG_INVALID_CODE,
    AuthErrorKind.PROVIDER_ERROR: MSG_VERIFICATION_FAILED,
    AuthErrorKind.ACCOUNT_SETUP_INCOMPLETE: MSG_ACCOUNT_SETUP_INCOMPLETE,
}


class FlowStateError(Exception):
    """An operation was requested in a state that does not allow it."""


class FlowBusy(FlowStateError):
    """Another operation on the same flow is still in flight."""


@dataclass(frozen=True)
class Notice:
    """A user-facing message; `category` matches Flask's flash categories."""

    category: str
    message: str
    error: AuthErrorKind | None = None


def _new_flow_id() -> str:
    return uuid.uuid4().hex


@dataclass
class FlowSnapshot:
    state: FlowState = FlowState.COLLECTING_IDENTIFIER
    identifier: str = ""
    kind: FlowKind | None = None
    attempt_id: str | None = None
    session_id: str | None = None
    error: AuthErrorKind | None = None
    flow_id: str = field(default_factory=_new_flow_id)

    @property
    def awaiting_code(self) -> bool:
        return self.kind is not None and self.attempt_id is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["kind"] = self.kind.value if self.kind else None
        data["error"] = self.error.value if self.error else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FlowSnapshot":
        if not data:
            return cls()
        try:
            return cls(
                state=FlowState(data.get("state") or FlowState.COLLECTING_IDENTIFIER.value),
                identifier=data.get("identifier") or "",
                kind=FlowKind(data["kind"]) if data.get("kind") else None,
                attempt_id=data.get("attempt_id"),
                session_id=data.get("session_id"),
                error=AuthErrorKind(data["error"]) if data.get("error") else None,
                flow_id=data.get("flow_id") or _new_flow_id(),
            )
        except ValueError:
            LOG.warning("Discarding unreadable flow snapshot")
            return cls()


class InFlightGuard:
    """Allows at most one operation per flow id at a time, process-wide."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._busy: set[str] = set()

    @contextlib.contextmanager
    def hold(self, flow_id: str) -> Iterator[None]:
        with self._lock:
            if flow_id in self._busy:
                raise FlowBusy("Please wait...")
            self._busy.add(flow_id)
        try:
            yield
        finally:
            with self._lock:
                self._busy.discard(flow_id)


IN_FLIGHT = InFlightGuard()


def classify_verification_error(exc: ProviderError) -> AuthErrorKind:
    """Map a provider error raised while checking a code onto the user-facing taxonomy."""

    if exc.kind is ProviderErrorKind.INVALID_CODE:
        return AuthErrorKind.INVALID_CODE
    if exc.kind is ProviderErrorKind.UNKNOWN and exc.message:
        lowered = exc.message.lower()
        if any(hint in lowered for hint in INVALID_CODE_HINTS):
            return AuthErrorKind.INVALID_CODE
    return AuthErrorKind.PROVIDER_ERROR


class AuthFlowController:
    """Runs the email-code sign-in/sign-up state machine for one user."""

    def __init__(
        self,
        provider: IdentityProvider,
        snapshot: FlowSnapshot | None = None,
        activate: Callable[[str], None] | None = None,
        guard: InFlightGuard | None = None,
    ):
        self.provider = provider
        self.snapshot = snapshot or FlowSnapshot()
        self.notices: list[Notice] = []
        self._activate = activate or provider.activate_session
        self._guard = guard or IN_FLIGHT

    @property
    def state(self) -> FlowState:
        return self.snapshot.state

    # ---- Operations ----

    def submit_identifier(self, identifier: str) -> FlowState:
        identifier = (identifier or "").strip()
        if not identifier:
            raise FlowStateError("An email address is required.")
        if self.snapshot.awaiting_code:
            raise FlowStateError("A verification code is already pending; go back to change the email.")
        if self.state is FlowState.AUTHENTICATED:
            raise FlowStateError("Already signed in.")

        with self._guard.hold(self.snapshot.flow_id):
            self.snapshot = FlowSnapshot(identifier=identifier, flow_id=self.snapshot.flow_id)
            try:
                attempt = self.provider.begin_sign_in(identifier)
                return self._continue_sign_in(attempt)
            except ProviderError as exc:
                if exc.kind is ProviderErrorKind.IDENTIFIER_NOT_FOUND:
                    LOG.debug("No account for identifier; falling back to sign-up")
                    return self._begin_sign_up(identifier)
                LOG.warning("Sign-in failed: %s", exc)
                return self._fail(exc.message or MSG_GENERIC, AuthErrorKind.PROVIDER_ERROR)

    def submit_verification_code(self, code: str) -> FlowState:
        if not self.snapshot.awaiting_code:
            raise FlowStateError("No verification is pending.")
        code = (code or "").strip()
        if not code:
            raise FlowStateError("Enter the verification code from your email.")

        with self._guard.hold(self.snapshot.flow_id):
            try:
                if self.snapshot.kind is FlowKind.SIGN_IN:
                    return self._verify_sign_in(code)
                return self._verify_sign_up(code)
            except ProviderError as exc:
                kind = classify_verification_error(exc)
                LOG.warning("Verification failed (%s): %s", kind.value, exc)
                return self._fail(ERROR_MESSAGES[kind], kind, keep_attempt=True)

    def cancel(self) -> FlowState:
        """Back to email: forget the identifier and any pending attempt."""

        self.snapshot = FlowSnapshot(flow_id=self.snapshot.flow_id)
        return self.state

    def sign_in_with_external_provider(self, strategy: str, redirect_url: str, redirect_url_complete: str) -> SignInAttempt | None:
        """
        Start a federated sign-in.

        Returns the provider's sign-in attempt (carrying the URL to send the
        browser to), or None with an error notice. The flow state is untouched.
        """

        try:
            attempt = self.provider.begin_external_redirect(strategy, redirect_url, redirect_url_complete)
        except ProviderError as exc:
            LOG.warning("External sign-in could not start: %s", exc)
            self._notify("error", exc.message or MSG_EXTERNAL_FAILED, AuthErrorKind.PROVIDER_ERROR)
            return None
        if not attempt.external_redirect_url:
            self._notify("error", MSG_EXTERNAL_FAILED, AuthErrorKind.PROVIDER_ERROR)
            return None
        return attempt

    def complete_external_sign_in(self, sign_in_id: str, rotating_token_nonce: str | None = None) -> FlowState:
        """Finish a federated sign-in after the provider redirects back."""

        with self._guard.hold(self.snapshot.flow_id):
            try:
                attempt = self.provider.get_sign_in(sign_in_id, rotating_token_nonce=rotating_token_nonce)
                if attempt.complete and attempt.created_session_id:
                    return self._authenticate(attempt.created_session_id, MSG_SIGNED_IN)
                if attempt.external_verification_status == STATUS_TRANSFERABLE:
                    sign_up = self.provider.transfer_sign_up()
                    if sign_up.complete and sign_up.created_session_id:
                        return self._authenticate(sign_up.created_session_id, MSG_ACCOUNT_CREATED)
                LOG.info("External sign-in ended in status %r", attempt.status)
                return self._fail(MSG_EXTERNAL_FAILED, AuthErrorKind.PROVIDER_ERROR)
            except ProviderError as exc:
                LOG.warning("External sign-in failed: %s", exc)
                return self._fail(exc.message or MSG_EXTERNAL_FAILED, AuthErrorKind.PROVIDER_ERROR)

    # ---- Sign-in path ----

    def _continue_sign_in(self, attempt: SignInAttempt) -> FlowState:
        if attempt.status == STATUS_NEEDS_FIRST_FACTOR:
            factor = attempt.email_code_factor()
            if factor is None:
                return self._fail(MSG_NO_EMAIL_FACTOR, AuthErrorKind.PROVIDER_ERROR)
            self.provider.prepare_first_factor(attempt.id, factor)
            return self._pending(FlowKind.SIGN_IN, attempt.id, MSG_SIGN_IN_CODE_SENT)
        if attempt.complete and attempt.created_session_id:
            return self._authenticate(attempt.created_session_id, MSG_SIGNED_IN)
        LOG.info("Unexpected sign-in status %r", attempt.status)
        return self._fail(MSG_GENERIC, AuthErrorKind.PROVIDER_ERROR)

    def _verify_sign_in(self, code: str) -> FlowState:
        attempt = self.provider.attempt_first_factor(self.snapshot.attempt_id, code)
        if attempt.complete and attempt.created_session_id:
            return self._authenticate(attempt.created_session_id, MSG_SIGNED_IN)
        LOG.info("Sign-in verification ended in status %r", attempt.status)
        return self._fail(MSG_SIGN_IN_VERIFICATION_FAILED, AuthErrorKind.PROVIDER_ERROR, keep_attempt=True)

    # ---- Sign-up path ----

    def _begin_sign_up(self, email: str) -> FlowState:
        try:
            sign_up = self.provider.begin_sign_up(email)
            if sign_up.complete and sign_up.created_session_id:
                return self._authenticate(sign_up.created_session_id, MSG_ACCOUNT_CREATED)
            self.provider.prepare_email_verification(sign_up.id)
        except ProviderError as exc:
            LOG.warning("Sign-up failed: %s", exc)
            return self._fail(exc.message or MSG_SIGN_UP_FAILED, AuthErrorKind.PROVIDER_ERROR)
        return self._pending(FlowKind.SIGN_UP, sign_up.id, MSG_SIGN_UP_CODE_SENT)

    def sign_up_completion_policy(self, code: str) -> FallbackPolicy:
        """
        Steps that turn a verified sign-up into a live session.

        The provider can leave a sign-up verified with no session yet; each
        step below is safe to try after the previous one partly succeeded.
        """

        sign_up_id = self.snapshot.attempt_id
        email = self.snapshot.identifier
        provider = self.provider

        def verify_email() -> str | None:
            result = provider.attempt_email_verification(sign_up_id, code)
            return result.created_session_id if result.complete else None

        def existing_session() -> str | None:
            return provider.get_sign_up(sign_up_id).created_session_id

        def finalize_sign_up() -> str | None:
            result = provider.update_sign_up(sign_up_id, email)
            return result.created_session_id if result.complete else None

        def direct_sign_in() -> str | None:
            result = provider.begin_sign_in(email)
            return result.created_session_id if result.complete else None

        return FallbackPolicy(
            [
                Attempt("verify_email", verify_email, propagate_errors=True),
                Attempt("existing_session", existing_session),
                Attempt("finalize_sign_up", finalize_sign_up),
                Attempt("direct_sign_in", direct_sign_in),
            ]
        )

    def _verify_sign_up(self, code: str) -> FlowState:
        try:
            result = self.sign_up_completion_policy(code).run()
        except FallbackExhausted as exc:
            LOG.warning("Sign-up could not be completed after %s", ", ".join(exc.tried))
            return self._fail(MSG_ACCOUNT_SETUP_INCOMPLETE, AuthErrorKind.ACCOUNT_SETUP_INCOMPLETE)
        LOG.debug("Sign-up completed via %s", result.winner)
        return self._authenticate(result.session_id, MSG_ACCOUNT_CREATED)

    # ---- Transitions ----

    def _pending(self, kind: FlowKind, attempt_id: str, message: str) -> FlowState:
        self.snapshot.state = FlowState.PENDING_VERIFICATION
        self.snapshot.kind = kind
        self.snapshot.attempt_id = attempt_id
        self.snapshot.error = None
        self._notify("success", message)
        LOG.debug("Flow %s pending %s verification", self.snapshot.flow_id, kind.value)
        return self.state

    def _authenticate(self, session_id: str, message: str) -> FlowState:
        self._activate(session_id)
        self.snapshot = FlowSnapshot(
            state=FlowState.AUTHENTICATED,
            identifier=self.snapshot.identifier,
            session_id=session_id,
            flow_id=self.snapshot.flow_id,
        )
        self._notify("success", message)
        LOG.debug("Flow %s authenticated", self.snapshot.flow_id)
        return self.state

    def _fail(self, message: str, error: AuthErrorKind, keep_attempt: bool = False) -> FlowState:
        self.snapshot.state = FlowState.FAILED
        self.snapshot.error = error
        self.snapshot.session_id = None
        if not keep_attempt:
            self.snapshot.kind = None
            self.snapshot.attempt_id = None
        self._notify("error", message, error)
        return self.state

    def _notify(self, category: str, message: str, error: AuthErrorKind | None = None) -> None:
        self.notices.append(Notice(category=category, message=message, error=error))
