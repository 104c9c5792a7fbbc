import itertools
from typing import Dict, List, Optional, Tuple

import pytest

from auth.config import AuthSettings
from auth.flow import AuthFlowController, InFlightGuard
from auth.provider import (
    EMAIL_CODE,
    STATUS_COMPLETE,
    STATUS_NEEDS_FIRST_FACTOR,
    ClientState,
    FirstFactor,
    IdentityProvider,
    ProviderError,
    ProviderErrorKind,
    Session,
    SignInAttempt,
    SignUpAttempt,
    UserProfile,
)

VALID_CODE = "123456"
OAUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth?client_id=test"


class FakeProvider(IdentityProvider):
    """In-memory stand-in for the hosted identity provider.

    `sign_up_session_at` decides at which step a verified sign-up finally
    yields a session: "verify", "reload", "update", "sign_in" or "never".
    """

    def __init__(self) -> None:
        self.accounts: Dict[str, UserProfile] = {
            "existing@example.com": UserProfile(first_name="Ada", last_name="Lovelace", email="existing@example.com"),
        }
        self.calls: List[Tuple] = []
        self.sign_up_session_at = "verify"
        self.sign_in_first_factor_status = STATUS_COMPLETE
        self.oauth_result: Optional[SignInAttempt] = None
        self.fail_next: Dict[str, ProviderError] = {}
        self.active_session_id: Optional[str] = None
        self.client_token: Optional[str] = None
        self._sessions: Dict[str, str] = {}
        self._sign_ups: Dict[str, str] = {}
        self._verified: set = set()
        self._ids = itertools.count(1)

    def _record(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if name in self.fail_next:
            raise self.fail_next.pop(name)

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def _new_session(self, email: str) -> str:
        sid = f"sess_{next(self._ids)}"
        self._sessions[sid] = email
        return sid

    def _create_account(self, email: str) -> None:
        self.accounts.setdefault(email, UserProfile(email=email))
        self._verified.add(email)

    # ---- Sign-in ----

    def begin_sign_in(self, identifier: str) -> SignInAttempt:
        self._record("begin_sign_in", identifier)
        if identifier not in self.accounts:
            raise ProviderError(
                ProviderErrorKind.IDENTIFIER_NOT_FOUND,
                code="form_identifier_not_found",
                message="Couldn't find your account.",
                status_code=422,
            )
        if identifier in self._verified and self.sign_up_session_at == "sign_in":
            return SignInAttempt(id="sia_direct", status=STATUS_COMPLETE, created_session_id=self._new_session(identifier))
        return SignInAttempt(
            id=f"sia_{identifier}",
            status=STATUS_NEEDS_FIRST_FACTOR,
            supported_first_factors=[FirstFactor(strategy=EMAIL_CODE, email_address_id="idn_1")],
        )

    def prepare_first_factor(self, sign_in_id: str, factor: FirstFactor) -> SignInAttempt:
        self._record("prepare_first_factor", sign_in_id, factor.strategy, factor.email_address_id)
        return SignInAttempt(id=sign_in_id, status=STATUS_NEEDS_FIRST_FACTOR)

    def attempt_first_factor(self, sign_in_id: str, code: str) -> SignInAttempt:
        self._record("attempt_first_factor", sign_in_id, code)
        if code != VALID_CODE:
            raise ProviderError(ProviderErrorKind.INVALID_CODE, code="form_code_incorrect", message="Incorrect code")
        if self.sign_in_first_factor_status != STATUS_COMPLETE:
            return SignInAttempt(id=sign_in_id, status=self.sign_in_first_factor_status)
        email = sign_in_id[len("sia_"):]
        return SignInAttempt(id=sign_in_id, status=STATUS_COMPLETE, created_session_id=self._new_session(email))

    def get_sign_in(self, sign_in_id: str, rotating_token_nonce: Optional[str] = None) -> SignInAttempt:
        self._record("get_sign_in", sign_in_id, rotating_token_nonce)
        assert self.oauth_result is not None
        return self.oauth_result

    def begin_external_redirect(self, strategy: str, redirect_url: str, redirect_url_complete: str) -> SignInAttempt:
        self._record("begin_external_redirect", strategy, redirect_url, redirect_url_complete)
        return SignInAttempt(
            id="sia_oauth",
            status=STATUS_NEEDS_FIRST_FACTOR,
            external_verification_status="unverified",
            external_redirect_url=OAUTH_URL,
        )

    # ---- Sign-up ----

    def begin_sign_up(self, email: str) -> SignUpAttempt:
        self._record("begin_sign_up", email)
        sua = f"sua_{next(self._ids)}"
        self._sign_ups[sua] = email
        return SignUpAttempt(id=sua, status="missing_requirements")

    def prepare_email_verification(self, sign_up_id: str) -> SignUpAttempt:
        self._record("prepare_email_verification", sign_up_id)
        return SignUpAttempt(id=sign_up_id, status="missing_requirements")

    def attempt_email_verification(self, sign_up_id: str, code: str) -> SignUpAttempt:
        self._record("attempt_email_verification", sign_up_id, code)
        if code != VALID_CODE:
            raise ProviderError(ProviderErrorKind.INVALID_CODE, code="form_code_incorrect", message="Incorrect code")
        email = self._sign_ups[sign_up_id]
        self._create_account(email)
        if self.sign_up_session_at == "verify":
            return SignUpAttempt(id=sign_up_id, status=STATUS_COMPLETE, created_session_id=self._new_session(email))
        return SignUpAttempt(id=sign_up_id, status="missing_requirements")

    def get_sign_up(self, sign_up_id: str) -> SignUpAttempt:
        self._record("get_sign_up", sign_up_id)
        if self.sign_up_session_at == "reload":
            return SignUpAttempt(
                id=sign_up_id,
                status=STATUS_COMPLETE,
                created_session_id=self._new_session(self._sign_ups[sign_up_id]),
            )
        return SignUpAttempt(id=sign_up_id, status="missing_requirements")

    def update_sign_up(self, sign_up_id: str, email: str) -> SignUpAttempt:
        self._record("update_sign_up", sign_up_id, email)
        if self.sign_up_session_at == "update":
            return SignUpAttempt(id=sign_up_id, status=STATUS_COMPLETE, created_session_id=self._new_session(email))
        return SignUpAttempt(id=sign_up_id, status="missing_requirements")

    def transfer_sign_up(self) -> SignUpAttempt:
        self._record("transfer_sign_up")
        return SignUpAttempt(id="sua_transfer", status=STATUS_COMPLETE, created_session_id=self._new_session("oauth@example.com"))

    # ---- Sessions ----

    def activate_session(self, session_id: str) -> None:
        self._record("activate_session", session_id)
        self.active_session_id = session_id
        self.client_token = f"client_{session_id}"

    def get_client(self) -> ClientState:
        self._record("get_client")
        if not self.active_session_id:
            return ClientState()
        email = self._sessions.get(self.active_session_id, "")
        user = self.accounts.get(email, UserProfile(email=email))
        return ClientState(active_session=Session(id=self.active_session_id, user=user))

    def end_session(self, session_id: str) -> None:
        self._record("end_session", session_id)
        if self.active_session_id == session_id:
            self.active_session_id = None


@pytest.fixture()
def valid_code() -> str:
    """The only code `FakeProvider` accepts."""
    return VALID_CODE


@pytest.fixture()
def oauth_url() -> str:
    """Where `FakeProvider` sends the browser for federated sign-in."""
    return OAUTH_URL


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def controller(provider: FakeProvider) -> AuthFlowController:
    return AuthFlowController(provider, guard=InFlightGuard())


@pytest.fixture()
def settings() -> AuthSettings:
    return AuthSettings(
        frontend_api="https://clerk.example.com",
        oauth_strategy="oauth_google",
        request_timeout=None,
        after_sign_in_path="/dashboard",
    )


@pytest.fixture()
def app(provider: FakeProvider, settings: AuthSettings, tmp_path):
    from app import create_app

    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SESSION_TYPE": "filesystem",
            "SESSION_FILE_DIR": str(tmp_path / "sessions"),
            "SESSION_COOKIE_SECURE": False,
            "IDENTITY_PROVIDER_FACTORY": lambda _token: provider,
        },
        settings=settings,
    )


@pytest.fixture()
def client(app):
    return app.test_client()
