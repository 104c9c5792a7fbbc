"""
Identity provider contract.

The app never owns credentials or sessions; everything goes through a hosted
identity provider. This module describes the capabilities the sign-in flow
needs from that provider, independent of any wire format, so the flow and
the route guards can be exercised against an in-memory fake.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

EMAIL_CODE = "email_code"

STATUS_COMPLETE = "complete"
STATUS_NEEDS_FIRST_FACTOR = "needs_first_factor"
STATUS_TRANSFERABLE = "transferable"


class ProviderErrorKind(enum.Enum):
    IDENTIFIER_NOT_FOUND = "identifier_not_found"
    INVALID_CODE = "invalid_code"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """A failed provider call, carrying the provider's first error entry."""

    def __init__(
        self,
        kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        code: str | None = None,
        message: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message or code or kind.value)
        self.kind = kind
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class FirstFactor:
    strategy: str
    email_address_id: str | None = None


@dataclass(frozen=True)
class SignInAttempt:
    id: str
    status: str
    supported_first_factors: list[FirstFactor] = field(default_factory=list)
    created_session_id: str | None = None
    # Status of the external (OAuth) verification, when there is one.
    external_verification_status: str | None = None
    external_redirect_url: str | None = None

    @property
    def complete(self) -> bool:
        return self.status == STATUS_COMPLETE

    def email_code_factor(self) -> FirstFactor | None:
        for factor in self.supported_first_factors:
            if factor.strategy == EMAIL_CODE:
                return factor
        return None


@dataclass(frozen=True)
class SignUpAttempt:
    id: str
    status: str
    created_session_id: str | None = None

    @property
    def complete(self) -> bool:
        return self.status == STATUS_COMPLETE


@dataclass(frozen=True)
class UserProfile:
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    last_sign_in_at: int | None = None  # epoch milliseconds

    @property
    def full_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


@dataclass(frozen=True)
class Session:
    """An opaque provider session handle plus the user it belongs to."""

    id: str
    user: UserProfile = field(default_factory=UserProfile)


@dataclass(frozen=True)
class ClientState:
    active_session: Session | None = None


class IdentityProvider(ABC):
    """Capabilities consumed from the hosted identity provider."""

    @abstractmethod
    def begin_sign_in(self, identifier: str) -> SignInAttempt:
        """Start a sign-in for an email; raises IDENTIFIER_NOT_FOUND for unknown accounts."""

    @abstractmethod
    def prepare_first_factor(self, sign_in_id: str, factor: FirstFactor) -> SignInAttempt: ...

    @abstractmethod
    def attempt_first_factor(self, sign_in_id: str, code: str) -> SignInAttempt: ...

    @abstractmethod
    def get_sign_in(self, sign_in_id: str, rotating_token_nonce: str | None = None) -> SignInAttempt:
        """Reload a sign-in; the nonce is the one handed back on an OAuth redirect."""

    @abstractmethod
    def begin_sign_up(self, email: str) -> SignUpAttempt: ...

    @abstractmethod
    def prepare_email_verification(self, sign_up_id: str) -> SignUpAttempt: ...

    @abstractmethod
    def attempt_email_verification(self, sign_up_id: str, code: str) -> SignUpAttempt: ...

    @abstractmethod
    def get_sign_up(self, sign_up_id: str) -> SignUpAttempt: ...

    @abstractmethod
    def update_sign_up(self, sign_up_id: str, email: str) -> SignUpAttempt: ...

    @abstractmethod
    def transfer_sign_up(self) -> SignUpAttempt:
        """Create an account from a transferable external (OAuth) sign-in."""

    @abstractmethod
    def activate_session(self, session_id: str) -> None: ...

    @abstractmethod
    def begin_external_redirect(self, strategy: str, redirect_url: str, redirect_url_complete: str) -> SignInAttempt:
        """Start a federated sign-in; the returned attempt carries the URL to navigate to."""

    @abstractmethod
    def get_client(self) -> ClientState: ...

    @abstractmethod
    def end_session(self, session_id: str) -> None: ...
