"""
Clerk Frontend API client.

Implements `IdentityProvider` over plain HTTPS using `requests`. The app
talks to Clerk in "native" mode: instead of browser cookies, the Clerk
client token travels in the `Authorization` header and Clerk hands back a
refreshed token on every response. The caller persists `client_token`
between requests (the web session holds it).

Errors come back as `{"errors": [{"code", "message", "long_message"}]}`;
the first entry is mapped onto a `ProviderError` with a structured kind.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from .config import AuthSettings
from .provider import (
    EMAIL_CODE,
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

LOG = logging.getLogger(__name__)

IDENTIFIER_NOT_FOUND_CODES = frozenset({"form_identifier_not_found"})
INVALID_CODE_CODES = frozenset(
    {
        "form_code_incorrect",
        "verification_failed",
        "verification_expired",
        "form_param_format_invalid",
    }
)


def _error_kind(code: str | None) -> ProviderErrorKind:
    if code in IDENTIFIER_NOT_FOUND_CODES:
        return ProviderErrorKind.IDENTIFIER_NOT_FOUND
    if code in INVALID_CODE_CODES:
        return ProviderErrorKind.INVALID_CODE
    return ProviderErrorKind.UNKNOWN


def parse_error(resp: requests.Response) -> ProviderError:
    """Build a `ProviderError` from a non-2xx Frontend API response."""

    try:
        payload = resp.json()
    except ValueError:
        payload = {}
    errors = payload.get("errors") if isinstance(payload, dict) else None
    first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else {}
    code = first.get("code")
    return ProviderError(
        kind=_error_kind(code),
        code=code,
        message=first.get("message") or None,
        status_code=resp.status_code,
    )


def _require_id(obj: dict[str, Any]) -> str:
    attempt_id = obj.get("id")
    if not attempt_id:
        LOG.warning("Clerk response without an id: %s", sorted(obj))
        raise ProviderError(ProviderErrorKind.UNKNOWN)
    return attempt_id


def _sign_in(obj: dict[str, Any]) -> SignInAttempt:
    factors = [
        FirstFactor(strategy=f.get("strategy", ""), email_address_id=f.get("email_address_id"))
        for f in obj.get("supported_first_factors") or []
        if isinstance(f, dict)
    ]
    verification = obj.get("first_factor_verification") or {}
    return SignInAttempt(
        id=_require_id(obj),
        status=obj.get("status") or "",
        supported_first_factors=factors,
        created_session_id=obj.get("created_session_id"),
        external_verification_status=verification.get("status"),
        external_redirect_url=verification.get("external_verification_redirect_url"),
    )


def _sign_up(obj: dict[str, Any]) -> SignUpAttempt:
    return SignUpAttempt(
        id=_require_id(obj),
        status=obj.get("status") or "",
        created_session_id=obj.get("created_session_id"),
    )


def _user(obj: dict[str, Any] | None) -> UserProfile:
    if not obj:
        return UserProfile()
    primary_id = obj.get("primary_email_address_id")
    emails = obj.get("email_addresses") or []
    email = None
    for entry in emails:
        if entry.get("id") == primary_id:
            email = entry.get("email_address")
            break
    if email is None and emails:
        email = emails[0].get("email_address")
    return UserProfile(
        first_name=obj.get("first_name"),
        last_name=obj.get("last_name"),
        email=email,
        last_sign_in_at=obj.get("last_sign_in_at"),
    )


def _client(obj: dict[str, Any] | None) -> ClientState:
    if not obj:
        return ClientState()
    active_id = obj.get("last_active_session_id")
    if not active_id:
        return ClientState()
    for sess in obj.get("sessions") or []:
        if sess.get("id") == active_id and sess.get("status", "active") == "active":
            return ClientState(active_session=Session(id=active_id, user=_user(sess.get("user"))))
    return ClientState()


class ClerkFrontendClient(IdentityProvider):
    """Thin wrapper around the Clerk Frontend API endpoints used by the sign-in flow."""

    def __init__(self, settings: AuthSettings, client_token: str | None = None, http: requests.Session | None = None):
        self._settings = settings
        self._http = http or requests.Session()
        self.client_token = client_token

    def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._settings.api_base}{path}"
        headers = {"Accept": "application/json"}
        if self.client_token:
            headers["Authorization"] = self.client_token

        LOG.debug("Clerk %s %s", method, path)
        try:
            resp = self._http.request(
                method,
                url,
                params={"_is_native": "1", **(params or {})},
                data=data,
                headers=headers,
                timeout=self._settings.request_timeout,
            )
        except requests.RequestException as exc:
            LOG.warning("Clerk %s %s failed: %s", method, path, exc)
            raise ProviderError(ProviderErrorKind.UNKNOWN) from exc

        refreshed = resp.headers.get("Authorization")
        if refreshed:
            self.client_token = refreshed

        if not resp.ok:
            err = parse_error(resp)
            LOG.info("Clerk %s %s -> %s (%s)", method, path, resp.status_code, err.code)
            raise err

        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProviderError(ProviderErrorKind.UNKNOWN, status_code=resp.status_code) from exc
        return payload if isinstance(payload, dict) else {}

    def _response(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload = self._request(method, path, data, params)
        obj = payload.get("response")
        if not isinstance(obj, dict):
            raise ProviderError(ProviderErrorKind.UNKNOWN)
        return obj

    # ---- Sign-in ----

    def begin_sign_in(self, identifier: str) -> SignInAttempt:
        return _sign_in(self._response("POST", "/client/sign_ins", {"identifier": identifier}))

    def prepare_first_factor(self, sign_in_id: str, factor: FirstFactor) -> SignInAttempt:
        data = {"strategy": factor.strategy}
        if factor.email_address_id:
            data["email_address_id"] = factor.email_address_id
        return _sign_in(self._response("POST", f"/client/sign_ins/{sign_in_id}/prepare_first_factor", data))

    def attempt_first_factor(self, sign_in_id: str, code: str) -> SignInAttempt:
        data = {"strategy": EMAIL_CODE, "code": code}
        return _sign_in(self._response("POST", f"/client/sign_ins/{sign_in_id}/attempt_first_factor", data))

    def get_sign_in(self, sign_in_id: str, rotating_token_nonce: str | None = None) -> SignInAttempt:
        params = {"rotating_token_nonce": rotating_token_nonce} if rotating_token_nonce else None
        return _sign_in(self._response("GET", f"/client/sign_ins/{sign_in_id}", params=params))

    def begin_external_redirect(self, strategy: str, redirect_url: str, redirect_url_complete: str) -> SignInAttempt:
        data = {
            "strategy": strategy,
            "redirect_url": redirect_url,
            "action_complete_redirect_url": redirect_url_complete,
        }
        return _sign_in(self._response("POST", "/client/sign_ins", data))

    # ---- Sign-up ----

    def begin_sign_up(self, email: str) -> SignUpAttempt:
        return _sign_up(self._response("POST", "/client/sign_ups", {"email_address": email}))

    def prepare_email_verification(self, sign_up_id: str) -> SignUpAttempt:
        data = {"strategy": EMAIL_CODE}
        return _sign_up(self._response("POST", f"/client/sign_ups/{sign_up_id}/prepare_verification", data))

    def attempt_email_verification(self, sign_up_id: str, code: str) -> SignUpAttempt:
        data = {"strategy": EMAIL_CODE, "code": code}
        return _sign_up(self._response("POST", f"/client/sign_ups/{sign_up_id}/attempt_verification", data))

    def get_sign_up(self, sign_up_id: str) -> SignUpAttempt:
        return _sign_up(self._response("GET", f"/client/sign_ups/{sign_up_id}"))

    def update_sign_up(self, sign_up_id: str, email: str) -> SignUpAttempt:
        return _sign_up(self._response("PATCH", f"/client/sign_ups/{sign_up_id}", {"email_address": email}))

    def transfer_sign_up(self) -> SignUpAttempt:
        return _sign_up(self._response("POST", "/client/sign_ups", {"transfer": "true"}))

    # ---- Sessions ----

    def activate_session(self, session_id: str) -> None:
        self._request("POST", f"/client/sessions/{session_id}/touch")

    def get_client(self) -> ClientState:
        payload = self._request("GET", "/client")
        obj = payload.get("response")
        return _client(obj if isinstance(obj, dict) else None)

    def end_session(self, session_id: str) -> None:
        self._request("POST", f"/client/sessions/{session_id}/remove")
