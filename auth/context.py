"""
Per-request access to the identity provider and session source.

Each request gets its own provider client (it carries the user's provider
client token) and its own `ProviderSessionSource`, cached on `flask.g`.
Tests swap the provider by setting `IDENTITY_PROVIDER_FACTORY` in the app
config to a callable taking the stored client token.
"""

from __future__ import annotations

from typing import Callable

from flask import Flask, current_app, g, session

from .clerk import ClerkFrontendClient
from .config import auth_settings
from .provider import IdentityProvider
from .sessions import ProviderSessionSource

CLIENT_TOKEN_KEY = "provider_client_token"

ProviderFactory = Callable[[str | None], IdentityProvider]


def _clerk_factory(client_token: str | None) -> IdentityProvider:
    return ClerkFrontendClient(auth_settings(current_app), client_token=client_token)


def get_provider() -> IdentityProvider:
    if "identity_provider" not in g:
        factory: ProviderFactory = current_app.config.get("IDENTITY_PROVIDER_FACTORY") or _clerk_factory
        g.identity_provider = factory(session.get(CLIENT_TOKEN_KEY))
    return g.identity_provider


def get_session_source() -> ProviderSessionSource:
    if "session_source" not in g:
        g.session_source = ProviderSessionSource(get_provider())
    return g.session_source


def _persist_client_token(response):
    provider = g.get("identity_provider")
    token = getattr(provider, "client_token", None)
    if token and session.get(CLIENT_TOKEN_KEY) != token:
        session[CLIENT_TOKEN_KEY] = token
    return response


def init_context(app: Flask) -> None:
    app.after_request(_persist_client_token)
