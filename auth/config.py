"""
Authentication configuration.

All settings are sourced from environment variables (a local `.env` file is
honoured for development). This module validates presence of required
settings and exposes a single `init_auth(app)` entrypoint.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
from flask import Flask


@dataclass(frozen=True)
class AuthSettings:
    """Configuration needed to talk to the hosted identity provider."""

    frontend_api: str
    oauth_strategy: str
    request_timeout: float | None
    after_sign_in_path: str

    @property
    def api_base(self) -> str:
        return f"{self.frontend_api}/v1"


def _env(name: str, default: str | None = None) -> str | None:
    val = os.environ.get(name)
    if val is None:
        return default
    val = val.strip()
    return val or default


def _path(name: str, default: str) -> str:
    raw = _env(name, default) or default
    return "/" + raw.strip("/")


def load_auth_settings() -> AuthSettings:
    """
    Load auth settings from environment variables.

    Required:
      - CLERK_FRONTEND_API (e.g. https://clerk.example.com)

    Optional:
      - CLERK_OAUTH_STRATEGY (default: oauth_google)
      - CLERK_REQUEST_TIMEOUT (seconds; unset means no client-side timeout)
      - AUTH_AFTER_SIGN_IN_PATH (default: /dashboard)
    """

    load_dotenv()

    frontend_api = (_env("CLERK_FRONTEND_API", "") or "").rstrip("/")
    if not frontend_api:
        raise RuntimeError(
            "Missing required auth environment variables: CLERK_FRONTEND_API. "
            "Set it in your deployment configuration (or your local env) before starting the app."
        )
    if not frontend_api.startswith(("https://", "http://")):
        frontend_api = "https://" + frontend_api

    timeout_raw = _env("CLERK_REQUEST_TIMEOUT")
    try:
        request_timeout = float(timeout_raw) if timeout_raw else None
    except ValueError:
        raise RuntimeError(f"CLERK_REQUEST_TIMEOUT must be a number of seconds, got {timeout_raw!r}.") from None

    return AuthSettings(
        frontend_api=frontend_api,
        oauth_strategy=_env("CLERK_OAUTH_STRATEGY", "oauth_google") or "oauth_google",
        request_timeout=request_timeout,
        after_sign_in_path=_path("AUTH_AFTER_SIGN_IN_PATH", "/dashboard"),
    )


def init_auth(app: Flask, settings: AuthSettings | None = None) -> AuthSettings:
    """
    Validate and attach auth settings to Flask `app.config`.

    Returns the parsed `AuthSettings` for convenience.
    """

    settings = settings or load_auth_settings()
    app.config["AUTH_SETTINGS"] = settings
    return settings


def auth_settings(app: Flask) -> AuthSettings:
    settings = app.config.get("AUTH_SETTINGS")
    if not isinstance(settings, AuthSettings):
        raise RuntimeError("Auth settings not initialized. Call auth.config.init_auth(app) during app startup.")
    return settings
