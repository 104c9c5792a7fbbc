"""
Route decorators for authentication.

- `login_required`: the provider must report an active session.
- `anonymous_required`: signed-in users are sent on to the landing page.

Both ask the identity provider on every page load; nothing is cached between
requests beyond what templates display.
"""

from __future__ import annotations

from functools import wraps
from typing import Callable, TypeVar

from flask import current_app, g, redirect, request, url_for

from .config import auth_settings
from .context import get_session_source

F = TypeVar("F", bound=Callable[..., object])


def login_required(fn: F) -> F:
    """Ensure the user is signed in; otherwise redirect to login."""

    @wraps(fn)
    def wrapper(*args, **kwargs):  # type: ignore[no-untyped-def]
        active = get_session_source().current_session()
        if active is not None:
            g.current_session = active
            return fn(*args, **kwargs)
        return redirect(url_for("auth.login", next=request.full_path.rstrip("?")))

    return wrapper  # type: ignore[return-value]


def anonymous_required(fn: F) -> F:
    """Send already signed-in users to the post-sign-in page."""

    @wraps(fn)
    def wrapper(*args, **kwargs):  # type: ignore[no-untyped-def]
        if get_session_source().current_session() is not None:
            return redirect(auth_settings(current_app).after_sign_in_path)
        return fn(*args, **kwargs)

    return wrapper  # type: ignore[return-value]
