"""
Auth routes (email code + federated sign-in).

Endpoints:
  - GET  /login                 email form, or code form while a code is pending
  - POST /login/email           submit the email address
  - POST /login/verify          submit the verification code
  - POST /login/back            back to email (cancel the pending attempt)
  - POST /login/oauth           start the federated (OAuth) redirect
  - GET  /sso-callback          provider redirects back here mid-flow
  - POST /logout                end the provider session

Implementation notes:
  - The in-progress attempt is a `FlowSnapshot` kept in the server-side session.
  - Messages for the user go through `flash()`.
  - The identity provider owns sessions; this blueprint only activates or ends them.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin

from flask import Blueprint, current_app, flash, redirect, render_template, request, session, url_for

from .config import AuthSettings, auth_settings
from .context import get_provider, get_session_source
from .decorators import anonymous_required
from .flow import AuthFlowController, FlowSnapshot, FlowState, FlowStateError
from .provider import ProviderError

LOG = logging.getLogger(__name__)

FLOW_KEY = "auth_flow"
NEXT_KEY = "post_login_redirect"
EXTERNAL_SIGN_IN_KEY = "external_sign_in_id"

auth_bp = Blueprint("auth", __name__)


def _settings() -> AuthSettings:
    return auth_settings(current_app)


def _safe_next(target: str | None) -> str | None:
    """Only same-site relative paths are accepted as post-login targets."""

    if not target or not target.startswith("/") or target.startswith("//"):
        return None
    return target


def _controller() -> AuthFlowController:
    return AuthFlowController(
        get_provider(),
        FlowSnapshot.from_dict(session.get(FLOW_KEY)),
        activate=get_session_source().activate,
    )


def _finish(controller: AuthFlowController):
    for notice in controller.notices:
        flash(notice.message, notice.category)

    if controller.state is FlowState.AUTHENTICATED:
        session.pop(FLOW_KEY, None)
        return redirect(session.pop(NEXT_KEY, None) or _settings().after_sign_in_path)

    session[FLOW_KEY] = controller.snapshot.to_dict()
    return redirect(url_for("auth.login"))


@auth_bp.get("/login")
@anonymous_required
def login():
    """Render the email form, or the code form while verification is pending."""

    next_url = _safe_next(request.args.get("next"))
    if next_url:
        session[NEXT_KEY] = next_url

    # Stored up front: overlapping posts from this browser share one in-flight key.
    snapshot = FlowSnapshot.from_dict(session.get(FLOW_KEY))
    if FLOW_KEY not in session:
        session[FLOW_KEY] = snapshot.to_dict()
    return render_template("login.html", flow=snapshot)


@auth_bp.post("/login/email")
def submit_email():
    controller = _controller()
    try:
        controller.submit_identifier(request.form.get("email", ""))
    except FlowStateError as exc:
        flash(str(exc), "error")
        return redirect(url_for("auth.login"))
    return _finish(controller)


@auth_bp.post("/login/verify")
def submit_code():
    controller = _controller()
    try:
        controller.submit_verification_code(request.form.get("code", ""))
    except FlowStateError as exc:
        flash(str(exc), "error")
        return redirect(url_for("auth.login"))
    return _finish(controller)


@auth_bp.post("/login/back")
def back_to_email():
    controller = _controller()
    controller.cancel()
    session[FLOW_KEY] = controller.snapshot.to_dict()
    return redirect(url_for("auth.login"))


@auth_bp.post("/login/oauth")
def external_sign_in():
    """Hand the browser over to the identity provider for federated sign-in."""

    s = _settings()
    controller = _controller()
    attempt = controller.sign_in_with_external_provider(
        s.oauth_strategy,
        redirect_url=url_for("auth.sso_callback", _external=True),
        redirect_url_complete=urljoin(request.host_url, s.after_sign_in_path),
    )
    for notice in controller.notices:
        flash(notice.message, notice.category)
    if attempt is None:
        return redirect(url_for("auth.login"))

    session[EXTERNAL_SIGN_IN_KEY] = attempt.id
    return redirect(attempt.external_redirect_url)


@auth_bp.get("/sso-callback")
def sso_callback():
    """Finish a federated sign-in when the provider sends the browser back."""

    sign_in_id = session.pop(EXTERNAL_SIGN_IN_KEY, None)
    if not sign_in_id:
        flash("Sign in session expired. Please try again.", "error")
        return redirect(url_for("auth.login"))

    controller = _controller()
    try:
        controller.complete_external_sign_in(sign_in_id, request.args.get("rotating_token_nonce"))
    except FlowStateError as exc:
        flash(str(exc), "error")
        return redirect(url_for("auth.login"))

    for notice in controller.notices:
        flash(notice.message, notice.category)
    if controller.state is FlowState.AUTHENTICATED:
        session.pop(FLOW_KEY, None)
        return redirect(session.pop(NEXT_KEY, None) or _settings().after_sign_in_path)
    return redirect(url_for("auth.login"))


@auth_bp.post("/logout")
def logout():
    """End the provider session and forget any half-finished attempt."""

    try:
        get_session_source().sign_out()
    except ProviderError as exc:
        LOG.warning("Error signing out: %s", exc)
        flash("Error signing out", "error")
        return redirect(url_for("dashboard"))

    session.pop(FLOW_KEY, None)
    flash("Successfully signed out!", "success")
    return redirect(url_for("auth.login"))
