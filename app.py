"""
Flask web app: email-code sign-in and a small authenticated dashboard.

Identity is delegated to a hosted identity provider (Clerk, see `auth/`):
  - sign-in / sign-up by emailed verification code
  - federated (OAuth) sign-in via provider redirect
  - the provider decides whether a session is active on every page load

Server-side sessions (filesystem) via Flask-Session hold only the in-progress
sign-in attempt and the provider's client token.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Mapping

from dotenv import load_dotenv
from flask import Flask, g, redirect, render_template, url_for
from flask_session import Session
from werkzeug.middleware.proxy_fix import ProxyFix

from auth.config import AuthSettings, init_auth
from auth.context import get_session_source, init_context
from auth.decorators import login_required
from auth.routes import auth_bp

def setup_logging() -> None:
    """Configure root logging once; LOG_LEVEL overrides the INFO default."""

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%d-%b-%y %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def format_timestamp(epoch_ms: int | None) -> str:
    """Render a provider timestamp (epoch milliseconds) for display."""

    if not epoch_ms:
        return "N/A"
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def create_app(config: Mapping[str, Any] | None = None, settings: AuthSettings | None = None) -> Flask:
    load_dotenv()
    setup_logging()

    app = Flask(__name__)

    # Respect proxy headers so url_for(..., _external=True) yields the public https URL
    # handed to the identity provider as a redirect target.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[assignment]

    # ---- Security / Sessions ----
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "")

    app.config.update(
        SESSION_TYPE="filesystem",
        SESSION_PERMANENT=False,
        SESSION_USE_SIGNER=True,
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=os.environ.get("FLASK_COOKIE_SECURE", "true").lower() == "true",
        SESSION_FILE_DIR=os.environ.get("FLASK_SESSION_DIR") or os.path.join(os.getcwd(), ".flask_session"),
    )
    if config:
        app.config.update(config)
        app.secret_key = app.config.get("SECRET_KEY") or app.secret_key

    if not app.secret_key:
        raise RuntimeError(
            "Missing FLASK_SECRET_KEY. Set it as an environment variable in your deployment "
            "configuration or in your local environment before starting."
        )

    if app.config["SESSION_TYPE"] == "filesystem":
        os.makedirs(app.config["SESSION_FILE_DIR"], exist_ok=True)
    Session(app)

    # ---- Authentication ----
    init_auth(app, settings)
    init_context(app)
    app.register_blueprint(auth_bp)
    app.add_template_filter(format_timestamp, "timestamp")

    @app.route("/")
    def index():
        if get_session_source().current_session() is not None:
            return redirect(url_for("dashboard"))
        return redirect(url_for("auth.login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        return render_template("dashboard.html", active=g.current_session)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5050)
