import pytest
from flask import Flask

from auth import config as auth_config
from auth.config import auth_settings, init_auth, load_auth_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.setattr(auth_config, "load_dotenv", lambda: None)
    for name in ("CLERK_FRONTEND_API", "CLERK_OAUTH_STRATEGY", "CLERK_REQUEST_TIMEOUT", "AUTH_AFTER_SIGN_IN_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_missing_frontend_api_is_reported(monkeypatch):
    with pytest.raises(RuntimeError, match="CLERK_FRONTEND_API"):
        load_auth_settings()


def test_defaults(monkeypatch):
    monkeypatch.setenv("CLERK_FRONTEND_API", "clerk.example.com/")

    s = load_auth_settings()

    assert s.frontend_api == "https://clerk.example.com"
    assert s.api_base == "https://clerk.example.com/v1"
    assert s.oauth_strategy == "oauth_google"
    assert s.request_timeout is None
    assert s.after_sign_in_path == "/dashboard"


def test_overrides(monkeypatch):
    monkeypatch.setenv("CLERK_FRONTEND_API", "https://clerk.example.com")
    monkeypatch.setenv("CLERK_OAUTH_STRATEGY", "oauth_github")
    monkeypatch.setenv("CLERK_REQUEST_TIMEOUT", "12")
    monkeypatch.setenv("AUTH_AFTER_SIGN_IN_PATH", "home/")

    s = load_auth_settings()

    assert s.oauth_strategy == "oauth_github"
    assert s.request_timeout == 12.0
    assert s.after_sign_in_path == "/home"


def test_bad_timeout(monkeypatch):
    monkeypatch.setenv("CLERK_FRONTEND_API", "https://clerk.example.com")
    monkeypatch.setenv("CLERK_REQUEST_TIMEOUT", "soon")

    with pytest.raises(RuntimeError, match="CLERK_REQUEST_TIMEOUT"):
        load_auth_settings()


def test_init_auth_attaches_settings(settings):
    app = Flask(__name__)

    assert init_auth(app, settings) is settings
    assert auth_settings(app) is settings


def test_uninitialised_app():
    with pytest.raises(RuntimeError):
        auth_settings(Flask(__name__))
