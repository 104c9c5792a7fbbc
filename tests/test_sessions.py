from auth.provider import ProviderError
from auth.sessions import ProviderSessionSource


def _sign_in(provider, code):
    attempt = provider.begin_sign_in("existing@example.com")
    return provider.attempt_first_factor(attempt.id, code).created_session_id


def test_no_active_session(provider):
    assert ProviderSessionSource(provider).current_session() is None


def test_subscribers_see_activation_and_sign_out(provider, valid_code):
    source = ProviderSessionSource(provider)
    seen = []
    source.subscribe(seen.append)

    assert source.current_session() is None
    session_id = _sign_in(provider, valid_code)
    source.activate(session_id)
    active = source.current_session()
    source.sign_out()

    assert active.id == session_id
    assert active.user.first_name == "Ada"
    assert [s.id if s else None for s in seen] == [None, session_id, None]
    assert provider.active_session_id is None
    assert ("end_session", session_id) in provider.calls


def test_unchanged_session_is_not_republished(provider):
    source = ProviderSessionSource(provider)
    seen = []
    source.subscribe(seen.append)

    source.current_session()
    source.current_session()

    assert seen == [None]


def test_unsubscribe(provider):
    source = ProviderSessionSource(provider)
    seen = []
    unsubscribe = source.subscribe(seen.append)
    unsubscribe()
    unsubscribe()

    source.current_session()
    assert seen == []


def test_unreachable_provider_reads_as_signed_out(provider):
    source = ProviderSessionSource(provider)
    provider.fail_next["get_client"] = ProviderError()

    assert source.current_session() is None
