"""
"Is a session currently active?"

The identity provider is the source of truth for sessions. `SessionSource`
is the capability the route guards and the flow use to ask it, so both can
be tested without a network. `ProviderSessionSource` asks the provider's
client endpoint and tells subscribers whenever the active session changes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

from .provider import IdentityProvider, ProviderError, Session

LOG = logging.getLogger(__name__)

SessionListener = Callable[[Session | None], None]

_UNKNOWN = object()


class SessionSource(ABC):
    @abstractmethod
    def current_session(self) -> Session | None: ...

    @abstractmethod
    def subscribe(self, on_change: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""


class ProviderSessionSource(SessionSource):
    """Session state as reported by the identity provider's client object."""

    def __init__(self, provider: IdentityProvider):
        self.provider = provider
        self._listeners: list[SessionListener] = []
        self._last_id: object = _UNKNOWN

    def subscribe(self, on_change: SessionListener) -> Callable[[], None]:
        self._listeners.append(on_change)

        def unsubscribe() -> None:
            if on_change in self._listeners:
                self._listeners.remove(on_change)

        return unsubscribe

    def current_session(self) -> Session | None:
        try:
            session = self.provider.get_client().active_session
        except ProviderError as exc:
            # Treat an unreachable provider as signed out; guards send the user to login.
            LOG.warning("Could not load provider client: %s", exc)
            session = None
        self._publish(session)
        return session

    def activate(self, session_id: str) -> None:
        self.provider.activate_session(session_id)
        self._publish(Session(id=session_id))

    def sign_out(self) -> None:
        session = self.current_session()
        if session is not None:
            self.provider.end_session(session.id)
        self._publish(None)

    def _publish(self, session: Session | None) -> None:
        new_id = session.id if session else None
        if self._last_id is not _UNKNOWN and new_id == self._last_id:
            return
        self._last_id = new_id
        for listener in list(self._listeners):
            listener(session)
