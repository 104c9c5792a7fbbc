"""
Ordered fallback policy.

A `FallbackPolicy` runs a fixed list of named attempts, in order, and stops
at the first one that yields a session id. Each attempt runs at most once;
the chain never loops. An attempt marked `propagate_errors` lets provider
errors escape (used where the error itself is meaningful to the user, such as
an invalid verification code); otherwise a provider error is logged and
counted as a miss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from .provider import ProviderError

LOG = logging.getLogger(__name__)


class FallbackExhausted(Exception):
    """Every attempt in the policy missed."""

    def __init__(self, tried: list[str]):
        super().__init__("All fallback attempts missed: " + ", ".join(tried))
        self.tried = tried


@dataclass(frozen=True)
class Attempt:
    name: str
    run: Callable[[], str | None]
    propagate_errors: bool = False


@dataclass(frozen=True)
class FallbackResult:
    session_id: str
    winner: str
    tried: tuple[str, ...]


class FallbackPolicy:
    """First-success-wins chain of attempt strategies."""

    def __init__(self, attempts: Sequence[Attempt]):
        if not attempts:
            raise ValueError("FallbackPolicy needs at least one attempt.")
        self.attempts = tuple(attempts)

    @property
    def names(self) -> list[str]:
        return [a.name for a in self.attempts]

    def run(self) -> FallbackResult:
        tried: list[str] = []
        for attempt in self.attempts:
            tried.append(attempt.name)
            try:
                session_id = attempt.run()
            except ProviderError as exc:
                if attempt.propagate_errors:
                    raise
                LOG.warning("Fallback attempt %r failed: %s", attempt.name, exc)
                continue
            if session_id:
                LOG.debug("Fallback attempt %r produced a session", attempt.name)
                return FallbackResult(session_id=session_id, winner=attempt.name, tried=tuple(tried))
            LOG.debug("Fallback attempt %r produced no session", attempt.name)
        raise FallbackExhausted(tried)
