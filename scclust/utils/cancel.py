"""Cooperative cancellation for long-running stages.

Stages call ``token.raise_if_cancelled()`` between work units (one cluster,
one permutation replicate, one gene chunk). Partial results live in local
scratch variables, so an aborted stage leaves the session untouched.
"""

import threading
from typing import Optional

from ..errors import StageCancelledError


class CancellationToken:
    """Thread-safe cancellation flag.

    Example
    -------
    >>> token = CancellationToken()
    >>> token.cancel("user interrupt")
    >>> token.raise_if_cancelled()
    Traceback (most recent call last):
    ...
    scclust.errors.StageCancelledError: user interrupt
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: Optional[str] = None) -> None:
        if self._event.is_set():
            message = self._reason if where is None else f"{self._reason} ({where})"
            raise StageCancelledError(message)


def check(token: Optional[CancellationToken], where: Optional[str] = None) -> None:
    """Raise if ``token`` is set; a None token never cancels."""
    if token is not None:
        token.raise_if_cancelled(where)
