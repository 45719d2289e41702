"""Credential listener registry -- fan-out of access tokens to interested parts.

Any component that needs the access token (the voice-service client, the
component that gates capture on "authenticated", the CLI) registers a
listener here. When provisioning succeeds the coordinator calls
:meth:`CredentialListenerRegistry.broadcast` once with the token.

Listeners are either objects implementing :class:`CredentialListener` or
plain callables taking the token string.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol, Union, runtime_checkable

from voiceprov.exceptions import ListenerError

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialListener(Protocol):
    """Anything that wants to be told about a newly obtained access token."""

    def on_credential_received(self, token: str) -> None:
        ...


Listener = Union[CredentialListener, Callable[[str], None]]


class CredentialListenerRegistry:
    """A de-duplicated, thread-safe set of credential listeners.

    Membership is by identity: registering the same listener object twice has
    no additional effect. Registration may happen from any thread, including
    while a broadcast is in progress. A broadcast delivers to a snapshot of
    the listeners taken when it starts, so a listener registered during a
    broadcast only receives later broadcasts.

    Example::

        registry = CredentialListenerRegistry()
        registry.register(api_client)
        registry.register(lambda token: print("got", token))
        registry.broadcast("Atza|...")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def register(self, listener: Listener) -> bool:
        """Add *listener* unless it is already registered.

        Returns:
            ``True`` if the listener was added, ``False`` if it was already
            present.

        Raises:
            TypeError: If *listener* is neither a :class:`CredentialListener`
                nor callable.
        """
        if not isinstance(listener, CredentialListener) and not callable(listener):
            raise TypeError(f"{listener!r} is not a credential listener")
        with self._lock:
            if any(existing is listener for existing in self._listeners):
                return False
            self._listeners.append(listener)
            return True

    def broadcast(self, token: str) -> list[ListenerError]:
        """Deliver *token* to every listener registered when the call begins.

        A listener that raises is logged and skipped; delivery continues to
        the remaining listeners.

        Returns:
            One :class:`~voiceprov.exceptions.ListenerError` per listener that
            failed, in delivery order. Empty when every listener succeeded.
        """
        with self._lock:
            snapshot = list(self._listeners)

        failures: list[ListenerError] = []
        for listener in snapshot:
            try:
                _deliver(listener, token)
            except Exception as exc:
                failure = ListenerError(listener, exc)
                logger.error("%s", failure, exc_info=exc)
                failures.append(failure)
        logger.debug(
            "Delivered credential to %d of %d listener(s)",
            len(snapshot) - len(failures),
            len(snapshot),
        )
        return failures

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def __contains__(self, listener: object) -> bool:
        with self._lock:
            return any(existing is listener for existing in self._listeners)


def _deliver(listener: Listener, token: str) -> None:
    if isinstance(listener, CredentialListener):
        listener.on_credential_received(token)
    else:
        listener(token)
