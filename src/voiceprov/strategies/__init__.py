"""Built-in provisioning strategies.

* :mod:`~voiceprov.strategies.companion_app` -- local callback server driven
  by a paired mobile app (OAuth2 authorization code + PKCE).
* :mod:`~voiceprov.strategies.companion_service` -- registration code shown
  to the user, token polled from a remote companion service.

Strategies are selected by :func:`voiceprov.auth.create_strategy`; nothing
else should import them directly.
"""
