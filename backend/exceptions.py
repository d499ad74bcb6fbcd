"""Application-level exception types.

Convention:
- Expected denials (rate limits, blocked patterns, wrong 2FA codes) are
  returned as decision values, never raised.
- ``InternalServerError``: for errors whose details must never reach clients
  (user-directory failures, 2FA storage failures, config validation, etc.).
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client. Inside the admission pipeline
  the same error makes user revalidation fail closed.
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients. The global ``ValueError`` handler returns ``str(exc)``
  as the 422 detail.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """
