# MIT License © 2025 Motohiro Suzuki
"""
protocol/errors.py

Error taxonomy for key delivery.

- EntropyUnavailable : random source failed (the only error signalled end-to-end)
- ProtocolViolation  : malformed / unknown / out-of-range client message
- TransportRequired  : plain HTTP request to a WebSocket-only path
- SessionClosed      : operation on a closed session

Oversized requests are clamped, never raised.
"""

from __future__ import annotations


class KeyServiceError(Exception):
    pass


class EntropyUnavailable(KeyServiceError):
    pass


class ProtocolViolation(KeyServiceError):
    pass


class TransportRequired(KeyServiceError):
    pass


class SessionClosed(KeyServiceError):
    pass


class CloseReason:
    # WebSocket close codes (RFC 6455 7.4.1)
    NORMAL = 1000
    GOING_AWAY = 1001
    POLICY_VIOLATION = 1008
    INTERNAL_ERROR = 1011
    SERVICE_RESTART = 1012
