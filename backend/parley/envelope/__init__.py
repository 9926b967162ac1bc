"""Encrypted envelope applied at the HTTP edge.

Every response body is a single opaque string; every request carrying a
``data`` field in its query or JSON body is decrypted before handlers run.
"""
from .cipher import EnvelopeCipher
from .route import ApiResponse, EnvelopeRoute, register_exception_handlers

__all__ = [
    "ApiResponse",
    "EnvelopeCipher",
    "EnvelopeRoute",
    "register_exception_handlers",
]
