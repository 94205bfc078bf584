"""Service layer exports."""

from .data_access import DataAccessService
from .handshake import HandshakeService
from .token_cipher import TokenCipherService

__all__ = [
    "DataAccessService",
    "HandshakeService",
    "TokenCipherService",
]
