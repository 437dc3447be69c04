"""Loreweaver storage layer.

Local-first storage in SQLite plus the remote document store it syncs with.
"""

from .backends import (
    BatchWrite,
    DocumentBackend,
    MemoryBackend,
    QueryFilter,
    SupabaseBackend,
)
from .ciphers import CipherError, FernetCipher, FieldCipher, ObfuscatingCipher
from .connectivity import ConnectivityProbe, HttpConnectivityProbe, StaticConnectivity
from .local import LocalStore
from .remote import BatchOperation, DocumentChange, ListenerToken, RemoteStore

__all__ = [
    # Local
    "LocalStore",
    # Remote
    "RemoteStore",
    "BatchOperation",
    "DocumentChange",
    "ListenerToken",
    # Backends
    "DocumentBackend",
    "MemoryBackend",
    "SupabaseBackend",
    "QueryFilter",
    "BatchWrite",
    # Connectivity
    "ConnectivityProbe",
    "HttpConnectivityProbe",
    "StaticConnectivity",
    # Ciphers
    "CipherError",
    "FieldCipher",
    "FernetCipher",
    "ObfuscatingCipher",
]
