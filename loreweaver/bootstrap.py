"""Service construction.

Builds the local store, remote store and sync manager from ``Settings``.
Nothing here is a module-level singleton: every call returns fresh objects.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loreweaver.config import Settings, get_settings
from loreweaver.storage.backends import DocumentBackend, MemoryBackend, SupabaseBackend
from loreweaver.storage.ciphers import FernetCipher, FieldCipher, ObfuscatingCipher
from loreweaver.storage.connectivity import (
    ConnectivityProbe,
    HttpConnectivityProbe,
    StaticConnectivity,
)
from loreweaver.storage.local import LocalStore
from loreweaver.storage.remote import RemoteStore
from loreweaver.sync.manager import SyncManager
from loreweaver.types import epoch_ms, random_suffix

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "deviceId"
OBFUSCATION_SECRET_KEY = "obfuscationSecret"

# User id for the in-process backend when none is configured
LOCAL_USER_ID = "local"


@dataclass
class Services:
    """Everything a host needs to run sync."""

    settings: Settings
    local: LocalStore
    backend: DocumentBackend
    connectivity: ConnectivityProbe
    remote: RemoteStore
    manager: SyncManager

    def close(self) -> None:
        self.manager.close()
        if isinstance(self.connectivity, HttpConnectivityProbe):
            self.connectivity.close()
        self.local.close()


def get_device_id(local: LocalStore) -> str:
    """Stable identity of this installation, created on first use."""
    device_id = local.get(DEVICE_ID_KEY)
    if not device_id:
        device_id = f"device_{epoch_ms()}_{random_suffix()}"
        local.set(DEVICE_ID_KEY, device_id)
        logger.info(f"Registered new device {device_id}")
    return device_id


def build_cipher(settings: Settings, local: LocalStore) -> FieldCipher:
    """Fernet when a field key is configured, obfuscation otherwise.

    The obfuscation secret is persisted so values written earlier stay
    readable.
    """
    secret = settings.obfuscation_secret or local.get(OBFUSCATION_SECRET_KEY)
    if not secret:
        secret = secrets.token_urlsafe(32)
        local.set(OBFUSCATION_SECRET_KEY, secret)
    obfuscating = ObfuscatingCipher(secret)
    if settings.field_key:
        return FernetCipher(settings.field_key, legacy=obfuscating)
    logger.debug("No field key configured, provider keys are only obfuscated")
    return obfuscating


def build_backend(settings: Settings) -> DocumentBackend:
    if settings.remote_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError(
                "Supabase backend needs LOREWEAVER_SUPABASE_URL and LOREWEAVER_SUPABASE_KEY"
            )
        return SupabaseBackend.from_credentials(
            settings.supabase_url, settings.supabase_key, bucket=settings.attachments_bucket
        )
    return MemoryBackend()


def build_connectivity(settings: Settings) -> ConnectivityProbe:
    url = settings.resolved_connectivity_url()
    if url:
        return HttpConnectivityProbe(
            url, timeout=settings.connectivity_timeout, ttl=settings.connectivity_ttl
        )
    return StaticConnectivity(online=True)


def create_services(
    settings: Optional[Settings] = None,
    backend: Optional[DocumentBackend] = None,
    connectivity: Optional[ConnectivityProbe] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Services:
    """Wire up the sync stack. ``backend`` and ``connectivity`` override config."""
    settings = settings or get_settings()
    local = LocalStore(settings.resolved_db_path())
    backend = backend or build_backend(settings)
    connectivity = connectivity or build_connectivity(settings)

    user_id = settings.user_id
    if user_id is None and isinstance(backend, MemoryBackend):
        user_id = LOCAL_USER_ID

    remote = RemoteStore(
        backend,
        connectivity,
        device_id=get_device_id(local),
        user_id=user_id,
        cipher=build_cipher(settings, local),
        sleep=sleep,
    )
    manager = SyncManager(local, remote)
    return Services(
        settings=settings,
        local=local,
        backend=backend,
        connectivity=connectivity,
        remote=remote,
        manager=manager,
    )
