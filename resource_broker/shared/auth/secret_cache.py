"""
Encrypted Token Cache

Persists access/refresh tokens between process runs, one file per
credential identity:

    <TOKEN_CACHE_DIR>/token-cache-<sha256(identity)[:32]>.enc

Each file is an AES-256-GCM blob (nonce + ciphertext + tag) sealed under a
key derived from the machine secret. The directory is 0700 and files are
0600. Any entry that cannot be read, decrypted or parsed is a cache miss.
"""
import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from resource_broker.shared.core.config import get_settings
from resource_broker.shared.core.credentials import CachedToken
from resource_broker.shared.core.security import (
    DecryptionError,
    MachineKeyManager,
    fingerprint,
    seal,
    unseal,
)

logger = structlog.get_logger()

FILE_PREFIX = "token-cache-"
FILE_SUFFIX = ".enc"


class SecretCache:
    def __init__(
        self,
        cache_dir: str | Path | None = None,
        *,
        machine_secret: str | None = None,
        salt: str | None = None,
    ):
        settings = get_settings()
        self.cache_dir = Path(cache_dir or settings.TOKEN_CACHE_DIR).expanduser()
        self._machine_secret = machine_secret or MachineKeyManager.machine_secret()
        self._salt = salt or settings.TOKEN_CACHE_KDF_SALT
        self._key: bytes | None = None
        # One lock per cache file; unrelated identities never contend.
        self._locks: dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------ paths

    def path_for(self, key: str) -> Path:
        return self.cache_dir / f"{FILE_PREFIX}{fingerprint(key)[:32]}{FILE_SUFFIX}"

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks.setdefault(fingerprint(key), threading.Lock())

    def _encryption_key(self) -> bytes:
        if self._key is None:
            self._key = MachineKeyManager.derive_key(self._machine_secret, self._salt)
        return self._key

    def _ensure_dir(self) -> None:
        self.cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        os.chmod(self.cache_dir, 0o700)

    # -------------------------------------------------------------- contract

    def load(self, key: str, scope: str | None = None) -> CachedToken | None:
        """
        Return the cached token for ``key`` (and ``scope``, when given).

        Without a scope the most recently saved entry is returned.
        """
        with self._lock_for(key):
            document = self._read_document(key)
        if document is None:
            return None

        owner = fingerprint(key)
        if document.get("owner_key_hash") != owner:
            logger.warning("token_cache_owner_mismatch", cache_file=self.path_for(key).name)
            return None

        entries: dict[str, Any] = document.get("entries") or {}
        if scope is not None:
            raw = entries.get(scope)
        else:
            raw = next(reversed(entries.values()), None) if entries else None
        if raw is None:
            return None

        try:
            return CachedToken.model_validate(raw)
        except ValidationError as e:
            logger.warning(
                "token_cache_entry_invalid",
                cache_file=self.path_for(key).name,
                error_count=e.error_count(),
            )
            return None

    def save(self, key: str, token: CachedToken) -> None:
        owner = fingerprint(key)
        if token.owner_key_hash != owner:
            token = token.model_copy(update={"owner_key_hash": owner})

        with self._lock_for(key):
            document = self._read_document(key) or {}
            if document.get("owner_key_hash") != owner:
                document = {}
            entries: dict[str, Any] = dict(document.get("entries") or {})
            # Re-insert so insertion order tracks recency.
            entries.pop(token.scope, None)
            entries[token.scope] = token.to_storage()
            self._write_document(
                key, {"owner_key_hash": owner, "entries": entries}
            )
        logger.debug("token_cache_saved", cache_file=self.path_for(key).name, scope=token.scope)

    def clear(self, key: str) -> bool:
        """Delete the cache file for ``key``. Returns True when a file was removed."""
        path = self.path_for(key)
        with self._lock_for(key):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.info("token_cache_cleared", cache_file=path.name)
        return True

    # -------------------------------------------------------------- file I/O

    def _read_document(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        try:
            blob = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("token_cache_read_failed", cache_file=path.name, error=str(e))
            return None

        try:
            document = json.loads(unseal(blob, self._encryption_key()).decode("utf-8"))
        except (DecryptionError, UnicodeDecodeError, ValueError) as e:
            # Corrupted, tampered with, or written on another machine.
            logger.warning(
                "token_cache_undecryptable",
                cache_file=path.name,
                error=str(e),
                msg="Treating as cache miss; re-authentication will follow.",
            )
            return None
        return document if isinstance(document, dict) else None

    def _write_document(self, key: str, document: dict[str, Any]) -> None:
        self._ensure_dir()
        path = self.path_for(key)
        blob = seal(
            json.dumps(document, default=_json_default).encode("utf-8"),
            self._encryption_key(),
        )
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(blob)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
