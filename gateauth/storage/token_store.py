from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional, Protocol

from gateauth.logging import get_logger
from gateauth.storage.errors import StorageError
from gateauth.storage.models import SessionRecord

logger = get_logger(__name__)


class TokenStore(Protocol):
    """Key-value port for durable client state. Both operations may fail."""

    async def read(self, key: str) -> Optional[str]: ...

    async def write(self, key: str, value: str) -> None: ...


class MemoryTokenStore:
    """Process-local store for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})

    async def read(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def write(self, key: str, value: str) -> None:
        self.values[key] = value


class FileTokenStore:
    """All keys in one JSON document, replaced atomically on each write."""

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except ValueError as exc:
            logger.warning("token_store_file_corrupt", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _read_sync(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def _write_sync(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".session_", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as handle:
                    json.dump(data, handle)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    async def read(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._read_sync, key)
        except OSError as exc:
            raise StorageError(f"failed to read {key}", {"path": str(self.path)}) from exc

    async def write(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._write_sync, key, value)
        except OSError as exc:
            raise StorageError(f"failed to write {key}", {"path": str(self.path)}) from exc


class SessionStore:
    """Serializes the session record under a single key of a ``TokenStore``."""

    def __init__(
        self,
        backend: TokenStore,
        *,
        record_key: str = "@entry_app_auth",
        device_id_key: str = "@entry_app_device_id",
    ) -> None:
        self.backend = backend
        self.record_key = record_key
        self.device_id_key = device_id_key

    async def load(self) -> SessionRecord:
        raw = await self.backend.read(self.record_key)
        if not raw:
            return SessionRecord()
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("session_record_unparseable", key=self.record_key)
            return SessionRecord()
        return SessionRecord.from_dict(data)

    async def save(self, record: SessionRecord) -> None:
        await self.backend.write(self.record_key, json.dumps(record.to_dict()))

    async def device_id(self) -> str:
        """Return the stable device id, creating it on first use."""
        existing = await self.backend.read(self.device_id_key)
        if existing and existing.strip():
            return existing.strip()
        generated = str(uuid.uuid4())
        await self.backend.write(self.device_id_key, generated)
        logger.info("device_id_created")
        return generated


__all__ = ["TokenStore", "MemoryTokenStore", "FileTokenStore", "SessionStore"]
