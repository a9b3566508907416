"""Local cached credential: device identity, last token and download key."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger("trialgate.client.credentials")


@dataclass(frozen=True)
class StoredCredential:
    device_id: str
    token: str | None = None
    download_key: str | None = None


@runtime_checkable
class CredentialStore(Protocol):
    """Where the desktop app keeps its license credential."""

    def load(self) -> StoredCredential: ...
    def save(self, *, token: str | None = ..., download_key: str | None = ...) -> None: ...


_UNSET: Any = object()


class JsonCredentialStore:
    """Credential persisted as a small JSON file in the user's profile.

    The device identifier is generated on first load and written
    immediately; later saves never replace it.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            backup = self._path.with_suffix(self._path.suffix + ".corrupt")
            logger.error("Credential file %s is unreadable, moving it to %s", self._path, backup)
            self._path.replace(backup)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def load(self) -> StoredCredential:
        data = self._read()
        device_id = data.get("deviceId")
        if not device_id:
            device_id = str(uuid.uuid4())
            data["deviceId"] = device_id
            self._write(data)
            logger.info("Generated device id %s", device_id)
        return StoredCredential(
            device_id=device_id,
            token=data.get("token") or None,
            download_key=data.get("downloadKey") or None,
        )

    def save(self, *, token: str | None = _UNSET, download_key: str | None = _UNSET) -> None:
        """Update the given fields, leaving the others (and the device id) untouched."""
        data = self._read()
        if not data.get("deviceId"):
            data["deviceId"] = str(uuid.uuid4())
        if token is not _UNSET:
            data["token"] = token
        if download_key is not _UNSET:
            data["downloadKey"] = download_key
        self._write(data)
