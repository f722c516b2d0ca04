"""Multi-file credential store.

Layout of the session directory::

    creds.json                          master record
    <kind>-<id>.json                    rotating key records
    *.db                                transport SQLite stores (neonize.db)

Every record is an independently parseable JSON object, so a damaged key
record never takes the master record down with it. Only the connection
supervisor writes here.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from wabot.logger import logger
from wabot.types import Credential
from wabot.utils import is_group_jid, jid_user, write_json_atomic

MASTER_RECORD = "creds"
KEY_KINDS = (
    "pre-key",
    "session",
    "sender-key",
    "sender-key-memory",
    "app-state-sync-key",
    "app-state-sync-version",
)
QUARANTINE_SUFFIX = ".corrupt"
SQLITE_SIDECARS = ("-journal", "-wal", "-shm")


class CredentialsNotFoundError(Exception):
    """No master record yet; a fresh device link is needed."""


class CredentialStoreError(Exception):
    """Persisting or reading credentials failed. Fatal, never retried."""


def fix_file_name(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


class CredentialStore:
    def __init__(self, directory: Path) -> None:
        self.directory = directory

    # --- master record ---

    @property
    def master_path(self) -> Path:
        return self.directory / f"{MASTER_RECORD}.json"

    def load(self) -> Credential:
        path = self.master_path
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise CredentialsNotFoundError(str(path)) from None
        except OSError as exc:
            raise CredentialStoreError(f"Cannot read {path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CredentialStoreError(f"Malformed master record {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CredentialStoreError(f"Master record {path} is not a JSON object")
        return Credential(creds=data)

    def save(self, credential: Credential) -> None:
        try:
            write_json_atomic(self.master_path, credential.creds)
        except OSError as exc:
            raise CredentialStoreError(f"Cannot write {self.master_path}: {exc}") from exc

    # --- key records ---

    def key_path(self, kind: str, key_id: str) -> Path:
        return self.directory / f"{fix_file_name(f'{kind}-{key_id}')}.json"

    def get_keys(self, kind: str, ids: list[str]) -> dict[str, Any]:
        """Return the readable records among ``ids``; missing or broken ones are omitted."""
        found: dict[str, Any] = {}
        for key_id in ids:
            path = self.key_path(kind, key_id)
            try:
                found[key_id] = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Unreadable key record", file=path.name, error=str(exc))
        return found

    def set_keys(self, data: dict[str, dict[str, Any]]) -> None:
        """Write key records; a ``None`` value deletes the record."""
        for kind, records in data.items():
            for key_id, value in records.items():
                path = self.key_path(kind, key_id)
                try:
                    if value is None:
                        path.unlink(missing_ok=True)
                    else:
                        write_json_atomic(path, value)
                except OSError as exc:
                    raise CredentialStoreError(f"Cannot write {path}: {exc}") from exc

    # --- maintenance ---

    def entries(self) -> list[Path]:
        """All persisted records, including partial writes left by a crash."""
        if not self.directory.is_dir():
            return []
        return sorted(
            p for p in self.directory.iterdir() if p.is_file() and p.suffix in (".json", ".tmp")
        )

    def databases(self) -> list[Path]:
        """SQLite stores kept by the transport next to the JSON records."""
        if not self.directory.is_dir():
            return []
        return sorted(p for p in self.directory.iterdir() if p.is_file() and p.suffix == ".db")

    def delete(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def quarantine(self, path: Path) -> Path:
        """Move a damaged database (and its journal files) aside as ``*.corrupt``."""
        target = path.with_name(path.name + QUARANTINE_SUFFIX)
        os.replace(path, target)
        for suffix in SQLITE_SIDECARS:
            sidecar = path.with_name(path.name + suffix)
            if sidecar.exists():
                os.replace(sidecar, sidecar.with_name(sidecar.name + QUARANTINE_SUFFIX))
        return target

    def invalidate_chat_keys(self, chat_id: str) -> list[str]:
        """Delete the key records tied to one chat. Returns the deleted file names.

        Direct chats lose their signal sessions, groups lose their sender
        keys. The master record and every other chat are left alone.
        """
        if is_group_jid(chat_id):
            group = fix_file_name(chat_id)
            prefixes = (f"sender-key-{group}", f"sender-key-memory-{group}")
        else:
            user = jid_user(chat_id)
            prefixes = (f"session-{user}.", f"session-{user}_")

        deleted: list[str] = []
        for path in self.entries():
            if path.name.startswith(prefixes):
                self.delete(path)
                deleted.append(path.name)
        return deleted
