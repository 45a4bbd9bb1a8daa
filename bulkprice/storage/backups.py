"""Append-only storage of pre-mutation variant snapshots."""

from __future__ import annotations

import logging
import os
import pathlib
import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from bulkprice.catalog.models import Variant
from bulkprice.db.schema import backups
from bulkprice.errors import NotFoundError
from bulkprice.storage.files import data_dir, document_path, read_document, write_exclusive
from bulkprice.utils.dates import isoformat_now, timestamp_slug

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackupRecord:
    mode: str
    items: tuple[Variant, ...]
    pct: float | None = None
    created_at: str = field(default_factory=isoformat_now)
    backup_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backupId": self.backup_id,
            "created_at": self.created_at,
            "mode": self.mode,
            "pct": self.pct,
            "items": [item.snapshot() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], backup_id: str | None = None) -> "BackupRecord":
        return cls(
            backup_id=backup_id or data.get("backupId"),
            created_at=data["created_at"],
            mode=data.get("mode") or "pct",
            pct=data.get("pct"),
            items=tuple(Variant.from_snapshot(item) for item in data.get("items") or []),
        )


class BackupStore(Protocol):
    def create(self, record: BackupRecord) -> str:
        ...

    def get(self, backup_id: str) -> BackupRecord:
        ...


def new_backup_id(mode: str) -> str:
    return f"{mode}-backup-{timestamp_slug()}-{secrets.token_hex(3)}"


class FileBackupStore:
    """One JSON document per backup under ``<root>/<backup_id>.json``."""

    suffix = ".json"

    def __init__(self, root: pathlib.Path | None = None) -> None:
        self.root = root or data_dir() / "backups"

    def create(self, record: BackupRecord) -> str:
        backup_id = new_backup_id(record.mode)
        stored = replace(record, backup_id=backup_id)
        write_exclusive(document_path(self.root, backup_id, self.suffix), stored.to_dict())
        logger.info("Stored backup %s with %s items", backup_id, len(record.items))
        return backup_id

    def get(self, backup_id: str) -> BackupRecord:
        # Ids handed out by older tooling carried the file extension.
        key = backup_id.removesuffix(self.suffix) if backup_id else backup_id
        data = read_document(document_path(self.root, key, self.suffix))
        return BackupRecord.from_dict(data, backup_id=key)


class SqlBackupStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, record: BackupRecord) -> str:
        backup_id = new_backup_id(record.mode)
        payload = replace(record, backup_id=backup_id).to_dict()
        with self.engine.begin() as conn:
            conn.execute(
                insert(backups).values(
                    backup_id=backup_id,
                    created_at=payload["created_at"],
                    mode=payload["mode"],
                    pct=payload["pct"],
                    items=payload["items"],
                )
            )
        logger.info("Stored backup %s with %s items", backup_id, len(record.items))
        return backup_id

    def get(self, backup_id: str) -> BackupRecord:
        with self.engine.connect() as conn:
            row = conn.execute(select(backups).where(backups.c.backup_id == backup_id)).mappings().first()
        if row is None:
            raise NotFoundError(f"Unknown backup: {backup_id!r}")
        return BackupRecord.from_dict(dict(row), backup_id=row["backup_id"])


def backup_store_from_env(engine: Engine | None = None) -> BackupStore:
    if os.environ.get("STORE_BACKEND", "file") == "sql":
        from bulkprice.db.session import create_engine_from_env

        return SqlBackupStore(engine or create_engine_from_env())
    return FileBackupStore()
