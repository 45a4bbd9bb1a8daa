"""Write-once persistence of apply and rollback run logs."""

from __future__ import annotations

import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from bulkprice.db.schema import run_logs
from bulkprice.errors import NotFoundError
from bulkprice.storage.files import data_dir, document_path, read_document, write_exclusive

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunLog:
    run_id: str
    kind: str
    started_at: str
    backup_id: str | None
    pct: float | None = None
    finished_at: str | None = None
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False
    remaining: int = 0
    lines: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "pct": self.pct,
            "backupId": self.backup_id,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "remaining": self.remaining,
            "lines": list(self.lines),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunLog":
        return cls(
            run_id=data["run_id"],
            kind=data["kind"],
            started_at=data["started_at"],
            finished_at=data.get("finished_at"),
            pct=data.get("pct"),
            backup_id=data.get("backupId", data.get("backup_id")),
            updated=data.get("updated", 0),
            skipped=data.get("skipped", 0),
            errors=data.get("errors", 0),
            cancelled=bool(data.get("cancelled", False)),
            remaining=data.get("remaining", 0),
            lines=list(data.get("lines") or []),
        )


class RunLogStore(Protocol):
    def write(self, log: RunLog) -> str:
        ...

    def get(self, run_id: str) -> RunLog:
        ...


class FileRunLogStore:
    suffix = ".log.json"

    def __init__(self, root: pathlib.Path | None = None) -> None:
        self.root = root or data_dir() / "logs"

    def write(self, log: RunLog) -> str:
        path = document_path(self.root, log.run_id, self.suffix)
        write_exclusive(path, log.to_dict())
        logger.info("Run log written to %s", path)
        return str(path)

    def get(self, run_id: str) -> RunLog:
        return RunLog.from_dict(read_document(document_path(self.root, run_id, self.suffix)))


class SqlRunLogStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def write(self, log: RunLog) -> str:
        with self.engine.begin() as conn:
            conn.execute(
                insert(run_logs).values(
                    run_id=log.run_id,
                    kind=log.kind,
                    started_at=log.started_at,
                    finished_at=log.finished_at,
                    pct=log.pct,
                    backup_id=log.backup_id,
                    updated=log.updated,
                    skipped=log.skipped,
                    errors=log.errors,
                    cancelled=log.cancelled,
                    remaining=log.remaining,
                    lines=list(log.lines),
                )
            )
        return log.run_id

    def get(self, run_id: str) -> RunLog:
        with self.engine.connect() as conn:
            row = conn.execute(select(run_logs).where(run_logs.c.run_id == run_id)).mappings().first()
        if row is None:
            raise NotFoundError(f"Unknown run: {run_id!r}")
        return RunLog.from_dict(dict(row))


def run_log_store_from_env(engine: Engine | None = None) -> RunLogStore:
    if os.environ.get("STORE_BACKEND", "file") == "sql":
        from bulkprice.db.session import create_engine_from_env

        return SqlRunLogStore(engine or create_engine_from_env())
    return FileRunLogStore()
