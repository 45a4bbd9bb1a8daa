"""Tables backing the SQL backup and run-log stores."""

from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Float, Integer, MetaData, String, Table, Text

metadata = MetaData()

backups = Table(
    "backups",
    metadata,
    Column("backup_id", String(128), primary_key=True),
    Column("created_at", Text, nullable=False),
    Column("mode", String(16), nullable=False),
    Column("pct", Float),
    Column("items", JSON, nullable=False),
)

run_logs = Table(
    "run_logs",
    metadata,
    Column("run_id", String(128), primary_key=True),
    Column("kind", String(16), nullable=False),
    Column("started_at", Text, nullable=False),
    Column("finished_at", Text),
    Column("pct", Float),
    Column("backup_id", String(128)),
    Column("updated", Integer, nullable=False),
    Column("skipped", Integer, nullable=False),
    Column("errors", Integer, nullable=False),
    Column("cancelled", Boolean, nullable=False, default=False),
    Column("remaining", Integer, nullable=False, default=0),
    Column("lines", JSON, nullable=False),
)
