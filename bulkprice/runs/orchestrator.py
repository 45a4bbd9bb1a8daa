"""Preview, backup, apply and rollback orchestration for bulk price runs."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import math
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Callable, Sequence, TypeVar

from bulkprice.catalog.models import CatalogClient, Variant, amount_to_json
from bulkprice.errors import RunInProgressError, UpdateError, ValidationError
from bulkprice.logic.chain import ChainPreviewRow, ChainRules, build_chain_rows, chain_scope, load_chain_rules
from bulkprice.logic.pricing import PreviewRow, build_preview_rows
from bulkprice.storage.backups import BackupRecord, BackupStore
from bulkprice.storage.run_logs import RunLog, RunLogStore
from bulkprice.utils.dates import isoformat_now, timestamp_slug
from bulkprice.utils.rate_limit import Throttle

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Mode(str, Enum):
    PERCENT = "pct"
    CHAIN = "chain"


class RunState(str, Enum):
    IDLE = "idle"
    PREVIEWED = "previewed"
    BACKED_UP = "backed_up"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.PREVIEWED, RunState.ROLLED_BACK, RunState.CANCELLED},
    RunState.PREVIEWED: {RunState.PREVIEWED, RunState.BACKED_UP, RunState.APPLIED, RunState.CANCELLED},
    RunState.BACKED_UP: {RunState.APPLIED, RunState.ROLLED_BACK, RunState.CANCELLED},
    RunState.APPLIED: {RunState.ROLLED_BACK},
    RunState.ROLLED_BACK: set(),
    RunState.CANCELLED: set(),
}


@dataclass(slots=True)
class RunContext:
    mode: Mode
    pct: float | None = None
    run_id: str = ""
    state: RunState = RunState.IDLE
    scope: list[Variant] = field(default_factory=list)
    rows: list[Any] = field(default_factory=list)
    backup_id: str | None = None

    def advance(self, state: RunState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise ValidationError(f"Run {self.run_id} cannot move from {self.state.value} to {state.value}")
        self.state = state


@dataclass(slots=True)
class ItemOutcome:
    variant_id: int
    status: str
    line: str


@dataclass(slots=True)
class RunSummary:
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[ItemOutcome]) -> "RunSummary":
        summary = cls()
        for outcome in outcomes:
            if outcome.status == "updated":
                summary.updated += 1
            elif outcome.status == "error":
                # A failed item was not updated, so it also counts as skipped.
                summary.errors += 1
                summary.skipped += 1
            else:
                summary.skipped += 1
        return summary

    def to_dict(self) -> dict[str, int]:
        return {"updated": self.updated, "skipped": self.skipped, "errors": self.errors}


@dataclass(slots=True)
class RunResult:
    run_id: str
    state: RunState
    summary: RunSummary
    log: list[str]
    remaining: int = 0

    @property
    def cancelled(self) -> bool:
        return self.state is RunState.CANCELLED


@dataclass(slots=True)
class BackupResult:
    backup_id: str
    items: int


@dataclass(slots=True)
class Mutation:
    variant_id: int
    fields: dict[str, Any]
    ok_line: str
    skip_reason: str | None = None


class CancelToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class RunOrchestrator:
    def __init__(
        self,
        client: CatalogClient,
        backups: BackupStore,
        run_logs: RunLogStore,
        *,
        rules: ChainRules | None = None,
        throttle: Throttle | None = None,
    ) -> None:
        self.client = client
        self.backups = backups
        self.run_logs = run_logs
        self.rules = rules or load_chain_rules()
        self.throttle = throttle or Throttle()
        self._run_lock = asyncio.Lock()
        self._cancel: CancelToken | None = None

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    async def preview(self, mode: Mode | str, pct: float = 0) -> RunContext:
        mode = Mode(mode)
        context = RunContext(mode=mode, pct=_check_pct(pct) if mode is Mode.PERCENT else None)
        context.run_id = _new_id(mode.value, "run")
        variants = await self.client.fetch_active_variants()
        if mode is Mode.PERCENT:
            context.scope = list(variants)
            context.rows = build_preview_rows(context.scope, context.pct)
        else:
            context.scope = chain_scope(variants, self.rules)
            context.rows = build_chain_rows(context.scope, self.rules)
        context.advance(RunState.PREVIEWED)
        logger.info("Previewed %s run %s: %s rows", mode.value, context.run_id, len(context.rows))
        return context

    async def backup(self, mode: Mode | str, pct: float = 0, context: RunContext | None = None) -> BackupResult:
        mode = Mode(mode)
        if context is None or context.state is not RunState.PREVIEWED or context.mode is not mode:
            context = await self.preview(mode, pct)
        if not context.scope:
            raise ValidationError("Nothing to back up: no variants in scope")
        record = BackupRecord(mode=mode.value, pct=context.pct, items=tuple(context.scope))
        backup_id = await self._in_executor(self.backups.create, record)
        context.backup_id = backup_id
        context.advance(RunState.BACKED_UP)
        return BackupResult(backup_id=backup_id, items=len(record.items))

    async def apply(self, mode: Mode | str, backup_id: str | None, pct: float = 0) -> RunResult:
        mode = Mode(mode)
        pct = _check_pct(pct) if mode is Mode.PERCENT else None
        backup_id = _require_backup_id(backup_id)
        async with self._exclusive_run() as cancel:
            record = await self._in_executor(self.backups.get, backup_id)
            if record.mode != mode.value:
                raise ValidationError(f"Backup {backup_id} was taken for a {record.mode} run, not {mode.value}")
            # Always recompute against live data; the backup only gates the run.
            context = await self.preview(mode, pct or 0)
            context.backup_id = backup_id
            context.advance(RunState.BACKED_UP)
            if not context.rows:
                raise ValidationError("Nothing to apply: no variants in scope")
            if mode is Mode.PERCENT:
                mutations = [_percent_mutation(row) for row in context.rows]
            else:
                mutations = [_chain_mutation(row) for row in context.rows]
            return await self._execute(context, mutations, cancel, kind=mode.value, done=RunState.APPLIED)

    async def rollback(self, backup_id: str | None) -> RunResult:
        backup_id = _require_backup_id(backup_id)
        async with self._exclusive_run() as cancel:
            record = await self._in_executor(self.backups.get, backup_id)
            context = RunContext(mode=Mode(record.mode), pct=record.pct, backup_id=backup_id)
            context.run_id = _new_id("rollback", "run")
            context.state = RunState.BACKED_UP
            mutations = [_restore_mutation(item) for item in record.items]
            logger.info("Rolling back %s variants from %s", len(mutations), backup_id)
            return await self._execute(context, mutations, cancel, kind="rollback", done=RunState.ROLLED_BACK)

    async def load_backup(self, backup_id: str | None) -> BackupRecord:
        return await self._in_executor(self.backups.get, _require_backup_id(backup_id))

    def cancel(self) -> bool:
        """Ask the in-flight apply or rollback to stop before its next item."""
        if self._cancel is None or not self.busy:
            return False
        self._cancel.cancel()
        logger.warning("Cancellation requested")
        return True

    async def _execute(
        self,
        context: RunContext,
        mutations: Sequence[Mutation],
        cancel: CancelToken,
        *,
        kind: str,
        done: RunState,
    ) -> RunResult:
        log = RunLog(run_id=context.run_id, kind=kind, started_at=isoformat_now(), backup_id=context.backup_id, pct=context.pct)
        outcomes: list[ItemOutcome] = []
        remaining = 0
        in_flight: Mutation | None = None
        try:
            for index, mutation in enumerate(mutations):
                if cancel.cancelled:
                    remaining = len(mutations) - index
                    break
                in_flight = mutation
                outcome = await self._run_one(mutation)
                outcomes.append(outcome)
                in_flight = None
                if outcome.status != "skipped":
                    await self.throttle.wait()
        except BaseException as exc:
            # An interrupted in-flight update may or may not have reached Shopify.
            if in_flight is not None:
                outcomes.append(
                    ItemOutcome(in_flight.variant_id, "error", f"ERR {in_flight.variant_id}: interrupted ({type(exc).__name__})")
                )
            remaining = len(mutations) - len(outcomes)
            logger.error("Run %s interrupted after %s of %s items", context.run_id, len(outcomes), len(mutations))
            await self._finish(context, log, outcomes, remaining, RunState.CANCELLED)
            raise
        state = RunState.CANCELLED if remaining else done
        return await self._finish(context, log, outcomes, remaining, state)

    async def _finish(
        self,
        context: RunContext,
        log: RunLog,
        outcomes: Sequence[ItemOutcome],
        remaining: int,
        state: RunState,
    ) -> RunResult:
        context.advance(state)
        summary = RunSummary.from_outcomes(outcomes)
        log.updated, log.skipped, log.errors = summary.updated, summary.skipped, summary.errors
        log.lines = [outcome.line for outcome in outcomes]
        log.cancelled = state is RunState.CANCELLED
        log.remaining = remaining
        log.finished_at = isoformat_now()
        await self._in_executor(self.run_logs.write, log)
        if log.cancelled:
            logger.warning("Run %s cancelled with %s items not attempted", context.run_id, remaining)
        logger.info(
            "Run %s finished: %s updated, %s skipped, %s errors",
            context.run_id,
            summary.updated,
            summary.skipped,
            summary.errors,
        )
        return RunResult(run_id=context.run_id, state=state, summary=summary, log=list(log.lines), remaining=remaining)

    async def _run_one(self, mutation: Mutation) -> ItemOutcome:
        if mutation.skip_reason:
            return ItemOutcome(mutation.variant_id, "skipped", f"SKIP {mutation.variant_id}: {mutation.skip_reason}")
        try:
            await self.client.update_variant(mutation.variant_id, **mutation.fields)
        except UpdateError as exc:
            logger.warning("Update failed for variant %s: %s", mutation.variant_id, exc)
            return ItemOutcome(mutation.variant_id, "error", f"ERR {mutation.variant_id}: {exc}")
        except Exception as exc:
            logger.exception("Unexpected failure updating variant %s", mutation.variant_id)
            return ItemOutcome(mutation.variant_id, "error", f"ERR {mutation.variant_id}: {type(exc).__name__}: {exc}")
        return ItemOutcome(mutation.variant_id, "updated", mutation.ok_line)

    @contextlib.asynccontextmanager
    async def _exclusive_run(self) -> AsyncIterator[CancelToken]:
        if self.busy:
            raise RunInProgressError("Another apply or rollback is already running")
        async with self._run_lock:
            self._cancel = CancelToken()
            try:
                yield self._cancel
            finally:
                self._cancel = None

    async def _in_executor(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args))


def _percent_mutation(row: PreviewRow) -> Mutation:
    variant = row.variant
    if variant.price <= 0:
        return Mutation(variant.variant_id, {}, "", skip_reason="price<=0")
    fields: dict[str, Any] = {"price": row.new_price}
    if row.new_compare is not None:
        fields["compare_at_price"] = row.new_compare
    line = (
        f"OK {variant.variant_id}: price {_fmt(variant.price)}->{row.new_price}, "
        f"compare {_fmt(variant.compare_at_price)}->{_fmt(row.new_compare)}"
    )
    return Mutation(variant.variant_id, fields, line)


def _chain_mutation(row: ChainPreviewRow) -> Mutation:
    variant = row.variant
    if row.new_compare is None:
        return Mutation(variant.variant_id, {}, "", skip_reason=row.reason)
    if variant.price <= 0:
        return Mutation(variant.variant_id, {}, "", skip_reason="price<=0")
    line = f"OK {variant.variant_id}: compare {_fmt(row.old_compare)}->{row.new_compare}"
    return Mutation(variant.variant_id, {"compare_at_price": row.new_compare}, line)


def _restore_mutation(item: Variant) -> Mutation:
    line = f"RESTORED {item.variant_id}: price {_fmt(item.price)}, compare {_fmt(item.compare_at_price)}"
    return Mutation(item.variant_id, {"price": item.price, "compare_at_price": item.compare_at_price}, line)


def _fmt(value: Decimal | int | None) -> str:
    if value is None:
        return "null"
    if isinstance(value, Decimal):
        return str(amount_to_json(value))
    return str(value)


def _check_pct(pct: float | None) -> float:
    try:
        value = float(pct or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid percentage: {pct!r}") from exc
    if not math.isfinite(value):
        raise ValidationError(f"Invalid percentage: {pct!r}")
    if value <= -100:
        raise ValidationError("Percentage must be greater than -100")
    return value


def _require_backup_id(backup_id: str | None) -> str:
    if not backup_id or not str(backup_id).strip():
        raise ValidationError("backupId is required")
    return str(backup_id).strip()


def _new_id(prefix: str, kind: str) -> str:
    return f"{prefix}-{kind}-{timestamp_slug()}-{secrets.token_hex(3)}"
