import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from bulkprice.errors import FetchError, NotFoundError, RunInProgressError, ValidationError
from bulkprice.logic.chain import load_chain_rules
from bulkprice.runs.orchestrator import Mode, RunOrchestrator, RunState
from bulkprice.utils.rate_limit import Throttle
from tests.factories import chain_product, make_variant


@pytest.mark.asyncio
async def test_preview_does_not_mutate(orchestrator, catalog):
    context = await orchestrator.preview(Mode.PERCENT, 10)
    assert context.state is RunState.PREVIEWED
    assert [row.variant.variant_id for row in context.rows] == [1, 2, 3]
    assert context.rows[0].new_price == 1690
    assert context.rows[0].new_compare == 1990
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_preview_rejects_pct_at_or_below_minus_100(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.preview(Mode.PERCENT, -100)


@pytest.mark.asyncio
async def test_backup_captures_current_values(orchestrator, backup_store):
    result = await orchestrator.backup(Mode.PERCENT, 10)
    assert result.items == 3
    record = backup_store.get(result.backup_id)
    assert record.mode == "pct"
    assert record.pct == 10
    assert [(v.variant_id, v.price, v.compare_at_price) for v in record.items] == [
        (1, Decimal("1500"), Decimal("1790")),
        (2, Decimal("990"), None),
        (3, Decimal("2400"), Decimal("2990")),
    ]


@pytest.mark.asyncio
async def test_chain_backup_with_no_chain_products_is_rejected(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.backup(Mode.CHAIN)


@pytest.mark.asyncio
async def test_apply_requires_backup_id(orchestrator, catalog):
    for missing in (None, "", "   "):
        with pytest.raises(ValidationError):
            await orchestrator.apply(Mode.PERCENT, missing, 10)
    assert catalog.fetches == 0


@pytest.mark.asyncio
async def test_apply_with_unknown_backup(orchestrator, catalog):
    with pytest.raises(NotFoundError):
        await orchestrator.apply(Mode.PERCENT, "pct-backup-missing", 10)
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_apply_rejects_backup_from_other_mode(orchestrator, catalog):
    catalog.variants.update({v.variant_id: v for v in chain_product()})
    backup = await orchestrator.backup(Mode.CHAIN)
    with pytest.raises(ValidationError):
        await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_apply_updates_every_variant(orchestrator, catalog, sleeper, log_store):
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    result = await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    assert result.state is RunState.APPLIED
    assert result.summary.to_dict() == {"updated": 3, "skipped": 0, "errors": 0}
    assert catalog.calls[0] == (1, {"price": 1690, "compare_at_price": 1990})
    # Variant 2 has no compare-at, so only the price is sent.
    assert catalog.calls[1] == (2, {"price": 1090})
    assert result.log[0] == "OK 1: price 1500->1690, compare 1790->1990"
    assert result.log[1] == "OK 2: price 990->1090, compare null->null"
    assert sleeper.delays == [0.12, 0.12, 0.12]

    stored = log_store.get(result.run_id)
    assert stored.kind == "pct"
    assert stored.backup_id == backup.backup_id
    assert stored.lines == result.log
    assert stored.finished_at is not None


@pytest.mark.asyncio
async def test_apply_continues_past_failures(orchestrator, catalog, sleeper):
    catalog.fail_ids.add(2)
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    result = await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    assert [call[0] for call in catalog.calls] == [1, 2, 3]
    assert result.summary.updated == 2
    assert result.summary.errors == 1
    assert result.summary.updated + result.summary.skipped == 3
    assert result.log[1].startswith("ERR 2: Update 2 failed: 422")
    assert result.log[2].startswith("OK 3:")
    # The failed attempt is still followed by a pause.
    assert len(sleeper.delays) == 3


@pytest.mark.asyncio
async def test_apply_skips_non_positive_prices(orchestrator, catalog, sleeper):
    catalog.variants[4] = make_variant(4, 0, None)
    backup = await orchestrator.backup(Mode.PERCENT, 5)
    result = await orchestrator.apply(Mode.PERCENT, backup.backup_id, 5)

    assert 4 not in [call[0] for call in catalog.calls]
    assert result.log[-1] == "SKIP 4: price<=0"
    assert result.summary.to_dict() == {"updated": 3, "skipped": 1, "errors": 0}
    assert len(sleeper.delays) == 3


@pytest.mark.asyncio
async def test_apply_aborts_when_fetch_fails(orchestrator, catalog, log_store, tmp_path):
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    catalog.fetch_status = 503
    with pytest.raises(FetchError):
        await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)
    assert catalog.calls == []
    assert not (tmp_path / "logs").exists()
    assert not orchestrator.busy


@pytest.mark.asyncio
async def test_rollback_restores_exact_values(orchestrator, catalog):
    catalog.variants[1] = make_variant(1, Decimal("1499.50"), 1790)
    before = dict(catalog.variants)
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)
    assert catalog.variants[2].compare_at_price is None
    assert catalog.variants[1].price == 1690

    result = await orchestrator.rollback(backup.backup_id)

    assert result.state is RunState.ROLLED_BACK
    assert result.summary.to_dict() == {"updated": 3, "skipped": 0, "errors": 0}
    assert catalog.variants == before
    assert catalog.calls[-2] == (2, {"price": Decimal("990"), "compare_at_price": None})
    assert result.log[0] == "RESTORED 1: price 1499.5, compare 1790"
    assert result.log[1] == "RESTORED 2: price 990, compare null"


@pytest.mark.asyncio
async def test_rollback_unknown_backup(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.rollback("../../etc/passwd")
    with pytest.raises(ValidationError):
        await orchestrator.rollback(None)


@pytest.mark.asyncio
async def test_chain_apply_only_touches_compare_at(orchestrator, catalog):
    catalog.variants.update({v.variant_id: v for v in chain_product(10)})
    backup = await orchestrator.backup(Mode.CHAIN)
    assert backup.items == 3
    result = await orchestrator.apply(Mode.CHAIN, backup.backup_id)

    assert [call[0] for call in catalog.calls] == [101, 102, 103]
    assert all(set(fields) == {"compare_at_price"} for _, fields in catalog.calls)
    assert catalog.variants[101].compare_at_price == 1590
    assert catalog.variants[102].compare_at_price == 1700
    assert result.log[1] == "OK 102: compare null->1700"
    assert catalog.variants[102].price == 1650
    assert result.state is RunState.APPLIED


@pytest.mark.asyncio
async def test_chain_apply_skips_groups_without_baseline_compare(orchestrator, catalog, sleeper):
    catalog.variants = {v.variant_id: v for v in chain_product(20, baseline_compare=None)}
    backup = await orchestrator.backup(Mode.CHAIN)
    result = await orchestrator.apply(Mode.CHAIN, backup.backup_id)

    assert catalog.calls == []
    assert sleeper.delays == []
    assert result.summary.to_dict() == {"updated": 0, "skipped": 3, "errors": 0}
    assert all(line.endswith("no-baseline-compare") for line in result.log)


@pytest.mark.asyncio
async def test_cancel_stops_before_next_item(orchestrator, catalog, log_store):
    backup = await orchestrator.backup(Mode.PERCENT, 10)

    async def cancel_after_first(variant_id):
        if variant_id == 1:
            assert orchestrator.cancel() is True

    catalog.on_update = cancel_after_first
    result = await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    assert result.cancelled
    assert result.state is RunState.CANCELLED
    assert result.remaining == 2
    assert [call[0] for call in catalog.calls] == [1]
    assert len(result.log) == 1
    stored = log_store.get(result.run_id)
    assert stored.cancelled is True
    assert stored.remaining == 2
    assert not orchestrator.busy


def test_cancel_without_active_run(orchestrator):
    assert orchestrator.cancel() is False


@pytest.mark.asyncio
async def test_second_run_is_refused_while_one_is_active(orchestrator, catalog):
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    refused = []

    async def start_another(variant_id):
        if variant_id == 1:
            assert orchestrator.busy
            with pytest.raises(RunInProgressError):
                await orchestrator.rollback(backup.backup_id)
            refused.append(variant_id)

    catalog.on_update = start_another
    result = await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    assert refused == [1]
    assert result.summary.updated == 3
    assert not orchestrator.busy


@pytest.mark.asyncio
async def test_lock_is_released_after_validation_error(orchestrator, catalog):
    catalog.variants.update({v.variant_id: v for v in chain_product()})
    chain_backup = await orchestrator.backup(Mode.CHAIN)
    with pytest.raises(ValidationError):
        await orchestrator.apply(Mode.PERCENT, chain_backup.backup_id, 10)
    assert not orchestrator.busy
    result = await orchestrator.apply(Mode.CHAIN, chain_backup.backup_id)
    assert result.state is RunState.APPLIED


@pytest.mark.asyncio
@pytest.mark.parametrize("pct", [float("inf"), float("-inf"), float("nan")])
async def test_non_finite_pct_is_rejected(orchestrator, catalog, pct):
    with pytest.raises(ValidationError):
        await orchestrator.preview(Mode.PERCENT, pct)
    assert catalog.fetches == 0


@pytest.mark.asyncio
async def test_unexpected_client_error_is_recorded_and_batch_continues(orchestrator, catalog, sleeper, log_store):
    catalog.crash_ids.add(2)
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    result = await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    assert [call[0] for call in catalog.calls] == [1, 2, 3]
    assert result.state is RunState.APPLIED
    assert result.summary.to_dict() == {"updated": 2, "skipped": 1, "errors": 1}
    assert result.log[1] == "ERR 2: RuntimeError: connection pool closed"
    assert len(sleeper.delays) == 3
    assert log_store.get(result.run_id).errors == 1


def _stored_logs(log_store):
    return [log_store.get(path.name.removesuffix(".log.json")) for path in log_store.root.glob("*.log.json")]


@pytest.mark.asyncio
async def test_interrupted_throttle_still_writes_log(catalog, backup_store, log_store):
    async def interrupted_sleep(delay):
        raise asyncio.CancelledError()

    orchestrator = RunOrchestrator(
        catalog, backup_store, log_store, rules=load_chain_rules(), throttle=Throttle(delay=0.12, sleep=interrupted_sleep)
    )
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    with pytest.raises(asyncio.CancelledError):
        await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    assert [call[0] for call in catalog.calls] == [1]
    (stored,) = _stored_logs(log_store)
    assert stored.lines == ["OK 1: price 1500->1690, compare 1790->1990"]
    assert stored.updated == 1
    assert stored.cancelled is True
    assert stored.remaining == 2
    assert not orchestrator.busy


@pytest.mark.asyncio
async def test_interrupted_update_is_logged_as_error(orchestrator, catalog, log_store):
    backup = await orchestrator.backup(Mode.PERCENT, 10)

    async def interrupt_second(variant_id):
        if variant_id == 2:
            raise asyncio.CancelledError()

    catalog.on_update = interrupt_second
    with pytest.raises(asyncio.CancelledError):
        await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)

    (stored,) = _stored_logs(log_store)
    assert stored.lines[1] == "ERR 2: interrupted (CancelledError)"
    assert stored.errors == 1
    assert stored.remaining == 1
    assert stored.cancelled is True


@pytest.mark.asyncio
async def test_rollback_continues_past_failures(orchestrator, catalog, sleeper):
    backup = await orchestrator.backup(Mode.PERCENT, 10)
    await orchestrator.apply(Mode.PERCENT, backup.backup_id, 10)
    sleeper.delays.clear()
    catalog.fail_ids.add(2)

    result = await orchestrator.rollback(backup.backup_id)

    assert result.state is RunState.ROLLED_BACK
    assert result.summary.errors == 1
    assert result.summary.updated == 2
    assert result.summary.updated + result.summary.skipped == 3
    assert result.log[1].startswith("ERR 2:")
    assert catalog.variants[1].price == 1500
    assert catalog.variants[3].price == 2400
    assert len(sleeper.delays) == 3


@pytest.mark.asyncio
async def test_chain_rollback_restores_price_and_compare(orchestrator, catalog):
    catalog.variants = {v.variant_id: v for v in chain_product(10)}
    before = dict(catalog.variants)
    backup = await orchestrator.backup(Mode.CHAIN)
    await orchestrator.apply(Mode.CHAIN, backup.backup_id)
    # A price edit made after the backup is reverted too.
    catalog.variants[102] = replace(catalog.variants[102], price=Decimal("1790"))

    result = await orchestrator.rollback(backup.backup_id)

    assert result.summary.to_dict() == {"updated": 3, "skipped": 0, "errors": 0}
    assert catalog.variants == before
    assert catalog.calls[-2] == (102, {"price": Decimal("1650"), "compare_at_price": None})
