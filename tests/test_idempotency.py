import asyncio

import pytest

from points_ledger.services.exceptions import IdempotencyConflict


@pytest.mark.anyio
async def test_repeated_award_is_applied_once(service, notifier, ledger_state):
    first = await service.award(1, 1, 1, 50, idempotency_key="scan-001")
    second = await service.award(1, 1, 1, 50, idempotency_key="scan-001")

    assert first.replayed is False
    assert second.replayed is True
    assert second.transaction_id == first.transaction_id
    assert second.new_balance == first.new_balance == 50
    assert await ledger_state(1, 1) == (50, 50, 1)
    # 重放不再发送通知
    assert len(notifier.sent) == 1


@pytest.mark.anyio
async def test_replay_returns_original_balance(service):
    first = await service.award(1, 1, 1, 50, idempotency_key="scan-001")
    await service.award(1, 1, 1, 25)

    replay = await service.award(1, 1, 1, 50, idempotency_key="scan-001")
    assert replay.new_balance == first.new_balance == 50


@pytest.mark.anyio
async def test_repeated_redeem_is_applied_once(service, ledger_state):
    await service.award(1, 1, 1, 50)

    first = await service.redeem(1, 1, 7, 30, idempotency_key="redeem-7")
    second = await service.redeem(1, 1, 7, 30, idempotency_key="redeem-7")

    assert second.replayed is True
    assert second.transaction_id == first.transaction_id
    assert second.new_balance == 20
    assert await ledger_state(1, 1) == (20, 20, 2)


@pytest.mark.anyio
async def test_key_reused_for_different_award(service, ledger_state):
    await service.award(1, 1, 1, 50, idempotency_key="scan-001")

    with pytest.raises(IdempotencyConflict):
        await service.award(1, 1, 1, 60, idempotency_key="scan-001")

    with pytest.raises(IdempotencyConflict):
        await service.award(2, 1, 1, 50, idempotency_key="scan-001")

    assert await ledger_state(1, 1) == (50, 50, 1)


@pytest.mark.anyio
async def test_key_reused_across_kinds(service):
    await service.award(1, 1, 1, 50, idempotency_key="shared")

    with pytest.raises(IdempotencyConflict):
        await service.redeem(1, 1, 7, 50, idempotency_key="shared")


@pytest.mark.anyio
async def test_concurrent_awards_with_same_key(service, ledger_state):
    results = await asyncio.gather(*[
        service.award(1, 1, 1, 50, idempotency_key="scan-concurrent")
        for _ in range(5)
    ])

    assert len({r.transaction_id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) == 1
    assert all(r.new_balance == 50 for r in results)
    assert await ledger_state(1, 1) == (50, 50, 1)


@pytest.mark.anyio
async def test_concurrent_redeems_with_same_key(service, ledger_state):
    await service.award(1, 1, 1, 100)

    results = await asyncio.gather(*[
        service.redeem(1, 1, 7, 30, idempotency_key="redeem-concurrent")
        for _ in range(5)
    ])

    assert len({r.transaction_id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) == 1
    assert all(r.new_balance == 70 for r in results)
    assert await ledger_state(1, 1) == (70, 70, 2)
