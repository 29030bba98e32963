import random

import pytest
from sqlalchemy import update

from points_ledger.models import Enrollment, PointTransaction
from points_ledger.services import transaction_log
from points_ledger.services.exceptions import InsufficientPoints, NotEnrolled


@pytest.mark.anyio
async def test_clean_ledger_is_consistent(service):
    await service.award(1, 1, 1, 50)
    await service.award(1, 1, 2, 20)
    await service.redeem(1, 1, 7, 30)
    await service.enroll(2, 1)

    report = await service.reconcile()

    assert report.checked_pairs == 3
    assert report.is_consistent


@pytest.mark.anyio
async def test_tampered_balance_is_reported(service, session_factory, ledger_state):
    await service.award(1, 1, 1, 50)
    await service.award(2, 1, 1, 10)

    async with session_factory() as db:
        await db.execute(
            update(Enrollment)
            .where(Enrollment.customer_id == 1, Enrollment.program_id == 1)
            .values(current_points=999)
        )
        await db.commit()

    report = await service.reconcile()

    assert not report.is_consistent
    assert len(report.mismatches) == 1
    mismatch = report.mismatches[0]
    assert (mismatch.customer_id, mismatch.program_id) == (1, 1)
    assert mismatch.enrollment_points == 999
    assert mismatch.ledger_points == 50
    assert mismatch.difference == 949
    # 对账不修正数据
    assert (await ledger_state(1, 1))[0] == 999


@pytest.mark.anyio
async def test_transactions_without_enrollment_are_reported(service, session_factory):
    async with session_factory() as db:
        db.add(PointTransaction(
            customer_id=5,
            business_id=1,
            program_id=1,
            kind="AWARD",
            points=10,
            source="MANUAL",
            balance_after=10,
        ))
        await db.commit()

    report = await service.reconcile()

    assert len(report.mismatches) == 1
    assert report.mismatches[0].enrollment_points is None
    assert report.mismatches[0].ledger_points == 10


@pytest.mark.anyio
async def test_random_operations_keep_balance_equal_to_ledger(service, ledger_state):
    rng = random.Random(20240611)

    for _ in range(60):
        customer_id = rng.choice([1, 2])
        program_id = rng.choice([1, 2])
        if rng.random() < 0.6:
            await service.award(customer_id, 1, program_id, rng.randint(1, 100))
        else:
            try:
                await service.redeem(customer_id, program_id, 1, rng.randint(1, 80))
            except (InsufficientPoints, NotEnrolled):
                pass

        balance, ledger_sum, _ = await ledger_state(customer_id, program_id)
        if balance is not None:
            assert balance == ledger_sum
            assert balance >= 0

    report = await service.reconcile()
    assert report.is_consistent


def test_find_mismatches():
    balances = [(1, 1, 50), (1, 2, 0), (2, 1, 10)]
    sums = [(1, 1, 50), (2, 1, 15), (3, 1, 5)]

    checked, mismatches = transaction_log.find_mismatches(balances, sums)

    assert checked == 4
    assert [(m.customer_id, m.program_id) for m in mismatches] == [(2, 1), (3, 1)]
    assert mismatches[0].difference == -5
    assert mismatches[1].enrollment_points is None
