import asyncio

import pytest

from points_ledger.models import Enrollment
from points_ledger.services.exceptions import InsufficientPoints


@pytest.mark.anyio
async def test_concurrent_awards_are_all_applied(service, ledger_state):
    await service.award(1, 1, 1, 20)

    results = await asyncio.gather(*[service.award(1, 1, 1, 5) for _ in range(10)])

    assert sorted(r.new_balance for r in results) == list(range(25, 75, 5))
    assert await ledger_state(1, 1) == (70, 70, 11)


@pytest.mark.anyio
async def test_concurrent_first_awards_create_single_enrollment(service, count_rows, ledger_state):
    results = await asyncio.gather(*[service.award(1, 1, 1, 10) for _ in range(5)])

    assert sorted(r.new_balance for r in results) == [10, 20, 30, 40, 50]
    assert await count_rows(Enrollment) == 1
    assert await ledger_state(1, 1) == (50, 50, 5)


@pytest.mark.anyio
async def test_concurrent_enroll_is_idempotent(service, count_rows):
    enrollments = await asyncio.gather(*[service.enroll(1, 1) for _ in range(5)])

    assert {e.current_points for e in enrollments} == {0}
    assert await count_rows(Enrollment) == 1


@pytest.mark.anyio
async def test_concurrent_redeems_never_overdraw(service, ledger_state):
    await service.award(1, 1, 1, 100)

    outcomes = await asyncio.gather(
        *[service.redeem(1, 1, 7, 30) for _ in range(8)],
        return_exceptions=True,
    )

    succeeded = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, Exception)]
    assert len(succeeded) == 3
    assert all(isinstance(e, InsufficientPoints) for e in rejected)
    assert sorted(r.new_balance for r in succeeded) == [10, 40, 70]
    assert await ledger_state(1, 1) == (10, 10, 4)


@pytest.mark.anyio
async def test_concurrent_mixed_operations_stay_consistent(service, ledger_state):
    await service.award(1, 1, 1, 50)

    operations = []
    for i in range(6):
        operations.append(service.award(1, 1, 1, 10))
        operations.append(service.redeem(1, 1, i + 1, 15))
    outcomes = await asyncio.gather(*operations, return_exceptions=True)

    assert all(
        not isinstance(o, Exception) or isinstance(o, InsufficientPoints) for o in outcomes
    )
    balance, ledger_sum, _ = await ledger_state(1, 1)
    assert balance == ledger_sum
    assert balance >= 0
