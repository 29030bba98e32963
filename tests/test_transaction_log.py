from datetime import datetime, timedelta, timezone

import pytest

from points_ledger.schemas.ledger import TransactionFilter
from points_ledger.services.exceptions import InvalidRequest, NotEnrolled


async def _seed(service):
    # business 1: program 1, 2    business 2: program 3
    await service.award(1, 1, 1, 50, source="QR_SCAN")
    await service.award(1, 1, 2, 30)
    await service.award(2, 1, 1, 10)
    await service.award(2, 2, 3, 70)
    await service.redeem(1, 1, 7, 20)


@pytest.mark.anyio
async def test_filter_by_customer(service):
    await _seed(service)

    page = await service.get_transactions(customer_id=1)

    assert page.total == 3
    assert {t.customer_id for t in page.transactions} == {1}


@pytest.mark.anyio
async def test_filter_by_business_and_program(service):
    await _seed(service)

    by_business = await service.get_transactions(business_id=2)
    assert by_business.total == 1
    assert by_business.transactions[0].program_id == 3

    by_program = await service.get_transactions(program_id=1)
    assert by_program.total == 3


@pytest.mark.anyio
async def test_filter_by_kind(service):
    await _seed(service)

    awards = await service.get_transactions(kind="AWARD")
    redemptions = await service.get_transactions(kind="REDEEM")

    assert awards.total == 4
    assert redemptions.total == 1
    assert redemptions.transactions[0].reward_id == 7


@pytest.mark.anyio
async def test_filter_by_date_range(service):
    await _seed(service)
    now = datetime.now(timezone.utc)

    everything = await service.get_transactions(
        start_date=now - timedelta(hours=1), end_date=now + timedelta(hours=1)
    )
    assert everything.total == 5

    future = await service.get_transactions(start_date=now + timedelta(days=1))
    assert future.total == 0
    assert future.transactions == []


@pytest.mark.anyio
async def test_newest_first_with_pagination(service):
    for _ in range(5):
        await service.award(1, 1, 1, 10)

    first = await service.get_transactions(customer_id=1, page=1, page_size=2)
    second = await service.get_transactions(customer_id=1, page=2, page_size=2)
    last = await service.get_transactions(customer_id=1, page=3, page_size=2)

    assert first.total == 5
    assert [t.balance_after for t in first.transactions] == [50, 40]
    assert [t.balance_after for t in second.transactions] == [30, 20]
    assert [t.balance_after for t in last.transactions] == [10]


@pytest.mark.anyio
async def test_page_size_capped(service):
    await service.award(1, 1, 1, 10)

    page = await service.get_transactions(customer_id=1, page_size=5000)
    assert page.page_size == 1000

    default_page = await service.get_transactions(customer_id=1)
    assert default_page.page_size == 50


@pytest.mark.anyio
async def test_filter_object_accepted(service):
    await _seed(service)

    page = await service.get_transactions(TransactionFilter(customer_id=2, program_id=3))
    assert page.total == 1

    with pytest.raises(InvalidRequest):
        await service.get_transactions(TransactionFilter(customer_id=2), program_id=3)


@pytest.mark.anyio
async def test_invalid_filters_rejected(service):
    now = datetime.now(timezone.utc)

    with pytest.raises(InvalidRequest):
        await service.get_transactions(start_date=now, end_date=now - timedelta(days=1))
    with pytest.raises(InvalidRequest):
        await service.get_transactions(page=0)
    with pytest.raises(InvalidRequest):
        await service.get_transactions(kind="REFUND")
    with pytest.raises(InvalidRequest):
        await service.get_transactions(merchant_id=1)


@pytest.mark.anyio
async def test_business_stats(service):
    await _seed(service)

    stats = await service.get_business_stats(1)
    assert stats.total_transactions == 4
    assert stats.total_points_awarded == 90
    assert stats.total_points_redeemed == 20
    assert stats.unique_customers == 2

    other = await service.get_business_stats(2)
    assert other.total_points_awarded == 70
    assert other.unique_customers == 1

    empty = await service.get_business_stats(42)
    assert empty.total_transactions == 0
    assert empty.total_points_awarded == 0


@pytest.mark.anyio
async def test_balances(service):
    await _seed(service)

    balance = await service.get_balance(1, 1)
    assert balance.current_points == 30

    enrollments = await service.list_enrollments(1)
    assert [(e.program_id, e.current_points) for e in enrollments] == [(1, 30), (2, 30)]

    assert await service.list_enrollments(99) == []

    with pytest.raises(NotEnrolled):
        await service.get_balance(99, 1)


@pytest.mark.anyio
async def test_enroll_returns_existing(service):
    created = await service.enroll(3, 1)
    assert created.current_points == 0

    await service.award(3, 1, 1, 15)
    existing = await service.enroll(3, 1)
    assert existing.current_points == 15
