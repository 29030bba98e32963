import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from points_ledger.models import CustomerNotification, Enrollment
from points_ledger.services.notifier import CeleryNotifier, NOTIFICATION_POINTS_EARNED
from points_ledger.tasks import base
from points_ledger.tasks.notification_tasks import deliver_notification_task
from points_ledger.tasks.reconciliation_tasks import reconcile_ledger_task


@pytest.fixture
def task_sessions(engine, db_path, monkeypatch):
    sync_engine = create_engine(f"sqlite:///{db_path}")
    monkeypatch.setattr(base, "_SessionLocal", sessionmaker(bind=sync_engine))
    yield
    sync_engine.dispose()


def test_to_sync_url():
    assert base.to_sync_url("postgresql+asyncpg://u:p@db/loyalty") == "postgresql://u:p@db/loyalty"
    assert base.to_sync_url("sqlite+aiosqlite:///./x.db") == "sqlite:///./x.db"


@pytest.mark.anyio
async def test_deliver_notification_task(task_sessions, session_factory):
    result = deliver_notification_task.apply(kwargs={
        "user_id": 1,
        "notification_type": NOTIFICATION_POINTS_EARNED,
        "title": "Points Earned",
        "message": "You earned 50 points!",
        "metadata": {"points": 50, "program_id": 1},
    }).get()

    assert result["status"] == "success"

    async with session_factory() as db:
        notifications = (await db.execute(select(CustomerNotification))).scalars().all()
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.id == result["result"]["notification_id"]
    assert notification.user_id == 1
    assert notification.data == {"points": 50, "program_id": 1}
    assert notification.is_read is False


@pytest.mark.anyio
async def test_reconcile_task(task_sessions, service, session_factory):
    await service.award(1, 1, 1, 50)
    await service.redeem(1, 1, 7, 20)
    await service.award(2, 1, 2, 10)

    clean = reconcile_ledger_task.apply().get()
    assert clean["result"]["checked_pairs"] == 2
    assert clean["result"]["mismatch_count"] == 0

    async with session_factory() as db:
        await db.execute(
            update(Enrollment).where(Enrollment.customer_id == 2).values(current_points=3)
        )
        await db.commit()

    dirty = reconcile_ledger_task.apply().get()
    assert dirty["result"]["mismatch_count"] == 1
    assert dirty["result"]["mismatches"][0] == {
        "customer_id": 2,
        "program_id": 2,
        "enrollment_points": 3,
        "ledger_points": 10,
    }


@pytest.mark.anyio
async def test_celery_notifier_enqueues_task(monkeypatch):
    calls = []

    def fake_apply_async(**kwargs):
        calls.append(kwargs)

    monkeypatch.setattr(deliver_notification_task, "apply_async", fake_apply_async)

    await CeleryNotifier().notify(1, NOTIFICATION_POINTS_EARNED, "Points Earned", "hi", {"points": 5})

    assert calls == [{
        "kwargs": {
            "user_id": 1,
            "notification_type": NOTIFICATION_POINTS_EARNED,
            "title": "Points Earned",
            "message": "hi",
            "metadata": {"points": 5},
        },
        "retry": False,
    }]


def test_daily_reconciliation_scheduled():
    from points_ledger.celery_app import celery_app

    entry = celery_app.conf.beat_schedule["reconcile-ledger-daily"]
    assert entry["task"] == reconcile_ledger_task.name
