import os

# 必须在导入 points_ledger 之前设置
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./points_ledger_test.db")
os.environ.setdefault("CELERY_BROKER", "memory://")
os.environ.setdefault("CELERY_BACKEND", "cache+memory://")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "standard")

import asyncio

import pytest
from sqlalchemy import func, select

from points_ledger.database import Base, build_engine, build_sessionmaker
from points_ledger.models import Enrollment, PointTransaction  # noqa: F401
from points_ledger.services.ledger_service import LedgerService
from points_ledger.services.notifier import Notifier
from points_ledger.services.program_registry import ProgramRegistry

# program_id -> business_id
PROGRAMS = {1: 1, 2: 1, 3: 2}


class FakeProgramRegistry(ProgramRegistry):
    def __init__(self, programs=None):
        self.programs = dict(PROGRAMS if programs is None else programs)

    async def get_business_id(self, db, program_id):
        return self.programs.get(program_id)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, type, title, message, metadata=None):
        self.sent.append({
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "metadata": metadata,
        })


class FailingNotifier(Notifier):
    async def notify(self, user_id, type, title, message, metadata=None):
        raise RuntimeError("notification backend down")


class SlowNotifier(Notifier):
    async def notify(self, user_id, type, title, message, metadata=None):
        await asyncio.sleep(10)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "ledger.db"


@pytest.fixture
async def engine(db_path):
    engine = build_engine(f"sqlite+aiosqlite:///{db_path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def registry():
    return FakeProgramRegistry()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(session_factory, registry, notifier):
    return LedgerService(
        session_factory,
        registry,
        notifier,
        max_award_points=10000,
        notification_timeout=0.5,
    )


@pytest.fixture
def ledger_state(session_factory):
    """返回 (余额或 None, 流水带符号之和, 流水条数)"""

    async def _state(customer_id, program_id):
        async with session_factory() as db:
            balance = (await db.execute(
                select(Enrollment.current_points).where(
                    Enrollment.customer_id == customer_id,
                    Enrollment.program_id == program_id,
                )
            )).scalar_one_or_none()
            rows = (await db.execute(
                select(PointTransaction).where(
                    PointTransaction.customer_id == customer_id,
                    PointTransaction.program_id == program_id,
                )
            )).scalars().all()
        return balance, sum(row.signed_points for row in rows), len(rows)

    return _state


@pytest.fixture
def count_rows(session_factory):
    async def _count(model):
        async with session_factory() as db:
            return (await db.execute(select(func.count()).select_from(model))).scalar()

    return _count
