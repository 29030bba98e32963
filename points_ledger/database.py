"""
数据库连接模块
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict

from alembic import command
from alembic.config import Config
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from points_ledger.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def to_async_url(url: str) -> str:
    """将 postgresql:// 转换为 postgresql+asyncpg://"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str, **overrides: Any) -> AsyncEngine:
    """
    创建异步引擎

    SQLite 仅用于本地开发和测试，不设置连接池大小，
    并启用 busy timeout 让并发写入排队等待锁。
    """
    async_url = to_async_url(url)
    options: Dict[str, Any] = {"echo": False}
    if async_url.startswith("sqlite"):
        options["connect_args"] = {"timeout": 30}
    else:
        options.update(
            pool_pre_ping=True,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    options.update(overrides)
    return create_async_engine(async_url, **options)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url)

AsyncSessionLocal = build_sessionmaker(engine)


class Base(DeclarativeBase):
    """SQLAlchemy 基类"""
    pass


def run_migrations() -> None:
    """运行 Alembic 数据库迁移"""
    config_path = Path(__file__).resolve().parents[1] / "alembic.ini"
    alembic_cfg = Config(str(config_path))
    command.upgrade(alembic_cfg, "head")


async def init_db():
    """初始化数据库表"""
    # 先导入所有模型，确保它们注册到 Base.metadata
    from points_ledger.models import enrollment, transaction, program, notification  # noqa: F401

    # 创建基础表结构（如果不存在）
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # 运行 Alembic 迁移（处理增量变更）
    await asyncio.to_thread(run_migrations)
    logger.info("Database initialized")
