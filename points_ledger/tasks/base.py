"""
账本 worker 公共工具

worker 不使用异步引擎，按 DATABASE_URL 建立独立的同步连接。
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from points_ledger.config import get_settings

_sync_engine = None
_SessionLocal: Optional[sessionmaker] = None

logger = logging.getLogger(__name__)


def to_sync_url(url: str) -> str:
    """把异步驱动的 URL 转换为同步驱动"""
    return (
        url.replace("postgresql+asyncpg://", "postgresql://")
        .replace("sqlite+aiosqlite://", "sqlite://")
    )


def _get_sync_sessionmaker() -> sessionmaker:
    global _sync_engine, _SessionLocal
    if _SessionLocal is None:
        settings = get_settings()
        url = to_sync_url(settings.database_url)
        options: Dict[str, Any] = {"pool_pre_ping": True}
        if not url.startswith("sqlite"):
            options.update(pool_size=5, max_overflow=10)
        _sync_engine = create_engine(url, **options)
        _SessionLocal = sessionmaker(bind=_sync_engine)
    return _SessionLocal


def get_task_db() -> Session:
    """通知写入与对账共用的同步会话，调用方负责关闭"""
    return _get_sync_sessionmaker()()


def record_task_result(
    task_id: str,
    task_name: str,
    status: str,
    result: Optional[Any] = None,
    error: Optional[str] = None,
    duration: float = 0,
) -> Dict[str, Any]:
    """记录账本任务结果（失败为 ERROR 日志），返回值即任务结果"""
    summary = {
        "task_id": task_id,
        "task_name": task_name,
        "status": status,
        "duration": f"{duration:.2f}s",
        "finished_at": datetime.now().isoformat(),
    }

    if error:
        summary["error"] = error
        logger.error(f"Ledger task {task_name} failed: {summary}")
    else:
        summary["result"] = result
        logger.info(f"Ledger task {task_name} finished: {summary}")

    return summary
