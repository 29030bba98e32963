"""
客户通知投递

账本事务提交后才会调用，投递失败只记录日志，不影响积分变动。
默认实现把消息交给 Celery 队列，由 worker 异步处理。
"""
import asyncio
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

NOTIFICATION_POINTS_EARNED = "points_earned"
NOTIFICATION_REWARD_REDEEMED = "reward_redeemed"


class Notifier:
    """通知接口"""

    async def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    """关闭通知时使用"""

    async def notify(self, user_id, type, title, message, metadata=None) -> None:
        logger.debug(f"Notifications disabled, dropping {type} for user {user_id}")


class CeleryNotifier(Notifier):
    """
    通过 Celery 队列投递通知

    apply_async 会同步连接 broker，放到线程中执行，避免阻塞事件循环。
    """

    async def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        from points_ledger.tasks.notification_tasks import deliver_notification_task

        await asyncio.to_thread(
            deliver_notification_task.apply_async,
            kwargs={
                "user_id": user_id,
                "notification_type": type,
                "title": title,
                "message": message,
                "metadata": metadata or {},
            },
            retry=False,
        )
