"""
客户通知任务

账本提交后通过队列投递，worker 负责写入通知表。
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any
from points_ledger.celery_app import celery_app
from points_ledger.tasks.base import get_task_db, record_task_result

logger = logging.getLogger(__name__)


@celery_app.task(
    name="points_ledger.tasks.notification_tasks.deliver_notification_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def deliver_notification_task(
    self,
    user_id: int,
    notification_type: str,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    写入客户通知

    Args:
        user_id: 客户 ID
        notification_type: 通知类型 (points_earned / reward_redeemed)
        title: 标题
        message: 内容
        metadata: 附加数据（积分、计划、交易 ID 等）

    Returns:
        任务结果字典
    """
    from points_ledger.models.notification import CustomerNotification

    task_id = self.request.id
    start_time = datetime.now()

    logger.info(f"[{task_id}] Delivering {notification_type} notification to customer {user_id}")

    db = get_task_db()
    try:
        notification = CustomerNotification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            data=metadata or {},
        )
        db.add(notification)
        db.commit()

        duration = (datetime.now() - start_time).total_seconds()
        return record_task_result(
            task_id=task_id,
            task_name="deliver_notification",
            status="success",
            result={"user_id": user_id, "notification_id": notification.id},
            duration=duration,
        )

    except Exception as e:
        logger.error(f"[{task_id}] Notification delivery failed: {e}")
        db.rollback()

        duration = (datetime.now() - start_time).total_seconds()
        record_task_result(
            task_id=task_id,
            task_name="deliver_notification",
            status="failed",
            error=str(e),
            duration=duration,
        )

        # 重试
        raise self.retry(exc=e)

    finally:
        db.close()
