"""
Celery 应用配置

支持多个队列：
- notifications: 客户通知投递
- reconciliation: 账本对账
"""
import os
from celery import Celery
from celery.schedules import crontab

from points_ledger.config import get_settings

settings = get_settings()

celery_app = Celery(
    "points_ledger",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=[
        "points_ledger.tasks.notification_tasks",
        "points_ledger.tasks.reconciliation_tasks",
    ]
)

# Celery 配置
celery_app.conf.update(
    # 任务结果过期时间（1天）
    result_expires=86400,
    # 任务结果序列化格式
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 任务超时设置（防止长时间运行的任务阻塞 worker）
    task_time_limit=3600,           # 硬超时：1小时后强制终止任务
    task_soft_time_limit=3000,      # 软超时：50分钟后发送 SoftTimeLimitExceeded 异常
    task_acks_late=True,            # 任务执行完成后才确认
    worker_prefetch_multiplier=1,   # 每次只预取一个任务
    # 任务路由
    task_routes={
        "points_ledger.tasks.notification_tasks.*": {"queue": "notifications"},
        "points_ledger.tasks.reconciliation_tasks.*": {"queue": "reconciliation"},
    },
    # 失败任务处理
    task_reject_on_worker_lost=True,
    # 定时任务
    beat_schedule={
        # 每天对账一次
        "reconcile-ledger-daily": {
            "task": "points_ledger.tasks.reconciliation_tasks.reconcile_ledger_task",
            "schedule": crontab(hour=settings.reconciliation_hour, minute=0),
        },
    },
)

# Worker 配置
celery_app.conf.worker_max_tasks_per_child = 1000
celery_app.conf.worker_concurrency = settings.celery_worker_concurrency or os.cpu_count() or 4

if __name__ == "__main__":
    celery_app.start()
