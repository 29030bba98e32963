"""
Celery 任务模块

提供异步任务处理能力：
- notification_tasks: 客户通知投递
- reconciliation_tasks: 账本对账
"""
from points_ledger.celery_app import celery_app

__all__ = ["celery_app"]
