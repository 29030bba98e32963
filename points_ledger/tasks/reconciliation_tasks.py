"""
账本对账任务（定时）

逐个 (customer, program) 比较余额与流水之和，差异只告警不修正。
"""
import logging
from datetime import datetime
from typing import Dict, Any

from points_ledger.celery_app import celery_app
from points_ledger.tasks.base import get_task_db, record_task_result

logger = logging.getLogger(__name__)


@celery_app.task(
    name="points_ledger.tasks.reconciliation_tasks.reconcile_ledger_task",
    bind=True,
)
def reconcile_ledger_task(self) -> Dict[str, Any]:
    """
    对账

    Returns:
        对账结果统计
    """
    from points_ledger.services import transaction_log

    task_id = self.request.id
    start_time = datetime.now()

    logger.info(f"[{task_id}] Starting ledger reconciliation")

    db = get_task_db()
    try:
        isolation = transaction_log.SNAPSHOT_ISOLATION.get(db.get_bind().dialect.name)
        if isolation:
            db.connection(execution_options={"isolation_level": isolation})
        balances = db.execute(transaction_log.enrollment_balances_statement()).all()
        sums = db.execute(transaction_log.ledger_sums_statement()).all()
        db.rollback()

        checked, mismatches = transaction_log.find_mismatches(balances, sums)
        transaction_log.report_mismatches(mismatches)

        duration = (datetime.now() - start_time).total_seconds()
        return record_task_result(
            task_id=task_id,
            task_name="reconcile_ledger",
            status="success",
            result={
                "checked_pairs": checked,
                "mismatch_count": len(mismatches),
                "mismatches": [m.model_dump() for m in mismatches[:100]],
            },
            duration=duration,
        )

    except Exception as e:
        logger.error(f"[{task_id}] Ledger reconciliation failed: {e}")
        db.rollback()
        duration = (datetime.now() - start_time).total_seconds()
        record_task_result(
            task_id=task_id,
            task_name="reconcile_ledger",
            status="failed",
            error=str(e),
            duration=duration,
        )
        raise

    finally:
        db.close()
