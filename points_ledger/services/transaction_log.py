"""
交易流水 - 只追加的积分变动记录

提供：
1. 追加记录（在调用方事务中）
2. 幂等键查询
3. 多条件分页查询
4. 商家统计
5. 对账（余额 vs 流水之和）
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Select, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models.enrollment import Enrollment
from points_ledger.models.transaction import PointTransaction, TransactionKind
from points_ledger.schemas.ledger import ReconciliationMismatch, TransactionFilter
from points_ledger.utils.metrics import RECONCILIATION_MISMATCHES
from points_ledger.utils.timezone import to_utc_optional, utc_now_naive

logger = logging.getLogger(__name__)

PairKey = Tuple[int, int]

# 对账时两次查询需要读到同一快照
SNAPSHOT_ISOLATION = {"postgresql": "REPEATABLE READ"}


async def append(
    db: AsyncSession,
    *,
    customer_id: int,
    business_id: int,
    program_id: int,
    kind: TransactionKind,
    points: int,
    balance_after: int,
    source: str,
    description: Optional[str] = None,
    reward_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> PointTransaction:
    """
    追加一条交易记录

    立即 flush，使幂等键唯一约束冲突在事务内抛出。
    """
    transaction = PointTransaction(
        customer_id=customer_id,
        business_id=business_id,
        program_id=program_id,
        kind=kind.value,
        points=points,
        reward_id=reward_id,
        source=source,
        description=description,
        idempotency_key=idempotency_key,
        balance_after=balance_after,
        created_at=utc_now_naive(),
    )
    db.add(transaction)
    await db.flush()
    return transaction


async def find_by_idempotency_key(db: AsyncSession, key: str) -> Optional[PointTransaction]:
    result = await db.execute(
        select(PointTransaction).where(PointTransaction.idempotency_key == key)
    )
    return result.scalar_one_or_none()


def _apply_filter(stmt: Select, criteria: TransactionFilter) -> Select:
    if criteria.customer_id is not None:
        stmt = stmt.where(PointTransaction.customer_id == criteria.customer_id)
    if criteria.business_id is not None:
        stmt = stmt.where(PointTransaction.business_id == criteria.business_id)
    if criteria.program_id is not None:
        stmt = stmt.where(PointTransaction.program_id == criteria.program_id)
    if criteria.kind is not None:
        stmt = stmt.where(PointTransaction.kind == criteria.kind.value)
    start_date = to_utc_optional(criteria.start_date)
    if start_date is not None:
        stmt = stmt.where(PointTransaction.created_at >= start_date)
    end_date = to_utc_optional(criteria.end_date)
    if end_date is not None:
        stmt = stmt.where(PointTransaction.created_at <= end_date)
    return stmt


async def query(
    db: AsyncSession,
    criteria: TransactionFilter,
    page_size: int,
) -> Tuple[List[PointTransaction], int]:
    """
    分页查询交易记录（按时间倒序）

    Returns:
        (当前页记录, 总数)
    """
    count_result = await db.execute(
        _apply_filter(select(func.count(PointTransaction.id)), criteria)
    )
    total = count_result.scalar() or 0

    offset = (criteria.page - 1) * page_size
    result = await db.execute(
        _apply_filter(select(PointTransaction), criteria)
        .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
        .offset(offset)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


def _points_of(kind: TransactionKind):
    return case((PointTransaction.kind == kind.value, PointTransaction.points), else_=0)


async def business_stats(
    db: AsyncSession,
    business_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, int]:
    """商家交易统计"""
    stmt = select(
        func.count(PointTransaction.id),
        func.coalesce(func.sum(_points_of(TransactionKind.AWARD)), 0),
        func.coalesce(func.sum(_points_of(TransactionKind.REDEEM)), 0),
        func.count(func.distinct(PointTransaction.customer_id)),
    ).where(PointTransaction.business_id == business_id)

    start_date = to_utc_optional(start_date)
    end_date = to_utc_optional(end_date)
    if start_date is not None:
        stmt = stmt.where(PointTransaction.created_at >= start_date)
    if end_date is not None:
        stmt = stmt.where(PointTransaction.created_at <= end_date)

    row = (await db.execute(stmt)).one()
    return {
        "total_transactions": int(row[0] or 0),
        "total_points_awarded": int(row[1] or 0),
        "total_points_redeemed": int(row[2] or 0),
        "unique_customers": int(row[3] or 0),
    }


# ============================================================================
# 对账
# 语句与比对逻辑分开，异步服务和同步 Celery 任务共用
# ============================================================================

def enrollment_balances_statement() -> Select:
    return select(Enrollment.customer_id, Enrollment.program_id, Enrollment.current_points)


def ledger_sums_statement() -> Select:
    signed_points = case(
        (PointTransaction.kind == TransactionKind.AWARD.value, PointTransaction.points),
        else_=-PointTransaction.points,
    )
    return (
        select(
            PointTransaction.customer_id,
            PointTransaction.program_id,
            func.sum(signed_points),
        )
        .group_by(PointTransaction.customer_id, PointTransaction.program_id)
    )


def find_mismatches(
    balances: Iterable[Tuple[int, int, int]],
    ledger_sums: Iterable[Tuple[int, int, int]],
) -> Tuple[int, List[ReconciliationMismatch]]:
    """
    比对余额与流水之和

    Returns:
        (检查的 (customer, program) 数量, 差异列表)
    """
    balance_by_pair: Dict[PairKey, int] = {
        (customer_id, program_id): int(points)
        for customer_id, program_id, points in balances
    }
    sum_by_pair: Dict[PairKey, int] = {
        (customer_id, program_id): int(total or 0)
        for customer_id, program_id, total in ledger_sums
    }

    mismatches: List[ReconciliationMismatch] = []
    pairs = sorted(set(balance_by_pair) | set(sum_by_pair))
    for customer_id, program_id in pairs:
        enrollment_points = balance_by_pair.get((customer_id, program_id))
        ledger_points = sum_by_pair.get((customer_id, program_id), 0)
        if enrollment_points is None or enrollment_points != ledger_points:
            mismatches.append(ReconciliationMismatch(
                customer_id=customer_id,
                program_id=program_id,
                enrollment_points=enrollment_points,
                ledger_points=ledger_points,
            ))
    return len(pairs), mismatches


def report_mismatches(mismatches: List[ReconciliationMismatch]) -> None:
    """差异属于数据完整性告警：记录 ERROR 日志并更新指标，不做修正"""
    RECONCILIATION_MISMATCHES.set(len(mismatches))
    for mismatch in mismatches:
        logger.error(
            f"Ledger mismatch for customer {mismatch.customer_id} program {mismatch.program_id}: "
            f"enrollment={mismatch.enrollment_points} ledger={mismatch.ledger_points}"
        )
    if not mismatches:
        logger.info("Ledger reconciliation passed")
