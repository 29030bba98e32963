"""
注册存储 - 维护 (customer, program) -> 当前余额

所有函数都在调用方的事务中执行，不自行提交。
余额只能通过 increment_points / decrement_points 修改。
"""
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models.enrollment import Enrollment
from points_ledger.services.exceptions import EnrollmentCreateFailed
from points_ledger.utils.timezone import utc_now_naive

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _dialect_insert(session: AsyncSession):
    dialect = session.bind.dialect.name
    try:
        return _INSERT_BY_DIALECT[dialect]
    except KeyError:
        raise RuntimeError(f"Unsupported database dialect for enrollments: {dialect}")


async def get(
    db: AsyncSession,
    customer_id: int,
    program_id: int,
) -> Optional[Enrollment]:
    """查询注册记录，不存在返回 None"""
    stmt = (
        select(Enrollment)
        .where(Enrollment.customer_id == customer_id, Enrollment.program_id == program_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create(db: AsyncSession, customer_id: int, program_id: int) -> Enrollment:
    """
    获取或创建注册记录（余额为 0）

    使用 INSERT ... ON CONFLICT DO NOTHING，并发首次注册只会产生一行，
    冲突由唯一约束处理，不依赖应用层加锁。

    Raises:
        EnrollmentCreateFailed: 存储层错误
    """
    now = utc_now_naive()
    insert = _dialect_insert(db)
    stmt = (
        insert(Enrollment)
        .values(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            program_id=program_id,
            current_points=0,
            total_points_earned=0,
            total_points_redeemed=0,
            enrolled_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["customer_id", "program_id"])
    )
    try:
        await db.execute(stmt)
        enrollment = await get(db, customer_id, program_id)
    except SQLAlchemyError as e:
        raise EnrollmentCreateFailed(
            f"Failed to create enrollment for customer {customer_id} in program {program_id}"
        ) from e

    if enrollment is None:
        raise EnrollmentCreateFailed(
            f"Enrollment for customer {customer_id} in program {program_id} missing after insert"
        )
    return enrollment


async def increment_points(
    db: AsyncSession,
    customer_id: int,
    program_id: int,
    points: int,
) -> Optional[int]:
    """
    增加余额（原子操作）

    Returns:
        增加后的余额；注册记录不存在返回 None
    """
    result = await db.execute(
        update(Enrollment)
        .where(Enrollment.customer_id == customer_id, Enrollment.program_id == program_id)
        .values(
            current_points=Enrollment.current_points + points,
            total_points_earned=Enrollment.total_points_earned + points,
            updated_at=utc_now_naive(),
        )
        .returning(Enrollment.current_points)
    )
    return result.scalar_one_or_none()


async def decrement_points(
    db: AsyncSession,
    customer_id: int,
    program_id: int,
    points: int,
) -> Optional[int]:
    """
    扣减余额（原子操作）

    余额检查与扣减在同一条 UPDATE 中完成，该语句持有行锁，
    并发兑换会在行上排队并基于已提交的余额重新判断条件。

    Returns:
        扣减后的余额；注册记录不存在或余额不足返回 None
    """
    result = await db.execute(
        update(Enrollment)
        .where(
            Enrollment.customer_id == customer_id,
            Enrollment.program_id == program_id,
            Enrollment.current_points >= points,
        )
        .values(
            current_points=Enrollment.current_points - points,
            total_points_redeemed=Enrollment.total_points_redeemed + points,
            updated_at=utc_now_naive(),
        )
        .returning(Enrollment.current_points)
    )
    return result.scalar_one_or_none()


async def list_for_customer(db: AsyncSession, customer_id: int) -> List[Enrollment]:
    """客户的全部注册记录，按余额降序"""
    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.customer_id == customer_id)
        .order_by(Enrollment.current_points.desc(), Enrollment.program_id)
    )
    return list(result.scalars().all())
