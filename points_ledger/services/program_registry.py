"""
积分计划查询（只读）

账本在修改余额前通过它确认 program 存在、处于启用状态，并取得所属商家。
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models.program import LoyaltyProgram, PROGRAM_STATUS_ACTIVE


class ProgramRegistry:
    """积分计划查询接口"""

    async def get_business_id(self, db: AsyncSession, program_id: int) -> Optional[int]:
        """返回启用中的计划所属商家 ID，计划不存在或已停用返回 None"""
        raise NotImplementedError


class SqlProgramRegistry(ProgramRegistry):
    """基于 loyalty_programs 表的实现"""

    async def get_business_id(self, db: AsyncSession, program_id: int) -> Optional[int]:
        result = await db.execute(
            select(LoyaltyProgram.business_id).where(
                LoyaltyProgram.id == program_id,
                LoyaltyProgram.status == PROGRAM_STATUS_ACTIVE,
            )
        )
        return result.scalar_one_or_none()
