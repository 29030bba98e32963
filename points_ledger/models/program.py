"""
积分计划模型

由计划管理模块维护，账本只读。
"""
from datetime import datetime
from sqlalchemy import String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from points_ledger.database import Base
from points_ledger.utils.timezone import utc_now_naive

PROGRAM_STATUS_ACTIVE = "ACTIVE"


class LoyaltyProgram(Base):
    """积分计划表"""
    __tablename__ = "loyalty_programs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default=PROGRAM_STATUS_ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
