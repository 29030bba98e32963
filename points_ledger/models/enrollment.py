"""
会员计划注册模型（积分余额）
"""
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from points_ledger.database import Base
from points_ledger.utils.timezone import utc_now_naive


class Enrollment(Base):
    """客户在某个积分计划中的注册记录与当前余额"""
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("customer_id", "program_id", name="uq_enrollments_customer_program"),
        CheckConstraint("current_points >= 0", name="ck_enrollments_points_non_negative"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id: Mapped[int] = mapped_column(Integer, index=True)
    program_id: Mapped[int] = mapped_column(Integer, index=True)
    current_points: Mapped[int] = mapped_column(Integer, default=0)
    total_points_earned: Mapped[int] = mapped_column(Integer, default=0)  # 累计获得
    total_points_redeemed: Mapped[int] = mapped_column(Integer, default=0)  # 累计兑换
    enrolled_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )
