"""
积分交易模型（只追加，不修改）
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from points_ledger.database import Base
from points_ledger.utils.timezone import utc_now_naive


class TransactionKind(str, Enum):
    """交易类型"""
    AWARD = "AWARD"    # 发放
    REDEEM = "REDEEM"  # 兑换

    @property
    def sign(self) -> int:
        return 1 if self is TransactionKind.AWARD else -1


class PointTransaction(Base):
    """积分交易记录表"""
    __tablename__ = "point_transactions"
    __table_args__ = (
        CheckConstraint("points > 0", name="ck_point_transactions_points_positive"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id: Mapped[int] = mapped_column(Integer, index=True)
    business_id: Mapped[int] = mapped_column(Integer, index=True)
    program_id: Mapped[int] = mapped_column(Integer, index=True)
    kind: Mapped[str] = mapped_column(String(10))
    points: Mapped[int] = mapped_column(Integer)  # 变动幅度，正负由 kind 决定
    reward_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 仅 REDEEM
    source: Mapped[str] = mapped_column(String(50))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, nullable=True
    )
    balance_after: Mapped[int] = mapped_column(Integer)  # 交易后余额
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, index=True
    )

    @property
    def signed_points(self) -> int:
        return TransactionKind(self.kind).sign * self.points
