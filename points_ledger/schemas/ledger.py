"""
积分账本 Schemas

请求/结果类型是封闭的：未知字段直接拒绝，整数字段不做字符串转换，
发放与兑换通过 kind 字段区分。
"""
from datetime import datetime
from typing import List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, StrictInt, ValidationError, model_validator

from points_ledger.models.transaction import TransactionKind
from points_ledger.services.exceptions import InvalidRequest

RequestT = TypeVar("RequestT", bound=BaseModel)

# 与数据库 INTEGER 列一致
INT32_MAX = 2**31 - 1


def parse_request(model: Type[RequestT], **data) -> RequestT:
    """构造请求对象，格式错误转换为 InvalidRequest"""
    try:
        return model(**data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidRequest(f"Invalid {model.__name__}: {errors}") from e


class EnrollRequest(BaseModel):
    """注册请求"""
    customer_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    program_id: StrictInt = Field(..., ge=1, le=INT32_MAX)

    class Config:
        extra = "forbid"


class AwardRequest(BaseModel):
    """积分发放请求"""
    kind: Literal["AWARD"] = "AWARD"
    customer_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    business_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    program_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    points: StrictInt  # 范围由 InvalidAmount / LimitExceeded 校验
    source: str = Field("MANUAL", min_length=1, max_length=50)  # 来源标记，如 QR_SCAN
    description: Optional[str] = Field(None, max_length=500)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)

    class Config:
        extra = "forbid"


class RedeemRequest(BaseModel):
    """积分兑换请求"""
    kind: Literal["REDEEM"] = "REDEEM"
    customer_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    program_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    reward_id: StrictInt = Field(..., ge=1, le=INT32_MAX)
    points_required: StrictInt
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)

    class Config:
        extra = "forbid"


class AwardResult(BaseModel):
    """积分发放结果"""
    kind: Literal["AWARD"] = "AWARD"
    transaction_id: str
    customer_id: int
    program_id: int
    points: int
    new_balance: int
    replayed: bool = False  # 幂等键命中，返回的是之前的结果


class RedeemResult(BaseModel):
    """积分兑换结果"""
    kind: Literal["REDEEM"] = "REDEEM"
    transaction_id: str
    customer_id: int
    program_id: int
    reward_id: int
    points: int
    new_balance: int
    replayed: bool = False

    @property
    def redemption_id(self) -> str:
        return self.transaction_id


class EnrollmentInfo(BaseModel):
    """注册记录与余额"""
    customer_id: int
    program_id: int
    current_points: int
    total_points_earned: int
    total_points_redeemed: int
    enrolled_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TransactionInfo(BaseModel):
    """积分交易记录"""
    id: str
    customer_id: int
    business_id: int
    program_id: int
    kind: TransactionKind
    points: int
    reward_id: Optional[int]
    source: str
    description: Optional[str]
    idempotency_key: Optional[str]
    balance_after: int
    created_at: datetime

    class Config:
        from_attributes = True


class TransactionFilter(BaseModel):
    """交易查询条件"""
    customer_id: Optional[StrictInt] = Field(None, ge=1, le=INT32_MAX)
    business_id: Optional[StrictInt] = Field(None, ge=1, le=INT32_MAX)
    program_id: Optional[StrictInt] = Field(None, ge=1, le=INT32_MAX)
    kind: Optional[TransactionKind] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(1, ge=1)
    page_size: Optional[int] = Field(None, ge=1)  # 为空时使用默认值，超过上限时截断

    class Config:
        extra = "forbid"

    @model_validator(mode="after")
    def check_date_range(self) -> "TransactionFilter":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class TransactionPage(BaseModel):
    """交易分页结果"""
    transactions: List[TransactionInfo]
    total: int
    page: int
    page_size: int


class BusinessTransactionStats(BaseModel):
    """商家交易统计"""
    business_id: int
    total_transactions: int
    total_points_awarded: int
    total_points_redeemed: int
    unique_customers: int


class ReconciliationMismatch(BaseModel):
    """对账差异：余额与交易流水之和不一致"""
    customer_id: int
    program_id: int
    enrollment_points: Optional[int]  # 无注册记录时为空
    ledger_points: int

    @property
    def difference(self) -> int:
        return (self.enrollment_points or 0) - self.ledger_points


class ReconciliationReport(BaseModel):
    """对账报告"""
    checked_pairs: int
    mismatches: List[ReconciliationMismatch]
    checked_at: datetime

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches
