"""
积分路由

只做请求解析和结果序列化，业务规则全部在 LedgerService 中。
调用方身份由上游认证层保证，这里直接信任请求中的 customer_id / business_id。
"""
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from points_ledger.database import AsyncSessionLocal
from points_ledger.models.transaction import TransactionKind
from points_ledger.schemas.ledger import (
    AwardRequest,
    AwardResult,
    BusinessTransactionStats,
    EnrollRequest,
    EnrollmentInfo,
    RedeemRequest,
    RedeemResult,
    TransactionFilter,
    TransactionPage,
    parse_request,
)
from points_ledger.services.ledger_service import LedgerService

router = APIRouter()


@lru_cache()
def get_ledger_service() -> LedgerService:
    """账本服务单例"""
    return LedgerService(AsyncSessionLocal)


@router.post("/enroll", response_model=EnrollmentInfo, status_code=status.HTTP_201_CREATED)
async def enroll(
    data: EnrollRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    """注册积分计划"""
    return await service.enroll(data.customer_id, data.program_id)


@router.post("/award", response_model=AwardResult)
async def award_points(
    data: AwardRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    """发放积分"""
    return await service.award(
        customer_id=data.customer_id,
        business_id=data.business_id,
        program_id=data.program_id,
        points=data.points,
        source=data.source,
        description=data.description,
        idempotency_key=data.idempotency_key,
    )


@router.post("/redeem", response_model=RedeemResult)
async def redeem_reward(
    data: RedeemRequest,
    service: LedgerService = Depends(get_ledger_service),
):
    """兑换奖励"""
    return await service.redeem(
        customer_id=data.customer_id,
        program_id=data.program_id,
        reward_id=data.reward_id,
        points_required=data.points_required,
        idempotency_key=data.idempotency_key,
    )


@router.get("/transactions", response_model=TransactionPage)
async def get_transactions(
    customer_id: Optional[int] = Query(None),
    business_id: Optional[int] = Query(None),
    program_id: Optional[int] = Query(None),
    kind: Optional[TransactionKind] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    service: LedgerService = Depends(get_ledger_service),
):
    """查询交易流水"""
    criteria = parse_request(
        TransactionFilter,
        customer_id=customer_id,
        business_id=business_id,
        program_id=program_id,
        kind=kind,
        start_date=start_date,
        end_date=end_date,
        page=page,
        page_size=page_size,
    )
    return await service.get_transactions(criteria)


@router.get("/balance", response_model=List[EnrollmentInfo])
async def get_balance(
    customer_id: int = Query(...),
    program_id: Optional[int] = Query(None),
    service: LedgerService = Depends(get_ledger_service),
):
    """查询余额；不指定 program_id 时返回全部计划"""
    if program_id is not None:
        return [await service.get_balance(customer_id, program_id)]
    return await service.list_enrollments(customer_id)


@router.get("/stats/business/{business_id}", response_model=BusinessTransactionStats)
async def get_business_stats(
    business_id: int,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service: LedgerService = Depends(get_ledger_service),
):
    """商家交易统计"""
    return await service.get_business_stats(business_id, start_date, end_date)
