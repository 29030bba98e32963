"""
积分账本服务 - 统一管理积分的注册、发放、兑换和查询

此服务提供：
1. 原子性的积分发放 / 兑换（余额变动与流水记录同一事务提交）
2. 幂等键支持，重试不会重复记账
3. 事务提交后的通知投递（失败不影响账本）
4. 流水查询、商家统计与对账
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from points_ledger.config import get_settings
from points_ledger.models.transaction import PointTransaction, TransactionKind
from points_ledger.schemas.ledger import (
    AwardRequest,
    AwardResult,
    INT32_MAX,
    BusinessTransactionStats,
    EnrollRequest,
    EnrollmentInfo,
    RedeemRequest,
    RedeemResult,
    ReconciliationReport,
    TransactionFilter,
    TransactionInfo,
    TransactionPage,
    parse_request,
)
from points_ledger.services import enrollment_store, transaction_log
from points_ledger.services.exceptions import (
    EnrollmentCreateFailed,
    IdempotencyConflict,
    InsufficientPoints,
    InvalidAmount,
    InvalidRequest,
    LedgerError,
    LimitExceeded,
    NotEnrolled,
    ProgramNotFound,
    StorageError,
)
from points_ledger.services.notifier import (
    NOTIFICATION_POINTS_EARNED,
    NOTIFICATION_REWARD_REDEEMED,
    CeleryNotifier,
    Notifier,
    NullNotifier,
)
from points_ledger.services.program_registry import ProgramRegistry, SqlProgramRegistry
from points_ledger.utils.metrics import LEDGER_LATENCY, LEDGER_OPERATIONS, NOTIFICATION_FAILURES
from points_ledger.utils.timezone import utc_now_naive

logger = logging.getLogger(__name__)

REDEMPTION_SOURCE = "REDEMPTION"


@contextmanager
def _observe(operation: str):
    """记录操作耗时与结果"""
    start = time.perf_counter()
    outcome = "success"
    try:
        yield
    except LedgerError as e:
        outcome = e.error_code.lower()
        raise
    except Exception:
        outcome = "error"
        raise
    finally:
        LEDGER_OPERATIONS.labels(operation, outcome).inc()
        LEDGER_LATENCY.labels(operation).observe(time.perf_counter() - start)


class LedgerService:
    """
    积分账本服务

    每个写操作使用独立会话，在一个数据库事务内完成：
    校验 -> 获取/创建注册记录 -> 修改余额 -> 追加流水。
    任何一步失败，事务整体回滚，不留下部分状态。

    使用方式:
        service = LedgerService(AsyncSessionLocal)
        result = await service.award(1, 1, 1, 50, source="QR_SCAN")
        result.new_balance  # 50
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        program_registry: Optional[ProgramRegistry] = None,
        notifier: Optional[Notifier] = None,
        *,
        max_award_points: Optional[int] = None,
        notification_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._registry = program_registry or SqlProgramRegistry()
        if notifier is None:
            notifier = CeleryNotifier() if settings.notifications_enabled else NullNotifier()
        self._notifier = notifier
        self._max_award_points = min(
            max_award_points if max_award_points is not None else settings.award_max_points,
            INT32_MAX,
        )
        self._notification_timeout = (
            notification_timeout
            if notification_timeout is not None
            else settings.notification_dispatch_timeout_seconds
        )
        self._page_size_default = settings.transaction_page_size_default
        self._page_size_max = settings.transaction_page_size_max

    @property
    def max_award_points(self) -> int:
        return self._max_award_points

    # ------------------------------------------------------------------
    # 注册
    # ------------------------------------------------------------------

    async def enroll(self, customer_id: int, program_id: int) -> EnrollmentInfo:
        """
        注册积分计划（已注册则直接返回现有记录）

        Raises:
            ProgramNotFound: 计划不存在或已停用
            EnrollmentCreateFailed / StorageError: 存储层错误
        """
        request = parse_request(EnrollRequest, customer_id=customer_id, program_id=program_id)

        with _observe("enroll"):
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await self._resolve_business(db, request.program_id)
                        enrollment = await enrollment_store.get_or_create(
                            db, request.customer_id, request.program_id
                        )
                        return EnrollmentInfo.model_validate(enrollment)
            except SQLAlchemyError as e:
                logger.error(f"Enrollment commit failed for customer {customer_id}: {e}")
                raise EnrollmentCreateFailed(
                    f"Failed to enroll customer {customer_id} in program {program_id}"
                ) from e

    # ------------------------------------------------------------------
    # 发放
    # ------------------------------------------------------------------

    async def award(
        self,
        customer_id: int,
        business_id: int,
        program_id: int,
        points: int,
        source: str = "MANUAL",
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> AwardResult:
        """
        发放积分（原子操作）

        Args:
            customer_id: 客户 ID
            business_id: 发放积分的商家 ID（必须拥有该计划）
            program_id: 积分计划 ID
            points: 发放积分数，1 ~ max_award_points
            source: 来源标记，如 QR_SCAN / MANUAL
            description: 说明（写入流水并用于通知）
            idempotency_key: 幂等键，重复调用返回第一次的结果

        Returns:
            AwardResult，包含交易 ID 与发放后的余额

        Raises:
            InvalidRequest / InvalidAmount / LimitExceeded: 参数错误
            ProgramNotFound: 计划不存在、已停用或不属于该商家
            IdempotencyConflict: 幂等键已用于另一笔不同的请求
            EnrollmentCreateFailed / StorageError: 存储层错误（事务已回滚，可重试）
        """
        request = parse_request(
            AwardRequest,
            customer_id=customer_id,
            business_id=business_id,
            program_id=program_id,
            points=points,
            source=source,
            description=description,
            idempotency_key=idempotency_key,
        )

        with _observe("award"):
            self._check_amount(request.points)
            if request.points > self._max_award_points:
                raise LimitExceeded(
                    f"Cannot award more than {self._max_award_points} points at once"
                )

            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        owner = await self._resolve_business(db, request.program_id)
                        if owner != request.business_id:
                            raise ProgramNotFound(
                                f"Program {request.program_id} not found for business {request.business_id}"
                            )

                        if request.idempotency_key:
                            prior = await transaction_log.find_by_idempotency_key(
                                db, request.idempotency_key
                            )
                            if prior is not None:
                                return self._replay_award(prior, request)

                        await enrollment_store.get_or_create(
                            db, request.customer_id, request.program_id
                        )
                        new_balance = await enrollment_store.increment_points(
                            db, request.customer_id, request.program_id, request.points
                        )
                        if new_balance is None:
                            raise EnrollmentCreateFailed(
                                f"Enrollment for customer {request.customer_id} vanished during award"
                            )
                        transaction = await transaction_log.append(
                            db,
                            customer_id=request.customer_id,
                            business_id=request.business_id,
                            program_id=request.program_id,
                            kind=TransactionKind.AWARD,
                            points=request.points,
                            balance_after=new_balance,
                            source=request.source,
                            description=request.description,
                            idempotency_key=request.idempotency_key,
                        )
                        result = AwardResult(
                            transaction_id=transaction.id,
                            customer_id=request.customer_id,
                            program_id=request.program_id,
                            points=request.points,
                            new_balance=new_balance,
                        )
            except IntegrityError as e:
                # 并发请求使用了同一个幂等键，另一方已提交
                if request.idempotency_key:
                    prior = await self._load_by_idempotency_key(request.idempotency_key, e)
                    return self._replay_award(prior, request)
                logger.error(f"Award integrity error for customer {customer_id}: {e}")
                raise StorageError("Failed to award points: integrity error") from e
            except SQLAlchemyError as e:
                logger.error(f"Award failed for customer {customer_id}: {e}")
                raise StorageError("Failed to award points: storage unavailable") from e

        logger.info(
            f"Awarded {request.points} points to customer {request.customer_id} "
            f"in program {request.program_id} (source={request.source}, balance={result.new_balance})"
        )
        message = f"You earned {request.points} points! {request.description or ''}".strip()
        await self._notify(
            request.customer_id,
            NOTIFICATION_POINTS_EARNED,
            "Points Earned",
            message,
            {
                "points": request.points,
                "business_id": request.business_id,
                "program_id": request.program_id,
                "source": request.source,
                "transaction_id": result.transaction_id,
            },
        )
        return result

    # ------------------------------------------------------------------
    # 兑换
    # ------------------------------------------------------------------

    async def redeem(
        self,
        customer_id: int,
        program_id: int,
        reward_id: int,
        points_required: int,
        idempotency_key: Optional[str] = None,
    ) -> RedeemResult:
        """
        兑换奖励（原子操作）

        余额检查在扣减语句内完成，不存在“先查后改”的竞争窗口。

        Returns:
            RedeemResult，transaction_id 即兑换记录 ID

        Raises:
            InvalidRequest / InvalidAmount: 参数错误
            NotEnrolled: 客户未注册该计划
            InsufficientPoints: 余额不足
            ProgramNotFound: 计划已停用，无法确定所属商家
            IdempotencyConflict: 幂等键已用于另一笔不同的请求
            StorageError: 存储层错误（事务已回滚，可重试）
        """
        request = parse_request(
            RedeemRequest,
            customer_id=customer_id,
            program_id=program_id,
            reward_id=reward_id,
            points_required=points_required,
            idempotency_key=idempotency_key,
        )

        with _observe("redeem"):
            self._check_amount(request.points_required)

            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        if request.idempotency_key:
                            prior = await transaction_log.find_by_idempotency_key(
                                db, request.idempotency_key
                            )
                            if prior is not None:
                                return self._replay_redeem(prior, request)

                        # 余额不会超过列上限，超过上限的扣减必然余额不足
                        new_balance = None
                        if request.points_required <= INT32_MAX:
                            new_balance = await enrollment_store.decrement_points(
                                db, request.customer_id, request.program_id, request.points_required
                            )
                        if new_balance is None:
                            enrollment = await enrollment_store.get(
                                db, request.customer_id, request.program_id
                            )
                            if enrollment is None:
                                raise NotEnrolled(
                                    f"Customer {request.customer_id} is not enrolled in program {request.program_id}"
                                )
                            raise InsufficientPoints(request.points_required, enrollment.current_points)

                        business_id = await self._resolve_business(db, request.program_id)
                        transaction = await transaction_log.append(
                            db,
                            customer_id=request.customer_id,
                            business_id=business_id,
                            program_id=request.program_id,
                            kind=TransactionKind.REDEEM,
                            points=request.points_required,
                            balance_after=new_balance,
                            source=REDEMPTION_SOURCE,
                            description=f"Reward {request.reward_id} redeemed",
                            reward_id=request.reward_id,
                            idempotency_key=request.idempotency_key,
                        )
                        result = RedeemResult(
                            transaction_id=transaction.id,
                            customer_id=request.customer_id,
                            program_id=request.program_id,
                            reward_id=request.reward_id,
                            points=request.points_required,
                            new_balance=new_balance,
                        )
            except IntegrityError as e:
                if request.idempotency_key:
                    prior = await self._load_by_idempotency_key(request.idempotency_key, e)
                    return self._replay_redeem(prior, request)
                logger.error(f"Redeem integrity error for customer {customer_id}: {e}")
                raise StorageError("Failed to redeem reward: integrity error") from e
            except SQLAlchemyError as e:
                logger.error(f"Redeem failed for customer {customer_id}: {e}")
                raise StorageError("Failed to redeem reward: storage unavailable") from e

        logger.info(
            f"Customer {request.customer_id} redeemed reward {request.reward_id} "
            f"for {request.points_required} points in program {request.program_id} "
            f"(balance={result.new_balance})"
        )
        await self._notify(
            request.customer_id,
            NOTIFICATION_REWARD_REDEEMED,
            "Reward Redeemed",
            f"You've redeemed a reward for {request.points_required} points!",
            {
                "points_used": request.points_required,
                "program_id": request.program_id,
                "reward_id": request.reward_id,
                "transaction_id": result.transaction_id,
            },
        )
        return result

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_transactions(
        self,
        criteria: Optional[TransactionFilter] = None,
        **filters,
    ) -> TransactionPage:
        """
        查询交易流水（按时间倒序分页）

        可以传入 TransactionFilter，也可以直接传关键字参数：
            await service.get_transactions(customer_id=1, kind="AWARD")
        """
        if criteria is None:
            criteria = parse_request(TransactionFilter, **filters)
        elif filters:
            raise InvalidRequest("Pass either a TransactionFilter or keyword filters, not both")

        page_size = min(criteria.page_size or self._page_size_default, self._page_size_max)
        async with self._read_session("get_transactions") as db:
            rows, total = await transaction_log.query(db, criteria, page_size)

        return TransactionPage(
            transactions=[TransactionInfo.model_validate(row) for row in rows],
            total=total,
            page=criteria.page,
            page_size=page_size,
        )

    async def get_balance(self, customer_id: int, program_id: int) -> EnrollmentInfo:
        """查询某个计划的余额，未注册抛出 NotEnrolled"""
        request = parse_request(EnrollRequest, customer_id=customer_id, program_id=program_id)
        async with self._read_session("get_balance") as db:
            enrollment = await enrollment_store.get(db, request.customer_id, request.program_id)
            if enrollment is None:
                raise NotEnrolled(
                    f"Customer {customer_id} is not enrolled in program {program_id}"
                )
            return EnrollmentInfo.model_validate(enrollment)

    async def list_enrollments(self, customer_id: int) -> List[EnrollmentInfo]:
        """客户的全部余额，按余额降序"""
        if (
            not isinstance(customer_id, int)
            or isinstance(customer_id, bool)
            or not 1 <= customer_id <= INT32_MAX
        ):
            raise InvalidRequest(f"customer_id must be a positive 32-bit integer, got {customer_id!r}")
        async with self._read_session("list_enrollments") as db:
            enrollments = await enrollment_store.list_for_customer(db, customer_id)
            return [EnrollmentInfo.model_validate(e) for e in enrollments]

    async def get_business_stats(
        self,
        business_id: int,
        start_date=None,
        end_date=None,
    ) -> BusinessTransactionStats:
        """商家交易统计"""
        criteria = parse_request(
            TransactionFilter, business_id=business_id, start_date=start_date, end_date=end_date
        )
        async with self._read_session("get_business_stats") as db:
            stats = await transaction_log.business_stats(
                db, business_id, criteria.start_date, criteria.end_date
            )
        return BusinessTransactionStats(business_id=business_id, **stats)

    async def reconcile(self) -> ReconciliationReport:
        """
        对账：逐个 (customer, program) 比较余额与流水之和

        差异只记录告警，不做任何修正。
        """
        async with self._read_session("reconcile") as db:
            async with db.begin():
                isolation = transaction_log.SNAPSHOT_ISOLATION.get(db.bind.dialect.name)
                if isolation:
                    await db.connection(execution_options={"isolation_level": isolation})
                balances = (await db.execute(transaction_log.enrollment_balances_statement())).all()
                sums = (await db.execute(transaction_log.ledger_sums_statement())).all()

        checked, mismatches = transaction_log.find_mismatches(balances, sums)
        transaction_log.report_mismatches(mismatches)
        return ReconciliationReport(
            checked_pairs=checked,
            mismatches=mismatches,
            checked_at=utc_now_naive(),
        )

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    @staticmethod
    def _check_amount(points: int) -> None:
        if points <= 0:
            raise InvalidAmount("Points must be greater than 0")

    async def _resolve_business(self, db: AsyncSession, program_id: int) -> int:
        business_id = await self._registry.get_business_id(db, program_id)
        if business_id is None:
            raise ProgramNotFound(f"Program {program_id} not found or inactive")
        return business_id

    @asynccontextmanager
    async def _read_session(self, operation: str):
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed: {e}")
            raise StorageError(f"{operation} failed: storage unavailable") from e

    async def _load_by_idempotency_key(
        self, key: str, cause: Exception
    ) -> PointTransaction:
        try:
            async with self._session_factory() as db:
                prior = await transaction_log.find_by_idempotency_key(db, key)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load prior transaction for idempotency key") from e
        if prior is None:
            # 冲突并非来自幂等键
            raise StorageError("Ledger write rejected by an integrity constraint") from cause
        return prior

    @staticmethod
    def _ensure_same_request(prior: PointTransaction, kind: TransactionKind, **expected) -> None:
        actual = {field: getattr(prior, field) for field in expected}
        if prior.kind != kind.value or actual != expected:
            raise IdempotencyConflict(
                f"Idempotency key {prior.idempotency_key!r} was already used for a different request"
            )

    def _replay_award(self, prior: PointTransaction, request: AwardRequest) -> AwardResult:
        self._ensure_same_request(
            prior,
            TransactionKind.AWARD,
            customer_id=request.customer_id,
            business_id=request.business_id,
            program_id=request.program_id,
            points=request.points,
        )
        logger.info(f"Award replayed for idempotency key {request.idempotency_key!r}")
        return AwardResult(
            transaction_id=prior.id,
            customer_id=prior.customer_id,
            program_id=prior.program_id,
            points=prior.points,
            new_balance=prior.balance_after,
            replayed=True,
        )

    def _replay_redeem(self, prior: PointTransaction, request: RedeemRequest) -> RedeemResult:
        self._ensure_same_request(
            prior,
            TransactionKind.REDEEM,
            customer_id=request.customer_id,
            program_id=request.program_id,
            reward_id=request.reward_id,
            points=request.points_required,
        )
        logger.info(f"Redeem replayed for idempotency key {request.idempotency_key!r}")
        return RedeemResult(
            transaction_id=prior.id,
            customer_id=prior.customer_id,
            program_id=prior.program_id,
            reward_id=prior.reward_id,
            points=prior.points,
            new_balance=prior.balance_after,
            replayed=True,
        )

    async def _notify(self, user_id: int, type: str, title: str, message: str, metadata: dict) -> None:
        """
        把通知交给投递队列，任何失败（包括超时）只记录日志

        这里只等待入队（受 notification_timeout 限制），
        通知记录由 worker 在响应之后写入。
        """
        try:
            await asyncio.wait_for(
                self._notifier.notify(user_id, type, title, message, metadata),
                timeout=self._notification_timeout,
            )
        except Exception as e:
            NOTIFICATION_FAILURES.labels(type).inc()
            logger.warning(f"Failed to send {type} notification to customer {user_id}: {e!r}")
