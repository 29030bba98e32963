"""
积分账本异常

分类：
1. 校验错误（InvalidRequest / InvalidAmount / LimitExceeded）：未做任何修改
2. 状态错误（ProgramNotFound / NotEnrolled / InsufficientPoints / IdempotencyConflict）：未做任何修改
3. 存储错误（EnrollmentCreateFailed / StorageError）：事务已整体回滚，可携带幂等键重试
"""


class LedgerError(Exception):
    """积分账本操作异常"""
    error_code = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str, error_code: str = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class InvalidRequest(LedgerError):
    """请求格式错误"""
    error_code = "INVALID_REQUEST"


class InvalidAmount(LedgerError):
    """积分数必须大于 0"""
    error_code = "INVALID_AMOUNT"


class LimitExceeded(LedgerError):
    """超过单次发放上限"""
    error_code = "LIMIT_EXCEEDED"


class ProgramNotFound(LedgerError):
    """积分计划不存在、已停用或不属于该商家"""
    error_code = "PROGRAM_NOT_FOUND"


class NotEnrolled(LedgerError):
    """客户未注册该积分计划"""
    error_code = "NOT_ENROLLED"


class InsufficientPoints(LedgerError):
    """积分余额不足"""
    error_code = "INSUFFICIENT_POINTS"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient points: required {required}, available {available}"
        )


class IdempotencyConflict(LedgerError):
    """幂等键已被另一笔不同的请求使用"""
    error_code = "IDEMPOTENCY_CONFLICT"


class StorageError(LedgerError):
    """存储层错误（提交失败、连接中断等）"""
    error_code = "STORAGE_ERROR"
    retryable = True


class EnrollmentCreateFailed(StorageError):
    """创建注册记录失败"""
    error_code = "ENROLLMENT_CREATE_FAILED"
