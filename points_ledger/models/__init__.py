"""
数据库模型
"""
from points_ledger.models.enrollment import Enrollment
from points_ledger.models.transaction import PointTransaction, TransactionKind
from points_ledger.models.program import LoyaltyProgram
from points_ledger.models.notification import CustomerNotification

__all__ = [
    "Enrollment",
    "PointTransaction",
    "TransactionKind",
    "LoyaltyProgram",
    "CustomerNotification",
]
