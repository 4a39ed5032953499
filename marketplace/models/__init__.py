from .audit import AuditLog
from .error_log import ErrorLog
from .order import Order, PaymentRefund
from .user import User

__all__ = [
    "AuditLog",
    "ErrorLog",
    "Order",
    "PaymentRefund",
    "User",
]
