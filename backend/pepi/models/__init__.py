from .agents import Agent
from .books import PepiBook
from .transactions import Transaction, FundRequest, CiPayment
from .audit import AuditLogEntry

__all__ = [
    'Agent',
    'PepiBook',
    'Transaction', 'FundRequest', 'CiPayment',
    'AuditLogEntry',
]
