from fulfillment.models.archived_transaction import ArchivedTransaction
from fulfillment.models.audit_log import AuditLog
from fulfillment.models.credit_account import CreditAccount
from fulfillment.models.dead_letter import DeadLetter
from fulfillment.models.outbox_item import OutboxItem
from fulfillment.models.transaction import Transaction, TransactionKind, TransactionStatus

__all__ = [
    "ArchivedTransaction",
    "AuditLog",
    "CreditAccount",
    "DeadLetter",
    "OutboxItem",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
]
