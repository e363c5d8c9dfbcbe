from .store import TransactionStore, TransactionSink
from .middleware import (
    TransactionCaptureMiddleware,
    TRANSACTION_ERROR_KEY,
    TRANSACTION_ID_KEY,
)

__all__ = [
    "TransactionStore",
    "TransactionSink",
    "TransactionCaptureMiddleware",
    "TRANSACTION_ERROR_KEY",
    "TRANSACTION_ID_KEY",
]
