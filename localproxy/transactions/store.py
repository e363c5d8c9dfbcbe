import logging
import uuid
from typing import Callable, Optional

from localproxy.errors import UnknownTransactionError
from localproxy.logging_config import log_transaction
from localproxy.models import RequestLog, ResponseLog, Transaction

logger = logging.getLogger("uvicorn.error")

TransactionSink = Callable[[Transaction], None]


class TransactionStore:
    """
    In-memory map of in-flight transactions.

    A transaction lives here from ``begin`` until ``complete``; completing it
    hands it to the sink once and removes it, so the store only ever holds
    requests that are still open. All access happens on the event loop thread.
    """

    def __init__(self, sink: Optional[TransactionSink] = None):
        self._transactions: dict[str, Transaction] = {}
        self._sink = sink or log_transaction

    def begin(self, request: RequestLog) -> str:
        transaction_id = str(uuid.uuid4())
        self._transactions[transaction_id] = Transaction(
            id=transaction_id, request=request
        )
        return transaction_id

    def get(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    def complete(
        self,
        transaction_id: str,
        response: Optional[ResponseLog] = None,
        error: Optional[str] = None,
    ) -> Transaction:
        transaction = self._transactions.pop(transaction_id, None)
        if transaction is None:
            raise UnknownTransactionError(transaction_id)
        transaction.response = response
        transaction.error = error
        try:
            self._sink(transaction)
        except Exception as e:
            logger.warning(f"[Transactions] Sink failed for {transaction_id}: {e}")
        return transaction

    def list_active(self) -> list[Transaction]:
        return list(self._transactions.values())

    def size(self) -> int:
        return len(self._transactions)

    def __len__(self) -> int:
        return len(self._transactions)

    def __contains__(self, transaction_id: str) -> bool:
        return transaction_id in self._transactions
