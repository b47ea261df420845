"""
Backfill credit ledger.

Balances are changed with a read followed by a write through the same table
handle. Two workers touching the same user at the same moment can still lose
an update; the ledger is best effort, not serializable.
"""
import logging
from typing import Any, Dict, Optional, Protocol

import pydantic

from .errors import InsufficientCreditError, StoreUnavailableError
from .models import CreditEntry

logger = logging.getLogger(__name__)


class CreditTable(Protocol):
    def get(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    def insert(self, user_id: str, credits: int) -> None: ...

    def update(self, user_id: str, credits: int) -> None: ...

    def upsert(self, user_id: str, credits: int) -> None: ...


class CreditLedgerClient:
    def __init__(self, table: CreditTable):
        self.table = table

    def _read(self, user_id: str) -> Optional[int]:
        try:
            row = self.table.get(user_id)
        except Exception as e:
            raise StoreUnavailableError(f"reading credits for {user_id} failed: {e}") from e
        if not row:
            return None
        try:
            return CreditEntry.model_validate(row).credits
        except pydantic.ValidationError as e:
            raise StoreUnavailableError(f"credit row for {user_id} is unreadable: {e.errors()[0]['msg']}") from e

    def balance(self, user_id: str) -> int:
        return self._read(user_id) or 0

    def consume(self, user_id: str):
        """Take one credit. Users without a ledger row get one at 0 and are rejected."""
        current = self._read(user_id)
        if current is None:
            current = 0
            try:
                self.table.insert(user_id, 0)
            except Exception as e:
                raise StoreUnavailableError(f"initializing credits for {user_id} failed: {e}") from e
        if current < 1:
            raise InsufficientCreditError(user_id, current)
        try:
            self.table.update(user_id, current - 1)
        except Exception as e:
            raise StoreUnavailableError(f"consuming credit for {user_id} failed: {e}") from e
        logger.info("consumed 1 backfill credit for %s (%d left)", user_id, current - 1)

    def refund(self, user_id: str):
        current = self._read(user_id) or 0
        try:
            self.table.upsert(user_id, current + 1)
        except Exception as e:
            raise StoreUnavailableError(f"refunding credit for {user_id} failed: {e}") from e
        logger.info("refunded 1 backfill credit to %s (%d now)", user_id, current + 1)

    def grant(self, user_id: str, amount: int) -> int:
        if amount < 1:
            raise ValueError("amount must be positive")
        new_balance = self.balance(user_id) + amount
        try:
            self.table.upsert(user_id, new_balance)
        except Exception as e:
            raise StoreUnavailableError(f"granting credits to {user_id} failed: {e}") from e
        return new_balance
