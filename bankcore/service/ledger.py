from __future__ import annotations

import math
from typing import List, Optional, Protocol

from bankcore.config import Settings, get_balance_subtypes
from bankcore.logging import get_logger
from bankcore.service.errors import NotFoundError, ValidationError, storage_errors
from bankcore.storage.errors import ConstraintViolation
from bankcore.storage.models import Transaction, UserAccount

logger = get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 200


class LedgerStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def apply_balance_delta(
        self,
        user_id: str,
        amount: float,
        account_type: str,
        description: Optional[str] = None,
    ) -> Optional[tuple[float, Transaction]]: ...

    def list_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[Transaction]: ...


class LedgerService:
    """Balance mutations, each recorded as exactly one transaction."""

    def __init__(self, store: LedgerStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    @property
    def subtypes(self) -> tuple[str, ...]:
        return get_balance_subtypes(self.settings.balance_model)

    @storage_errors
    def apply_delta(
        self,
        user_id: str,
        amount: float,
        account_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> tuple[float, Transaction]:
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            raise ValidationError("amount must be a number", detail={"field": "amount"})
        if not math.isfinite(amount) or amount == 0:
            raise ValidationError(
                "amount must be a finite non-zero number", detail={"field": "amount"}
            )
        account_type = account_type or self.subtypes[0]
        if account_type not in self.subtypes:
            raise ValidationError(
                f"account_type must be one of {', '.join(self.subtypes)}",
                detail={"field": "account_type"},
            )
        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError("description too long", detail={"field": "description"})
        try:
            result = self.store.apply_balance_delta(
                user_id, float(amount), account_type, description
            )
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if result is None:
            raise NotFoundError("user not found")
        new_balance, txn = result
        logger.info(
            "balance_updated",
            user_id=user_id,
            account_type=account_type,
            transaction_id=txn.id,
        )
        return new_balance, txn

    @storage_errors
    def list_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[Transaction]:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        return self.store.list_transactions(user_id, limit=limit)
