from __future__ import annotations

import random
import secrets
from typing import Iterable, Optional, Protocol, Sequence

from bankcore.logging import get_logger
from bankcore.service.errors import ExhaustionError

logger = get_logger(__name__)


class AccountNumberLookup(Protocol):
    def account_number_exists(self, number: str) -> bool: ...


class AccountNumberGenerator:
    """Random account numbers of the form ``<prefix><digits>``.

    Candidates are checked against the store and regenerated on collision,
    at most ``max_attempts`` times. Generation has no side effects; the caller
    persists the number, and the store's uniqueness check is authoritative.
    """

    def __init__(
        self,
        store: AccountNumberLookup,
        *,
        prefix: str = "1998",
        digits: int = 7,
        max_attempts: int = 10,
        rng: Optional[random.Random] = None,
    ) -> None:
        if digits < 1:
            raise ValueError("digits must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.store = store
        self.prefix = prefix
        self.digits = digits
        self.max_attempts = max_attempts
        self._rng = rng or secrets.SystemRandom()

    def _candidate(self) -> str:
        low = 10 ** (self.digits - 1)
        high = 10**self.digits - 1
        return f"{self.prefix}{self._rng.randint(low, high)}"

    def generate(self, exclude: Iterable[str] = ()) -> str:
        excluded = set(exclude)
        for attempt in range(1, self.max_attempts + 1):
            candidate = self._candidate()
            if candidate in excluded or self.store.account_number_exists(candidate):
                logger.info("account_number_collision", attempt=attempt)
                continue
            return candidate
        logger.error("account_number_exhausted", attempts=self.max_attempts)
        raise ExhaustionError(
            "unable to allocate an account number",
            detail={"attempts": self.max_attempts},
        )

    def generate_set(self, subtypes: Sequence[str]) -> dict[str, str]:
        """One distinct number per balance subtype."""
        numbers: dict[str, str] = {}
        for subtype in subtypes:
            numbers[subtype] = self.generate(exclude=numbers.values())
        return numbers
