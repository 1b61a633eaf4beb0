"""
Synthetic write-operation generation.

Turns an action drawn from the operation mix into a concrete `WriteOperation`:
the entity kind is chosen uniformly among the kinds the action supports,
values come from Faker and a seeded `random.Random`, and every id (FK parents
for inserts, targets for updates and deletes) is drawn from the
`VisibleIdRegistry`.
"""

from __future__ import annotations

import random
import string
from typing import Any, Callable, Dict, Literal, Tuple

from faker import Faker

from rr_bench.domain.models import EntityKind, OpAction, WriteOperation
from rr_bench.workload.registry import VisibleIdRegistry

DeleteScope = Literal["any", "corpus"]

INSERT_KINDS: Tuple[EntityKind, ...] = tuple(EntityKind)
# Securities are reference data; the workload never rewrites them.
UPDATE_KINDS: Tuple[EntityKind, ...] = tuple(k for k in EntityKind if k is not EntityKind.SECURITY)
DELETE_KINDS: Tuple[EntityKind, ...] = tuple(EntityKind)

ACCOUNT_TYPES = ("Savings", "Checking", "Brokerage", "Investment")
SIDES = ("buy", "sell")
ORDER_STATUSES = ("pending", "completed", "canceled")
DEFAULT_SECTORS = (
    "Communication Services",
    "Consumer Discretionary",
    "Consumer Staples",
    "Energy",
    "Financials",
    "Healthcare",
    "Industrials",
    "Materials",
    "Real Estate",
    "Technology",
    "Utilities",
)
_TICKER_ALPHABET = string.ascii_uppercase + string.digits
_TICKER_ATTEMPTS = 32


def random_ticker(rng: random.Random, length: int = 4) -> str:
    return "".join(rng.choice(_TICKER_ALPHABET) for _ in range(length))


class OperationGenerator:
    """
    Build FK-valid write operations against the live registry.

    Parameters
    ----------
    registry : VisibleIdRegistry
        Source of parent and target ids.
    rng : random.Random
        Seeded random source shared with the caller.
    delete_scope : {"any", "corpus"}
        Whether delete targets may include rows inserted during the run.
    locale : str
        Faker locale for names, addresses and company names.
    """

    def __init__(
        self,
        registry: VisibleIdRegistry,
        rng: random.Random,
        delete_scope: DeleteScope = "any",
        locale: str = "en_US",
    ) -> None:
        self._registry = registry
        self._rng = rng
        self._delete_scope = delete_scope
        self._faker = Faker(locale)
        self._faker.seed_instance(rng.randrange(2**32))
        self._inserts: Dict[EntityKind, Callable[[], Dict[str, Any]]] = {
            EntityKind.CUSTOMER: self._customer_values,
            EntityKind.ACCOUNT: self._account_values,
            EntityKind.SECURITY: self._security_values,
            EntityKind.TRADE: self._trade_values,
            EntityKind.ORDER: self._order_values,
            EntityKind.MARKET_DATA: self._market_data_values,
        }
        self._updates: Dict[EntityKind, Callable[[], Dict[str, Any]]] = {
            EntityKind.CUSTOMER: lambda: {"address": self._faker.street_address()},
            EntityKind.ACCOUNT: lambda: {"balance": self._balance()},
            EntityKind.TRADE: lambda: {"price": self._price()},
            EntityKind.ORDER: lambda: {
                "status": self._rng.choice(ORDER_STATUSES),
                "limit_price": self._price(),
            },
            EntityKind.MARKET_DATA: lambda: {
                "price": self._price(),
                "volume": self._rng.randint(1_000, 99_999),
            },
        }

    def generate(self, action: OpAction) -> WriteOperation:
        """
        Synthesize one operation for `action`.

        Raises `EmptyRegistryError` when a required id has no candidate.
        """
        if action is OpAction.INSERT:
            kind = self._rng.choice(INSERT_KINDS)
            return WriteOperation(action=action, entity=kind, values=self._inserts[kind]())
        if action is OpAction.UPDATE:
            kind = self._rng.choice(UPDATE_KINDS)
            target = self._registry.sample_id(kind, self._rng)
            return WriteOperation(
                action=action, entity=kind, target_id=target, values=self._updates[kind]()
            )
        kind = self._rng.choice(DELETE_KINDS)
        target = self._registry.sample_id(
            kind, self._rng, corpus_only=self._delete_scope == "corpus"
        )
        return WriteOperation(action=action, entity=kind, target_id=target)

    def _balance(self) -> float:
        return round(self._rng.uniform(0.0, 10_000.0), 2)

    def _price(self) -> float:
        return round(self._rng.uniform(100.0, 500.0), 4)

    def _customer_values(self) -> Dict[str, Any]:
        return {"name": self._faker.name(), "address": self._faker.street_address()}

    def _account_values(self) -> Dict[str, Any]:
        return {
            "customer_id": self._registry.sample_id(EntityKind.CUSTOMER, self._rng),
            "account_type": self._rng.choice(ACCOUNT_TYPES),
            "balance": self._balance(),
        }

    def _security_values(self) -> Dict[str, Any]:
        ticker = random_ticker(self._rng)
        for _ in range(_TICKER_ATTEMPTS):
            if not self._registry.ticker_in_use(ticker):
                break
            ticker = random_ticker(self._rng, length=5)
        sectors = self._registry.known_sectors() or DEFAULT_SECTORS
        return {
            "ticker": ticker,
            "name": self._faker.company(),
            "sector": self._rng.choice(sectors),
        }

    def _trade_values(self) -> Dict[str, Any]:
        return {
            "account_id": self._registry.sample_id(EntityKind.ACCOUNT, self._rng),
            "security_id": self._registry.sample_id(EntityKind.SECURITY, self._rng),
            "trade_type": self._rng.choice(SIDES),
            "quantity": self._rng.randint(1, 999),
            "price": self._price(),
        }

    def _order_values(self) -> Dict[str, Any]:
        return {
            "account_id": self._registry.sample_id(EntityKind.ACCOUNT, self._rng),
            "security_id": self._registry.sample_id(EntityKind.SECURITY, self._rng),
            "order_type": self._rng.choice(SIDES),
            "quantity": self._rng.randint(1, 999),
            "limit_price": float(self._rng.randint(1, 999)),
            "status": self._rng.choice(ORDER_STATUSES),
        }

    def _market_data_values(self) -> Dict[str, Any]:
        return {
            "security_id": self._registry.sample_id(EntityKind.SECURITY, self._rng),
            "price": self._price(),
            "volume": self._rng.randint(1_000, 99_999),
        }


__all__ = [
    "ACCOUNT_TYPES",
    "DEFAULT_SECTORS",
    "DELETE_KINDS",
    "DeleteScope",
    "INSERT_KINDS",
    "OperationGenerator",
    "ORDER_STATUSES",
    "UPDATE_KINDS",
    "random_ticker",
]
