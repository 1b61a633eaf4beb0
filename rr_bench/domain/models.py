"""
Domain models for the read-replica benchmark.

Defines the six trading entities loaded from the CSV corpus, their table
metadata (`ENTITY_SCHEMAS`), and the `WriteOperation` variant produced by the
write driver. Row models validate corpus files on load; the write driver never
builds them on the hot path.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, Field, model_validator


class EntityKind(str, Enum):
    CUSTOMER = "customer"
    ACCOUNT = "account"
    SECURITY = "security"
    TRADE = "trade"
    ORDER = "order"
    MARKET_DATA = "market_data"

    @property
    def schema(self) -> "EntitySchema":
        return ENTITY_SCHEMAS[self]


class OpAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


_ROW_CONFIG = {
    "frozen": True,
    "populate_by_name": True,
    "arbitrary_types_allowed": False,
}


class Customer(BaseModel):
    customer_id: int = Field(..., description="Primary key.")
    name: str
    address: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = _ROW_CONFIG


class Account(BaseModel):
    account_id: int = Field(..., description="Primary key.")
    customer_id: int = Field(..., description="Owning customer; cascades on delete.")
    account_type: str
    balance: float
    created_at: Optional[datetime] = None

    model_config = _ROW_CONFIG


class Security(BaseModel):
    security_id: int = Field(..., description="Primary key.")
    ticker: str = Field(..., min_length=1)
    name: Optional[str] = None
    sector: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = _ROW_CONFIG


class Trade(BaseModel):
    trade_id: int = Field(..., description="Primary key.")
    account_id: int
    security_id: int
    trade_type: Literal["buy", "sell"]
    quantity: int = Field(..., gt=0)
    price: float = Field(..., gt=0)
    trade_date: Optional[datetime] = None

    model_config = _ROW_CONFIG


class Order(BaseModel):
    order_id: int = Field(..., description="Primary key.")
    account_id: int
    security_id: int
    order_type: Literal["buy", "sell"]
    quantity: int = Field(..., gt=0)
    limit_price: Optional[float] = None
    status: Literal["pending", "completed", "canceled"]
    order_date: Optional[datetime] = None

    model_config = _ROW_CONFIG


class MarketData(BaseModel):
    market_data_id: int = Field(..., description="Primary key.")
    security_id: int
    price: float = Field(..., gt=0)
    volume: int = Field(..., ge=0)
    market_date: Optional[datetime] = None

    model_config = _ROW_CONFIG


@dataclass(frozen=True)
class EntitySchema:
    """
    Table metadata for one entity kind.

    `columns` is the CSV interchange order (id first). `parents` maps each FK
    column to the referenced kind; deleting a parent cascades to the child.
    """

    kind: EntityKind
    table: str
    id_column: str
    columns: Tuple[str, ...]
    row_model: Type[BaseModel]
    parents: Mapping[str, EntityKind] = field(default_factory=dict)
    updatable: Tuple[str, ...] = ()

    @property
    def csv_file(self) -> str:
        return f"{self.table}.csv"


ENTITY_SCHEMAS: Dict[EntityKind, EntitySchema] = {
    EntityKind.CUSTOMER: EntitySchema(
        kind=EntityKind.CUSTOMER,
        table="customers",
        id_column="customer_id",
        columns=("customer_id", "name", "address", "created_at"),
        row_model=Customer,
        updatable=("address",),
    ),
    EntityKind.ACCOUNT: EntitySchema(
        kind=EntityKind.ACCOUNT,
        table="accounts",
        id_column="account_id",
        columns=("account_id", "customer_id", "account_type", "balance", "created_at"),
        row_model=Account,
        parents={"customer_id": EntityKind.CUSTOMER},
        updatable=("balance",),
    ),
    EntityKind.SECURITY: EntitySchema(
        kind=EntityKind.SECURITY,
        table="securities",
        id_column="security_id",
        columns=("security_id", "ticker", "name", "sector", "created_at"),
        row_model=Security,
    ),
    EntityKind.TRADE: EntitySchema(
        kind=EntityKind.TRADE,
        table="trades",
        id_column="trade_id",
        columns=(
            "trade_id",
            "account_id",
            "security_id",
            "trade_type",
            "quantity",
            "price",
            "trade_date",
        ),
        row_model=Trade,
        parents={"account_id": EntityKind.ACCOUNT, "security_id": EntityKind.SECURITY},
        updatable=("price",),
    ),
    EntityKind.ORDER: EntitySchema(
        kind=EntityKind.ORDER,
        table="orders",
        id_column="order_id",
        columns=(
            "order_id",
            "account_id",
            "security_id",
            "order_type",
            "quantity",
            "limit_price",
            "status",
            "order_date",
        ),
        row_model=Order,
        parents={"account_id": EntityKind.ACCOUNT, "security_id": EntityKind.SECURITY},
        updatable=("status", "limit_price"),
    ),
    EntityKind.MARKET_DATA: EntitySchema(
        kind=EntityKind.MARKET_DATA,
        table="market_data",
        id_column="market_data_id",
        columns=("market_data_id", "security_id", "price", "volume", "market_date"),
        row_model=MarketData,
        parents={"security_id": EntityKind.SECURITY},
        updatable=("price", "volume"),
    ),
}

# Parents always precede children.
LOAD_ORDER: Tuple[EntityKind, ...] = (
    EntityKind.CUSTOMER,
    EntityKind.ACCOUNT,
    EntityKind.SECURITY,
    EntityKind.TRADE,
    EntityKind.ORDER,
    EntityKind.MARKET_DATA,
)


class WriteOperation(BaseModel):
    """
    One write transaction: an action applied to an entity kind.

    Inserts carry every non-id column in `values` (FK columns included) and no
    `target_id`; updates carry `target_id` plus the new column values; deletes
    carry only `target_id`.
    """

    action: OpAction
    entity: EntityKind
    target_id: Optional[int] = None
    values: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_shape(self) -> "WriteOperation":
        schema = self.entity.schema
        if self.action is OpAction.INSERT:
            if self.target_id is not None:
                raise ValueError("insert operations do not take a target_id")
            missing = [col for col in schema.parents if col not in self.values]
            if missing:
                raise ValueError(f"insert into {schema.table} is missing FK values: {missing}")
        else:
            if self.target_id is None:
                raise ValueError(f"{self.action.value} operations require a target_id")
        if self.action is OpAction.UPDATE:
            unknown = [col for col in self.values if col not in schema.updatable]
            if unknown or not self.values:
                raise ValueError(f"invalid update columns for {schema.table}: {unknown or '[]'}")
        if self.action is OpAction.DELETE and self.values:
            raise ValueError("delete operations do not take values")
        return self

    @property
    def name(self) -> str:
        """Metric name, e.g. `insert_trade`."""
        return f"{self.action.value}_{self.entity.value}"

    @property
    def parent_ids(self) -> Dict[str, int]:
        """FK column -> referenced id, for inserts."""
        return {col: self.values[col] for col in self.entity.schema.parents if col in self.values}


__all__ = [
    "Account",
    "Customer",
    "ENTITY_SCHEMAS",
    "EntityKind",
    "EntitySchema",
    "LOAD_ORDER",
    "MarketData",
    "OpAction",
    "Order",
    "Security",
    "Trade",
    "WriteOperation",
]
