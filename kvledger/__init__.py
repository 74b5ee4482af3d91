"""
kvledger - Balance and Sell Order Ledger over a Key-Value Store

Tracks per-user balances and sell orders in an external key-value store,
keeping balance updates consistent under concurrent callers with
optimistic concurrency control (compare-and-swap with retry).

Usage:
    from kvledger import InMemoryStore, Ledger, OrderWorkflow, SettlementPolicy

    store = InMemoryStore()
    ledger = Ledger(store)
    orders = OrderWorkflow(store, ledger, SettlementPolicy.DEBIT_TOTAL)

    ledger.open_account("u1", 100)
    orders.create_sell_order("u1", "o1", 40)
    ledger.fetch_balance("u1")   # available=60, total=60

    orders.settle("o1")
    ledger.fetch_balance("u1")   # available=60, total=20
"""

# Core types
from .core import (
    Balance,
    Order,
    OrderStatus,
    LedgerError,
    NotFound,
    InvalidAmount,
    NegativeBalance,
    AlreadySettled,
    OrderNotReserved,
    DuplicateOrder,
    AccountExists,
    ConditionConflict,
    AdjustTimeout,
    StoreError,
    BALANCES_TABLE,
    ORDERS_TABLE,
    normalize_decimal,
    to_decimal,
)

# Store
from .store import (
    KeyValueStore,
    UpdateResult,
    InMemoryStore,
)

# Retry
from .retry import RetryPolicy

# Ledger
from .ledger import Ledger

# Orders
from .orders import (
    OrderWorkflow,
    SettlementPolicy,
    ReconcileAction,
)

__all__ = [
    # Core
    'Balance', 'Order', 'OrderStatus',
    'LedgerError', 'NotFound', 'InvalidAmount', 'NegativeBalance', 'AlreadySettled', 'OrderNotReserved',
    'DuplicateOrder', 'AccountExists', 'ConditionConflict', 'AdjustTimeout', 'StoreError',
    'BALANCES_TABLE', 'ORDERS_TABLE',
    'normalize_decimal', 'to_decimal',
    # Store
    'KeyValueStore', 'UpdateResult', 'InMemoryStore',
    # Retry
    'RetryPolicy',
    # Ledger
    'Ledger',
    # Orders
    'OrderWorkflow', 'SettlementPolicy', 'ReconcileAction',
]

__version__ = '1.0.0'
