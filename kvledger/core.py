"""
Core types and pure functions for the key-value backed ledger.

This module provides the foundational data structures for the ledger:
1. Immutable records: Balance, Order
2. Enums: OrderStatus
3. Exceptions: LedgerError and domain-specific error types
4. Record marshaling: to_item()/from_item() between records and store items
5. Decimal helpers shared by Ledger and OrderWorkflow

All functions in this module are pure. Nothing here talks to the store.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, getcontext, localcontext
from enum import Enum
from typing import Any, Dict, Mapping


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Balances are compared for equality inside conditional writes, so the
# arithmetic producing them must be deterministic.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN

# Other threads start from the interpreter default (prec=28). Balance
# arithmetic runs inside ledger_context() so every thread rounds alike.
_LEDGER_DECIMAL_CONTEXT = _LEDGER_DECIMAL_CONTEXT.copy()


def ledger_context():
    """Context manager applying the ledger's Decimal settings in the current thread."""
    return localcontext(_LEDGER_DECIMAL_CONTEXT)


# ============================================================================
# CONSTANTS
# ============================================================================

# Default logical table names in the key-value store.
BALANCES_TABLE = "Balances"
ORDERS_TABLE = "Orders"

# Key attribute of each table. Also stored inside every item.
BALANCE_KEY = "user_id"
ORDER_KEY = "order_id"

ZERO = Decimal("0")


# Item type stored in the key-value store: flat mapping of attribute -> value.
Item = Dict[str, Any]


# ============================================================================
# ENUMS
# ============================================================================

class OrderStatus(Enum):
    """
    Lifecycle state of a sell order.

    PENDING: Order written, funds committed (or about to be).
    SETTLED: Terminal. Reached exactly once from PENDING.
    """
    PENDING = "Pending"
    SETTLED = "Settled"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class NotFound(LedgerError):
    """Raised when no record exists for a required key."""
    pass


class InvalidAmount(LedgerError):
    """Raised when an order amount is not a positive, finite number."""
    pass


class NegativeBalance(LedgerError):
    """Raised when an adjustment would drive available or total below zero."""
    pass


class AlreadySettled(LedgerError):
    """Raised when settling an order whose status is already Settled."""
    pass


class OrderNotReserved(LedgerError):
    """
    Raised when settling a Pending order whose funds were never reserved.

    Nothing is written. The creating call may still be in flight, or it
    failed and reconcile() must re-drive the reservation.
    """
    pass


class DuplicateOrder(LedgerError):
    """Raised when creating an order with an order_id that already exists."""
    pass


class AccountExists(LedgerError):
    """Raised when opening a balance for a user that already has one."""
    pass


class ConditionConflict(LedgerError):
    """
    Raised internally when a conditional write loses to another writer.

    Absorbed by Ledger.adjust's retry loop; never surfaced to callers.
    """
    pass


class AdjustTimeout(LedgerError):
    """Raised when the retry policy's deadline or attempt budget is exhausted."""
    pass


class StoreError(LedgerError):
    """Raised for any unrecoverable store failure, including decode failures."""
    pass


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Coerce an int, str or Decimal to a finite Decimal.

    Floats go through str() so that 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: If the value is not numeric, not finite, or a bool.
    """
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"{name} must be numeric, got {value!r}") from None
    else:
        raise ValueError(f"{name} must be numeric, got {type(value).__name__}")
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"{name} must be finite, got {value!r}")
    return result


def normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Ensures that semantically equal values produce identical strings:
    - Decimal("1.0") and Decimal("1.00") both become "1"
    - Trailing zeros are removed
    - Scientific notation is avoided
    """
    with ledger_context():
        normalized = d.normalize()
        if normalized == normalized.to_integral_value():
            return str(int(normalized))
        return format(normalized, 'f')


def _decode_decimal(item: Mapping[str, Any], field_name: str, kind: str) -> Decimal:
    if field_name not in item:
        raise StoreError(f"{kind} record is missing field '{field_name}'")
    try:
        return to_decimal(item[field_name], field_name)
    except ValueError as e:
        raise StoreError(f"failed to decode {kind} record: {e}") from e


def _decode_str(item: Mapping[str, Any], field_name: str, kind: str) -> str:
    value = item.get(field_name)
    if not isinstance(value, str) or not value:
        raise StoreError(f"{kind} record has invalid field '{field_name}': {value!r}")
    return value


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Balance:
    """
    A user's balance.

    Attributes:
        user_id: Owner of the balance (primary key of the Balances table).
        available: Funds free to commit to new orders.
        total: Net worth including committed funds.
    """
    user_id: str
    available: Decimal
    total: Decimal

    def __post_init__(self):
        if not self.user_id or not self.user_id.strip():
            raise ValueError("Balance user_id cannot be empty")
        if not isinstance(self.available, Decimal):
            raise ValueError(f"Balance available must be Decimal, got {type(self.available)}")
        if not isinstance(self.total, Decimal):
            raise ValueError(f"Balance total must be Decimal, got {type(self.total)}")

    def to_item(self) -> Item:
        """Marshal to a store item."""
        return {
            BALANCE_KEY: self.user_id,
            'available': normalize_decimal(self.available),
            'total': normalize_decimal(self.total),
        }

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> Balance:
        """
        Unmarshal a store item.

        Raises:
            StoreError: If the item cannot be decoded into a Balance.
        """
        return cls(
            user_id=_decode_str(item, BALANCE_KEY, "balance"),
            available=_decode_decimal(item, 'available', "balance"),
            total=_decode_decimal(item, 'total', "balance"),
        )

    def __repr__(self) -> str:
        return f"Balance({self.user_id}: available={self.available}, total={self.total})"


@dataclass(frozen=True, slots=True)
class Order:
    """
    A sell order.

    Attributes:
        order_id: Primary key of the Orders table.
        user_id: Owner; refers to a Balance, not enforced by the store.
        amount: Positive amount, fixed at creation.
        status: PENDING until settled, then SETTLED forever.
        reserved: The creation-time balance reservation has been applied.
        finalized: The settlement-time balance step has been applied.

    reserved/finalized expose the intermediate states of the
    order-then-balance saga so that OrderWorkflow.reconcile can finish it.
    """
    order_id: str
    user_id: str
    amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    reserved: bool = False
    finalized: bool = False

    def __post_init__(self):
        if not self.order_id or not self.order_id.strip():
            raise ValueError("Order order_id cannot be empty")
        if not self.user_id or not self.user_id.strip():
            raise ValueError("Order user_id cannot be empty")
        if not isinstance(self.amount, Decimal):
            raise ValueError(f"Order amount must be Decimal, got {type(self.amount)}")
        if self.amount <= ZERO:
            raise ValueError(f"Order amount must be positive, got {self.amount}")

    @property
    def is_settled(self) -> bool:
        return self.status is OrderStatus.SETTLED

    def to_item(self) -> Item:
        """Marshal to a store item."""
        return {
            ORDER_KEY: self.order_id,
            'user_id': self.user_id,
            'amount': normalize_decimal(self.amount),
            'status': self.status.value,
            'reserved': self.reserved,
            'finalized': self.finalized,
        }

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> Order:
        """
        Unmarshal a store item.

        Records written without saga markers decode with reserved=True and
        finalized equal to the settled flag, i.e. as fully applied.

        Raises:
            StoreError: If the item cannot be decoded into an Order.
        """
        order_id = _decode_str(item, ORDER_KEY, "order")
        user_id = _decode_str(item, 'user_id', "order")
        amount = _decode_decimal(item, 'amount', "order")
        try:
            status = OrderStatus(item.get('status'))
        except ValueError:
            raise StoreError(f"order {order_id} has unknown status {item.get('status')!r}") from None
        reserved = item.get('reserved', True)
        finalized = item.get('finalized', status is OrderStatus.SETTLED)
        if not isinstance(reserved, bool) or not isinstance(finalized, bool):
            raise StoreError(f"order {order_id} has non-boolean saga markers")
        try:
            return cls(order_id, user_id, amount, status, reserved, finalized)
        except ValueError as e:
            raise StoreError(f"failed to decode order record: {e}") from e

    def __repr__(self) -> str:
        flags = []
        if self.reserved:
            flags.append("reserved")
        if self.finalized:
            flags.append("finalized")
        flag_str = f" [{', '.join(flags)}]" if flags else ""
        return f"Order({self.order_id}: {self.amount} by {self.user_id}, {self.status.value}{flag_str})"
