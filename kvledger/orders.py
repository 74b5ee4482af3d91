"""
orders.py - Sell Order Workflow

This module sequences order records with Ledger adjustments:
1. create_sell_order() - write a Pending order, then reserve its funds
2. settle() - move a Pending order to Settled, then apply the settlement policy
3. reconcile() - finish an order left between its two writes
4. get_order() - point read

The order record and the balance record are different keys, and the store
has no cross-key transaction. Each operation is therefore a two-step saga:

    create_sell_order:
        put order {Pending, reserved=False}
        Ledger.adjust(user, -amount, -amount)
        mark reserved=True

    settle (DEBIT_TOTAL):
        order {Pending → Settled, finalized=False}
        Ledger.adjust(user, 0, -amount)
        mark finalized=True

A failure between the steps is not rolled back. The order keeps its
reserved=False / finalized=False marker, and reconcile() re-drives the
missing balance step.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .core import (
    Order, OrderStatus,
    ORDERS_TABLE, ZERO,
    LedgerError, AlreadySettled, DuplicateOrder, InvalidAmount,
    NegativeBalance, NotFound, OrderNotReserved,
    ledger_context, to_decimal,
)
from .ledger import Ledger
from .store import KeyValueStore, UpdateResult, call_store


class SettlementPolicy(Enum):
    """
    What settling an order does to the owner's balance.

    STATUS_ONLY: Nothing. Funds were committed when the order was created,
                 so settlement only flips the status.
    DEBIT_TOTAL: Debit total by the order amount, leaving available alone.
                 Available funds left at creation; total catches up now.
    """
    STATUS_ONLY = "status_only"
    DEBIT_TOTAL = "debit_total"


class ReconcileAction(Enum):
    """
    Outcome of OrderWorkflow.reconcile().

    NOTHING_TO_DO: The order's saga was already complete.
    RESERVED: The creation-time reservation was applied.
    FINALIZED: The settlement-time balance step was applied.
    """
    NOTHING_TO_DO = "nothing_to_do"
    RESERVED = "reserved"
    FINALIZED = "finalized"


class OrderWorkflow:
    """
    Order lifecycle (create → settle) on top of a Ledger.

    The settlement policy has no default: callers must pick the accounting
    model explicitly.

    Example:
        store = InMemoryStore()
        ledger = Ledger(store)
        orders = OrderWorkflow(store, ledger, SettlementPolicy.STATUS_ONLY)

        ledger.open_account("u1", 100)
        orders.create_sell_order("u1", "o1", 40)   # balance: 60 / 60
        orders.settle("o1")                        # balance: 60 / 60
    """

    def __init__(
        self,
        store: KeyValueStore,
        ledger: Ledger,
        settlement_policy: SettlementPolicy,
        check_funds: bool = True,
        orders_table: str = ORDERS_TABLE,
        verbose: bool = True,
    ):
        """
        Create an order workflow.

        Args:
            store: Key-value store holding the Orders table
            ledger: Ledger used for every balance change
            settlement_policy: Accounting model applied by settle()
            check_funds: Reject orders the balance cannot cover before
                         writing them (default: True)
            orders_table: Name of the Orders table
            verbose: Print diagnostics for saga steps (default: True)
        """
        if not isinstance(settlement_policy, SettlementPolicy):
            raise ValueError(f"settlement_policy must be a SettlementPolicy, got {settlement_policy!r}")
        self.store = store
        self.ledger = ledger
        self.settlement_policy = settlement_policy
        self.check_funds = check_funds
        self.orders_table = orders_table
        self.verbose = verbose

    # ========================================================================
    # READS
    # ========================================================================

    def get_order(self, order_id: str) -> Order:
        """
        Read an order.

        Raises:
            NotFound: If no order exists for order_id
            StoreError: If the read fails or the record cannot be decoded
        """
        item = call_store(
            f"get order {order_id}",
            self.store.get, self.orders_table, order_id,
        )
        if item is None:
            raise NotFound(f"no order found with the given order_id: {order_id}")
        return Order.from_item(item)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def create_sell_order(self, user_id: str, order_id: str, amount: Any) -> Order:
        """
        Create a Pending sell order and reserve its funds.

        Both available and total drop by amount: the funds are committed,
        not yet realized.

        Args:
            user_id: Owner of the order and of the balance to debit
            order_id: New, unused order identifier
            amount: Positive order amount

        Returns:
            The order, marked reserved

        Raises:
            InvalidAmount: If amount is not a positive, finite number
            NotFound: If check_funds is on and user_id has no balance
            NegativeBalance: If the balance cannot cover amount
            DuplicateOrder: If order_id already exists
            StoreError: On store failures

        If the reservation fails after the order is written, the order is
        left Pending with reserved=False and the error propagates.
        """
        amount = self._validate_amount(amount)
        order = Order(order_id=order_id, user_id=user_id, amount=amount)

        if self.check_funds:
            balance = self.ledger.fetch_balance(user_id)
            with ledger_context():
                short = balance.available - amount < ZERO or balance.total - amount < ZERO
            if short:
                if self.verbose:
                    print(f"✗ REJECTED: {order_id} for {amount} exceeds {balance}")
                raise NegativeBalance(
                    f"order {order_id} for {amount} exceeds balance of {user_id}: "
                    f"available={balance.available}, total={balance.total}"
                )

        result = call_store(
            f"put order {order_id}",
            self.store.conditional_update,
            self.orders_table, order_id, order.to_item(), None,
        )
        if result is not UpdateResult.APPLIED:
            raise DuplicateOrder(f"order already exists with the given order_id: {order_id}")

        if self.verbose:
            print(f"📝 Created: {order}")
        return self._reserve(order)

    def settle(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """
        Settle a Pending order exactly once.

        The status change is a conditional write expecting Pending, so of
        two racing settle() calls only one succeeds. The other sees
        AlreadySettled.

        Args:
            order_id: Order to settle
            user_id: Expected owner (optional). A mismatch is NotFound.

        Returns:
            The settled order

        Raises:
            NotFound: If the order does not exist (for user_id, if given)
            AlreadySettled: If the order is already Settled
            OrderNotReserved: If the order's reservation has not landed;
                              nothing is written
            NegativeBalance: If the DEBIT_TOTAL step cannot be applied
            StoreError: On store failures

        Only reconcile() re-drives a missing reservation. Under DEBIT_TOTAL,
        a failing debit leaves the order Settled with finalized=False and
        the error propagates.
        """
        order = self.get_order(order_id)
        if user_id is not None and order.user_id != user_id:
            raise NotFound(f"no order {order_id} found for user_id: {user_id}")
        if order.is_settled:
            raise AlreadySettled(f"order {order_id} is already settled")

        if not order.reserved:
            if self.verbose:
                print(f"✗ REJECTED: {order} has no reservation")
            raise OrderNotReserved(
                f"order {order_id} has no reservation; its creation is in flight "
                f"or must be reconciled"
            )

        finalized = self.settlement_policy is SettlementPolicy.STATUS_ONLY
        result = call_store(
            f"update order status for {order_id}",
            self.store.conditional_update,
            self.orders_table, order_id,
            {'status': OrderStatus.SETTLED.value, 'finalized': finalized},
            {'status': OrderStatus.PENDING.value},
        )
        if result is not UpdateResult.APPLIED:
            raise AlreadySettled(f"order {order_id} was settled concurrently")

        settled = replace(order, status=OrderStatus.SETTLED, finalized=finalized)
        if self.verbose:
            print(f"✓ SETTLED: {settled}")

        if self.settlement_policy is SettlementPolicy.DEBIT_TOTAL:
            settled = self._finalize(settled)
        return settled

    def reconcile(self, order_id: str) -> ReconcileAction:
        """
        Re-drive the missing balance step of an interrupted saga.

        Pending orders without a reservation are reserved. Settled orders
        that were never finalized get the settlement policy's balance step.

        Only call this for orders whose creating or settling call has
        failed or been abandoned. Running it alongside an in-flight
        create_sell_order() or settle() for the same order can apply the
        balance step twice.

        Returns:
            The ReconcileAction taken

        Raises:
            NotFound: If the order does not exist
            NegativeBalance: If the balance step cannot be applied
            StoreError: On store failures
        """
        order = self.get_order(order_id)
        if not order.is_settled:
            if order.reserved:
                return ReconcileAction.NOTHING_TO_DO
            self._reserve(order)
            return ReconcileAction.RESERVED
        if order.finalized:
            return ReconcileAction.NOTHING_TO_DO
        self._finalize(order)
        return ReconcileAction.FINALIZED

    # ========================================================================
    # SAGA STEPS
    # ========================================================================

    def _reserve(self, order: Order) -> Order:
        """Commit the order's funds and mark it reserved."""
        try:
            self.ledger.adjust(order.user_id, -order.amount, -order.amount)
        except LedgerError as e:
            if self.verbose:
                print(f"⚠️  INCOMPLETE: {order} written without reservation: {e}")
            raise
        return self._mark(order, 'reserved')

    def _finalize(self, order: Order) -> Order:
        """Apply the settlement policy's balance step and mark the order finalized."""
        if self.settlement_policy is SettlementPolicy.DEBIT_TOTAL:
            try:
                self.ledger.adjust(order.user_id, ZERO, -order.amount)
            except LedgerError as e:
                if self.verbose:
                    print(f"⚠️  INCOMPLETE: {order} settled without balance update: {e}")
                raise
        return self._mark(order, 'finalized')

    def _mark(self, order: Order, marker: str) -> Order:
        """
        Set a saga marker from False to True.

        If another caller already set it, the stored order is returned.
        """
        result = call_store(
            f"mark order {order.order_id} {marker}",
            self.store.conditional_update,
            self.orders_table, order.order_id, {marker: True}, {marker: False},
        )
        if result is not UpdateResult.APPLIED:
            if self.verbose:
                print(f"⚠️  ALREADY MARKED: {order.order_id} {marker}")
            return self.get_order(order.order_id)
        return replace(order, **{marker: True})

    @staticmethod
    def _validate_amount(amount: Any) -> Decimal:
        try:
            value = to_decimal(amount, "amount")
        except ValueError as e:
            raise InvalidAmount(str(e)) from None
        if value <= ZERO:
            raise InvalidAmount(f"amount must be positive, got {amount}")
        return value

    def __repr__(self) -> str:
        return f"OrderWorkflow(table={self.orders_table}, policy={self.settlement_policy.value})"
