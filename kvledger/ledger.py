"""
ledger.py - Balance Ledger over a Key-Value Store

The Ledger class owns every mutation of a Balance record. It keeps balances
consistent under concurrent callers with optimistic concurrency control:
read, compute, then write back only if nobody else wrote in between.

Key responsibilities:
    - Point reads of balances (fetch_balance)
    - Compare-and-swap adjustment with retry (adjust, adjust_amount)
    - First-write-wins provisioning of new balances (open_account)
    - Never drives available or total below zero

The Ledger holds no balance state of its own. Any number of Ledger
instances, in any number of processes, may share one store.
"""

from __future__ import annotations
from typing import Any, Callable, Optional, Tuple
import time

from .core import (
    Balance, Item,
    BALANCES_TABLE, ZERO,
    ConditionConflict, AccountExists, AdjustTimeout, NegativeBalance, NotFound,
    ledger_context, to_decimal,
)
from .retry import RetryPolicy
from .store import KeyValueStore, UpdateResult, call_store


class Ledger:
    """
    Balance ledger backed by a key-value store.

    Every adjustment follows the same loop:
        1. Read the current balance
        2. Compute the new values and reject negatives
        3. Conditionally write both fields, expecting both read values
        4. On a lost race, ask the retry policy and start again from 1

    Correctness rests on the store's conditional write being atomic per key.
    Comparing both fields means a concurrent change to either one is caught.

    Thread Safety:
        Safe to share between threads. The store's conditional write is the
        only synchronization; the Ledger itself takes no locks.

    Example:
        store = InMemoryStore()
        ledger = Ledger(store)
        ledger.open_account("alice", Decimal("100"))
        ledger.adjust("alice", Decimal("-40"), Decimal("-40"))
        ledger.fetch_balance("alice")
        # Balance(alice: available=60, total=60)
    """

    def __init__(
        self,
        store: KeyValueStore,
        retry_policy: Optional[RetryPolicy] = None,
        balances_table: str = BALANCES_TABLE,
        verbose: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Create a ledger.

        Args:
            store: Key-value store holding the Balances table
            retry_policy: Conflict retry policy (default: immediate, unbounded)
            balances_table: Name of the Balances table
            verbose: Print diagnostics for conflicts and rejections (default: True)
            sleep: Used to wait between retries
            clock: Monotonic clock used for the retry deadline
        """
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.immediate()
        self.balances_table = balances_table
        self.verbose = verbose
        self._sleep = sleep
        self._clock = clock

    # ========================================================================
    # READS
    # ========================================================================

    def fetch_balance(self, user_id: str) -> Balance:
        """
        Read a user's balance.

        Args:
            user_id: Owner of the balance

        Returns:
            The stored Balance

        Raises:
            NotFound: If no balance exists for user_id
            StoreError: If the read fails or the record cannot be decoded
        """
        balance, _ = self._read(user_id)
        return balance

    def _read(self, user_id: str) -> Tuple[Balance, Item]:
        """
        Read a balance together with its raw store item.

        The raw item is what conditional writes must compare against: the
        stored representation may differ from a re-marshaled one
        (e.g. "100.00" vs "100") while being numerically equal.
        """
        item = call_store(
            f"get balance for {user_id}",
            self.store.get, self.balances_table, user_id,
        )
        if item is None:
            raise NotFound(f"no balance found for user_id: {user_id}")
        return Balance.from_item(item), item

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def adjust(self, user_id: str, available_delta: Any, total_delta: Any) -> Balance:
        """
        Apply deltas to a balance with compare-and-swap semantics.

        Retries on conflicting concurrent writes until the write lands, a
        non-conflict error occurs, or the retry policy gives up.

        Args:
            user_id: Owner of the balance
            available_delta: Change to available funds (negative to debit)
            total_delta: Change to total funds (negative to debit)

        Returns:
            The Balance as written

        Raises:
            ValueError: If a delta is not a finite number
            NotFound: If no balance exists for user_id
            NegativeBalance: If the result would make available or total
                             negative; nothing is written
            AdjustTimeout: If the retry policy's budget runs out
            StoreError: On any other store failure
        """
        available_delta = to_decimal(available_delta, "available_delta")
        total_delta = to_decimal(total_delta, "total_delta")

        policy = self.retry_policy
        started = self._clock()
        attempts = 0

        while True:
            current, item = self._read(user_id)

            with ledger_context():
                new_available = current.available + available_delta
                new_total = current.total + total_delta
            if new_available < ZERO or new_total < ZERO:
                if self.verbose:
                    print(f"✗ REJECTED: {user_id} would go negative "
                          f"(available={new_available}, total={new_total})")
                raise NegativeBalance(
                    f"adjusting {user_id} by ({available_delta}, {total_delta}) would result "
                    f"in negative balance: available={new_available}, total={new_total}"
                )

            updated = Balance(user_id, new_available, new_total)
            attempts += 1
            try:
                self._compare_and_swap(item, updated)
            except ConditionConflict:
                elapsed = self._clock() - started
                if policy.exhausted(attempts, elapsed):
                    raise AdjustTimeout(
                        f"gave up adjusting {user_id} after {attempts} attempts "
                        f"in {elapsed:.3f}s"
                    ) from None
                wait = policy.delay(attempts)
                if self.verbose:
                    print(f"⚠️  CONFLICT: {user_id} changed concurrently, "
                          f"retry #{attempts} in {wait:.3f}s")
                if wait > 0:
                    self._sleep(wait)
                continue

            if self.verbose:
                print(f"✓ ADJUSTED: {current} → {updated}")
            return updated

    def adjust_amount(self, user_id: str, amount: Any) -> Balance:
        """
        Apply the same delta to available and total.

        Equivalent to adjust(user_id, amount, amount).
        """
        amount = to_decimal(amount, "amount")
        return self.adjust(user_id, amount, amount)

    def _compare_and_swap(self, expected_item: Item, updated: Balance) -> None:
        """
        Write updated only if the stored fields still equal expected_item's.

        Raises:
            ConditionConflict: If another writer changed either field
            StoreError: On any other store failure
        """
        new_item = updated.to_item()
        result = call_store(
            f"update balance for {updated.user_id}",
            self.store.conditional_update,
            self.balances_table,
            updated.user_id,
            {'available': new_item['available'], 'total': new_item['total']},
            {'available': expected_item['available'], 'total': expected_item['total']},
        )
        if result is not UpdateResult.APPLIED:
            raise ConditionConflict(f"balance for {updated.user_id} changed since read")

    def open_account(
        self,
        user_id: str,
        available: Any = ZERO,
        total: Any = None,
    ) -> Balance:
        """
        Create a balance for a new user. The first writer wins.

        Args:
            user_id: Owner of the new balance
            available: Initial available funds (default: 0)
            total: Initial total funds (default: same as available)

        Returns:
            The Balance as written

        Raises:
            ValueError: If an amount is not a finite number
            NegativeBalance: If an initial value is negative
            AccountExists: If user_id already has a balance
            StoreError: On any other store failure
        """
        available = to_decimal(available, "available")
        total = available if total is None else to_decimal(total, "total")
        if available < ZERO or total < ZERO:
            raise NegativeBalance(
                f"cannot open {user_id} with negative balance: "
                f"available={available}, total={total}"
            )

        balance = Balance(user_id, available, total)
        result = call_store(
            f"create balance for {user_id}",
            self.store.conditional_update,
            self.balances_table, user_id, balance.to_item(), None,
        )
        if result is not UpdateResult.APPLIED:
            raise AccountExists(f"balance already exists for user_id: {user_id}")

        if self.verbose:
            print(f"📝 Opened: {balance}")
        return balance

    def __repr__(self) -> str:
        return f"Ledger(table={self.balances_table}, store={self.store!r})"
