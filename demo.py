#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Balances and Sell Orders over a Key-Value Store

Walks through the ledger one step at a time. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3: Balances     - Opening accounts, adjusting, rejected overdrafts
  4-6: Sell Orders  - Create and reserve, settle under both policies, insufficient funds
  7-8: Concurrency  - Compare-and-swap retries, a multi-threaded contention run
  9:   Recovery     - Finishing an interrupted order with reconcile()

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from decimal import Decimal
import sys
import threading
import time

from kvledger import (
    InMemoryStore, Ledger, OrderWorkflow, SettlementPolicy, RetryPolicy,
    NegativeBalance, StoreError, ORDERS_TABLE,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Parameters for the walkthrough."""
    # Balances and order sizes
    opening_balance: Decimal = Decimal("100")
    order_amount: Decimal = Decimal("40")
    small_balance: Decimal = Decimal("10")
    oversized_order: Decimal = Decimal("50")

    # Contention run (Step 8)
    contention_threads: int = 16
    contention_orders_per_thread: int = 25
    contention_order_amount: Decimal = Decimal("1")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_balance(ledger: Ledger, user_id: str):
    balance = ledger.fetch_balance(user_id)
    print(f"    {user_id}: available={balance.available}, total={balance.total}")


# ============================================================================
# PHASE 1: BALANCES (Steps 1-3)
# ============================================================================

def step_01_open_account():
    """Open an account in an empty store."""
    step_header(1, "Opening an Account",
        "See how a balance record is created and stored.")

    print("""
    Every user has one balance record with two amounts:

    1. AVAILABLE - what the user can still commit to new orders
    2. TOTAL     - what the user owns, including committed funds

    Records live in a key-value store. InMemoryStore stands in for a real one.
    """)

    store = InMemoryStore()
    ledger = Ledger(store, verbose=True)

    print(">>> ledger.open_account('u1', 100)")
    ledger.open_account("u1", CONFIG.opening_balance)

    section_header("Stored Record")
    print(f"    {store.get('Balances', 'u1')}")
    print("""
    Amounts are stored as normalized decimal strings: 100.00 and 100 are
    written identically.
    """)
    return store, ledger


def step_02_adjust(ledger: Ledger):
    """Apply deltas to a balance."""
    step_header(2, "Adjusting a Balance",
        "Apply separate deltas to available and total in one write.")

    print(">>> ledger.adjust('u1', -5, 0)")
    ledger.adjust("u1", Decimal("-5"), Decimal("0"))
    print(">>> ledger.adjust_amount('u1', 5)")
    ledger.adjust_amount("u1", Decimal("5"))

    section_header("Result")
    show_balance(ledger, "u1")
    return ledger


def step_03_rejected(ledger: Ledger):
    """An adjustment that would go negative."""
    step_header(3, "Rejected Overdraft",
        "Learn that no adjustment can drive a balance below zero.")

    print(">>> ledger.adjust('u1', -1000, -1000)")
    try:
        ledger.adjust("u1", Decimal("-1000"), Decimal("-1000"))
    except NegativeBalance as e:
        print(f"    NegativeBalance: {e}")

    section_header("Balance Unchanged")
    show_balance(ledger, "u1")
    return ledger


# ============================================================================
# PHASE 2: SELL ORDERS (Steps 4-6)
# ============================================================================

def step_04_create_order(store: InMemoryStore, ledger: Ledger):
    """Create a sell order and reserve its funds."""
    step_header(4, "Creating a Sell Order",
        "Watch an order reserve funds from both available and total.")

    orders = OrderWorkflow(store, ledger, SettlementPolicy.STATUS_ONLY, verbose=True)

    print(">>> orders.create_sell_order('u1', 'o1', 40)")
    orders.create_sell_order("u1", "o1", CONFIG.order_amount)

    section_header("After Creation")
    print(f"    {orders.get_order('o1')}")
    show_balance(ledger, "u1")
    return orders


def step_05_settle():
    """Settle under both settlement policies."""
    step_header(5, "Settling an Order",
        "Compare the two settlement policies on the same order.")

    print("""
    STATUS_ONLY - settlement only flips the status
    DEBIT_TOTAL - settlement also debits total by the order amount
    """)

    for policy in SettlementPolicy:
        section_header(policy.name)
        store = InMemoryStore()
        ledger = Ledger(store, verbose=False)
        orders = OrderWorkflow(store, ledger, policy, verbose=True)
        ledger.open_account("u1", CONFIG.opening_balance)
        orders.create_sell_order("u1", "o1", CONFIG.order_amount)
        orders.settle("o1")
        show_balance(ledger, "u1")


def step_06_insufficient_funds():
    """Orders larger than the balance."""
    step_header(6, "Insufficient Funds",
        "See the difference between checking funds up front and not.")

    for check_funds in (True, False):
        section_header(f"check_funds={check_funds}")
        store = InMemoryStore()
        ledger = Ledger(store, verbose=False)
        orders = OrderWorkflow(store, ledger, SettlementPolicy.STATUS_ONLY,
                               check_funds=check_funds, verbose=True)
        ledger.open_account("u1", CONFIG.small_balance)
        try:
            orders.create_sell_order("u1", "o2", CONFIG.oversized_order)
        except NegativeBalance as e:
            print(f"    NegativeBalance: {e}")
        print(f"    Orders stored: {store.keys(ORDERS_TABLE)}")
        show_balance(ledger, "u1")

    print("""
    Without the funds check the order is written first and left Pending
    with reserved=False when the reservation fails.
    """)


# ============================================================================
# PHASE 3: CONCURRENCY (Steps 7-8)
# ============================================================================

class RacingStore:
    """Store wrapper that lets another writer land before the first CAS."""

    def __init__(self, inner: InMemoryStore):
        self.inner = inner
        self.raced = False

    def get(self, table, key):
        return self.inner.get(table, key)

    def put(self, table, key, item):
        self.inner.put(table, key, item)

    def conditional_update(self, table, key, fields, expected):
        if expected is not None and not self.raced:
            self.raced = True
            Ledger(self.inner, verbose=False).adjust("u1", Decimal("25"), Decimal("25"))
        return self.inner.conditional_update(table, key, fields, expected)


def step_07_conflict():
    """A concurrent writer between read and write."""
    step_header(7, "Compare-and-Swap Retry",
        "See a lost race detected and retried instead of overwritten.")

    inner = InMemoryStore()
    Ledger(inner, verbose=False).open_account("u1", CONFIG.opening_balance)
    ledger = Ledger(RacingStore(inner), verbose=True)

    print(">>> ledger.adjust('u1', -10, -10)   # another writer deposits 25 mid-flight")
    ledger.adjust("u1", Decimal("-10"), Decimal("-10"))

    section_header("Both Writes Survive")
    show_balance(Ledger(inner, verbose=False), "u1")


def step_08_contention():
    """Many threads placing orders against one balance."""
    step_header(8, "Contention Run",
        "Show that concurrent orders never lose an update.")

    threads = CONFIG.contention_threads
    per_thread = CONFIG.contention_orders_per_thread
    amount = CONFIG.contention_order_amount
    opening = amount * threads * per_thread

    store = InMemoryStore()
    ledger = Ledger(store, RetryPolicy.exponential(base_delay=0.0005, max_delay=0.005),
                    verbose=False)
    orders = OrderWorkflow(store, ledger, SettlementPolicy.DEBIT_TOTAL, verbose=False)
    ledger.open_account("u1", opening * 2)

    print(f"""
    {threads} threads each create and settle {per_thread} orders of {amount}.
    Opening balance: {opening * 2}
    """)

    barrier = threading.Barrier(threads)

    def worker(n):
        barrier.wait()
        for i in range(per_thread):
            order_id = f"t{n:02d}-{i:03d}"
            orders.create_sell_order("u1", order_id, amount)
            orders.settle(order_id)

    t0 = time.time()
    pool = [threading.Thread(target=worker, args=(n,)) for n in range(threads)]
    for t in pool:
        t.start()
    for t in pool:
        t.join()
    elapsed = time.time() - t0

    section_header("Result")
    count = len(store.keys(ORDERS_TABLE))
    print(f"    {count} orders in {elapsed:.2f}s")
    show_balance(ledger, "u1")
    balance = ledger.fetch_balance("u1")
    expected_available = opening * 2 - opening
    expected_total = opening * 2 - 2 * opening
    ok = balance.available == expected_available and balance.total == expected_total
    print(f"    Expected available={expected_available}, total={expected_total}: "
          f"{'✓' if ok else '✗'}")


# ============================================================================
# PHASE 4: RECOVERY (Step 9)
# ============================================================================

class FlakyStore:
    """Store wrapper whose balance writes fail until healed."""

    def __init__(self, inner: InMemoryStore):
        self.inner = inner
        self.healthy = False

    def get(self, table, key):
        return self.inner.get(table, key)

    def put(self, table, key, item):
        self.inner.put(table, key, item)

    def conditional_update(self, table, key, fields, expected):
        if table == "Balances" and expected is not None and not self.healthy:
            raise ConnectionError("service unavailable")
        return self.inner.conditional_update(table, key, fields, expected)


def step_09_reconcile():
    """Finish an order whose reservation never landed."""
    step_header(9, "Reconciling an Interrupted Order",
        "Use the saga markers to finish work a failure left behind.")

    inner = InMemoryStore()
    Ledger(inner, verbose=False).open_account("u1", CONFIG.opening_balance)
    store = FlakyStore(inner)
    orders = OrderWorkflow(store, Ledger(store, verbose=False),
                           SettlementPolicy.STATUS_ONLY, verbose=True)

    print(">>> orders.create_sell_order('u1', 'o1', 40)   # balance write fails")
    try:
        orders.create_sell_order("u1", "o1", CONFIG.order_amount)
    except StoreError as e:
        print(f"    StoreError: {e}")
    print(f"    {orders.get_order('o1')}")

    store.healthy = True
    print("\n>>> orders.reconcile('o1')")
    print(f"    {orders.reconcile('o1')}")
    print(f"    {orders.get_order('o1')}")
    show_balance(orders.ledger, "u1")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       KVLEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)
    print("""
    PHASES:
      1-3: Balances     - Open, adjust, reject overdrafts
      4-6: Sell Orders  - Create, settle, insufficient funds
      7-8: Concurrency  - CAS retry, contention run
      9:   Recovery     - reconcile()
    """)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    store, ledger = step_01_open_account()
    wait_for_enter()

    ledger = step_02_adjust(ledger)
    wait_for_enter()

    ledger = step_03_rejected(ledger)
    wait_for_enter()

    step_04_create_order(store, ledger)
    wait_for_enter()

    step_05_settle()
    wait_for_enter()

    step_06_insufficient_funds()
    wait_for_enter()

    step_07_conflict()
    wait_for_enter()

    step_08_contention()
    wait_for_enter()

    step_09_reconcile()

    print(f"\n{'='*70}")
    print("TUTORIAL COMPLETE")
    print(f"{'='*70}")
    print("""
    BALANCES
      - available and total move independently
      - No adjustment leaves either below zero

    ORDERS
      - Creation reserves funds from both amounts
      - The settlement policy decides what settle() does to total
      - Each order settles exactly once

    CONCURRENCY AND RECOVERY
      - Compare-and-swap with retry never loses an update
      - Saga markers let reconcile() finish interrupted orders

    Next steps:
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
