"""
test_orders.py - Unit tests for orders.py

Tests:
- create_sell_order: validation, funds check, duplicate ids, reservation
- settle: both settlement policies, AlreadySettled, owner check, races
- Partial failures leave visible saga markers
- reconcile: every branch
- get_order
"""

import threading

import pytest
from decimal import Decimal

from kvledger import (
    Ledger, Order, OrderStatus, OrderWorkflow,
    SettlementPolicy, ReconcileAction,
    AlreadySettled, DuplicateOrder, InvalidAmount, NegativeBalance, NotFound, OrderNotReserved, StoreError,
    BALANCES_TABLE, ORDERS_TABLE,
)

from tests.fake_store import FailingStore, InterleavingStore, seed_balance, stored_balance


def _workflow(store, policy=SettlementPolicy.STATUS_ONLY, **kwargs):
    return OrderWorkflow(store, Ledger(store, verbose=False), policy, verbose=False, **kwargs)


def _is_balance_cas(table, key, fields, expected):
    return table == BALANCES_TABLE and expected is not None


# ============================================================================
# Construction
# ============================================================================

class TestConstruction:

    def test_policy_is_required(self, store, ledger):
        with pytest.raises(TypeError):
            OrderWorkflow(store, ledger)

    def test_policy_must_be_enum(self, store, ledger):
        with pytest.raises(ValueError, match="SettlementPolicy"):
            OrderWorkflow(store, ledger, "debit_total")

    def test_repr(self, debit_total):
        assert repr(debit_total) == "OrderWorkflow(table=Orders, policy=debit_total)"


# ============================================================================
# create_sell_order
# ============================================================================

class TestCreateSellOrder:

    def test_writes_reserved_pending_order_and_debits_both(self, store, funded_ledger, status_only):
        order = status_only.create_sell_order("u1", "o1", Decimal("40"))

        assert order == Order("o1", "u1", Decimal("40"), OrderStatus.PENDING, reserved=True)
        assert status_only.get_order("o1") == order
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    @pytest.mark.parametrize("amount", [0, -5, "0.00", Decimal("-0.01")])
    def test_non_positive_amount_rejected(self, store, funded_ledger, status_only, amount):
        with pytest.raises(InvalidAmount, match="must be positive"):
            status_only.create_sell_order("u1", "o1", amount)
        assert store.get(ORDERS_TABLE, "o1") is None
        assert stored_balance(store, "u1") == (Decimal("100"), Decimal("100"))

    @pytest.mark.parametrize("amount", ["forty", None, Decimal("NaN"), "Infinity"])
    def test_non_numeric_amount_rejected(self, store, funded_ledger, status_only, amount):
        with pytest.raises(InvalidAmount):
            status_only.create_sell_order("u1", "o1", amount)
        assert store.get(ORDERS_TABLE, "o1") is None

    def test_insufficient_funds_rejected_before_order_write(self, store, status_only):
        seed_balance(store, "u1", "10")
        with pytest.raises(NegativeBalance):
            status_only.create_sell_order("u1", "o2", 50)
        assert store.get(ORDERS_TABLE, "o2") is None
        assert stored_balance(store, "u1") == (Decimal("10"), Decimal("10"))

    def test_funds_check_covers_total(self, store, status_only):
        seed_balance(store, "u1", "100", "30")
        with pytest.raises(NegativeBalance):
            status_only.create_sell_order("u1", "o1", 40)
        assert store.get(ORDERS_TABLE, "o1") is None

    def test_missing_balance_is_not_found_and_writes_nothing(self, store, status_only):
        with pytest.raises(NotFound):
            status_only.create_sell_order("ghost", "o1", 10)
        assert store.get(ORDERS_TABLE, "o1") is None

    def test_duplicate_order_id_rejected(self, store, funded_ledger, status_only):
        status_only.create_sell_order("u1", "o1", 40)
        with pytest.raises(DuplicateOrder):
            status_only.create_sell_order("u1", "o1", 10)

        assert status_only.get_order("o1").amount == Decimal("40")
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_without_funds_check_order_is_written_first(self, store):
        """Order is written first; the failed reservation leaves it unreserved."""
        seed_balance(store, "u1", "10")
        workflow = _workflow(store, check_funds=False)

        with pytest.raises(NegativeBalance):
            workflow.create_sell_order("u1", "o2", 50)

        orphan = workflow.get_order("o2")
        assert orphan.status is OrderStatus.PENDING
        assert orphan.reserved is False
        assert stored_balance(store, "u1") == (Decimal("10"), Decimal("10"))

    def test_reservation_store_failure_leaves_unreserved_order(self, store):
        seed_balance(store, "u1", "100")
        failing = FailingStore(store, "conditional_update", predicate=_is_balance_cas)
        workflow = _workflow(failing)

        with pytest.raises(StoreError):
            workflow.create_sell_order("u1", "o1", 40)

        assert workflow.get_order("o1").reserved is False
        assert stored_balance(store, "u1") == (Decimal("100"), Decimal("100"))

    def test_order_write_failure_leaves_nothing(self, store):
        seed_balance(store, "u1", "100")
        failing = FailingStore(store, "conditional_update", table=ORDERS_TABLE)
        workflow = _workflow(failing)

        with pytest.raises(StoreError, match="failed to put order o1"):
            workflow.create_sell_order("u1", "o1", 40)

        assert store.get(ORDERS_TABLE, "o1") is None
        assert stored_balance(store, "u1") == (Decimal("100"), Decimal("100"))

    def test_marker_already_set_returns_stored_order(self, store):
        """Another caller set reserved between our debit and our marker write."""
        seed_balance(store, "u1", "100")

        def reconciler(inner):
            inner.conditional_update(ORDERS_TABLE, "o1", {'reserved': True}, {'reserved': False})

        # create-if-absent passes through; only the marker CAS is raced
        racing = InterleavingStore(store, reconciler, table=ORDERS_TABLE)
        order = _workflow(racing).create_sell_order("u1", "o1", 40)

        assert order.reserved is True
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))


# ============================================================================
# settle
# ============================================================================

class TestSettle:

    def test_status_only_leaves_balance(self, store, funded_ledger, status_only):
        status_only.create_sell_order("u1", "o1", 40)

        settled = status_only.settle("o1")

        assert settled.status is OrderStatus.SETTLED
        assert settled.finalized is True
        assert status_only.get_order("o1") == settled
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_debit_total_debits_total_only(self, store, funded_ledger, debit_total):
        debit_total.create_sell_order("u1", "o1", 40)

        settled = debit_total.settle("o1")

        assert settled.status is OrderStatus.SETTLED
        assert settled.finalized is True
        assert debit_total.get_order("o1") == settled
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("20"))

    def test_missing_order_is_not_found(self, status_only):
        with pytest.raises(NotFound, match="no order found"):
            status_only.settle("nope")

    def test_second_settle_is_already_settled(self, store, funded_ledger, debit_total):
        debit_total.create_sell_order("u1", "o1", 40)
        debit_total.settle("o1")

        with pytest.raises(AlreadySettled):
            debit_total.settle("o1")
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("20"))

    def test_owner_mismatch_is_not_found(self, store, funded_ledger, status_only):
        status_only.create_sell_order("u1", "o1", 40)
        with pytest.raises(NotFound, match="for user_id: u2"):
            status_only.settle("o1", user_id="u2")
        assert status_only.get_order("o1").status is OrderStatus.PENDING

    def test_matching_owner_settles(self, store, funded_ledger, status_only):
        status_only.create_sell_order("u1", "o1", 40)
        assert status_only.settle("o1", user_id="u1").is_settled

    def test_concurrent_settle_loses_race(self, store, funded_ledger):
        """Another settle lands between our read and our status write."""
        workflow = _workflow(store, SettlementPolicy.DEBIT_TOTAL)
        workflow.create_sell_order("u1", "o1", 40)

        def rival_settle(inner):
            inner.conditional_update(
                ORDERS_TABLE, "o1",
                {'status': 'Settled', 'finalized': True},
                {'status': 'Pending'},
            )

        racing = InterleavingStore(store, rival_settle, table=ORDERS_TABLE)
        loser = OrderWorkflow(racing, Ledger(racing, verbose=False),
                              SettlementPolicy.DEBIT_TOTAL, verbose=False)

        with pytest.raises(AlreadySettled, match="concurrently"):
            loser.settle("o1")
        # the loser applied no balance change
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_debit_failure_leaves_unfinalized_settled_order(self, store):
        seed_balance(store, "u1", "100")
        workflow = _workflow(store, SettlementPolicy.DEBIT_TOTAL)
        workflow.create_sell_order("u1", "o1", 40)

        failing = FailingStore(store, "conditional_update", predicate=_is_balance_cas)
        broken = OrderWorkflow(failing, Ledger(failing, verbose=False),
                               SettlementPolicy.DEBIT_TOTAL, verbose=False)
        with pytest.raises(StoreError):
            broken.settle("o1")

        order = workflow.get_order("o1")
        assert order.status is OrderStatus.SETTLED
        assert order.finalized is False
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_debit_total_rejects_when_total_already_spent(self, store):
        seed_balance(store, "u1", "100")
        workflow = _workflow(store, SettlementPolicy.DEBIT_TOTAL)
        workflow.create_sell_order("u1", "o1", 40)
        # total drained elsewhere: 60 → 10
        workflow.ledger.adjust("u1", 0, -50)

        with pytest.raises(NegativeBalance):
            workflow.settle("o1")
        order = workflow.get_order("o1")
        assert order.is_settled and not order.finalized

    @pytest.mark.parametrize("policy", list(SettlementPolicy))
    def test_unreserved_order_rejected_without_writes(self, store, policy):
        seed_balance(store, "u1", "100")
        store.put(ORDERS_TABLE, "o1", Order("o1", "u1", Decimal("30")).to_item())
        before = store.get(ORDERS_TABLE, "o1")
        workflow = _workflow(store, policy)

        with pytest.raises(OrderNotReserved):
            workflow.settle("o1")

        assert store.get(ORDERS_TABLE, "o1") == before
        assert stored_balance(store, "u1") == (Decimal("100"), Decimal("100"))

    def test_settle_during_creation_does_not_double_debit(self, store):
        """A settle landing between the order write and its reservation."""
        seed_balance(store, "u1", "100")
        rejections = []

        def settle_mid_creation(inner):
            try:
                _workflow(inner).settle("o1")
            except OrderNotReserved as e:
                rejections.append(e)

        racing = InterleavingStore(store, settle_mid_creation, table=BALANCES_TABLE)
        order = _workflow(racing).create_sell_order("u1", "o1", 40)

        assert len(rejections) == 1
        assert order.reserved is True
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

        assert _workflow(store).settle("o1").is_settled
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_racing_settles_on_unreserved_order_leave_balance(self, store):
        seed_balance(store, "u1", "100")
        store.put(ORDERS_TABLE, "o1", Order("o1", "u1", Decimal("30")).to_item())
        workflow = _workflow(store, SettlementPolicy.DEBIT_TOTAL)

        barrier = threading.Barrier(6)
        outcomes = []

        def settle():
            barrier.wait()
            try:
                workflow.settle("o1")
            except OrderNotReserved:
                outcomes.append("rejected")
            else:
                outcomes.append("settled")

        threads = [threading.Thread(target=settle) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes == ["rejected"] * 6
        assert stored_balance(store, "u1") == (Decimal("100"), Decimal("100"))
        assert workflow.get_order("o1").status is OrderStatus.PENDING

        # reconcile is the only path that re-drives the reservation
        assert workflow.reconcile("o1") is ReconcileAction.RESERVED
        workflow.settle("o1")
        assert stored_balance(store, "u1") == (Decimal("70"), Decimal("40"))

    def test_amount_never_changes(self, store, funded_ledger, debit_total):
        debit_total.create_sell_order("u1", "o1", Decimal("40.50"))
        debit_total.settle("o1")
        assert store.get(ORDERS_TABLE, "o1")['amount'] == "40.5"


# ============================================================================
# reconcile
# ============================================================================

class TestReconcile:

    def test_complete_pending_order_needs_nothing(self, store, funded_ledger, status_only):
        status_only.create_sell_order("u1", "o1", 40)
        assert status_only.reconcile("o1") is ReconcileAction.NOTHING_TO_DO
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_complete_settled_order_needs_nothing(self, store, funded_ledger, debit_total):
        debit_total.create_sell_order("u1", "o1", 40)
        debit_total.settle("o1")
        assert debit_total.reconcile("o1") is ReconcileAction.NOTHING_TO_DO
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("20"))

    def test_reserves_orphaned_pending_order(self, store):
        seed_balance(store, "u1", "10")
        workflow = _workflow(store, check_funds=False)
        with pytest.raises(NegativeBalance):
            workflow.create_sell_order("u1", "o2", 50)

        # funds arrive, then the saga is re-driven
        workflow.ledger.adjust("u1", 90, 90)
        assert workflow.reconcile("o2") is ReconcileAction.RESERVED

        assert workflow.get_order("o2").reserved is True
        assert stored_balance(store, "u1") == (Decimal("50"), Decimal("50"))
        assert workflow.reconcile("o2") is ReconcileAction.NOTHING_TO_DO

    def test_finalizes_debit_total_settlement(self, store):
        seed_balance(store, "u1", "100")
        workflow = _workflow(store, SettlementPolicy.DEBIT_TOTAL)
        workflow.create_sell_order("u1", "o1", 40)
        store.conditional_update(ORDERS_TABLE, "o1", {'status': 'Settled', 'finalized': False},
                                 {'status': 'Pending'})

        assert workflow.reconcile("o1") is ReconcileAction.FINALIZED

        assert workflow.get_order("o1").finalized is True
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("20"))
        assert workflow.reconcile("o1") is ReconcileAction.NOTHING_TO_DO

    def test_status_only_finalize_just_marks(self, store):
        seed_balance(store, "u1", "100")
        workflow = _workflow(store, SettlementPolicy.STATUS_ONLY)
        workflow.create_sell_order("u1", "o1", 40)
        store.conditional_update(ORDERS_TABLE, "o1", {'status': 'Settled', 'finalized': False},
                                 {'status': 'Pending'})

        assert workflow.reconcile("o1") is ReconcileAction.FINALIZED
        assert stored_balance(store, "u1") == (Decimal("60"), Decimal("60"))

    def test_reconcile_failure_keeps_marker(self, store):
        seed_balance(store, "u1", "5")
        store.put(ORDERS_TABLE, "o1", Order("o1", "u1", Decimal("30")).to_item())
        workflow = _workflow(store)

        with pytest.raises(NegativeBalance):
            workflow.reconcile("o1")
        assert workflow.get_order("o1").reserved is False

    def test_missing_order(self, status_only):
        with pytest.raises(NotFound):
            status_only.reconcile("nope")


# ============================================================================
# get_order
# ============================================================================

class TestGetOrder:

    def test_undecodable_order_is_store_error(self, store, status_only):
        store.put(ORDERS_TABLE, "o1", {'order_id': 'o1', 'user_id': 'u1', 'amount': '5', 'status': '??'})
        with pytest.raises(StoreError):
            status_only.get_order("o1")

    def test_custom_table(self, store, ledger):
        workflow = OrderWorkflow(store, ledger, SettlementPolicy.STATUS_ONLY,
                                 orders_table="SellOrders", verbose=False)
        ledger.open_account("u1", 10)
        workflow.create_sell_order("u1", "o1", 1)
        assert store.get("SellOrders", "o1") is not None
        assert store.get(ORDERS_TABLE, "o1") is None


class TestVerbose:

    def test_prints_incomplete_saga(self, store, capsys):
        seed_balance(store, "u1", "10")
        workflow = OrderWorkflow(store, Ledger(store, verbose=False),
                                 SettlementPolicy.STATUS_ONLY, check_funds=False, verbose=True)
        with pytest.raises(NegativeBalance):
            workflow.create_sell_order("u1", "o1", 50)
        out = capsys.readouterr().out
        assert "Created: Order(o1" in out
        assert "INCOMPLETE" in out
