import pytest

from lotledger.models.enums import LotState
from lotledger.services import lot_rules
from lotledger.services.errors import (
    InsufficientStockError,
    InvalidInputError,
    InvalidStateError,
)
from lotledger.services.lot_rules import LotBuckets


def _fresh(n=10):
    return LotBuckets(initial=n, available=n)


def test_consume_sale_moves_units_to_sold():
    b = lot_rules.apply_consume(_fresh(), 4, "sale")
    assert (b.available, b.sold, b.lost, b.state) == (6, 4, 0, "active")


def test_consume_loss_moves_units_to_lost():
    b = lot_rules.apply_consume(_fresh(), 3, "loss")
    assert (b.available, b.sold, b.lost) == (7, 0, 3)


def test_consume_to_zero_depletes():
    b = lot_rules.apply_consume(_fresh(5), 5)
    assert b.available == 0
    assert b.state == LotState.DEPLETED.value


def test_consume_more_than_available_raises_with_numbers():
    with pytest.raises(InsufficientStockError) as ei:
        lot_rules.apply_consume(_fresh(3), 4)
    assert ei.value.available == 3
    assert ei.value.requested == 4
    assert ei.value.context == {"available": 3, "requested": 4}


@pytest.mark.parametrize("qty", [0, -1, 1.5])
def test_consume_rejects_non_positive_quantity(qty):
    with pytest.raises(InvalidInputError):
        lot_rules.apply_consume(_fresh(), qty)


@pytest.mark.parametrize("state", ["held", "expired", "inactive", "depleted", "fully_reserved"])
def test_consume_requires_active_state(state):
    b = LotBuckets(initial=10, available=10, state=state)
    with pytest.raises(InvalidStateError):
        lot_rules.apply_consume(b, 1)


def test_consume_unknown_reason_is_invalid_input():
    with pytest.raises(InvalidInputError):
        lot_rules.apply_consume(_fresh(), 1, "gift")


def test_return_restock_reactivates_depleted_lot():
    b = lot_rules.apply_consume(_fresh(5), 5)
    b = lot_rules.apply_restock(b, 2, "return")
    assert (b.available, b.sold, b.returned, b.state) == (2, 5, 2, "active")


def test_return_is_bounded_by_sold_minus_returned():
    b = lot_rules.apply_consume(_fresh(), 3)
    b = lot_rules.apply_restock(b, 2, "return")
    with pytest.raises(InvalidInputError):
        lot_rules.apply_restock(b, 2, "return")


def test_adjustment_restock_reverses_lost_units():
    b = lot_rules.apply_consume(_fresh(), 4, "loss")
    b = lot_rules.apply_restock(b, 4, "adjustment")
    assert (b.available, b.lost) == (10, 0)


def test_adjustment_cannot_exceed_lost():
    with pytest.raises(InvalidInputError):
        lot_rules.apply_restock(_fresh(), 1, "adjustment")


def test_restock_keeps_held_state():
    b = LotBuckets(initial=10, available=5, sold=5, state="held")
    assert lot_rules.apply_restock(b, 1, "return").state == "held"


def test_reserve_last_units_marks_fully_reserved_and_release_reactivates():
    b = lot_rules.apply_reserve(_fresh(4), 4)
    assert (b.available, b.reserved, b.state) == (0, 4, "fully_reserved")
    b = lot_rules.apply_release(b, 1)
    assert (b.available, b.reserved, b.state) == (1, 3, "active")


def test_release_more_than_reserved_is_rejected():
    with pytest.raises(InvalidInputError):
        lot_rules.apply_release(_fresh(), 1)


def test_state_depleted_cannot_be_set_explicitly():
    with pytest.raises(InvalidInputError):
        lot_rules.apply_state(_fresh(), "depleted")


def test_state_activation_requires_available_units():
    b = LotBuckets(initial=5, available=0, sold=5, state="held")
    with pytest.raises(InvalidStateError):
        lot_rules.apply_state(b, "active")


def test_unknown_state_is_invalid_input():
    with pytest.raises(InvalidInputError):
        lot_rules.apply_state(_fresh(), "archived")


def test_check_invariants_reports_every_violation():
    b = LotBuckets(initial=5, available=7, sold=1, returned=2)
    problems = lot_rules.violations(b)
    assert "returned > sold" in problems
    assert "available + reserved + sold + lost - returned > initial" in problems
    with pytest.raises(InvalidStateError):
        lot_rules.check_invariants(b)


def test_conservation_over_mixed_sequence():
    b = _fresh(20)
    b = lot_rules.apply_consume(b, 6, "sale")
    b = lot_rules.apply_consume(b, 2, "loss")
    b = lot_rules.apply_reserve(b, 3)
    b = lot_rules.apply_restock(b, 4, "return")
    b = lot_rules.apply_release(b, 1)
    b = lot_rules.apply_restock(b, 2, "adjustment")
    assert b.available + b.reserved + b.sold + b.lost - b.returned == b.initial
    assert lot_rules.violations(b) == []
