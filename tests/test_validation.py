from hammr.core import ItemStatus
from hammr.validation import LotPricing, validate_bid


def selling(highest=None, start=100, step=10, discount=0):
    return LotPricing(ItemStatus.BEING_SOLD, start, discount, step, highest)


def test_first_bid_at_calculated_price():
    v = validate_bid(selling(), 100)
    assert v.ok and v.amount == 100
    assert v.running_price == 100 and v.min_acceptable == 100


def test_amount_rounds_down_onto_step_grid():
    v = validate_bid(selling(highest=110), 137)
    assert v.ok
    assert v.amount == 130


def test_rounding_below_minimum_is_rejected():
    # min is 120, 125 rounds to 120 (ok), 119 is too low before rounding
    assert validate_bid(selling(highest=110), 125).amount == 120
    v = validate_bid(selling(highest=110), 119)
    assert not v.ok
    assert v.error == "Bid too low. Minimum bid: 120"


def test_too_low_reports_minimum():
    v = validate_bid(selling(highest=100), 105)
    assert not v.ok
    assert v.error == "Bid too low. Minimum bid: 110"
    assert v.min_acceptable == 110


def test_ceiling_is_hundred_times_running_price():
    assert validate_bid(selling(), 10_000).ok
    v = validate_bid(selling(), 10_001)
    assert not v.ok
    assert v.error == "Bid too high. Maximum allowed: 10000 (running price x 100)"


def test_discount_lowers_calculated_price_and_grid():
    v = validate_bid(selling(discount=5), 99)
    assert v.ok and v.amount == 95


def test_zero_calculated_price_rejects_everything():
    v = validate_bid(selling(start=0), 1)
    assert not v.ok
    assert v.error.startswith("Bid too high")


def test_non_positive_step_disables_rounding():
    v = validate_bid(selling(highest=100, step=0), 101.5)
    assert v.ok and v.amount == 101.5


def test_item_must_be_selling():
    pricing = LotPricing(ItemStatus.READY, 100, 0, 10)
    v = validate_bid(pricing, 150)
    assert not v.ok
    assert v.error == "Item is not currently being sold"


def test_positive_amount_and_dedup_checked_first():
    assert validate_bid(selling(), 0).error == "Bid amount must be positive"
    assert validate_bid(selling(), -5).error == "Bid amount must be positive"
    assert validate_bid(selling(), 500, dedup_used=True).error == "Bid already processed"
