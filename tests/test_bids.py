from datetime import timedelta

from sqlmodel import select

from conftest import chat
from hammr.core import BidCandidate, BidSource, BidStatus, utcnow
from hammr.bids import extract_candidates
from hammr.db import Bid


def cand(amount, key, seconds=1, author="viewer"):
    return BidCandidate(
        amount=amount,
        timestamp=utcnow() + timedelta(seconds=seconds),
        author_name=author,
        dedup_key=key,
    )


async def all_bids(sessions, auction_id, item_id):
    async with sessions() as s:
        rows = await s.exec(
            select(Bid).where(Bid.auction_id == auction_id, Bid.item_id == item_id).order_by(Bid.id)
        )
        return list(rows.all())


async def test_first_bid_wins_and_low_bid_is_rejected(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)

    result = await reconciler.process_incoming_bids(
        auction.id, item.id, [cand(100, "m1", 1), cand(95, "m2", 2)]
    )

    assert result.processed == 2
    assert result.created == 1
    assert result.winning_bid.amount == 100
    assert result.errors == ["viewer (95): Bid too low. Minimum bid: 110"]


async def test_higher_bid_rounds_and_outbids(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    await reconciler.process_incoming_bids(auction.id, item.id, [cand(100, "m1", 1)])

    result = await reconciler.process_incoming_bids(auction.id, item.id, [cand(137, "m3", 3)])

    assert result.created == 1
    assert result.winning_bid.amount == 130
    m1, m3 = await all_bids(sessions, auction.id, item.id)
    assert (m1.status, m1.is_winning) == (BidStatus.OUTBID, False)
    assert (m3.status, m3.is_winning) == (BidStatus.ACCEPTED, True)
    assert m3.details["original_amount"] == 137


async def test_replayed_batch_creates_nothing(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    batch = [cand(100, "m1", 1), cand(120, "m2", 2)]
    first = await reconciler.process_incoming_bids(auction.id, item.id, batch)
    second = await reconciler.process_incoming_bids(auction.id, item.id, batch)

    assert first.created == 2
    assert second.created == 0
    assert second.processed == 0
    assert len(await all_bids(sessions, auction.id, item.id)) == 2


async def test_messages_before_selling_start_are_ignored(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    result = await reconciler.process_incoming_bids(
        auction.id, item.id, [cand(500, "old", seconds=-60)]
    )
    assert result.processed == 0
    assert result.created == 0
    assert await all_bids(sessions, auction.id, item.id) == []


async def test_same_instant_orders_higher_first(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    ts = utcnow() + timedelta(seconds=1)
    low = BidCandidate(100, ts, "a", "k-low")
    high = BidCandidate(150, ts, "b", "k-high")

    result = await reconciler.process_incoming_bids(auction.id, item.id, [low, high])

    # 150 lands first, 100 is then below the minimum
    assert result.created == 1
    assert result.winning_bid.bidder_name == "b"


async def test_batch_rejected_while_another_is_in_flight(reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    reconciler._in_flight.add((auction.id, item.id))

    result = await reconciler.process_incoming_bids(auction.id, item.id, [cand(100, "m1")])

    assert result.created == 0
    assert result.errors == ["Processing already in progress for this item"]
    assert reconciler.is_busy(auction.id, item.id)


async def test_batch_against_idle_item(reconciler, auction, item):
    result = await reconciler.process_incoming_bids(auction.id, item.id, [cand(100, "m1")])
    assert result.errors == ["Item is not actively being sold"]
    assert not reconciler.is_busy(auction.id, item.id)


async def test_exactly_one_winner_after_many_batches(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    for n, amount in enumerate([100, 110, 105, 200, 190, 260]):
        await reconciler.process_incoming_bids(auction.id, item.id, [cand(amount, f"k{n}", n + 1)])

    bids = await all_bids(sessions, auction.id, item.id)
    winners = [b for b in bids if b.is_winning]
    assert len(winners) == 1
    assert winners[0].amount == max(b.amount for b in bids) == 260
    assert all(b.status == BidStatus.ACCEPTED for b in winners)


async def test_manual_bid(sessions, reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)

    ok = await reconciler.create_manual_bid(auction.id, item.id, "Floor buyer", 100)
    assert ok.success
    assert ok.bid.source == BidSource.MANUAL
    assert ok.bid.dedup_key is None

    low = await reconciler.create_manual_bid(auction.id, item.id, "Late buyer", 100)
    assert not low.success
    assert low.error == "Bid too low. Minimum bid: 110"

    missing = await reconciler.create_manual_bid(auction.id, item.id, "", 300)
    assert missing.error == "Missing required bid information"

    winner = await reconciler.current_winning_bid(auction.id, item.id)
    assert winner.bidder_name == "Floor buyer"


async def test_manual_bid_on_idle_item(reconciler, auction, item):
    result = await reconciler.create_manual_bid(auction.id, item.id, "Floor buyer", 100)
    assert not result.success
    assert result.error == "Item is not currently being sold"


async def test_reads_and_stats(reconciler, bare_items, auction, item):
    await bare_items.start_selling(item.id, auction.id)
    await reconciler.process_incoming_bids(
        auction.id,
        item.id,
        [cand(100, "a1", 1, "ann"), cand(120, "b1", 2, "bob"), cand(150, "a2", 3, "ann")],
    )

    top = await reconciler.bids_for_item(auction.id, item.id, limit=2)
    assert [b.amount for b in top] == [150, 120]

    stats = await reconciler.item_bid_stats(auction.id, item.id)
    assert stats.total_bids == 3
    assert stats.unique_bidders == 2
    assert stats.current_price == 150
    assert stats.starting_price == 100


def test_extract_candidates_keeps_plain_positive_integers():
    messages = [
        chat("a", "150"),
        chat("b", " 200 "),
        chat("c", "moon 653"),
        chat("d", "0"),
        chat("e", "12.5"),
        chat("f", "-40"),
        chat("g", None),
    ]
    found = extract_candidates(messages)
    assert [(c.dedup_key, c.amount) for c in found] == [("a", 150), ("b", 200)]
    assert found[0].author_name == "viewer"
