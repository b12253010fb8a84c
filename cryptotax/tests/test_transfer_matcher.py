"""
Self-transfer detection between a user's own sources.
"""

from datetime import timedelta
from decimal import Decimal

from cryptotax.models.source import Source
from cryptotax.models.transaction import Transaction
from cryptotax.services.transfer_matcher import TransferLeg, amounts_match, find_transfer_pairs, match_transfers
from cryptotax.tests.factories import add_tx, utc

T0 = utc(2024, 4, 1, 12)


def leg(id, source_id, amount, minutes=0, fee=None, tx_hash=None, asset="BTC"):
    return TransferLeg(
        id=id,
        source_id=source_id,
        asset=asset,
        date=T0 + timedelta(minutes=minutes),
        amount=Decimal(amount),
        fee=Decimal(fee) if fee is not None else None,
        tx_hash=tx_hash,
    )


def test_amounts_match_within_relative_tolerance():
    assert amounts_match(Decimal("1"), Decimal("0.99995"))
    assert not amounts_match(Decimal("1"), Decimal("0.999"))
    assert amounts_match(Decimal("0"), Decimal("0"))


def test_pairs_by_tx_hash_regardless_of_time():
    outs = [leg(1, 10, "1", tx_hash="0xABC")]
    ins = [leg(2, 20, "0.5", minutes=600, tx_hash="0xabc")]

    assert find_transfer_pairs(outs, ins) == [(1, 2)]


def test_pairs_by_time_and_net_amount():
    outs = [leg(1, 10, "0.5005", fee="0.0005")]
    ins = [leg(2, 20, "0.5", minutes=20)]

    assert find_transfer_pairs(outs, ins) == [(1, 2)]


def test_no_pair_outside_window_or_same_source_or_other_asset():
    outs = [leg(1, 10, "1")]

    assert find_transfer_pairs(outs, [leg(2, 20, "1", minutes=61)]) == []
    assert find_transfer_pairs(outs, [leg(3, 10, "1", minutes=5)]) == []
    assert find_transfer_pairs(outs, [leg(4, 20, "1", minutes=5, asset="ETH")]) == []


def test_each_in_leg_used_once():
    outs = [leg(1, 10, "1"), leg(2, 10, "1", minutes=30)]
    ins = [leg(3, 20, "1", minutes=25)]

    assert find_transfer_pairs(outs, ins) == [(1, 3)]


def test_closest_in_time_is_preferred():
    outs = [leg(1, 10, "1")]
    ins = [leg(2, 20, "1", minutes=40), leg(3, 20, "1", minutes=10)]

    assert find_transfer_pairs(outs, ins) == [(1, 3)]


def test_match_transfers_recategorizes_rows(db_session, user):
    exchange = Source(user_id=user.id, name="Kraken", kind="exchange", exchange="kraken")
    wallet = Source(user_id=user.id, name="Cold wallet", kind="wallet")
    db_session.add_all([exchange, wallet])
    db_session.commit()

    add_tx(db_session, user.id, T0 - timedelta(days=30), "buy", "1", "30000", source_id=exchange.id)
    out = add_tx(db_session, user.id, T0, "transfer-out", "0.5005", fee=Decimal("0.0005"), source_id=exchange.id)
    inc = add_tx(db_session, user.id, T0 + timedelta(minutes=15), "transfer-in", "0.5", source_id=wallet.id)

    pairs = match_transfers(db_session, user.id)

    assert pairs == [(out.id, inc.id)]
    db_session.expire_all()
    for tx_id in (out.id, inc.id):
        row = db_session.get(Transaction, tx_id)
        assert row.category == "self-transfer"
        assert row.is_categorized is True

    # already paired rows are not considered again
    assert match_transfers(db_session, user.id) == []
