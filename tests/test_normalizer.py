"""Tests for the position normalizer."""

import pytest
from datetime import date
from decimal import Decimal

from portfolio_recon.core.brokers.models import BrokerId
from portfolio_recon.core.errors import InvalidSourceRecordError, UnresolvedInstrumentError
from portfolio_recon.core.positions import (
    PositionNormalizer,
    RawSourceRecord,
    TransactionRecord,
    TransactionType,
    apply_transactions,
    normalize,
    resolve_instrument_key,
)

from helpers import D, NOW, holding_record, make_connection


def buy(qty, price, fees="0", day=None):
    return TransactionRecord(
        type=TransactionType.BUY, quantity=D(qty), price=D(price), fees=D(fees), trade_date=day
    )


def sell(qty, price, day=None):
    return TransactionRecord(type=TransactionType.SELL, quantity=D(qty), price=D(price), trade_date=day)


class TestApplyTransactions:
    """Tests for weighted-average replay of transaction histories."""

    def test_weighted_average_then_sell(self):
        """Two buys blend the cost; a sell keeps it."""
        quantity, average = apply_transactions([
            buy(10, 100, day=date(2024, 1, 2)),
            buy(10, 120, day=date(2024, 2, 1)),
            sell(5, 150, day=date(2024, 3, 1)),
        ])
        assert quantity == Decimal("15")
        assert average == Decimal("110")

    def test_fees_are_capitalized_into_cost(self):
        """Buy fees raise the average cost."""
        quantity, average = apply_transactions([buy(10, 100, fees=10)])
        assert quantity == Decimal("10")
        assert average == Decimal("101")

    def test_trades_replayed_in_date_order(self):
        """A sell listed before its buy is replayed after it."""
        quantity, average = apply_transactions([
            sell(5, 150, day=date(2024, 3, 1)),
            buy(10, 100, day=date(2024, 1, 2)),
        ])
        assert quantity == Decimal("5")
        assert average == Decimal("100")

    def test_non_trade_types_do_not_move_position(self):
        """Dividends and fees are ignored by the replay."""
        dividend = TransactionRecord(type=TransactionType.DIVIDEND, quantity=D(0), price=D(12))
        quantity, average = apply_transactions([buy(4, 50), dividend])
        assert quantity == Decimal("4")
        assert average == Decimal("50")

    def test_oversell_raises(self):
        """Selling more than held is an invalid record."""
        with pytest.raises(InvalidSourceRecordError):
            apply_transactions([buy(5, 100), sell(6, 100)], "AAPL")

    def test_sell_to_zero_closes(self):
        """Selling everything leaves a closed position."""
        quantity, _ = apply_transactions([buy(5, 100), sell(5, 110)])
        assert quantity == Decimal("0")


class TestResolveInstrumentKey:
    """Tests for instrument key resolution."""

    def test_market_suffix_maps_to_mic(self):
        """EQNR.OL resolves to the Oslo MIC."""
        record = RawSourceRecord(symbol="EQNR.OL")
        assert resolve_instrument_key(record) == "EQNR@XOSL"

    def test_isin_preferred(self):
        """A valid ISIN wins over symbol and exchange."""
        record = RawSourceRecord(symbol="EQNR", exchange="XOSL", isin="NO0010096985")
        assert resolve_instrument_key(record) == "NO0010096985"

    def test_malformed_isin_ignored(self):
        """A malformed ISIN falls back to symbol@exchange."""
        record = RawSourceRecord(symbol="AAPL", isin="not-an-isin")
        assert resolve_instrument_key(record, "XNAS") == "AAPL@XNAS"

    def test_exchange_alias_normalized(self):
        """Free-form exchange names map to MIC codes."""
        record = RawSourceRecord(symbol="aapl", exchange="NASDAQ")
        assert resolve_instrument_key(record) == "AAPL@XNAS"

    def test_share_class_not_split(self):
        """BRK.B keeps its share class suffix."""
        record = RawSourceRecord(symbol="BRK.B")
        assert resolve_instrument_key(record, "XNYS") == "BRK.B@XNYS"

    def test_no_exchange_raises(self):
        """A bare symbol with no exchange anywhere cannot be resolved."""
        with pytest.raises(UnresolvedInstrumentError):
            resolve_instrument_key(RawSourceRecord(symbol="AAPL"))


class TestPositionNormalizer:
    """Tests for PositionNormalizer."""

    def test_holding_record_becomes_position(self):
        """Pre-computed holdings keep quantity and cost."""
        connection = make_connection("m1")
        result = normalize([holding_record("AAPL", 10, 150)], connection)

        assert result.errors == []
        assert len(result.positions) == 1
        position = result.positions[0]
        assert position.instrument_key == "AAPL@XNAS"
        assert position.source_account_id == "m1"
        assert position.position_id == "m1/AAPL@XNAS"
        assert position.quantity == Decimal("10")
        assert position.average_cost == Decimal("150")
        assert position.currency == "USD"
        assert position.broker_id == "manual"

    def test_transaction_history_record(self):
        """Transaction records are replayed into a position."""
        connection = make_connection("csv1", broker_id=BrokerId.CSV)
        record = RawSourceRecord(
            symbol="AAPL",
            transactions=[buy(10, 100), buy(10, 120), sell(5, 130)],
        )
        position = normalize([record], connection).positions[0]
        assert position.quantity == Decimal("15")
        assert position.average_cost == Decimal("110")

    def test_total_cost_converted_to_average(self):
        """Brokers reporting total cost get a per-unit average."""
        record = RawSourceRecord(symbol="MSFT", quantity=D(4), total_cost=D(1000))
        position = normalize([record], make_connection("s1")).positions[0]
        assert position.average_cost == Decimal("250")

    def test_missing_cost_basis_reported(self):
        """A record without any cost basis is invalid."""
        record = RawSourceRecord(symbol="MSFT", quantity=D(4))
        result = normalize([record], make_connection("s1"))
        assert result.positions == []
        assert isinstance(result.errors[0], InvalidSourceRecordError)

    def test_bad_records_do_not_block_good_ones(self):
        """Unresolvable records are collected while the rest normalize."""
        connection = make_connection("m1", default_exchange=None)
        result = normalize(
            [
                holding_record("EQNR.OL", 100, 250),
                holding_record("AAPL", 10, 150),  # no exchange anywhere
            ],
            connection,
        )
        assert [p.instrument_key for p in result.positions] == ["EQNR@XOSL"]
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], UnresolvedInstrumentError)
        assert result.errors[0].subject == "AAPL"

    def test_same_instrument_same_account_merged(self):
        """Two lots in one account become one position."""
        result = normalize(
            [holding_record("AAPL", 10, 100), holding_record("AAPL", 10, 200)],
            make_connection("m1"),
        )
        assert len(result.positions) == 1
        assert result.positions[0].quantity == Decimal("20")
        assert result.positions[0].average_cost == Decimal("150")

    def test_sub_accounts_stay_separate(self):
        """Records for different sub-accounts give separate positions."""
        result = normalize(
            [
                holding_record("AAPL", 10, 100, account_id="ira"),
                holding_record("AAPL", 5, 100, account_id="taxable"),
            ],
            make_connection("p1", broker_id=BrokerId.PLAID),
        )
        ids = sorted(p.source_account_id for p in result.positions)
        assert ids == ["p1:ira", "p1:taxable"]

    def test_connection_account_number_used_as_fallback(self):
        """Records without their own number take the connection's."""
        normalizer = PositionNormalizer()
        result = normalizer.normalize(
            [holding_record("AAPL", 1, 100), holding_record("MSFT", 1, 100, account_number="999")],
            make_connection("s1"),
            account_number="12345678",
            now=NOW,
        )
        numbers = {p.symbol: p.account_number for p in result.positions}
        assert numbers == {"AAPL": "12345678", "MSFT": "999"}
        assert all(p.last_updated == NOW for p in result.positions)

    def test_record_currency_overrides_connection(self):
        """A record's own currency wins over the connection default."""
        record = holding_record("EQNR.OL", 10, 250, currency="nok")
        position = normalize([record], make_connection("n1")).positions[0]
        assert position.currency == "NOK"

    def test_closed_position_is_kept(self):
        """A fully sold history normalizes to a closed position."""
        record = RawSourceRecord(symbol="AAPL", transactions=[buy(5, 100), sell(5, 120)])
        position = normalize([record], make_connection("m1")).positions[0]
        assert position.is_closed

    def test_negative_quantity_rejected(self):
        """Short positions are reported as invalid."""
        result = normalize([holding_record("AAPL", -3, 100)], make_connection("m1"))
        assert result.positions == []
        assert isinstance(result.errors[0], InvalidSourceRecordError)
