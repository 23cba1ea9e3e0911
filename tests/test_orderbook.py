"""
Tests for the OrderBookStore.

Tests cover:
- Snapshot replacement and diff application
- Diffs that arrive before any snapshot
- Polling fallback, including while the stream is healthy
- REST failures and the degraded flag
- Watch lifecycle
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from marketsync.api.clob import ClobApiError
from marketsync.api.messages import LevelChange, PriceChangeDiff, ProtocolError, Side
from marketsync.realtime.orderbook import BookSource, OrderBookStore
from tests.helpers import make_snapshot, prices


def make_diff(asset_id="token-1", changes=(), hash_="h2"):
    """Build a diff from (side, price, size) tuples."""
    return PriceChangeDiff(
        asset_id=asset_id,
        changes=[LevelChange(price, size, side) for side, price, size in changes],
        sequence_hash=hash_,
        observed_at=1700000000500,
    )


S1 = make_snapshot(
    bids=[("0.50", "100"), ("0.49", "200")],
    asks=[("0.52", "50"), ("0.53", "75")],
)


@pytest.fixture
def client():
    client = MagicMock()
    client.get_order_book.side_effect = lambda token_id: make_snapshot(
        token_id, bids=[("0.45", "10")], asks=[("0.55", "10")], hash_="rest",
    )
    return client


@pytest.fixture
def store(registry, client, scheduler):
    return OrderBookStore(registry, client, scheduler, poll_interval=10)


# =============================================================================
# Snapshots and Diffs
# =============================================================================


class TestSnapshotAndDiff:
    """Tests for the write rules."""

    def test_snapshot_stored(self, store):
        book = store.apply_snapshot(S1)

        assert prices(book.bids) == [Decimal("0.50"), Decimal("0.49")]
        assert prices(book.asks) == [Decimal("0.52"), Decimal("0.53")]
        assert book.best_bid == Decimal("0.50")
        assert book.best_ask == Decimal("0.52")
        assert book.spread == Decimal("0.02")
        assert book.mid == Decimal("0.51")

    def test_zero_size_diff_removes_level(self, store):
        store.apply_snapshot(S1)

        book = store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "0")]))

        assert prices(book.bids) == [Decimal("0.49")]
        assert prices(book.asks) == [Decimal("0.52"), Decimal("0.53")]
        assert book.sequence_hash == "h2"

    def test_diff_updates_and_adds_levels(self, store):
        store.apply_snapshot(S1)

        book = store.apply_diff(make_diff(changes=[
            (Side.BUY, "0.49", "250"),
            (Side.BUY, "0.51", "5"),
            (Side.SELL, "0.54", "20"),
        ]))

        assert [(level.price, level.size) for level in book.bids] == [
            ("0.51", "5"), ("0.50", "100"), ("0.49", "250"),
        ]
        assert prices(book.asks) == [Decimal("0.52"), Decimal("0.53"), Decimal("0.54")]

    def test_price_keys_compare_numerically(self, store):
        store.apply_snapshot(make_snapshot(bids=[("0.5", "100")]))

        book = store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "0")]))

        assert book.bids == []

    def test_removing_absent_level_is_noop(self, store):
        store.apply_snapshot(S1)

        book = store.apply_diff(make_diff(changes=[(Side.SELL, "0.99", "0")]))

        assert prices(book.asks) == [Decimal("0.52"), Decimal("0.53")]

    def test_later_snapshot_fully_replaces(self, store):
        store.apply_snapshot(S1)
        store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "0")]))

        s2 = make_snapshot(bids=[("0.40", "10")], asks=[], hash_="h3")
        book = store.apply_snapshot(s2)

        assert prices(book.bids) == [Decimal("0.40")]
        assert book.asks == []
        assert book.sequence_hash == "h3"

    def test_same_snapshot_twice_is_idempotent(self, store):
        first = store.apply_snapshot(S1)
        second = store.apply_snapshot(S1)

        assert first.bids == second.bids
        assert first.asks == second.asks

    def test_zero_size_level_in_snapshot_dropped(self, store):
        book = store.apply_snapshot(make_snapshot(bids=[("0.5", "0"), ("0.4", "1")]))
        assert prices(book.bids) == [Decimal("0.4")]

    def test_non_finite_snapshot_keeps_prior_book(self, store):
        store.apply_snapshot(S1)

        with pytest.raises(ProtocolError):
            store.apply_snapshot(make_snapshot(bids=[("NaN", "10"), ("0.4", "10")]))

        book = store.get_snapshot("token-1")
        assert prices(book.bids) == [Decimal("0.50"), Decimal("0.49")]

    def test_bad_diff_leaves_book_untouched(self, store):
        store.apply_snapshot(S1)

        with pytest.raises(ProtocolError):
            store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "0"), (Side.SELL, "NaN", "1")]))

        book = store.peek("token-1")
        assert prices(book.bids) == [Decimal("0.50"), Decimal("0.49")]
        assert book.sequence_hash == "h1"

    def test_diff_marks_stream_source(self, store):
        store.apply_snapshot(S1, BookSource.POLL)

        book = store.apply_diff(make_diff(changes=[(Side.BUY, "0.49", "1")]))

        assert book.source == BookSource.STREAM
        assert store.status("token-1").last_source == BookSource.STREAM


class TestDiffWithoutSnapshot:
    """A diff with no base book is discarded and triggers a fetch."""

    def test_diff_discarded(self, store, client):
        result = store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "10")]))

        assert result is None
        assert store.peek("token-1") is None
        client.get_order_book.assert_not_called()

    def test_fetch_scheduled(self, store, client, scheduler):
        store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "10")]))

        scheduler.advance(0)

        client.get_order_book.assert_called_once_with("token-1")
        book = store.peek("token-1")
        assert book.source == BookSource.POLL
        assert book.sequence_hash == "rest"

    def test_fetch_deduplicated(self, store, client, scheduler):
        for _ in range(3):
            store.apply_diff(make_diff(changes=[(Side.BUY, "0.50", "10")]))

        scheduler.advance(0)

        assert client.get_order_book.call_count == 1


# =============================================================================
# Stream Path
# =============================================================================


class TestStreamPath:
    """Tests for books arriving over the stream."""

    def test_watch_subscribes_and_fetches(self, store, registry, client, scheduler):
        store.watch("token-1")

        assert registry.refcount("token-1") == 1
        scheduler.advance(0)
        client.get_order_book.assert_called_once_with("token-1")

    def test_stream_snapshot_and_diff(self, store, connection, transport, scheduler):
        listener = MagicMock()
        store.watch("token-1", listener)
        transport.simulate_open()
        scheduler.advance(0)

        transport.simulate_message({
            "event_type": "book",
            "asset_id": "token-1",
            "bids": [{"price": "0.50", "size": "100"}],
            "asks": [{"price": "0.52", "size": "50"}],
        })
        transport.simulate_message({
            "event_type": "price_change",
            "price_changes": [{"asset_id": "token-1", "price": "0.50", "size": "0", "side": "BUY"}],
        })

        book = store.peek("token-1")
        assert book.bids == []
        assert prices(book.asks) == [Decimal("0.52")]
        assert book.source == BookSource.STREAM
        assert listener.call_count == 3  # REST fetch, stream snapshot, diff

    def test_unwatch_last_drops_subscription(self, store, registry, transport):
        first = store.watch("token-1")
        second = store.watch("token-1")
        transport.simulate_open()

        first.cancel()
        assert store.watched_assets() == ["token-1"]

        second.cancel()
        assert store.watched_assets() == []
        assert registry.refcount("token-1") == 0
        assert len(transport.frames_of("unsubscribe", "token-1")) == 1

    def test_listener_error_isolated(self, store):
        failing = MagicMock(side_effect=RuntimeError("bad listener"))
        healthy = MagicMock()
        store.watch("token-1", failing)
        store.watch("token-1", healthy)

        store.apply_snapshot(S1)

        healthy.assert_called_once()

    def test_empty_asset_rejected(self, store):
        with pytest.raises(ValueError):
            store.watch("")

    def test_unwatch_last_discards_book(self, store, client, scheduler):
        sub = store.watch("token-1")
        scheduler.advance(0)
        client.get_order_book.side_effect = ClobApiError("boom")
        store.refresh("token-1")

        sub.cancel()

        assert store.peek("token-1") is None
        assert not store.status("token-1").has_error

    def test_rewatch_fetches_fresh_book(self, store, client, scheduler):
        store.watch("token-1").cancel()
        scheduler.advance(0)
        first_fetches = client.get_order_book.call_count

        store.watch("token-1")
        scheduler.advance(0)

        assert client.get_order_book.call_count == first_fetches + 1
        assert store.peek("token-1").sequence_hash == "rest"


# =============================================================================
# Polling Fallback
# =============================================================================


class TestPolling:
    """Tests for the REST polling path."""

    def test_polls_while_stream_connected(self, store, connection, transport, client, scheduler):
        store.watch("token-1")
        transport.simulate_open()
        assert connection.is_connected()
        store.start()

        scheduler.advance(0)
        assert client.get_order_book.call_count == 1

        scheduler.advance(10)
        assert client.get_order_book.call_count == 2

        scheduler.advance(10)
        assert client.get_order_book.call_count == 3

    def test_poll_overwrites_stream_book(self, store):
        store.watch("token-1")
        store.apply_snapshot(S1)

        store.poll_once()

        book = store.peek("token-1")
        assert book.source == BookSource.POLL
        assert prices(book.bids) == [Decimal("0.45")]

    def test_stop_halts_polling(self, store, client, scheduler):
        store.watch("token-1")
        store.start()
        scheduler.advance(0)

        store.stop()
        scheduler.advance(60)

        assert client.get_order_book.call_count == 1

    def test_unwatched_assets_not_polled(self, store, client):
        store.watch("token-1").cancel()

        assert store.poll_once() == 0
        client.get_order_book.assert_not_called()

    def test_cold_start_get_snapshot(self, store, client):
        book = store.get_snapshot("token-2")

        client.get_order_book.assert_called_once_with("token-2")
        assert book.asset_id == "token-2"

        store.get_snapshot("token-2")
        assert client.get_order_book.call_count == 1


# =============================================================================
# Failures
# =============================================================================


class TestRestFailures:
    """REST failures keep the prior book and raise the error flag."""

    def test_failed_refresh_keeps_book(self, store, client):
        store.apply_snapshot(S1)
        client.get_order_book.side_effect = ClobApiError("GET /book returned 503", status_code=503)

        assert store.refresh("token-1") is False

        book = store.peek("token-1")
        assert prices(book.bids) == [Decimal("0.50"), Decimal("0.49")]
        status = store.status("token-1")
        assert status.has_error
        assert status.last_error == "GET /book returned 503"
        assert status.consecutive_failures == 1

    def test_successful_poll_clears_error(self, store, client):
        client.get_order_book.side_effect = ClobApiError("boom")
        store.refresh("token-1")

        client.get_order_book.side_effect = lambda token_id: make_snapshot(token_id)
        store.refresh("token-1")

        status = store.status("token-1")
        assert not status.has_error
        assert status.consecutive_failures == 0

    def test_failed_cold_start_returns_none(self, store, client):
        client.get_order_book.side_effect = ClobApiError("boom")
        assert store.get_snapshot("token-1") is None

    def test_degraded_when_both_sources_fail(self, store, client, transport, scheduler):
        client.get_order_book.side_effect = ClobApiError("boom")
        store.watch("token-1")
        transport.simulate_open()
        scheduler.advance(0)

        assert not store.is_degraded("token-1")

        transport.simulate_close()
        assert store.is_degraded("token-1")

    def test_not_degraded_when_rest_recovers(self, store, client):
        client.get_order_book.side_effect = ClobApiError("boom")
        store.refresh("token-1")
        assert store.is_degraded("token-1")

        client.get_order_book.side_effect = lambda token_id: make_snapshot(token_id)
        store.refresh("token-1")
        assert not store.is_degraded("token-1")

    def test_poll_failure_does_not_stop_polling(self, store, client, scheduler):
        client.get_order_book.side_effect = ClobApiError("boom")
        store.watch("token-1")
        store.start()

        scheduler.advance(20)

        assert client.get_order_book.call_count == 3
