"""
Tests for the Settlement Coordinator

The no-overpayment clamp, settlement lifecycle and refunds.
"""

from decimal import Decimal

import pytest

from meter_rail.core.errors import (
    InvalidConfiguration,
    InvalidStateTransition,
    SessionNotFound,
    SettlementNotFound,
    UnknownUnit,
)
from meter_rail.settlement.coordinator import (
    SettlementCoordinator,
    SettlementRecord,
    SettlementStatus,
)


@pytest.fixture
def session_100(store, clock):
    """A session that has accumulated exactly 100 USD."""
    session = store.create_session(3600, "USD")
    clock.advance(seconds=100)
    store.advance(session.session_id)
    return session


class TestValidate:
    """Payment validation never rejects on amount."""

    def test_amount_within_cost(self, coordinator, session_100):
        result = coordinator.validate(session_100.session_id, 80)

        assert result.valid
        assert result.warning is None
        assert result.to_dict() == {"valid": True}

    def test_amount_above_cost_warns(self, coordinator, session_100):
        result = coordinator.validate(session_100.session_id, 150)

        assert result.valid
        assert result.warning
        assert result.actual_cost == Decimal("100")
        assert result.excess_amount == Decimal("50")
        assert result.clamped_hint == Decimal("100")

    def test_unknown_session(self, coordinator):
        with pytest.raises(SessionNotFound):
            coordinator.validate("missing", 10)

    def test_negative_amount(self, coordinator, session_100):
        with pytest.raises(InvalidConfiguration):
            coordinator.validate(session_100.session_id, -1)


class TestInitiate:
    """Creating settlements."""

    def test_overpayment_is_clamped_not_rejected(self, coordinator, session_100):
        """Requesting 150 against a cost of 100 charges exactly 100."""
        record = coordinator.initiate(session_100.session_id, 150, "0xPAYER")

        assert record.requested_amount == Decimal("150")
        assert record.charged_amount == Decimal("100")
        assert record.clamped
        assert record.warning is not None
        assert record.status == SettlementStatus.PENDING
        assert record.external_tx_ref is None

    def test_underpayment_is_charged_as_requested(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 40, "0xPAYER")

        assert record.charged_amount == Decimal("40")
        assert not record.clamped
        assert record.warning is None

    def test_charged_never_exceeds_cost(self, coordinator, store, clock):
        session = store.create_session("7.77", "USD")
        for requested in ("0", "0.001", "1", "1000000"):
            clock.advance(ns=123_456_789)
            store.advance(session.session_id)
            record = coordinator.initiate(session.session_id, requested, "0xPAYER")
            assert record.charged_amount <= session.accumulated_cost
            assert record.charged_amount <= record.cost_at_settlement

    def test_converted_with_current_snapshot(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")

        assert record.unit_symbol == "ETH"
        assert record.unit_price == Decimal("2500")
        assert record.unit_amount == Decimal("0.04")

    def test_non_base_currency_session(self, coordinator, store, clock):
        session = store.create_session(3312, "EUR")  # 0.92 EUR per second
        clock.advance(seconds=100)
        store.advance(session.session_id)

        record = coordinator.initiate(session.session_id, 92, "0xPAYER", currency="EUR")

        assert record.currency == "EUR"
        assert record.unit_amount == Decimal("0.04")

    def test_currency_mismatch_rejected(self, coordinator, session_100):
        with pytest.raises(InvalidConfiguration):
            coordinator.initiate(session_100.session_id, 10, "0xPAYER", currency="EUR")
        assert coordinator.history() == []

    def test_unknown_unit(self, store, rates, session_100):
        coordinator = SettlementCoordinator(store, rates, unit_symbol="DOGE")
        with pytest.raises(UnknownUnit):
            coordinator.initiate(session_100.session_id, 10, "0xPAYER")

    def test_unknown_session(self, coordinator):
        with pytest.raises(SessionNotFound):
            coordinator.initiate("missing", 10, "0xPAYER")

    def test_destination_required(self, coordinator, session_100):
        with pytest.raises(InvalidConfiguration):
            coordinator.initiate(session_100.session_id, 10, "")

    def test_ended_session_uses_frozen_cost(self, coordinator, store, clock, session_100):
        store.end(session_100.session_id)
        clock.advance(seconds=500)

        record = coordinator.initiate(session_100.session_id, 1000, "0xPAYER")

        assert record.charged_amount == Decimal("100")

    def test_notification_published(self, coordinator, publisher, session_100):
        received = []
        publisher.subscribe(received.append)

        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")

        assert len(received) == 1
        assert received[0].settlement_id == record.settlement_id
        assert received[0].status == "pending"


class TestLifecycle:
    """pending -> confirmed / failed."""

    def test_confirm(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")

        confirmed = coordinator.confirm(record.settlement_id, "0xabc123")

        assert confirmed.status == SettlementStatus.CONFIRMED
        assert confirmed.external_tx_ref == "0xabc123"

    def test_confirm_twice_rejected(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")
        coordinator.confirm(record.settlement_id, "0xabc123")

        with pytest.raises(InvalidStateTransition):
            coordinator.confirm(record.settlement_id, "0xdef456")
        assert coordinator.get(record.settlement_id).external_tx_ref == "0xabc123"

    def test_failed_cannot_be_confirmed(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")
        failed = coordinator.fail(record.settlement_id, "insufficient gas")

        assert failed.status == SettlementStatus.FAILED
        assert failed.failure_reason == "insufficient gas"
        with pytest.raises(InvalidStateTransition):
            coordinator.confirm(record.settlement_id, "0xabc123")

    def test_unknown_settlement(self, coordinator):
        with pytest.raises(SettlementNotFound):
            coordinator.confirm("SETTLE-MISSING", "0xabc")
        with pytest.raises(SettlementNotFound):
            coordinator.get("SETTLE-MISSING")
        with pytest.raises(SettlementNotFound):
            coordinator.refund("SETTLE-MISSING")


class TestRefund:
    """Refund = charged - cost recorded at settlement time."""

    def test_clamped_settlement_owes_nothing(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 150, "0xPAYER")
        coordinator.confirm(record.settlement_id, "0xabc")

        assert coordinator.refund(record.settlement_id) is None

    @pytest.mark.parametrize("amount", [1, 60, 100, 150, 10_000])
    def test_initiated_settlement_never_owes_refund(self, coordinator, session_100, amount):
        record = coordinator.initiate(session_100.session_id, amount, "0xPAYER")
        coordinator.confirm(record.settlement_id, "0xabc")

        assert record.charged_amount <= record.cost_at_settlement
        assert coordinator.refund(record.settlement_id) is None

    def test_refund_ignores_later_session_activity(self, coordinator, store, clock, session_100):
        record = coordinator.initiate(session_100.session_id, 60, "0xPAYER")
        clock.advance(seconds=50)
        store.end(session_100.session_id)

        assert coordinator.refund(record.settlement_id) is None

    def test_overcharged_record_yields_refund(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")
        # Recorded cost lower than the charge (e.g. a correction upstream)
        record.cost_at_settlement = Decimal("90")

        refund = coordinator.refund(record.settlement_id)

        assert refund.refund_amount == Decimal("10")
        assert refund.original_amount == Decimal("100")
        assert refund.actual_cost == Decimal("90")

    def test_failed_settlement_has_no_refund(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 100, "0xPAYER")
        record.cost_at_settlement = Decimal("90")
        coordinator.fail(record.settlement_id)

        assert coordinator.refund(record.settlement_id) is None


class TestHistoryAndSummary:
    """Bounded history and aggregate counts."""

    def test_history_most_recent_last(self, coordinator, session_100):
        ids = [coordinator.initiate(session_100.session_id, i, "0xPAYER").settlement_id for i in range(5)]

        history = coordinator.history(limit=3)

        assert [r.settlement_id for r in history] == ids[-3:]

    def test_history_default_limit(self, store, rates, session_100):
        coordinator = SettlementCoordinator(store, rates, history_limit=2)
        for i in range(4):
            coordinator.initiate(session_100.session_id, i, "0xPAYER")

        assert len(coordinator.history()) == 2
        assert coordinator.history(limit=0) == []

    def test_summary(self, coordinator, session_100):
        a = coordinator.initiate(session_100.session_id, 10, "0xPAYER")
        b = coordinator.initiate(session_100.session_id, 20, "0xPAYER")
        coordinator.initiate(session_100.session_id, 30, "0xPAYER")
        coordinator.confirm(a.settlement_id, "0x1")
        coordinator.fail(b.settlement_id)

        summary = coordinator.summary()

        assert summary["total_settlements"] == 3
        assert summary["confirmed_count"] == 1
        assert summary["pending_count"] == 1
        assert summary["failed_count"] == 1
        assert summary["total_charged"] == "40"

    def test_calculate_final_amount(self, coordinator, session_100):
        result = coordinator.calculate_final_amount(session_100.session_id, 150)

        assert result.total_used == Decimal("100")
        assert result.final_amount == Decimal("100")
        assert result.surplus == Decimal("50")

        capped = coordinator.calculate_final_amount(session_100.session_id, 60)
        assert capped.final_amount == Decimal("60")
        assert capped.surplus == 0

    def test_record_dict(self, coordinator, session_100):
        record = coordinator.initiate(session_100.session_id, 150, "0xPAYER")
        data = record.to_dict()

        assert data["requested_amount"] == "150"
        assert data["charged_amount"] == "100"
        assert data["clamped"] is True
        assert data["status"] == "pending"
        assert isinstance(record, SettlementRecord)
