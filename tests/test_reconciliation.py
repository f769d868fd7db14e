from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from payment_reconciler.exceptions import (
    ConflictError,
    GatewayUnavailable,
    InvalidTransitionError,
    PaymentNotFound,
    ValidationError,
)
from payment_reconciler.models import PaymentStatus
from payment_reconciler.reconciliation import TRANSITIONS, Outcome, ReconciliationEngine
from payment_reconciler.repository import OrderRepository


class CountingRepository(OrderRepository):
    def __init__(self, db):
        super().__init__(db)
        self.writes = 0

    def compare_and_set_status(self, payment_id, expected_status, new_fields):
        self.writes += 1
        return super().compare_and_set_status(payment_id, expected_status, new_fields)


class RacingRepository(CountingRepository):
    """Lets a competing writer commit between our read and our write."""

    def __init__(self, db, competitor):
        super().__init__(db)
        self.competitor = competitor

    def compare_and_set_status(self, payment_id, expected_status, new_fields):
        if self.competitor is not None:
            competitor, self.competitor = self.competitor, None
            competitor(payment_id)
        return super().compare_and_set_status(payment_id, expected_status, new_fields)


def test_refunded_is_terminal():
    assert TRANSITIONS[PaymentStatus.REFUNDED] == frozenset()


def test_refund_only_reachable_from_paid():
    sources = {s for s, targets in TRANSITIONS.items() if PaymentStatus.REFUNDED in targets}
    assert sources == {PaymentStatus.PAID}


@pytest.mark.parametrize("target", [PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.FAILED])
def test_paid_never_moves_backwards(target):
    assert target not in TRANSITIONS[PaymentStatus.PAID]


def test_verify_match_moves_created_to_paid(make_payment, reconciler, transitions):
    payment = make_payment(gateway_order_id="order_abc")

    result = reconciler.apply_outcome("order_abc", Outcome.paid("pay_1", signature="sig"))

    assert result.changed is True
    assert result.payment.id == payment.id
    assert result.payment.status == "paid"
    assert result.payment.gateway_payment_id == "pay_1"
    assert result.payment.gateway_signature == "sig"
    assert transitions == [(PaymentStatus.CREATED, "paid")]


def test_duplicate_outcome_is_a_single_write(make_payment, db, transitions):
    make_payment(gateway_order_id="order_abc")
    repository = CountingRepository(db)
    engine = ReconciliationEngine(
        repository, on_transition=lambda p, prev: transitions.append(prev)
    )

    first = engine.apply_outcome("order_abc", Outcome.paid("pay_1", payment_method="card"))
    second = engine.apply_outcome("order_abc", Outcome.paid("pay_1", payment_method="card"))

    assert first.changed is True
    assert second.changed is False
    assert second.payment.status == "paid"
    assert repository.writes == 1
    assert len(transitions) == 1


def test_late_failure_does_not_undo_paid(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc")
    reconciler.apply_outcome("order_abc", Outcome.paid("pay_1"))

    result = reconciler.apply_outcome("order_abc", Outcome.failed("Payment failed"))

    assert result.changed is False
    assert result.payment.status == "paid"
    assert result.payment.failure_reason is None


def test_pending_cannot_follow_paid(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc", status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    result = reconciler.apply_outcome("order_abc", Outcome.pending("card"))

    assert result.changed is False
    assert result.payment.status == "paid"


def test_failure_records_reason(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc")

    result = reconciler.apply_outcome("order_abc", Outcome.failed("Card declined"))

    assert result.payment.status == "failed"
    assert result.payment.failure_reason == "Card declined"


def test_capture_recovers_failed_without_bound_payment_id(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc")
    reconciler.apply_outcome("order_abc", Outcome.failed("Invalid signature"))

    result = reconciler.apply_outcome("order_abc", Outcome.paid("pay_1", payment_method="upi"))

    assert result.changed is True
    assert result.payment.status == "paid"
    assert result.payment.payment_method == "upi"


def test_failed_with_bound_payment_id_stays_failed(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc", status=PaymentStatus.FAILED, gateway_payment_id="pay_1")

    result = reconciler.apply_outcome("order_abc", Outcome.paid("pay_2"))

    assert result.changed is False
    assert result.payment.status == "failed"
    assert result.payment.gateway_payment_id == "pay_1"


def test_created_pending_paid_path(make_payment, reconciler, transitions):
    make_payment(gateway_order_id="order_abc")

    reconciler.apply_outcome("order_abc", Outcome.pending("card"))
    result = reconciler.apply_outcome("order_abc", Outcome.paid("pay_1"))

    assert result.payment.status == "paid"
    assert result.payment.payment_method == "card"
    assert [prev for prev, _ in transitions] == [PaymentStatus.CREATED, PaymentStatus.PENDING]


def test_refund_outcome_matches_by_gateway_payment_id(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc", status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    result = reconciler.apply_refund_outcome("pay_1", Outcome.refunded("rfnd_1"))

    assert result.payment.status == "refunded"
    assert result.payment.refund_id == "rfnd_1"


def test_refunded_accepts_nothing(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc", status=PaymentStatus.PAID, gateway_payment_id="pay_1")
    reconciler.apply_refund_outcome("pay_1", Outcome.refunded("rfnd_1"))

    for outcome in (Outcome.paid("pay_1"), Outcome.failed("x"), Outcome.pending(), Outcome.refunded("rfnd_2")):
        result = reconciler.apply_outcome("order_abc", outcome)
        assert result.changed is False
        assert result.payment.status == "refunded"
        assert result.payment.refund_id == "rfnd_1"


def test_wrong_lookup_key_is_reported(make_payment, reconciler):
    make_payment(gateway_order_id="order_abc", status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    with pytest.raises(PaymentNotFound):
        reconciler.apply_refund_outcome("order_abc", Outcome.refunded("rfnd_1"))
    with pytest.raises(PaymentNotFound):
        reconciler.apply_outcome("pay_1", Outcome.paid("pay_1"))


def test_lost_race_reevaluates_as_no_op(make_payment, db, session_factory, transitions):
    payment = make_payment(gateway_order_id="order_abc")

    def webhook_wins(payment_id):
        other = OrderRepository(session_factory())
        try:
            ReconciliationEngine(other).apply_outcome("order_abc", Outcome.paid("pay_1"))
        finally:
            other.db.close()

    repository = RacingRepository(db, webhook_wins)
    engine = ReconciliationEngine(repository, on_transition=lambda p, prev: transitions.append(prev))

    result = engine.apply_outcome("order_abc", Outcome.paid("pay_1", signature="sig"))

    assert result.changed is False
    assert result.payment.id == payment.id
    assert result.payment.status == "paid"
    assert repository.writes == 1
    assert transitions == []


def test_repeated_conflict_surfaces(make_payment, db, mocker):
    make_payment(gateway_order_id="order_abc")
    repository = OrderRepository(db)
    mocker.patch.object(
        repository, "compare_and_set_status", side_effect=ConflictError()
    )

    with pytest.raises(ConflictError):
        ReconciliationEngine(repository).apply_outcome("order_abc", Outcome.paid("pay_1"))

    assert repository.compare_and_set_status.call_count == 2


def test_parallel_verify_and_webhook_transition_once(make_payment, session_factory):
    make_payment(gateway_order_id="order_abc")
    transitions = []
    barrier = Barrier(2)

    def confirm(outcome):
        session = session_factory()
        try:
            engine = ReconciliationEngine(
                OrderRepository(session),
                on_transition=lambda p, prev: transitions.append(prev),
            )
            barrier.wait()
            return engine.apply_outcome("order_abc", outcome).changed
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(confirm, [
            Outcome.paid("pay_1", signature="sig"),
            Outcome.paid("pay_1", payment_method="card"),
        ]))

    assert sorted(results) == [False, True]
    assert transitions == [PaymentStatus.CREATED]


def test_full_refund(make_payment, reconciler, gateway):
    payment = make_payment(status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    result = reconciler.refund(payment.id)

    assert result.refund_id == "rfnd_1"
    assert result.amount == Decimal("500.00")
    assert result.payment.status == "refunded"
    assert result.payment.refund_reason == "Requested by user"
    assert gateway.refunds[0]["amount"] == 50000
    assert gateway.refunds[0]["idempotency_key"] == payment.order_id


def test_partial_refund_is_capped_at_payment_amount(make_payment, reconciler, gateway):
    payment = make_payment(status=PaymentStatus.PAID, gateway_payment_id="pay_1", amount="100.00")

    reconciler.refund(payment.id, amount=Decimal("250.00"), reason="Event cancelled")

    assert gateway.refunds[0]["amount"] == 10000
    assert gateway.refunds[0]["notes"]["reason"] == "Event cancelled"


def test_partial_refund_amount(make_payment, reconciler, gateway):
    payment = make_payment(status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    result = reconciler.refund(payment.id, amount=Decimal("120.50"))

    assert gateway.refunds[0]["amount"] == 12050
    assert result.amount == Decimal("120.50")


@pytest.mark.parametrize("status", [PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.FAILED])
def test_refund_guard_makes_no_gateway_call(make_payment, reconciler, gateway, status):
    payment = make_payment(status=status)

    with pytest.raises(InvalidTransitionError) as exc_info:
        reconciler.refund(payment.id)

    assert exc_info.value.current_status == status.value
    assert gateway.refunds == []


def test_refund_of_refunded_payment_is_rejected(make_payment, reconciler, gateway):
    payment = make_payment(status=PaymentStatus.PAID, gateway_payment_id="pay_1")
    reconciler.refund(payment.id)

    with pytest.raises(InvalidTransitionError):
        reconciler.refund(payment.id)

    assert len(gateway.refunds) == 1


def test_paid_without_gateway_payment_id_is_rejected(make_payment, reconciler, gateway):
    payment = make_payment(status=PaymentStatus.PAID)

    with pytest.raises(ValidationError):
        reconciler.refund(payment.id)

    assert gateway.refunds == []


def test_gateway_failure_leaves_payment_paid(make_payment, reconciler, unavailable_gateway, repository):
    payment = make_payment(status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    with pytest.raises(GatewayUnavailable):
        reconciler.refund(payment.id)

    stored = repository.get(payment.id)
    assert stored.status == "paid"
    assert stored.refund_id is None


def test_refund_unknown_payment(reconciler):
    with pytest.raises(PaymentNotFound):
        reconciler.refund("does-not-exist")


def test_refund_webhook_racing_local_refund_converges(make_payment, db, session_factory, gateway):
    payment = make_payment(status=PaymentStatus.PAID, gateway_payment_id="pay_1")

    def refund_webhook(payment_id):
        other = OrderRepository(session_factory())
        try:
            ReconciliationEngine(other).apply_refund_outcome("pay_1", Outcome.refunded("rfnd_1"))
        finally:
            other.db.close()

    engine = ReconciliationEngine(RacingRepository(db, refund_webhook), gateway=gateway)

    result = engine.refund(payment.id)

    assert result.payment.status == "refunded"
    assert result.payment.refund_id == "rfnd_1"
