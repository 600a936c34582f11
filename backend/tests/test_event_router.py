"""Event router and anomaly queue tests"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.orm import sessionmaker

from paycore.models.anomaly import Anomaly
from paycore.models.earnings import LedgerEntry
from paycore.models.enums import SubscriptionStatus, TransactionStatus
from paycore.models.processor_event import ProcessorEvent
from paycore.schemas.events import EventKind
from paycore.services import notification_service as notify
from paycore.services.anomaly_service import list_anomalies, replay_failed_events, resolve_anomaly
from paycore.services.event_router import EVENT_HANDLERS, IngestStatus, ingest_event
from paycore.services.ledger_service import get_ledger
from paycore.services.notification_service import Notification
from paycore.tasks.replay import anomaly_replay_task, run_replay_cycle


def _ledger_entries(db_session):
    return db_session.query(LedgerEntry).order_by(LedgerEntry.id).all()


def _processor_event(db_session, event_id):
    return db_session.query(ProcessorEvent).filter(ProcessorEvent.processor_event_id == event_id).one()


@pytest.mark.high
def test_every_event_kind_has_a_handler():
    assert set(EVENT_HANDLERS) == set(EventKind)


@pytest.mark.critical
class TestIdempotency:
    """At-least-once delivery applies each event exactly once"""

    def test_redelivery_returns_stored_result(self, db_session, make_charge, make_event):
        txn = make_charge(amount="10.00")
        event = make_event("NewSaleSuccess", "evt-1", transactionId="proc-1",
                           customFields={"transactionId": str(txn.id)})

        first = ingest_event(db_session, event)
        second = ingest_event(db_session, event)

        assert first.status == IngestStatus.APPLIED
        assert second.status == IngestStatus.DUPLICATE
        assert second.result == first.result
        assert second.notifications == []
        assert len(_ledger_entries(db_session)) == 1
        assert db_session.query(ProcessorEvent).count() == 1
        assert get_ledger(db_session, "creator-1").available_balance == Decimal("8.00")

    def test_same_edge_from_different_event_id(self, db_session, make_charge, complete_charge, make_event):
        txn = make_charge()
        complete_charge(txn, event_id="evt-1")

        outcome = ingest_event(db_session, make_event(
            "NewSaleSuccess", "evt-2", customFields={"transactionId": str(txn.id)}
        ))

        assert outcome.status == IngestStatus.DUPLICATE
        assert outcome.result["status"] == "already_applied"
        assert _processor_event(db_session, "evt-2").status == "ignored"
        assert db_session.query(Anomaly).count() == 0
        assert len(_ledger_entries(db_session)) == 1

    def test_unrecognized_event_is_ignored(self, db_session, make_event):
        event = make_event("UpgradeSuccess", "evt-u")

        first = ingest_event(db_session, event)
        second = ingest_event(db_session, event)

        assert first.status == IngestStatus.IGNORED
        assert second.status == IngestStatus.DUPLICATE
        stored = _processor_event(db_session, "evt-u")
        assert stored.status == "ignored"
        assert stored.result["raw_kind"] == "UpgradeSuccess"
        assert db_session.query(Anomaly).count() == 0


@pytest.mark.critical
class TestEndToEnd:
    """Money movement through the full ingest path"""

    def test_tip_then_chargeback(self, db_session, make_charge, make_event):
        txn = make_charge(amount="10.00", kind="tip")

        sale = ingest_event(db_session, make_event(
            "NewSaleSuccess", "evt-sale", transactionId="proc-tip",
            customFields={"transactionId": str(txn.id)}
        ))
        assert sale.status == IngestStatus.APPLIED
        assert get_ledger(db_session, "creator-1").available_balance == Decimal("8.00")

        chargeback = ingest_event(db_session, make_event("Chargeback", "evt-cb", transactionId="proc-tip"))
        assert chargeback.status == IngestStatus.APPLIED

        ledger = get_ledger(db_session, "creator-1")
        assert ledger.available_balance == Decimal("-15.00")
        assert ledger.total_chargebacks == Decimal("23.00")
        entries = _ledger_entries(db_session)
        assert [(e.amount_delta, e.bucket) for e in entries] == [
            (Decimal("8.00"), "tips"),
            (Decimal("-23.00"), "tips"),
        ]
        assert entries[1].underflow is True
        db_session.refresh(txn)
        assert txn.status == TransactionStatus.CHARGEDBACK.value

        types = [n.notification_type for n in chargeback.notifications]
        assert types == [notify.CHARGEBACK_RECEIVED]
        assert chargeback.notifications[0].user_id == "creator-1"

    def test_refund_of_pending_is_rejected(self, db_session, make_charge, make_event):
        txn = make_charge()

        outcome = ingest_event(db_session, make_event(
            "Refund", "evt-r", customFields={"transactionId": str(txn.id)}
        ))

        assert outcome.status == IngestStatus.REJECTED
        assert outcome.anomaly_id is not None
        assert _ledger_entries(db_session) == []
        stored = _processor_event(db_session, "evt-r")
        assert stored.status == "failed"
        assert "InvalidTransition" in stored.error_message
        anomaly = db_session.query(Anomaly).filter(Anomaly.id == outcome.anomaly_id).one()
        assert anomaly.error_type == "InvalidTransition"
        assert anomaly.severity == "critical"
        assert anomaly.payload["processor_event_id"] == "evt-r"

    def test_sale_notifications(self, db_session, make_charge, complete_charge):
        txn = make_charge(payer_id="payer-9", creator_id="creator-9")
        outcome = complete_charge(txn)

        by_user = {(n.user_id, n.notification_type) for n in outcome.notifications}
        assert by_user == {
            ("payer-9", notify.PAYMENT_SUCCESS),
            ("creator-9", notify.EARNINGS_CREDITED),
        }

    def test_sale_failure(self, db_session, make_charge, make_event):
        txn = make_charge()
        outcome = ingest_event(db_session, make_event(
            "NewSaleFailure", "evt-f", declineReason="do not honor",
            customFields={"transactionId": str(txn.id)}
        ))

        assert outcome.status == IngestStatus.APPLIED
        assert outcome.notifications[0].notification_type == notify.PAYMENT_FAILED
        db_session.refresh(txn)
        assert txn.status == TransactionStatus.FAILED.value
        assert _ledger_entries(db_session) == []


@pytest.mark.critical
class TestSubscriptionEvents:
    """Renewal events routed to the billing tracker"""

    def _activate(self, db_session, make_subscription, make_charge, complete_charge):
        sub = make_subscription(processor_subscription_id="sub-1")
        complete_charge(make_charge(amount="9.99", kind="subscription_charge", subscription_id=sub.id))
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.ACTIVE.value
        return sub

    def test_suspension_then_rejected_renewal(self, db_session, make_subscription, make_charge,
                                              complete_charge, make_event):
        sub = self._activate(db_session, make_subscription, make_charge, complete_charge)

        outcomes = [
            ingest_event(db_session, make_event("RenewalFailure", f"evt-f{n}", subscriptionId="sub-1"))
            for n in range(3)
        ]
        assert [o.status for o in outcomes] == [IngestStatus.APPLIED] * 3
        suspended = [n for n in outcomes[-1].notifications if n.notification_type == notify.SUBSCRIPTION_SUSPENDED]
        assert {n.user_id for n in suspended} == {"payer-1", "creator-1"}
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.SUSPENDED.value

        renewal = ingest_event(db_session, make_event(
            "RenewalSuccess", "evt-renew", subscriptionId="sub-1", accountingAmount="9.99"
        ))

        assert renewal.status == IngestStatus.REJECTED
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.SUSPENDED.value
        # Only the initial charge reached the ledger
        assert len(_ledger_entries(db_session)) == 1

    def test_renewal_success_applied(self, db_session, make_subscription, make_charge, complete_charge, make_event):
        self._activate(db_session, make_subscription, make_charge, complete_charge)

        outcome = ingest_event(db_session, make_event(
            "RenewalSuccess", "evt-renew", subscriptionId="sub-1", transactionId="proc-r", accountingAmount="9.99"
        ))

        assert outcome.status == IngestStatus.APPLIED
        assert outcome.result["status"] == "active"
        assert outcome.result["transaction"]["status"] == "completed"
        assert outcome.result["transaction"]["processor_transaction_id"] == "proc-r"
        assert get_ledger(db_session, "creator-1").subscriptions == Decimal("15.98")

    def test_renewal_redelivered_under_new_event_id(self, db_session, make_subscription, make_charge,
                                                    complete_charge, make_event):
        sub = self._activate(db_session, make_subscription, make_charge, complete_charge)

        first = ingest_event(db_session, make_event(
            "RenewalSuccess", "evt-r-1", subscriptionId="sub-1", transactionId="proc-renew-1"
        ))
        db_session.refresh(sub)
        next_billing = sub.next_billing_date
        second = ingest_event(db_session, make_event(
            "RenewalSuccess", "evt-r-1b", subscriptionId="sub-1", transactionId="proc-renew-1"
        ))

        assert first.status == IngestStatus.APPLIED
        assert second.status == IngestStatus.DUPLICATE
        assert second.result["status"] == "already_applied"
        assert _processor_event(db_session, "evt-r-1b").status == "ignored"
        assert db_session.query(Anomaly).count() == 0
        # Signup charge plus one renewal
        assert len(_ledger_entries(db_session)) == 2
        db_session.refresh(sub)
        assert sub.next_billing_date == next_billing
        assert len(sub.billing_history) == 2

    def test_subscription_charge_without_subscription_is_queued(self, db_session, make_charge,
                                                               complete_charge):
        txn = make_charge(amount="9.99", kind="subscription_charge")

        outcome = complete_charge(txn)

        assert outcome.status == IngestStatus.APPLIED
        assert txn.status == TransactionStatus.COMPLETED.value
        anomaly = db_session.query(Anomaly).one()
        assert anomaly.error_type == "NotFound"
        assert anomaly.severity == "critical"
        assert anomaly.processor_event_id == f"evt-sale-{txn.id}"
        # Nothing to retry: the sale itself was applied
        assert replay_failed_events(db_session).attempted == 0

    def test_cancellation_twice(self, db_session, make_subscription, make_charge, complete_charge, make_event):
        self._activate(db_session, make_subscription, make_charge, complete_charge)

        first = ingest_event(db_session, make_event("Cancellation", "evt-c1", subscriptionId="sub-1"))
        second = ingest_event(db_session, make_event("Cancellation", "evt-c2", subscriptionId="sub-1"))

        assert first.status == IngestStatus.APPLIED
        assert second.status == IngestStatus.DUPLICATE
        assert db_session.query(Anomaly).count() == 0


@pytest.mark.critical
class TestReplay:
    """Out-of-order events are retried from the anomaly queue"""

    def test_refund_before_sale_is_replayed(self, db_session, make_charge, complete_charge, make_event):
        txn = make_charge(amount="10.00")
        refund = make_event("Refund", "evt-refund", customFields={"transactionId": str(txn.id)})

        early = ingest_event(db_session, refund)
        assert early.status == IngestStatus.REJECTED

        complete_charge(txn, event_id="evt-sale")
        report = replay_failed_events(db_session)

        assert report.attempted == 1
        assert report.resolved == 1
        db_session.refresh(txn)
        assert txn.status == TransactionStatus.REFUNDED.value
        anomaly = db_session.query(Anomaly).filter(Anomaly.id == early.anomaly_id).one()
        assert anomaly.status == "resolved"
        assert anomaly.retry_count == 1
        stored = _processor_event(db_session, "evt-refund")
        assert stored.status == "applied"
        assert stored.attempts == 2
        assert get_ledger(db_session, "creator-1").available_balance == Decimal("0.00")

        # Nothing left to replay
        assert replay_failed_events(db_session).attempted == 0

    def test_redelivery_after_predecessor_applies(self, db_session, make_charge, complete_charge, make_event):
        txn = make_charge()
        refund = make_event("Refund", "evt-refund", customFields={"transactionId": str(txn.id)})
        assert ingest_event(db_session, refund).status == IngestStatus.REJECTED

        complete_charge(txn)
        outcome = ingest_event(db_session, refund)

        assert outcome.status == IngestStatus.APPLIED
        assert _processor_event(db_session, "evt-refund").attempts == 2

    def test_replay_archives_after_max_retries(self, db_session, make_event, override_settings):
        override_settings(ANOMALY_MAX_RETRIES=2)
        outcome = ingest_event(db_session, make_event("Chargeback", "evt-orphan", transactionId="unknown"))
        assert outcome.status == IngestStatus.REJECTED

        first = replay_failed_events(db_session)
        second = replay_failed_events(db_session)
        third = replay_failed_events(db_session)

        assert (first.still_failing, first.archived) == (1, 0)
        assert (second.still_failing, second.archived) == (0, 1)
        assert third.attempted == 0
        anomaly = db_session.query(Anomaly).filter(Anomaly.id == outcome.anomaly_id).one()
        assert anomaly.status == "archived"
        assert anomaly.error_type == "NotFound"
        # Replays never queue a second anomaly for the same event
        assert db_session.query(Anomaly).count() == 1

    def test_unexpected_errors_are_not_replayed(self, db_session, make_charge, make_event):
        txn = make_charge()
        event = make_event("NewSaleSuccess", "evt-boom", customFields={"transactionId": str(txn.id)})

        with patch("paycore.services.event_router.route_event", side_effect=RuntimeError("database on fire")):
            outcome = ingest_event(db_session, event)

        assert outcome.status == IngestStatus.REJECTED
        anomaly = db_session.query(Anomaly).one()
        assert anomaly.error_type == "ProcessingError"
        assert replay_failed_events(db_session).attempted == 0

        resolved = resolve_anomaly(db_session, anomaly.id)
        assert resolved.status == "resolved"
        assert list_anomalies(db_session, status="open") == []


@pytest.mark.medium
class TestReplayCycle:
    """Background drain pass"""

    def test_cycle_replays_and_releases(self, db_session, make_charge, complete_charge, make_event,
                                        override_settings):
        override_settings(EARNINGS_HOLD_DAYS=7)
        txn = make_charge()
        ingest_event(db_session, make_event("Refund", "evt-refund", customFields={"transactionId": str(txn.id)}))
        complete_charge(txn)

        session_factory = sessionmaker(bind=db_session.get_bind())
        summary, notifications = run_replay_cycle(session_factory)

        # The credit is seven days from maturing
        assert summary == {"attempted": 1, "resolved": 1, "still_failing": 0, "archived": 0, "released": 0}
        assert [(n.user_id, n.notification_type) for n in notifications] == [
            ("payer-1", notify.REFUND_PROCESSED),
            ("creator-1", notify.REFUND_PROCESSED),
        ]
        db_session.expire_all()
        ledger = get_ledger(db_session, "creator-1")
        assert ledger.pending_balance == Decimal("0.00")
        assert ledger.available_balance == Decimal("0.00")

    def test_still_failing_replay_owes_no_notifications(self, db_session, make_charge, make_event):
        txn = make_charge()
        ingest_event(db_session, make_event("Refund", "evt-refund", customFields={"transactionId": str(txn.id)}))

        summary, notifications = run_replay_cycle(sessionmaker(bind=db_session.get_bind()))

        assert summary["still_failing"] == 1
        assert notifications == []

    @pytest.mark.asyncio
    async def test_task_emits_replayed_notifications(self):
        owed = [Notification("creator-1", notify.REFUND_PROCESSED, {"transaction_id": 1})]
        summary = {"attempted": 1, "resolved": 1, "still_failing": 0, "archived": 0, "released": 0}

        with patch("paycore.tasks.replay.run_replay_cycle", return_value=(summary, owed)), \
                patch("paycore.tasks.replay.emit_notifications", new_callable=AsyncMock) as emit:
            task = asyncio.create_task(anomaly_replay_task(lambda: None, interval_seconds=0.01))
            for _ in range(100):
                if emit.await_count:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        emit.assert_awaited_with(owed)
