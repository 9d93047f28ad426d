"""Event journal claim protocol tests"""
from unittest.mock import patch

import pytest
from datetime import datetime, timezone, timedelta

from app.models.stripe_event import StripeEvent
from app.services import event_journal
from app.services.event_journal import (
    ClaimOutcome, MAX_LAST_ERROR_LEN, claim_stripe_event, is_claim_stale, mark_stripe_event_status,
)


def _row(db_session, event_id):
    db_session.expire_all()
    return db_session.query(StripeEvent).filter(StripeEvent.event_id == event_id).one()


@pytest.mark.critical
class TestClaimStripeEvent:
    """Claim semantics for first deliveries and redeliveries"""

    def test_first_claim_inserts_processing_row(self, db_session):
        """A never-seen event is claimed and recorded as processing"""
        result = claim_stripe_event(db_session, "evt_new", "payment_intent.succeeded", livemode=True, created=1700000000)

        assert result.outcome == ClaimOutcome.CLAIMED
        assert result.claimed is True
        assert result.first_seen is True

        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_new").one()
        assert row.status == "processing"
        assert row.livemode is True
        assert row.created == 1700000000
        assert row.processed_at is None
        assert row.last_error is None
        assert row.attempts == 1

    def test_second_claim_while_processing_is_rejected(self, db_session):
        """A fresh processing row belongs to its holder"""
        claim_stripe_event(db_session, "evt_busy", "payment_intent.succeeded", claim_ttl_seconds=900)
        result = claim_stripe_event(db_session, "evt_busy", "payment_intent.succeeded", claim_ttl_seconds=900)

        assert result.outcome == ClaimOutcome.ALREADY_PROCESSING
        assert result.claimed is False
        assert db_session.query(StripeEvent).count() == 1

    def test_claim_after_success_reports_already_succeeded(self, db_session):
        """Succeeded events are never re-claimed"""
        claim_stripe_event(db_session, "evt_done", "customer.created")
        mark_stripe_event_status(db_session, "evt_done", "succeeded")

        result = claim_stripe_event(db_session, "evt_done", "customer.created")

        assert result.outcome == ClaimOutcome.ALREADY_SUCCEEDED
        assert result.row.status == "succeeded"

    def test_failed_event_is_reclaimed(self, db_session):
        """A failed event goes back to processing and its error is cleared"""
        claim_stripe_event(db_session, "evt_retry", "payment_intent.succeeded")
        mark_stripe_event_status(db_session, "evt_retry", "failed", last_error="boom")

        result = claim_stripe_event(db_session, "evt_retry", "payment_intent.succeeded")

        assert result.outcome == ClaimOutcome.CLAIMED
        assert result.first_seen is False
        db_session.expire_all()
        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_retry").one()
        assert row.status == "processing"
        assert row.last_error is None
        assert row.processed_at is None
        assert row.attempts == 2

    def test_stale_processing_row_is_reclaimed(self, db_session):
        """A processing row older than the TTL is taken over"""
        claim_stripe_event(db_session, "evt_stuck", "payment_intent.succeeded")
        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_stuck").one()
        row.claimed_at = datetime.now(timezone.utc) - timedelta(hours=1)
        db_session.commit()

        result = claim_stripe_event(db_session, "evt_stuck", "payment_intent.succeeded", claim_ttl_seconds=900)

        assert result.outcome == ClaimOutcome.CLAIMED
        assert result.first_seen is False

    def test_stale_row_stays_locked_without_ttl(self, db_session):
        """Without a TTL a stuck processing row is left for manual repair"""
        claim_stripe_event(db_session, "evt_locked", "payment_intent.succeeded")
        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_locked").one()
        row.claimed_at = datetime.now(timezone.utc) - timedelta(days=2)
        db_session.commit()

        result = claim_stripe_event(db_session, "evt_locked", "payment_intent.succeeded", claim_ttl_seconds=None)

        assert result.outcome == ClaimOutcome.ALREADY_PROCESSING


@pytest.mark.critical
class TestMarkStripeEventStatus:
    """Terminal transitions"""

    def test_succeeded_is_absorbing(self, db_session):
        """A late failure report cannot undo success"""
        claim_stripe_event(db_session, "evt_abs", "customer.created")
        mark_stripe_event_status(db_session, "evt_abs", "succeeded")
        mark_stripe_event_status(db_session, "evt_abs", "failed", last_error="late")

        db_session.expire_all()
        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_abs").one()
        assert row.status == "succeeded"
        assert row.last_error is None
        assert row.processed_at is not None

    def test_last_error_is_truncated(self, db_session):
        """Error text is bounded"""
        claim_stripe_event(db_session, "evt_long", "customer.created")
        mark_stripe_event_status(db_session, "evt_long", "failed", last_error="x" * 5000)

        db_session.expire_all()
        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_long").one()
        assert row.status == "failed"
        assert len(row.last_error) == MAX_LAST_ERROR_LEN

    def test_unknown_status_rejected(self, db_session):
        """Only the journal statuses are accepted"""
        with pytest.raises(ValueError):
            mark_stripe_event_status(db_session, "evt_x", "done")


@pytest.mark.critical
class TestClaimOwnership:
    """Only the current claim holder can record the outcome"""

    def _backdate(self, db_session, event_id, hours=1):
        row = db_session.query(StripeEvent).filter(StripeEvent.event_id == event_id).one()
        row.claimed_at = datetime.now(timezone.utc) - timedelta(hours=hours)
        db_session.commit()

    def test_claims_carry_increasing_tokens(self, db_session):
        first = claim_stripe_event(db_session, "evt_tok", "payment_intent.succeeded")
        mark_stripe_event_status(db_session, "evt_tok", "failed", claim_token=first.token)
        second = claim_stripe_event(db_session, "evt_tok", "payment_intent.succeeded")

        assert first.token == 1
        assert second.token == 2

    def test_superseded_worker_cannot_release_taken_over_claim(self, db_session):
        """After a stale takeover the old holder's mark is ignored and the event stays exclusive"""
        worker_a = claim_stripe_event(db_session, "evt_s", "payment_intent.succeeded", claim_ttl_seconds=900)
        self._backdate(db_session, "evt_s")
        worker_b = claim_stripe_event(db_session, "evt_s", "payment_intent.succeeded", claim_ttl_seconds=900)
        assert worker_b.outcome == ClaimOutcome.CLAIMED

        marked = mark_stripe_event_status(db_session, "evt_s", "failed", last_error="late", claim_token=worker_a.token)

        assert marked is False
        row = _row(db_session, "evt_s")
        assert row.status == "processing"
        assert row.last_error is None

        worker_c = claim_stripe_event(db_session, "evt_s", "payment_intent.succeeded", claim_ttl_seconds=900)
        assert worker_c.outcome == ClaimOutcome.ALREADY_PROCESSING

        assert mark_stripe_event_status(db_session, "evt_s", "succeeded", claim_token=worker_b.token) is True
        assert _row(db_session, "evt_s").status == "succeeded"

    def test_lost_reclaim_race_rereads_row(self, db_session):
        """If another worker re-claims between our read and our update we back off"""
        claim_stripe_event(db_session, "evt_race", "payment_intent.succeeded")
        mark_stripe_event_status(db_session, "evt_race", "failed", last_error="boom")
        original = event_journal._reclaim

        def other_worker_first(db, event_id, observed_status, observed_attempts, ttl):
            # The competing delivery wins the conditional update...
            assert original(db, event_id, observed_status, observed_attempts, ttl) is True
            # ...so ours matches nothing
            return original(db, event_id, observed_status, observed_attempts, ttl)

        with patch.object(event_journal, "_reclaim", side_effect=other_worker_first) as reclaim:
            result = claim_stripe_event(db_session, "evt_race", "payment_intent.succeeded", claim_ttl_seconds=900)

        assert result.outcome == ClaimOutcome.ALREADY_PROCESSING
        assert result.token is None
        assert reclaim.call_count == 1
        row = _row(db_session, "evt_race")
        assert row.status == "processing"
        assert row.attempts == 2


@pytest.mark.medium
class TestClaimStaleness:
    """is_claim_stale() helper"""

    def test_only_processing_rows_can_be_stale(self):
        """Failed and succeeded rows are never stale"""
        old = datetime.now(timezone.utc) - timedelta(hours=5)
        assert is_claim_stale(StripeEvent(status="failed", claimed_at=old), 60) is False
        assert is_claim_stale(StripeEvent(status="processing", claimed_at=old), 60) is True

    def test_naive_timestamps_are_treated_as_utc(self):
        """SQLite returns naive datetimes"""
        now = datetime.now(timezone.utc)
        recent = (now - timedelta(seconds=10)).replace(tzinfo=None)
        assert is_claim_stale(StripeEvent(status="processing", claimed_at=recent), 60, now=now) is False
