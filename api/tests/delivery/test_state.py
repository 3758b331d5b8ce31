"""
Tests for the per-channel state vector and the notification state machine.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from notification_service.delivery.state import (
    BackoffPolicy,
    ChannelOutcome,
    apply_outcome,
    channels_due,
    check_invariants,
    derive_state,
    dispatch_due_at,
    expedite,
    new_channel_vector,
    next_retry_at,
    transition,
)
from notification_service.models.enums import Channel, DispatchStatus, NotificationState

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def outcome(status: DispatchStatus, **kwargs) -> ChannelOutcome:
    return ChannelOutcome(status=status, occurred_at=NOW, **kwargs)


class TestChannelVector:
    """new_channel_vector / apply_outcome tests."""

    def test_vector_follows_dispatch_order(self):
        """Requested channels are kept in push, email, inapp, socket order."""
        vector = new_channel_vector([Channel.SOCKET, Channel.PUSH, Channel.INAPP])
        assert list(vector) == ["push", "inapp", "socket"]
        assert all(entry["attempts"] == 0 for entry in vector.values())

    def test_accepted_marks_dispatched(self):
        """An accepted dispatch stamps dispatchedAt and counts the attempt."""
        vector = apply_outcome(new_channel_vector([Channel.PUSH]), "push", outcome(DispatchStatus.ACCEPTED))
        entry = vector["push"]
        assert entry["dispatched"] is True
        assert entry["dispatched_at"] == NOW.isoformat()
        assert entry["attempts"] == 1

    def test_apply_does_not_mutate_input(self):
        """The input vector is left untouched."""
        original = new_channel_vector([Channel.PUSH])
        apply_outcome(original, Channel.PUSH, outcome(DispatchStatus.ACCEPTED))
        assert original["push"]["dispatched"] is False

    def test_replayed_accept_is_a_no_op(self):
        """A second accept neither bumps attempts nor moves dispatchedAt."""
        first = apply_outcome(new_channel_vector([Channel.PUSH]), "push", outcome(DispatchStatus.ACCEPTED))
        later = ChannelOutcome(status=DispatchStatus.ACCEPTED, occurred_at=NOW + timedelta(minutes=1))
        assert apply_outcome(first, "push", later) == first

    def test_transient_schedules_retry(self):
        """A transient failure records the error and the next attempt."""
        retry_at = NOW + timedelta(seconds=2)
        vector = apply_outcome(
            new_channel_vector([Channel.PUSH]),
            "push",
            outcome(DispatchStatus.TRANSIENT, error="503", retry_at=retry_at),
        )
        entry = vector["push"]
        assert entry["attempts"] == 1
        assert entry["last_error"] == "503"
        assert entry["next_attempt_at"] == retry_at.isoformat()
        assert entry["exhausted"] is False

    def test_transient_exhausts_at_max_attempts(self):
        """Attempts never exceed the bound; the last one exhausts the channel."""
        vector = new_channel_vector([Channel.PUSH])
        for _ in range(5):
            vector = apply_outcome(vector, "push", outcome(DispatchStatus.TRANSIENT, error="timeout", max_attempts=3))
        entry = vector["push"]
        assert entry["attempts"] == 3
        assert entry["exhausted"] is True
        assert entry["next_attempt_at"] is None

    def test_permanent_stops_retries(self):
        """A permanent failure is terminal after one attempt."""
        vector = apply_outcome(
            new_channel_vector([Channel.EMAIL]), "email", outcome(DispatchStatus.PERMANENT, error="bad address")
        )
        vector = apply_outcome(vector, "email", outcome(DispatchStatus.TRANSIENT, error="later"))
        entry = vector["email"]
        assert entry["permanent"] is True
        assert entry["attempts"] == 1
        assert entry["last_error"] == "bad address"

    def test_acknowledged_implies_dispatched(self):
        """An acknowledgement also marks the channel dispatched."""
        vector = apply_outcome(new_channel_vector([Channel.SOCKET]), "socket", outcome(DispatchStatus.ACKNOWLEDGED))
        entry = vector["socket"]
        assert entry["dispatched"] is True
        assert entry["acknowledged"] is True
        assert entry["acknowledged_at"] == NOW.isoformat()

    def test_unrequested_channel_raises(self):
        """Outcomes for channels that were not requested are rejected."""
        with pytest.raises(KeyError):
            apply_outcome(new_channel_vector([Channel.PUSH]), "email", outcome(DispatchStatus.ACCEPTED))


class TestStateMachine:
    """derive_state / transition tests."""

    def test_fresh_vector_is_pending(self):
        """Untried channels leave the record pending."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL])
        assert derive_state(vector, False) is NotificationState.PENDING

    def test_one_dispatch_is_sent(self):
        """Any dispatched channel makes the record sent, even if others failed."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL])
        vector = apply_outcome(vector, "push", outcome(DispatchStatus.PERMANENT, error="invalid token"))
        vector = apply_outcome(vector, "email", outcome(DispatchStatus.ACCEPTED))
        assert transition(NotificationState.PENDING, vector, False) is NotificationState.SENT

    def test_all_channels_failed_is_failed(self):
        """Failed only once every channel has given up."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL])
        vector = apply_outcome(vector, "push", outcome(DispatchStatus.PERMANENT, error="x"))
        assert derive_state(vector, False) is NotificationState.PENDING
        vector = apply_outcome(vector, "email", outcome(DispatchStatus.TRANSIENT, error="y", max_attempts=1))
        assert transition(NotificationState.PENDING, vector, False) is NotificationState.FAILED

    def test_no_channels_is_failed(self):
        """An empty vector is failed."""
        assert derive_state({}, False) is NotificationState.FAILED

    def test_acknowledgement_is_delivered(self):
        """An acknowledged channel makes the record delivered."""
        vector = apply_outcome(new_channel_vector([Channel.SOCKET]), "socket", outcome(DispatchStatus.ACCEPTED))
        vector = apply_outcome(vector, "socket", outcome(DispatchStatus.ACKNOWLEDGED))
        assert transition(NotificationState.SENT, vector, False) is NotificationState.DELIVERED

    def test_read_wins_from_any_state(self):
        """Marking read always lands on read."""
        vector = new_channel_vector([Channel.PUSH])
        for current in NotificationState:
            assert transition(current, vector, True) is NotificationState.READ

    def test_never_moves_backwards(self):
        """A delivered record stays delivered when the vector only shows a dispatch."""
        vector = apply_outcome(new_channel_vector([Channel.PUSH]), "push", outcome(DispatchStatus.ACCEPTED))
        assert transition(NotificationState.DELIVERED, vector, False) is NotificationState.DELIVERED

    def test_failed_is_terminal_until_read(self):
        """A failed record ignores later dispatches."""
        vector = apply_outcome(new_channel_vector([Channel.PUSH]), "push", outcome(DispatchStatus.ACCEPTED))
        assert transition(NotificationState.FAILED, vector, False) is NotificationState.FAILED

    def test_invariants_hold_for_derived_states(self):
        """Derived states satisfy the invariants."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL])
        vector = apply_outcome(vector, "email", outcome(DispatchStatus.ACCEPTED))
        state = derive_state(vector, False)
        assert check_invariants(state, False, vector) == []

    def test_invariants_report_violations(self):
        """Each broken invariant is reported."""
        vector = new_channel_vector([Channel.PUSH])
        problems = check_invariants(NotificationState.SENT, True, vector)
        assert len(problems) == 2


class TestBackoff:
    """BackoffPolicy / next_retry_at tests."""

    @pytest.mark.parametrize("attempt,expected", [(1, 1.0), (2, 2.0), (3, 4.0), (10, 300.0)])
    def test_nominal_delay_is_capped_exponential(self, attempt, expected):
        """Delays grow geometrically up to the cap."""
        policy = BackoffPolicy(initial=1.0, base=2.0, cap=300.0, jitter=0.2)
        assert policy.nominal(attempt) == expected

    def test_jittered_delay_stays_in_bounds(self):
        """Jitter stays within its band."""
        policy = BackoffPolicy(initial=1.0, base=2.0, cap=300.0, jitter=0.2)
        rng = random.Random(7)
        for attempt in range(1, 12):
            low, high = policy.bounds(attempt)
            delay = policy.delay(attempt, rng)
            assert low <= delay <= high
            assert delay <= 300.0 * 1.2

    def test_next_retry_at_offsets_now(self):
        """The retry time is now plus the delay."""
        policy = BackoffPolicy(initial=2.0, base=2.0, cap=60.0, jitter=0.0)
        assert next_retry_at(policy, 2, NOW) == NOW + timedelta(seconds=4)


class TestChannelsDue:
    """channels_due tests."""

    def test_terminal_channels_are_skipped(self):
        """Settled channels are not due; waiting ones keep their time."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL, Channel.INAPP])
        vector = apply_outcome(vector, "push", outcome(DispatchStatus.ACCEPTED))
        retry_at = NOW + timedelta(seconds=30)
        vector = apply_outcome(vector, "email", outcome(DispatchStatus.TRANSIENT, error="x", retry_at=retry_at))

        due = channels_due(vector, NOW)
        assert due == [(Channel.EMAIL, retry_at), (Channel.INAPP, NOW)]


class TestDispatchDueAt:
    """dispatch_due_at tests."""

    def test_untried_channels_are_due_at_base(self):
        """Never-tried channels are due at creation time."""
        vector = new_channel_vector([Channel.PUSH])
        assert dispatch_due_at(NotificationState.PENDING, vector, None, NOW) == NOW

    def test_earliest_retry_wins(self):
        """The soonest channel decides the due time."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL])
        vector = apply_outcome(
            vector, "push", outcome(DispatchStatus.TRANSIENT, retry_at=NOW + timedelta(seconds=90))
        )
        vector = apply_outcome(
            vector, "email", outcome(DispatchStatus.TRANSIENT, retry_at=NOW + timedelta(seconds=30))
        )
        due = dispatch_due_at(NotificationState.PENDING, vector, None, NOW)
        assert due == NOW + timedelta(seconds=30)

    def test_nothing_due_before_schedule(self):
        """A future schedule holds back the due time."""
        scheduled_for = NOW + timedelta(hours=1)
        vector = new_channel_vector([Channel.PUSH])
        assert dispatch_due_at(NotificationState.PENDING, vector, scheduled_for, NOW) == scheduled_for

    def test_settled_channels_are_never_due(self):
        """Accepted, permanent and exhausted channels leave nothing to do."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL, Channel.INAPP])
        vector = apply_outcome(vector, "push", outcome(DispatchStatus.ACCEPTED))
        vector = apply_outcome(vector, "email", outcome(DispatchStatus.PERMANENT, error="bad"))
        vector = apply_outcome(
            vector, "inapp", outcome(DispatchStatus.TRANSIENT, error="x", max_attempts=1)
        )
        assert dispatch_due_at(NotificationState.SENT, vector, None, NOW) is None

    @pytest.mark.parametrize("state", [NotificationState.READ, NotificationState.FAILED])
    def test_finished_records_are_never_due(self, state):
        """Read and failed records have no due time."""
        vector = new_channel_vector([Channel.PUSH])
        assert dispatch_due_at(state, vector, None, NOW) is None

    def test_record_without_channels_needs_one_pass(self):
        """A channel-less record is due once so it can be failed."""
        assert dispatch_due_at(NotificationState.PENDING, {}, None, NOW) == NOW


class TestExpedite:
    """expedite tests."""

    def test_waiting_channels_become_due_now(self):
        """Retry waits are dropped; attempts and settled channels are untouched."""
        vector = new_channel_vector([Channel.PUSH, Channel.EMAIL])
        vector = apply_outcome(vector, "push", outcome(DispatchStatus.ACCEPTED))
        vector = apply_outcome(
            vector, "email", outcome(DispatchStatus.TRANSIENT, error="x", retry_at=NOW + timedelta(hours=1))
        )

        expedited = expedite(vector)
        assert channels_due(expedited, NOW) == [(Channel.EMAIL, NOW)]
        assert expedited["email"]["attempts"] == 1
        assert expedited["push"] == vector["push"]
        assert vector["email"]["next_attempt_at"] is not None
