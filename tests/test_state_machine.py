"""
Tests for the queue item lifecycle and the compare-and-set transition.
"""
import pytest

from mailpipe.exceptions import InvalidTransition, NotFound, StaleTransition, ValidationFailed
from mailpipe.models import EmailQueueItem, QueueStatus, db
from mailpipe.queue import allowed_targets, check_transition, is_terminal
from mailpipe.repositories import QueueItemRepository

# ==============================================================================
# TRANSITION TABLE
# ==============================================================================


class TestCheckTransition:

    @pytest.mark.parametrize("current,target", [
        (QueueStatus.AWAITING_GENERATION, QueueStatus.PENDING_REVIEW),
        (QueueStatus.AWAITING_GENERATION, QueueStatus.AWAITING_GENERATION),
        (QueueStatus.AWAITING_GENERATION, QueueStatus.GENERATION_FAILED),
        (QueueStatus.PENDING_REVIEW, QueueStatus.SCHEDULED),
        (QueueStatus.PENDING_REVIEW, QueueStatus.REJECTED),
        (QueueStatus.SCHEDULED, QueueStatus.SENT),
        (QueueStatus.SCHEDULED, QueueStatus.SEND_FAILED),
    ])
    def test_allowed(self, current, target):
        assert check_transition(current, target) == target

    @pytest.mark.parametrize("current,target", [
        (QueueStatus.SENT, QueueStatus.SCHEDULED),
        (QueueStatus.REJECTED, QueueStatus.PENDING_REVIEW),
        (QueueStatus.GENERATION_FAILED, QueueStatus.AWAITING_GENERATION),
        (QueueStatus.SEND_FAILED, QueueStatus.SCHEDULED),
        (QueueStatus.AWAITING_GENERATION, QueueStatus.SCHEDULED),
        (QueueStatus.PENDING_REVIEW, QueueStatus.SENT),
    ])
    def test_forbidden_without_override(self, current, target):
        with pytest.raises(InvalidTransition):
            check_transition(current, target)

    def test_override_reopens_failed_items(self):
        assert check_transition(QueueStatus.GENERATION_FAILED, QueueStatus.AWAITING_GENERATION,
                                override=True) == QueueStatus.AWAITING_GENERATION
        assert check_transition(QueueStatus.SEND_FAILED, QueueStatus.SCHEDULED,
                                override=True) == QueueStatus.SCHEDULED

    def test_override_never_reopens_sent_or_rejected(self):
        assert allowed_targets(QueueStatus.SENT, override=True) == set()
        assert allowed_targets(QueueStatus.REJECTED, override=True) == set()

    def test_accepts_string_values(self):
        assert check_transition("SCHEDULED", "SENT") == QueueStatus.SENT

    def test_unknown_status_is_invalid(self):
        with pytest.raises(InvalidTransition):
            check_transition("SCHEDULED", "DELIVERED")

    def test_invalid_transition_is_a_validation_failure(self):
        with pytest.raises(ValidationFailed):
            check_transition(QueueStatus.SENT, QueueStatus.SEND_FAILED)

    def test_terminal_statuses(self):
        assert is_terminal(QueueStatus.SENT)
        assert is_terminal(QueueStatus.REJECTED)
        assert is_terminal(QueueStatus.GENERATION_FAILED)
        assert not is_terminal(QueueStatus.SCHEDULED)


# ==============================================================================
# PERSISTED TRANSITIONS
# ==============================================================================


class TestRepositoryTransition:

    def test_transition_updates_status_and_fields(self, make_customer, make_item):
        item = make_item(make_customer())
        repo = QueueItemRepository()

        repo.transition(item.id, QueueStatus.SCHEDULED, QueueStatus.SENT, provider_message_id="pm-1")

        stored = db.session.get(EmailQueueItem, item.id)
        assert stored.status == QueueStatus.SENT
        assert stored.provider_message_id == "pm-1"

    def test_increment_retry_adds_one(self, make_customer, make_item):
        item = make_item(make_customer(), retry_count=2)

        QueueItemRepository().transition(item.id, QueueStatus.SCHEDULED, QueueStatus.SEND_FAILED,
                                         increment_retry=True, last_error="bounced")

        stored = db.session.get(EmailQueueItem, item.id)
        assert stored.retry_count == 3
        assert stored.last_error == "bounced"

    def test_stale_expected_status_is_refused(self, make_customer, make_item):
        item = make_item(make_customer(), status=QueueStatus.SENT)

        with pytest.raises(StaleTransition):
            QueueItemRepository().transition(item.id, QueueStatus.SCHEDULED, QueueStatus.SEND_FAILED)

        assert db.session.get(EmailQueueItem, item.id).status == QueueStatus.SENT

    def test_second_writer_loses(self, make_customer, make_item):
        item = make_item(make_customer())
        repo = QueueItemRepository()

        repo.transition(item.id, QueueStatus.SCHEDULED, QueueStatus.SENT)
        with pytest.raises(StaleTransition):
            repo.transition(item.id, QueueStatus.SCHEDULED, QueueStatus.SEND_FAILED, increment_retry=True)

        stored = db.session.get(EmailQueueItem, item.id)
        assert stored.status == QueueStatus.SENT
        assert stored.retry_count == 0

    def test_missing_item(self, app):
        with pytest.raises(NotFound):
            QueueItemRepository().transition(999, QueueStatus.SCHEDULED, QueueStatus.SENT)

    def test_forbidden_transition_never_reaches_the_database(self, make_customer, make_item):
        item = make_item(make_customer(), status=QueueStatus.SENT)

        with pytest.raises(InvalidTransition):
            QueueItemRepository().transition(item.id, QueueStatus.SENT, QueueStatus.SCHEDULED)
