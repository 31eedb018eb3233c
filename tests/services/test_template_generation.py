"""
Tests for the template generation scheduler and the review workflow.
"""
import time
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from mailpipe.config import PipelineSettings
from mailpipe.datetime_utils import utcnow
from mailpipe.exceptions import InvalidTransition, NotFound, TransientGenerationFailure, ValidationFailed
from mailpipe.models import EmailQueueItem, EmailTemplate, QueueStatus, TemplateStatus, TemplateType, db
from mailpipe.pipelines.base import GenerationOutcome
from mailpipe.services.content_generation import GeneratedContent
from mailpipe.services.template_generation import TemplateGenerationService


def service_with(engine, content_generator, **settings):
    base = engine.generation
    return TemplateGenerationService(
        settings=PipelineSettings(**{"generation_item_delay_seconds": 0, **settings}),
        queue_items=base.queue_items,
        templates=base.templates,
        customers=base.customers,
        books=base.books,
        content_generator=content_generator,
    )


def failing_generator(error=None):
    generator = Mock()
    generator.generate.side_effect = error or TransientGenerationFailure("model offline")
    return generator


def reload(item_id):
    return db.session.get(EmailQueueItem, item_id)


@pytest.fixture
def awaiting(make_customer, make_item):
    def _make(customer=None, **kwargs):
        customer = customer or make_customer(topics=["history"])
        return make_item(customer, status=QueueStatus.AWAITING_GENERATION, pipeline_name="DAILY_MOTIVATION",
                         template_code=None, context_data={"recentBooks": ["Roman Roads"]}, **kwargs)
    return _make


# ==============================================================================
# SCAN
# ==============================================================================


class TestScan:

    def test_success_moves_item_to_pending_review(self, engine, awaiting):
        item = awaiting()

        result = engine.generation.scan()

        assert result.processed == 1
        assert result.succeeded == 1
        stored = reload(item.id)
        assert stored.status == QueueStatus.PENDING_REVIEW
        template = EmailTemplate.query.filter_by(template_code=stored.template_code).one()
        assert template.status == TemplateStatus.WAIT_REVIEW
        assert template.template_type == TemplateType.AI_GENERATED
        assert stored.scheduled_date > utcnow()

    def test_scan_skipped_while_another_runs(self, engine, awaiting):
        item = awaiting()
        engine.generation.in_flight.try_acquire(engine.generation.SCAN_KEY)

        result = engine.generation.scan()

        assert result.skipped is True
        assert result.processed == 0
        assert reload(item.id).status == QueueStatus.AWAITING_GENERATION

    def test_batch_size_limits_items(self, engine, awaiting, make_customer):
        for _ in range(3):
            awaiting(make_customer(topics=["history"]))

        result = engine.generation.scan(batch_size=2)

        assert result.processed == 2
        assert EmailQueueItem.query.filter_by(status=QueueStatus.AWAITING_GENERATION).count() == 1

    def test_item_in_backoff_is_not_picked_up(self, engine, awaiting):
        item = awaiting(retry_count=1, next_attempt_at=utcnow() + timedelta(minutes=10))

        result = engine.generation.scan()

        assert result.processed == 0
        assert reload(item.id).status == QueueStatus.AWAITING_GENERATION

    def test_item_whose_backoff_elapsed_is_picked_up(self, engine, awaiting):
        item = awaiting(retry_count=1, next_attempt_at=utcnow() - timedelta(seconds=1))

        engine.generation.scan()

        assert reload(item.id).status == QueueStatus.PENDING_REVIEW

    def test_one_failure_does_not_stop_the_scan(self, engine, awaiting, make_customer):
        broken = awaiting(make_customer(status="inactive"))
        healthy = awaiting()

        result = engine.generation.scan()

        assert result.processed == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert reload(broken.id).status == QueueStatus.GENERATION_FAILED
        assert reload(healthy.id).status == QueueStatus.PENDING_REVIEW

    def test_item_changed_during_generation_retires_the_template(self, engine, awaiting):
        item = awaiting()
        service = engine.generation
        generate = service._generate

        def generate_then_item_changes(*args):
            outcome = generate(*args)
            stored = reload(item.id)
            stored.status = QueueStatus.GENERATION_FAILED
            db.session.commit()
            return outcome

        with patch.object(service, "_generate", side_effect=generate_then_item_changes):
            result = service.scan()

        assert result.conflicts == 1
        assert result.succeeded == 0
        template = EmailTemplate.query.filter_by(template_type=TemplateType.AI_GENERATED).one()
        assert template.status == TemplateStatus.INACTIVE
        assert service.review_queue() == []
        assert reload(item.id).status == QueueStatus.GENERATION_FAILED


# ==============================================================================
# RETRY RULE
# ==============================================================================


class TestRetryRule:

    def test_first_failure_backs_off(self, engine, awaiting):
        item = awaiting()
        service = service_with(engine, failing_generator(), template_retry_delay_minutes=10)

        before = utcnow()
        service.scan()

        stored = reload(item.id)
        assert stored.status == QueueStatus.AWAITING_GENERATION
        assert stored.retry_count == 1
        assert stored.last_error == "model offline"
        assert before + timedelta(minutes=10) <= stored.next_attempt_at <= utcnow() + timedelta(minutes=10)

    def test_backoff_doubles(self, engine, awaiting):
        item = awaiting(retry_count=1)
        service = service_with(engine, failing_generator(), template_retry_delay_minutes=10)

        before = utcnow()
        service.scan()

        stored = reload(item.id)
        assert stored.retry_count == 2
        assert stored.next_attempt_at >= before + timedelta(minutes=20)

    def test_last_attempt_fails_permanently(self, engine, awaiting):
        item = awaiting(retry_count=2)
        service = service_with(engine, failing_generator(), max_template_retries=3)

        service.scan()

        stored = reload(item.id)
        assert stored.status == QueueStatus.GENERATION_FAILED
        assert stored.retry_count == 3
        assert stored.next_attempt_at is None

    def test_retry_not_allowed_fails_immediately(self, engine, awaiting, make_customer):
        item = awaiting(make_customer(status="blacklisted"))

        engine.generation.scan()

        stored = reload(item.id)
        assert stored.status == QueueStatus.GENERATION_FAILED
        assert stored.retry_count == 1

    def test_predefined_pipeline_cannot_generate(self, engine, make_customer, make_item):
        item = make_item(make_customer(), status=QueueStatus.AWAITING_GENERATION,
                         pipeline_name="WELCOME_NEW_MEMBER", template_code=None)

        engine.generation.scan()

        stored = reload(item.id)
        assert stored.status == QueueStatus.GENERATION_FAILED
        assert "does not generate content" in stored.last_error

    def test_unknown_pipeline_cannot_generate(self, engine, make_customer, make_item):
        item = make_item(make_customer(), status=QueueStatus.AWAITING_GENERATION,
                         pipeline_name="RETIRED_PIPELINE", template_code=None)

        engine.generation.scan()

        assert reload(item.id).status == QueueStatus.GENERATION_FAILED

    def test_unexpected_generator_error_is_retried(self, engine, awaiting):
        item = awaiting()
        service = service_with(engine, failing_generator(RuntimeError("boom")))

        service.scan()

        stored = reload(item.id)
        assert stored.status == QueueStatus.AWAITING_GENERATION
        assert "boom" in stored.last_error

    def test_generation_timeout_is_retried(self, engine, awaiting):
        def slow(prompt, recipient_context):
            time.sleep(0.5)
            return GeneratedContent(subject="Hi {{ customerName }}", html="<p>{{ customerName }}</p>")

        generator = Mock()
        generator.generate.side_effect = slow
        item = awaiting()
        service = service_with(engine, generator, generation_timeout_seconds=0.05)

        result = service.scan()

        assert result.failed == 1
        stored = reload(item.id)
        assert stored.status == QueueStatus.AWAITING_GENERATION
        assert "Timed out" in stored.last_error

    def test_record_failure_directly(self, engine, awaiting):
        item = awaiting()

        engine.generation.record_failure(item.id, 0, GenerationOutcome.failure("bad", retry_allowed=False))

        assert reload(item.id).status == QueueStatus.GENERATION_FAILED


# ==============================================================================
# REVIEW WORKFLOW
# ==============================================================================


class TestReview:

    def generated(self, engine, awaiting, count=1):
        items = [awaiting() for _ in range(count)]
        engine.generation.scan()
        return [reload(i.id) for i in items]

    def test_review_queue(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]

        queue = engine.generation.review_queue()

        assert len(queue) == 1
        assert queue[0]["template_code"] == item.template_code
        assert queue[0]["queue_item_count"] == 1
        assert queue[0]["queue_items"][0]["id"] == item.id

    def test_approve_schedules_items(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()

        result = engine.generation.approve(template.template_id, scheduled_at="2030-01-01T09:00:00+07:00")

        assert result["scheduled_items"] == 1
        assert result["status"] == "APPROVED"
        stored = reload(item.id)
        assert stored.status == QueueStatus.SCHEDULED
        assert stored.scheduled_date.isoformat() == "2030-01-01T02:00:00"
        assert db.session.get(EmailTemplate, template.template_id).status == TemplateStatus.APPROVED

    def test_approve_defaults_to_now(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()

        engine.generation.approve(template.template_id)

        assert reload(item.id).scheduled_date <= utcnow()

    def test_approve_leaves_other_items_alone(self, engine, awaiting, make_customer, make_item):
        item, other = self.generated(engine, awaiting, count=2)
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()
        closed = make_item(make_customer(), status=QueueStatus.REJECTED, pipeline_name="DAILY_MOTIVATION",
                           template_code=item.template_code, scheduled_date=utcnow() + timedelta(days=3))
        closed_date = closed.scheduled_date

        result = engine.generation.approve(template.template_id, scheduled_at="2030-01-01T00:00:00Z")

        assert result["scheduled_items"] == 1
        assert reload(item.id).status == QueueStatus.SCHEDULED
        assert reload(other.id).status == QueueStatus.PENDING_REVIEW
        assert reload(other.id).template_code != item.template_code
        assert reload(closed.id).status == QueueStatus.REJECTED
        assert reload(closed.id).scheduled_date == closed_date

    def test_topics_with_markup_reach_the_reader_escaped(self, engine, transport, make_customer):
        make_customer(name="Mai", topics=["c{{", "<b>poetry</b>"])
        engine.orchestrator.execute("DAILY_MOTIVATION")

        result = engine.generation.scan()
        item = EmailQueueItem.query.one()
        assert result.succeeded == 1
        assert item.status == QueueStatus.PENDING_REVIEW

        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()
        engine.generation.approve(template.template_id)
        engine.dispatch.scan()

        assert reload(item.id).status == QueueStatus.SENT
        html = transport.sent[0].html_body
        assert "c{{" in html
        assert "&lt;b&gt;poetry&lt;/b&gt;" in html
        assert "<b>poetry</b>" in transport.sent[0].text_body

    def test_reject_with_reason(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()

        result = engine.generation.reject(template.template_id, reason="off-tone")

        assert result["rejected_items"] == 1
        stored = reload(item.id)
        assert stored.status == QueueStatus.REJECTED
        assert stored.last_error == "off-tone"
        template = db.session.get(EmailTemplate, template.template_id)
        assert template.status == TemplateStatus.INACTIVE
        assert template.review_notes == "off-tone"

    def test_reject_default_reason(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()

        engine.generation.reject(template.template_id)

        assert reload(item.id).last_error == "Content not approved"

    def test_approve_twice_is_refused(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()
        engine.generation.approve(template.template_id)

        with pytest.raises(ValidationFailed):
            engine.generation.approve(template.template_id)

    def test_approve_unknown_template(self, engine):
        with pytest.raises(NotFound):
            engine.generation.approve(12345)

    def test_approve_predefined_template_is_refused(self, engine):
        template = engine.generation.templates.get_by_code("WELCOME_NEW_MEMBER")
        with pytest.raises(ValidationFailed):
            engine.generation.approve(template.template_id)

    def test_approve_invalid_schedule(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()

        with pytest.raises(ValidationFailed):
            engine.generation.approve(template.template_id, scheduled_at="next tuesday")
        assert reload(item.id).status == QueueStatus.PENDING_REVIEW

    def test_approve_template_with_empty_html(self, engine, awaiting):
        item = self.generated(engine, awaiting)[0]
        template = EmailTemplate.query.filter_by(template_code=item.template_code).one()
        template.html_template = ""
        db.session.commit()

        with pytest.raises(ValidationFailed):
            engine.generation.approve(template.template_id)


# ==============================================================================
# STATISTICS AND OPERATOR RETRY
# ==============================================================================


class TestStatisticsAndRetry:

    def test_queue_statistics(self, engine, awaiting):
        awaiting()
        awaiting()
        engine.generation.scan(batch_size=1)

        stats = engine.generation.queue_statistics()

        assert stats["pending"]["awaiting_generation"] == 1
        assert stats["pending"]["pending_review"] == 1
        assert stats["pending"]["templates_waiting_review"] == 1
        assert stats["by_pipeline"]["DAILY_MOTIVATION"] == {"AWAITING_GENERATION": 1, "PENDING_REVIEW": 1}
        assert stats["templates"]["by_type"]["predefined"] == 2
        assert stats["configuration"]["max_retries"] == 3
        assert stats["is_in_progress"] is False

    def test_retry_generation(self, engine, awaiting):
        item = awaiting(retry_count=3)
        item.status = QueueStatus.GENERATION_FAILED
        db.session.commit()

        result = engine.generation.retry_generation(item.id)

        assert result["status"] == "AWAITING_GENERATION"
        assert result["retry_count"] == 3

    def test_retry_generation_only_for_failed_items(self, engine, awaiting):
        item = awaiting()
        with pytest.raises(InvalidTransition):
            engine.generation.retry_generation(item.id)

    def test_retry_generation_unknown_item(self, engine):
        with pytest.raises(NotFound):
            engine.generation.retry_generation(999)
