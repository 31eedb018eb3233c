"""
Template generation scheduler.

Each scan picks up AWAITING_GENERATION items, asks the owning AI pipeline to
generate a template and moves the item to PENDING_REVIEW. Failed attempts are
retried with exponential backoff until MAX_TEMPLATE_RETRIES attempts have been
made, after which the item is GENERATION_FAILED.

Generated templates wait for a human: approve() schedules every item that uses
the template, reject() closes them.
"""
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import List

from mailpipe.datetime_utils import isoformat_utc, to_naive_utc, utcnow
from mailpipe.exceptions import InvalidTransition, NotFound, StaleTransition, ValidationFailed
from mailpipe.logging_config import ScanContext, get_logger
from mailpipe.models import QueueStatus, TemplateStatus, db
from mailpipe.pipelines import registry
from mailpipe.pipelines.base import AiGeneratedPipeline, GenerationOutcome
from mailpipe.services.single_flight import SingleFlight

logger = get_logger(__name__)

DEFAULT_REJECTION_REASON = "Content not approved"


@dataclass
class ScanResult:
    scan: str
    skipped: bool = False
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: List[dict] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self):
        return asdict(self)


class TemplateGenerationService:
    SCAN_KEY = "template_generation_scan"

    def __init__(self, settings, queue_items, templates, customers, books, content_generator=None,
                 in_flight=None):
        self.settings = settings
        self.queue_items = queue_items
        self.templates = templates
        self.customers = customers
        self.books = books
        self.content_generator = content_generator
        self.in_flight = in_flight or SingleFlight("template_generation")

    def is_in_progress(self):
        return self.in_flight.is_held(self.SCAN_KEY)

    def scan(self, batch_size=None) -> ScanResult:
        """
        Process one batch of items awaiting generation.

        Returns a skipped result without touching the queue when another scan
        is still running.
        """
        if not self.in_flight.try_acquire(self.SCAN_KEY):
            logger.info("Template generation scan already in progress, skipping")
            return ScanResult(scan=self.SCAN_KEY, skipped=True)

        result = ScanResult(scan=self.SCAN_KEY)
        try:
            limit = batch_size or self.settings.generation_batch_size
            with ScanContext(self.SCAN_KEY, batch_size=limit) as ctx:
                items = self.queue_items.due_for_generation(limit)
                work = [(item.id, item.pipeline_name, item.customer_id, dict(item.context_data or {}),
                         item.retry_count) for item in items]

                for index, (item_id, pipeline_name, customer_id, context_data, retry_count) in enumerate(work):
                    if index and self.settings.generation_item_delay_seconds:
                        time.sleep(self.settings.generation_item_delay_seconds)
                    result.processed += 1
                    try:
                        if self.process_item(item_id, pipeline_name, customer_id, context_data, retry_count):
                            result.succeeded += 1
                        else:
                            result.failed += 1
                    except StaleTransition as e:
                        result.conflicts += 1
                        logger.warning("Queue item changed during generation", item_id=item_id, error=str(e))
                    except Exception as e:
                        db.session.rollback()
                        result.failed += 1
                        result.errors.append({"item_id": item_id, "error": str(e)})
                        logger.error("Template generation crashed for item", item_id=item_id,
                                     error=str(e), exc_info=True)
                result.duration_ms = ctx.elapsed_ms
        finally:
            self.in_flight.release(self.SCAN_KEY)

        logger.info("Template generation scan finished", processed=result.processed,
                    succeeded=result.succeeded, failed=result.failed, conflicts=result.conflicts)
        return result

    def process_item(self, item_id, pipeline_name, customer_id, context_data, retry_count):
        """Generate content for one item. Returns True when it reached PENDING_REVIEW."""
        outcome = self._generate(pipeline_name, customer_id, context_data)

        if outcome.succeeded:
            fields = dict(template_code=outcome.template_code, last_error=None, next_attempt_at=None)
            if outcome.next_scheduled_date:
                fields["scheduled_date"] = outcome.next_scheduled_date
            try:
                self.queue_items.transition(
                    item_id,
                    QueueStatus.AWAITING_GENERATION,
                    QueueStatus.PENDING_REVIEW,
                    **fields,
                )
            except StaleTransition:
                self.retire_orphaned_template(outcome.template_code, item_id)
                raise
            return True

        self.record_failure(item_id, retry_count, outcome)
        return False

    def retire_orphaned_template(self, template_code, item_id):
        """Keep a template whose item moved on out of the review queue."""
        db.session.rollback()
        template = self.templates.get_by_code(template_code)
        if template is None or not template.is_waiting_review():
            return
        self.templates.update_status(template, TemplateStatus.INACTIVE,
                                     review_notes=f"Queue item {item_id} changed status during generation")
        logger.warning("Generated template retired without review", template_code=template_code, item_id=item_id)

    def _generate(self, pipeline_name, customer_id, context_data) -> GenerationOutcome:
        try:
            pipeline = registry.create_pipeline(
                pipeline_name,
                queue_items=self.queue_items,
                templates=self.templates,
                customers=self.customers,
                books=self.books,
                settings=self.settings,
                content_generator=self.content_generator,
            )
        except NotFound as e:
            return GenerationOutcome.failure(str(e), retry_allowed=False)

        if not isinstance(pipeline, AiGeneratedPipeline):
            return GenerationOutcome.failure(
                f"Pipeline '{pipeline_name}' does not generate content", retry_allowed=False
            )

        try:
            return pipeline.generate_content(customer_id, context_data)
        except Exception as e:
            db.session.rollback()
            logger.warning("Content generation raised", pipeline=pipeline_name, customer_id=customer_id,
                           error=str(e), exc_info=True)
            return GenerationOutcome.failure(f"{type(e).__name__}: {e}", retry_allowed=True)

    def record_failure(self, item_id, retry_count, outcome):
        """
        Apply the retry rule to a failed attempt.

        The attempt that brings retry_count up to max_template_retries is the
        last one; retry_allowed=False ends it immediately.
        """
        attempts = retry_count + 1
        max_retries = self.settings.max_template_retries

        if outcome.retry_allowed and attempts < max_retries:
            delay = timedelta(minutes=self.settings.template_retry_delay_minutes * 2 ** (attempts - 1))
            next_attempt_at = utcnow() + delay
            self.queue_items.transition(
                item_id,
                QueueStatus.AWAITING_GENERATION,
                QueueStatus.AWAITING_GENERATION,
                increment_retry=True,
                last_error=outcome.error,
                next_attempt_at=next_attempt_at,
            )
            logger.warning("Template generation failed, will retry", item_id=item_id,
                           attempt=attempts, max_retries=max_retries, error=outcome.error,
                           next_attempt_at=isoformat_utc(next_attempt_at))
        else:
            self.queue_items.transition(
                item_id,
                QueueStatus.AWAITING_GENERATION,
                QueueStatus.GENERATION_FAILED,
                increment_retry=True,
                last_error=outcome.error,
                next_attempt_at=None,
            )
            logger.error("Template generation failed permanently", item_id=item_id,
                         attempt=attempts, max_retries=max_retries, retry_allowed=outcome.retry_allowed,
                         error=outcome.error)

    def queue_statistics(self):
        counts = self.queue_items.counts_by_status()
        template_counts = self.templates.counts()
        return {
            "queue": counts,
            "by_pipeline": self.queue_items.counts_by_pipeline(),
            "templates": template_counts,
            "pending": {
                "awaiting_generation": counts[QueueStatus.AWAITING_GENERATION.value],
                "pending_review": counts[QueueStatus.PENDING_REVIEW.value],
                "scheduled": counts[QueueStatus.SCHEDULED.value],
                "templates_waiting_review": template_counts["by_status"][TemplateStatus.WAIT_REVIEW.value],
            },
            "configuration": {
                "batch_size": self.settings.generation_batch_size,
                "max_retries": self.settings.max_template_retries,
                "retry_delay_minutes": self.settings.template_retry_delay_minutes,
                "scan_interval_seconds": self.settings.generation_scan_interval_seconds,
                "timeout_seconds": self.settings.generation_timeout_seconds,
            },
            "is_in_progress": self.is_in_progress(),
        }

    def review_queue(self):
        """Templates waiting for review, each with the items that use it."""
        queue = []
        for template in self.templates.waiting_review():
            items = self.queue_items.pending_review_for_template(template.template_code)
            entry = template.to_dict()
            entry["queue_items"] = [item.to_dict() for item in items]
            entry["queue_item_count"] = len(items)
            queue.append(entry)
        return queue

    def _waiting_template(self, template_id, action):
        template = self.templates.get_or_raise(template_id)
        if not template.is_waiting_review():
            raise ValidationFailed(
                f"Template '{template.template_code}' is {template.status.value}; "
                f"only WAIT_REVIEW templates can be {action}"
            )
        return template

    def approve(self, template_id, scheduled_at=None):
        """
        Approve a generated template and schedule its items.

        Args:
            template_id: Template to approve
            scheduled_at: Send time for the items (datetime or ISO string); defaults to now

        Raises:
            NotFound: If the template does not exist
            ValidationFailed: If it is not waiting for review or is not valid
        """
        template = self._waiting_template(template_id, "approved")
        errors = template.validate()
        if errors:
            raise ValidationFailed(f"Template '{template.template_code}' is not valid", errors)
        try:
            scheduled_at = to_naive_utc(scheduled_at) or utcnow()
        except ValueError as e:
            raise ValidationFailed(f"Invalid scheduled_at: {e}") from None

        template_code = template.template_code
        self.templates.update_status(template, TemplateStatus.APPROVED)
        item_ids = [item.id for item in self.queue_items.pending_review_for_template(template_code)]

        scheduled, conflicts = 0, []
        for item_id in item_ids:
            try:
                self.queue_items.transition(item_id, QueueStatus.PENDING_REVIEW, QueueStatus.SCHEDULED,
                                            scheduled_date=scheduled_at, last_error=None)
                scheduled += 1
            except StaleTransition as e:
                conflicts.append(str(e))

        logger.info("Template approved", template_id=template_id, template_code=template_code,
                    scheduled_items=scheduled, scheduled_at=isoformat_utc(scheduled_at))
        return {
            "template_id": template_id,
            "template_code": template_code,
            "status": TemplateStatus.APPROVED.value,
            "scheduled_items": scheduled,
            "scheduled_at": isoformat_utc(scheduled_at),
            "conflicts": conflicts,
        }

    def reject(self, template_id, reason=None):
        """Reject a generated template; its items become REJECTED with the reason."""
        reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        template = self._waiting_template(template_id, "rejected")
        template_code = template.template_code
        self.templates.update_status(template, TemplateStatus.INACTIVE, review_notes=reason)
        item_ids = [item.id for item in self.queue_items.pending_review_for_template(template_code)]

        rejected, conflicts = 0, []
        for item_id in item_ids:
            try:
                self.queue_items.transition(item_id, QueueStatus.PENDING_REVIEW, QueueStatus.REJECTED,
                                            last_error=reason)
                rejected += 1
            except StaleTransition as e:
                conflicts.append(str(e))

        logger.info("Template rejected", template_id=template_id, template_code=template_code,
                    rejected_items=rejected, reason=reason)
        return {
            "template_id": template_id,
            "template_code": template_code,
            "status": TemplateStatus.INACTIVE.value,
            "rejected_items": rejected,
            "reason": reason,
            "conflicts": conflicts,
        }

    def retry_generation(self, item_id):
        """Operator override: send a GENERATION_FAILED item back for generation."""
        item = self.queue_items.get_or_raise(item_id)
        if item.status != QueueStatus.GENERATION_FAILED:
            raise InvalidTransition(item.status.value, QueueStatus.AWAITING_GENERATION.value)
        self.queue_items.transition(item.id, QueueStatus.GENERATION_FAILED, QueueStatus.AWAITING_GENERATION,
                                    override=True, next_attempt_at=None)
        logger.warning("Operator re-queued item for generation", item_id=item_id)
        return self.queue_items.get(item_id).to_dict()
