"""
Email dispatch scheduler.

Each scan sends SCHEDULED items whose time has come, earliest first. An item
whose recipient or template cannot be used fails without a send attempt.
SEND_FAILED items stay failed until an operator requeues them.
"""
import time

from jinja2 import TemplateError

from mailpipe.datetime_utils import isoformat_utc, to_naive_utc, utcnow
from mailpipe.exceptions import (
    InvalidTransition,
    NotFound,
    StaleTransition,
    TransientSendFailure,
    ValidationFailed,
)
from mailpipe.logging_config import ScanContext, get_logger
from mailpipe.models import QueueStatus, db
from mailpipe.services.email_transport import OutboundMessage, SendOutcome
from mailpipe.services.single_flight import SingleFlight
from mailpipe.services.template_generation import ScanResult
from mailpipe.services.timeouts import run_with_timeout

logger = get_logger(__name__)


def recipient_defaults(customer):
    """Variables every template may use; queue item variables override these."""
    return {
        "customerId": customer.customer_id,
        "customerName": customer.name or "Reader",
        "customerEmail": customer.email,
        "customerCompany": customer.company or "",
    }


class EmailDispatchService:
    SCAN_KEY = "email_dispatch_scan"

    def __init__(self, settings, queue_items, templates, customers, transport, in_flight=None):
        self.settings = settings
        self.queue_items = queue_items
        self.templates = templates
        self.customers = customers
        self.transport = transport
        self.in_flight = in_flight or SingleFlight("email_dispatch")

    def is_in_progress(self):
        return self.in_flight.is_held(self.SCAN_KEY)

    def scan(self, batch_size=None) -> ScanResult:
        """Send one batch of due items. Skipped when a dispatch scan is already running."""
        if not self.in_flight.try_acquire(self.SCAN_KEY):
            logger.info("Email dispatch scan already in progress, skipping")
            return ScanResult(scan=self.SCAN_KEY, skipped=True)

        result = ScanResult(scan=self.SCAN_KEY)
        try:
            limit = batch_size or self.settings.dispatch_batch_size
            with ScanContext(self.SCAN_KEY, batch_size=limit, transport=self.transport.name) as ctx:
                item_ids = [item.id for item in self.queue_items.due_for_dispatch(limit)]

                # Each chunk is checked and rendered right before it is sent
                chunk_size = self.settings.dispatch_chunk_size
                for start in range(0, len(item_ids), chunk_size):
                    if start and self.settings.dispatch_item_delay_seconds:
                        time.sleep(self.settings.dispatch_item_delay_seconds)
                    ready = self._prepare_chunk(result, item_ids[start:start + chunk_size])
                    if ready:
                        self._send_chunk(result, ready)
                result.duration_ms = ctx.elapsed_ms
        finally:
            self.in_flight.release(self.SCAN_KEY)

        logger.info("Email dispatch scan finished", processed=result.processed, sent=result.succeeded,
                    failed=result.failed, conflicts=result.conflicts)
        return result

    def prepare(self, item_id) -> OutboundMessage:
        """
        Render the message for one item.

        Raises:
            ValidationFailed: If the recipient or template cannot be used
        """
        item = self.queue_items.get_or_raise(item_id)

        customer = self.customers.get(item.customer_id)
        if customer is None:
            raise ValidationFailed(f"Customer {item.customer_id} not found")
        if not customer.is_active():
            raise ValidationFailed(f"Customer {item.customer_id} is {customer.status}")

        template = self.templates.get_by_code(item.template_code)
        if template is None:
            raise ValidationFailed(f"Template '{item.template_code}' not found")
        if not template.can_be_used_for_sending():
            raise ValidationFailed(
                f"Template '{item.template_code}' cannot be used for sending (status {template.status.value})"
            )

        variables = {**recipient_defaults(customer), **(item.variables or {})}
        missing = template.validate_variable_values(variables)
        if missing:
            raise ValidationFailed("Template variables missing", missing)

        rendered = template.render(variables)
        return OutboundMessage(
            to=customer.email,
            subject=rendered["subject"],
            html_body=rendered["html"],
            text_body=rendered["text"] or None,
            tag=item.tag,
            metadata={"queue_item_id": str(item.id), "pipeline": item.pipeline_name},
        )

    def _prepare_chunk(self, result, item_ids):
        ready = []
        for item_id in item_ids:
            result.processed += 1
            try:
                ready.append((item_id, self.prepare(item_id)))
            except (ValidationFailed, TemplateError) as e:
                db.session.rollback()
                self._record(result, item_id, self.mark_failed(item_id, str(e)))
            except Exception as e:
                db.session.rollback()
                result.failed += 1
                result.errors.append({"item_id": item_id, "error": str(e)})
                logger.error("Could not prepare queue item", item_id=item_id, error=str(e), exc_info=True)
        return ready

    def _send_chunk(self, result, chunk):
        messages = [message for _, message in chunk]
        try:
            outcomes = run_with_timeout(
                self.transport.send_batch,
                self.settings.send_timeout_seconds,
                messages,
                timeout_error=TransientSendFailure,
            )
        except Exception as e:
            # Anything the transport raises fails the whole chunk, not the scan
            logger.warning("Send failed for chunk", count=len(chunk), error=str(e),
                           transient=isinstance(e, TransientSendFailure), exc_info=True)
            for item_id, _ in chunk:
                self._record(result, item_id, self.mark_failed(item_id, str(e)))
            return

        outcomes = list(outcomes or [])
        if len(outcomes) < len(chunk):
            logger.error("Transport returned fewer outcomes than messages", sent=len(chunk),
                         outcomes=len(outcomes), transport=self.transport.name)
            outcomes += [SendOutcome.failed("MISSING_RESPONSE", "No send outcome returned for this message")
                         for _ in range(len(chunk) - len(outcomes))]

        for (item_id, message), outcome in zip(chunk, outcomes):
            if outcome.success:
                self._record(result, item_id, self.mark_sent(item_id, outcome.provider_message_id), sent=True)
            else:
                error = f"{outcome.error_code}: {outcome.error_message}" if outcome.error_code else outcome.error_message
                self._record(result, item_id, self.mark_failed(item_id, error or "Send failed"))

    @staticmethod
    def _record(result, item_id, status, sent=False):
        if status is None:
            result.conflicts += 1
        elif sent:
            result.succeeded += 1
        else:
            result.failed += 1
            result.errors.append({"item_id": item_id, "error": status})

    def mark_sent(self, item_id, provider_message_id):
        try:
            self.queue_items.transition(item_id, QueueStatus.SCHEDULED, QueueStatus.SENT,
                                        provider_message_id=provider_message_id, sent_at=utcnow(),
                                        last_error=None)
        except (StaleTransition, NotFound) as e:
            logger.error("Sent item changed status before it could be marked", item_id=item_id, error=str(e))
            return None
        return QueueStatus.SENT.value

    def mark_failed(self, item_id, error):
        """Move to SEND_FAILED. Returns the error, or None if the item changed concurrently."""
        try:
            self.queue_items.transition(item_id, QueueStatus.SCHEDULED, QueueStatus.SEND_FAILED,
                                        increment_retry=True, last_error=error)
        except (StaleTransition, NotFound) as e:
            logger.warning("Item changed status before failure could be recorded", item_id=item_id, error=str(e))
            return None
        logger.warning("Email send failed", item_id=item_id, error=error)
        return error

    def requeue(self, item_id, scheduled_at=None):
        """
        Operator override: put a SEND_FAILED item back on the schedule.

        Raises:
            NotFound: If the item does not exist
            InvalidTransition: If the item is not SEND_FAILED
            ValidationFailed: If the item has used up MAX_SEND_RETRIES
        """
        item = self.queue_items.get_or_raise(item_id)
        if item.status != QueueStatus.SEND_FAILED:
            raise InvalidTransition(item.status.value, QueueStatus.SCHEDULED.value)

        max_retries = self.settings.max_send_retries
        if item.retry_count >= max_retries:
            raise ValidationFailed(
                f"Queue item {item_id} has failed {item.retry_count} times; max send retries is {max_retries}"
            )
        try:
            scheduled_at = to_naive_utc(scheduled_at) or utcnow()
        except ValueError as e:
            raise ValidationFailed(f"Invalid scheduled_at: {e}") from None

        self.queue_items.transition(item_id, QueueStatus.SEND_FAILED, QueueStatus.SCHEDULED, override=True,
                                    scheduled_date=scheduled_at)
        logger.warning("Operator requeued failed send", item_id=item_id, retry_count=item.retry_count,
                       scheduled_at=isoformat_utc(scheduled_at))
        return self.queue_items.get(item_id).to_dict()
