"""
Data access for queue items, templates, execution logs, customers and books.

Every write commits its own transaction. Status changes on queue items go
through QueueItemRepository.transition(), which is a compare-and-set on the
current status so two writers never overwrite each other.
"""
from datetime import timedelta

from sqlalchemy import case, delete, func, or_, update

from mailpipe.datetime_utils import utcnow
from mailpipe.exceptions import NotFound, StaleTransition
from mailpipe.logging_config import get_logger
from mailpipe.models import (
    Book,
    Customer,
    EmailQueueItem,
    EmailTemplate,
    ExecutionStatus,
    PipelineExecutionLog,
    QueueStatus,
    TemplateStatus,
    TemplateType,
    db,
)
from mailpipe.queue.state_machine import check_transition

logger = get_logger(__name__)


class QueueItemRepository:
    """Email queue items."""

    def bulk_insert(self, drafts):
        """
        Insert queue items in one transaction.

        Args:
            drafts: Iterable of QueueItemDraft

        Returns:
            list[EmailQueueItem]: The inserted rows
        """
        items = [
            EmailQueueItem(
                customer_id=d.customer_id,
                pipeline_name=d.pipeline_name,
                status=d.status,
                template_code=d.template_code,
                scheduled_date=d.scheduled_date,
                context_data=d.context_data or {},
                variables=d.variables or {},
                tag=d.tag,
            )
            for d in drafts
        ]
        if not items:
            return []
        try:
            db.session.add_all(items)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Queue items inserted", count=len(items), pipeline=items[0].pipeline_name)
        return items

    def get(self, item_id):
        return db.session.get(EmailQueueItem, item_id)

    def get_or_raise(self, item_id):
        item = self.get(item_id)
        if item is None:
            raise NotFound("Queue item", item_id)
        return item

    def by_status(self, status, limit=50, offset=0):
        """Items in `status`, oldest first."""
        return (
            EmailQueueItem.query
            .filter(EmailQueueItem.status == status)
            .order_by(EmailQueueItem.created_at.asc(), EmailQueueItem.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def due_for_generation(self, limit, now=None):
        """AWAITING_GENERATION items whose backoff has elapsed, oldest first."""
        now = now or utcnow()
        return (
            EmailQueueItem.query
            .filter(
                EmailQueueItem.status == QueueStatus.AWAITING_GENERATION,
                or_(EmailQueueItem.next_attempt_at.is_(None), EmailQueueItem.next_attempt_at <= now),
            )
            .order_by(EmailQueueItem.created_at.asc(), EmailQueueItem.id.asc())
            .limit(limit)
            .all()
        )

    def due_for_dispatch(self, limit, now=None):
        """SCHEDULED items whose scheduled date has passed, soonest first."""
        now = now or utcnow()
        return (
            EmailQueueItem.query
            .filter(
                EmailQueueItem.status == QueueStatus.SCHEDULED,
                EmailQueueItem.scheduled_date.isnot(None),
                EmailQueueItem.scheduled_date <= now,
            )
            .order_by(EmailQueueItem.scheduled_date.asc(), EmailQueueItem.id.asc())
            .limit(limit)
            .all()
        )

    def pending_review_for_template(self, template_code):
        return (
            EmailQueueItem.query
            .filter(
                EmailQueueItem.status == QueueStatus.PENDING_REVIEW,
                EmailQueueItem.template_code == template_code,
            )
            .order_by(EmailQueueItem.created_at.asc())
            .all()
        )

    def transition(self, item_id, expected, target, override=False, increment_retry=False, **fields):
        """
        Move an item from `expected` to `target` in a single conditional UPDATE.

        Args:
            item_id: Queue item id
            expected: Status the caller read the item in
            target: New status
            override: Allow operator re-open paths
            increment_retry: Add one to retry_count in the same statement
            **fields: Other columns to set

        Raises:
            InvalidTransition: If the state machine forbids the change
            NotFound: If the item does not exist
            StaleTransition: If the item is no longer in `expected`
        """
        target = check_transition(expected, target, override=override)
        expected = QueueStatus(expected) if not isinstance(expected, QueueStatus) else expected

        values = dict(fields)
        values["status"] = target
        values["updated_at"] = utcnow()
        if increment_retry:
            values["retry_count"] = EmailQueueItem.retry_count + 1

        stmt = (
            update(EmailQueueItem)
            .where(EmailQueueItem.id == item_id, EmailQueueItem.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount == 0:
            db.session.rollback()
            if db.session.get(EmailQueueItem, item_id) is None:
                raise NotFound("Queue item", item_id)
            raise StaleTransition(item_id, expected.value)

        db.session.commit()
        logger.info(
            "Queue item transitioned",
            item_id=item_id,
            from_status=expected.value,
            to_status=target.value,
            override=override,
        )

    def counts_by_status(self, pipeline_name=None):
        query = db.session.query(EmailQueueItem.status, func.count(EmailQueueItem.id))
        if pipeline_name:
            query = query.filter(EmailQueueItem.pipeline_name == pipeline_name)
        counts = {status.value: 0 for status in QueueStatus}
        for status, count in query.group_by(EmailQueueItem.status).all():
            counts[status.value] = count
        return counts

    def counts_by_pipeline(self):
        rows = (
            db.session.query(EmailQueueItem.pipeline_name, EmailQueueItem.status, func.count(EmailQueueItem.id))
            .group_by(EmailQueueItem.pipeline_name, EmailQueueItem.status)
            .all()
        )
        result = {}
        for pipeline_name, status, count in rows:
            result.setdefault(pipeline_name, {})[status.value] = count
        return result

    def recent_customer_ids(self, pipeline_name, since, tag=None):
        """Customers with an item for `pipeline_name` created at or after `since`."""
        query = db.session.query(EmailQueueItem.customer_id).filter(
            EmailQueueItem.pipeline_name == pipeline_name,
            EmailQueueItem.created_at >= since,
        )
        if tag is not None:
            query = query.filter(EmailQueueItem.tag == tag)
        return {row[0] for row in query.distinct().all()}

    def customer_ids_with_tag(self, pipeline_name, tag):
        rows = (
            db.session.query(EmailQueueItem.customer_id)
            .filter(EmailQueueItem.pipeline_name == pipeline_name, EmailQueueItem.tag == tag)
            .distinct()
            .all()
        )
        return {row[0] for row in rows}


class TemplateRepository:
    """Email templates."""

    def get(self, template_id):
        return db.session.get(EmailTemplate, template_id)

    def get_or_raise(self, template_id):
        template = self.get(template_id)
        if template is None:
            raise NotFound("Template", template_id)
        return template

    def get_by_code(self, template_code):
        if not template_code:
            return None
        return EmailTemplate.query.filter_by(template_code=template_code).first()

    def create(self, **fields):
        template = EmailTemplate(**fields)
        try:
            db.session.add(template)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Template created", template_code=template.template_code,
                    template_type=template.template_type.value, status=template.status.value)
        return template

    def update_status(self, template, status, review_notes=None):
        template.status = status
        if review_notes is not None:
            template.review_notes = review_notes
        template.updated_at = utcnow()
        db.session.commit()
        return template

    def waiting_review(self):
        return (
            EmailTemplate.query
            .filter(EmailTemplate.status == TemplateStatus.WAIT_REVIEW)
            .order_by(EmailTemplate.created_at.asc())
            .all()
        )

    def counts(self):
        """Template counts by type and status."""
        rows = (
            db.session.query(EmailTemplate.template_type, EmailTemplate.status, func.count(EmailTemplate.template_id))
            .group_by(EmailTemplate.template_type, EmailTemplate.status)
            .all()
        )
        result = {
            "total": 0,
            "by_type": {t.value: 0 for t in TemplateType},
            "by_status": {s.value: 0 for s in TemplateStatus},
        }
        for template_type, status, count in rows:
            result["total"] += count
            result["by_type"][template_type.value] += count
            result["by_status"][status.value] += count
        return result


class ExecutionLogRepository:
    """Pipeline execution audit rows."""

    def start(self, pipeline_name, execution_data=None, execution_step="CREATE_QUEUE_ITEMS"):
        log = PipelineExecutionLog(
            pipeline_name=pipeline_name,
            execution_step=execution_step,
            status=ExecutionStatus.IN_PROGRESS,
            execution_data=execution_data or {},
        )
        try:
            db.session.add(log)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return log

    def close(self, log_id, status, execution_time_ms, queue_items_created=0, execution_data=None,
              error_message=None):
        """Close an IN_PROGRESS log as SUCCESS or FAILED. A log is closed once."""
        log = db.session.get(PipelineExecutionLog, log_id)
        if log is None:
            raise NotFound("Execution log", log_id)
        if log.is_completed():
            logger.warning("Execution log already closed", log_id=log_id, status=log.status.value)
            return log

        log.status = status
        log.execution_time_ms = execution_time_ms
        log.queue_items_created = queue_items_created
        log.error_message = error_message
        if execution_data is not None:
            log.execution_data = {**(log.execution_data or {}), **execution_data}
        db.session.commit()
        return log

    def recent(self, pipeline_name=None, limit=10):
        query = PipelineExecutionLog.query
        if pipeline_name:
            query = query.filter(PipelineExecutionLog.pipeline_name == pipeline_name)
        return query.order_by(PipelineExecutionLog.created_at.desc(), PipelineExecutionLog.id.desc()).limit(limit).all()

    def paginate(self, pipeline_name=None, page=1, per_page=20):
        """Newest-first page of logs plus the total row count."""
        query = PipelineExecutionLog.query
        if pipeline_name:
            query = query.filter(PipelineExecutionLog.pipeline_name == pipeline_name)
        total = query.count()
        logs = (
            query.order_by(PipelineExecutionLog.created_at.desc(), PipelineExecutionLog.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        return logs, total

    def aggregates(self, pipeline_name):
        """Totals for one pipeline's closed and open runs."""
        log = PipelineExecutionLog
        row = (
            db.session.query(
                func.count(log.id),
                func.sum(case((log.status == ExecutionStatus.SUCCESS, 1), else_=0)),
                func.sum(case((log.status == ExecutionStatus.FAILED, 1), else_=0)),
                func.avg(log.execution_time_ms),
                func.sum(log.queue_items_created),
                func.max(log.created_at),
            )
            .filter(log.pipeline_name == pipeline_name)
            .one()
        )
        total, successful, failed, avg_ms, items_created, last_execution = row
        return {
            "total": total or 0,
            "successful": int(successful or 0),
            "failed": int(failed or 0),
            "average_duration_ms": float(avg_ms) if avg_ms is not None else 0.0,
            "items_created": int(items_created or 0),
            "last_execution": last_execution,
        }

    def overall_counts(self):
        rows = (
            db.session.query(PipelineExecutionLog.status, func.count(PipelineExecutionLog.id))
            .group_by(PipelineExecutionLog.status)
            .all()
        )
        counts = {s.value: 0 for s in ExecutionStatus}
        for status, count in rows:
            counts[status.value] = count
        return counts

    def purge_closed_before(self, cutoff):
        """Delete SUCCESS/FAILED logs created before `cutoff`. Returns the row count."""
        stmt = (
            delete(PipelineExecutionLog)
            .where(
                PipelineExecutionLog.created_at < cutoff,
                PipelineExecutionLog.status.in_([ExecutionStatus.SUCCESS, ExecutionStatus.FAILED]),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.session.execute(stmt)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return result.rowcount


class CustomerRepository:
    """Recipients."""

    def get(self, customer_id):
        return db.session.get(Customer, customer_id)

    def new_active_since(self, since, exclude_ids=(), limit=50):
        """Active customers created at or after `since`, oldest first."""
        query = Customer.query.filter(Customer.status == "active", Customer.created_at >= since)
        if exclude_ids:
            query = query.filter(Customer.customer_id.notin_(list(exclude_ids)))
        return query.order_by(Customer.created_at.asc()).limit(limit).all()

    def active_with_topics(self, exclude_ids=(), limit=20):
        customers = (
            Customer.query
            .filter(Customer.status == "active")
            .order_by(Customer.created_at.asc())
            .all()
        )
        excluded = set(exclude_ids)
        # JSON emptiness is not portable across SQLite/PostgreSQL; filter in Python
        selected = [c for c in customers if c.customer_id not in excluded and c.topics()]
        return selected[:limit]

    def active_interested_in(self, topics, exclude_ids=(), limit=50):
        """Active customers with at least one of `topics` in their interests."""
        wanted = {str(t).strip().lower() for t in topics if str(t).strip()}
        if not wanted:
            return []
        excluded = set(exclude_ids)
        selected = []
        for customer in Customer.query.filter(Customer.status == "active").order_by(Customer.customer_id.asc()):
            if customer.customer_id in excluded:
                continue
            if wanted & set(customer.topics()):
                selected.append(customer)
                if len(selected) >= limit:
                    break
        return selected

    def recently_active(self, days=30, exclude_ids=(), limit=50):
        since = utcnow() - timedelta(days=days)
        query = Customer.query.filter(
            Customer.status == "active",
            or_(Customer.updated_at >= since, Customer.created_at >= since),
        )
        if exclude_ids:
            query = query.filter(Customer.customer_id.notin_(list(exclude_ids)))
        return query.order_by(Customer.updated_at.desc()).limit(limit).all()


class BookRepository:
    """Books announced by NEW_BOOK_RELEASE."""

    def get(self, book_id):
        return db.session.get(Book, book_id)

    def latest_published(self):
        return (
            Book.query
            .filter(Book.status == "published")
            .order_by(Book.created_at.desc(), Book.book_id.desc())
            .first()
        )

    def recent_published(self, limit=3):
        return (
            Book.query
            .filter(Book.status == "published")
            .order_by(Book.created_at.desc(), Book.book_id.desc())
            .limit(limit)
            .all()
        )
