from datetime import timedelta

from mailpipe.datetime_utils import RECIPIENT_TIMEZONE, format_display_date, next_local_time, utcnow
from mailpipe.logging_config import get_logger
from mailpipe.pipelines.base import Pipeline, Recipient
from mailpipe.models import TemplateType

logger = get_logger(__name__)


class WelcomeNewMemberPipeline(Pipeline):
    """Welcome email for customers who joined in the last few days."""

    pipeline_name = "WELCOME_NEW_MEMBER"
    template_type = TemplateType.PREDEFINED
    default_template_code = "WELCOME_NEW_MEMBER"
    empty_message = "No new customers found for welcome email"

    WELCOME_EMAIL_HOUR = 9  # local time in RECIPIENT_TIMEZONE
    NEW_CUSTOMER_DAYS = 3
    EXCLUSION_DAYS = 4
    BATCH_SIZE = 50
    DEFAULT_CUSTOMER_NAME = "New customer"

    def select_target_customers(self):
        now = utcnow()
        joined_since = now - timedelta(days=self.NEW_CUSTOMER_DAYS)
        already_welcomed = self.queue_items.recent_customer_ids(
            self.pipeline_name, now - timedelta(days=self.EXCLUSION_DAYS)
        )
        customers = self.customers.new_active_since(joined_since, exclude_ids=already_welcomed,
                                                    limit=self.BATCH_SIZE)
        logger.info("Selected new customers", pipeline=self.pipeline_name, count=len(customers),
                    excluded=len(already_welcomed))
        return [Recipient.from_customer(c) for c in customers]

    def welcome_email_time(self, now=None):
        """Next 09:00 in the recipients' timezone, today if it has not passed yet."""
        return next_local_time(self.WELCOME_EMAIL_HOUR, RECIPIENT_TIMEZONE, now=now)

    def build_queue_items(self, recipients):
        scheduled_date = self.welcome_email_time()
        return [
            self.make_draft(
                recipient,
                variables={
                    "customerName": recipient.name or self.DEFAULT_CUSTOMER_NAME,
                    "customerEmail": recipient.email,
                    "joinDate": format_display_date(recipient.created_at),
                },
                tag="welcome_new_member",
                scheduled_date=scheduled_date,
            )
            for recipient in recipients
        ]

    def validate_config(self):
        errors = super().validate_config()
        if not 0 <= self.WELCOME_EMAIL_HOUR <= 23:
            errors.append("Welcome email hour must be between 0 and 23")
        if self.NEW_CUSTOMER_DAYS < 1:
            errors.append("New customer window must be at least 1 day")
        if self.EXCLUSION_DAYS < self.NEW_CUSTOMER_DAYS:
            errors.append("Exclusion window must cover the new customer window")
        if self.BATCH_SIZE < 1:
            errors.append("Batch size must be at least 1")
        return errors

    def get_info(self):
        return {
            **super().get_info(),
            "welcome_email_hour": self.WELCOME_EMAIL_HOUR,
            "timezone": RECIPIENT_TIMEZONE,
            "new_customer_days": self.NEW_CUSTOMER_DAYS,
            "exclusion_days": self.EXCLUSION_DAYS,
            "batch_size": self.BATCH_SIZE,
        }
