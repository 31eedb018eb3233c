from datetime import timedelta

from mailpipe.datetime_utils import RECIPIENT_TIMEZONE, next_local_time, utcnow
from mailpipe.logging_config import get_logger
from mailpipe.pipelines.base import AiGeneratedPipeline, Recipient

logger = get_logger(__name__)


class DailyMotivationPipeline(AiGeneratedPipeline):
    """Personalised reading motivation, generated per reader and reviewed before sending."""

    pipeline_name = "DAILY_MOTIVATION"
    empty_message = "No engaged readers found"

    MOTIVATION_EMAIL_HOUR = 9
    EXCLUSION_DAYS = 1
    BATCH_SIZE = 20
    DEFAULT_CUSTOMER_NAME = "Reader"
    DEFAULT_READING_GOAL = "explore new topics"

    def select_target_customers(self):
        recently_sent = self.queue_items.recent_customer_ids(
            self.pipeline_name, utcnow() - timedelta(days=self.EXCLUSION_DAYS)
        )
        customers = self.customers.active_with_topics(exclude_ids=recently_sent, limit=self.BATCH_SIZE)
        logger.info("Selected engaged readers", pipeline=self.pipeline_name, count=len(customers),
                    excluded=len(recently_sent))
        return [Recipient.from_customer(c) for c in customers]

    def next_send_time(self):
        return next_local_time(self.MOTIVATION_EMAIL_HOUR, RECIPIENT_TIMEZONE, days_ahead=1)

    def recent_books_for(self, recipient, recent_books):
        interests = set(recipient.topics_of_interest)
        matching = [
            b.title for b in recent_books
            if interests & {str(t).lower() for t in (b.topics or [])} or (b.genre or "").lower() in interests
        ]
        return matching or recipient.topics_of_interest[:2]

    def build_queue_items(self, recipients):
        scheduled_date = self.next_send_time()
        recent_books = self.books.recent_published(limit=10)
        return [
            self.make_draft(
                recipient,
                variables={
                    "customerName": recipient.name or self.DEFAULT_CUSTOMER_NAME,
                    "customerEmail": recipient.email,
                    "readingTopics": ", ".join(recipient.topics_of_interest),
                },
                context_data={
                    "recentBooks": self.recent_books_for(recipient, recent_books),
                    "readingGoals": self.DEFAULT_READING_GOAL,
                    "topicsOfInterest": recipient.topics_of_interest,
                },
                tag="daily_motivation",
                scheduled_date=scheduled_date,
            )
            for recipient in recipients
        ]

    def build_prompt(self, customer, context_data):
        topics = ", ".join(customer.topics()) or "general reading"
        recent_books = ", ".join(context_data.get("recentBooks") or []) or "various books"
        goals = context_data.get("readingGoals") or "continue learning"
        return (
            f"Create a personalized daily reading motivation email for {customer.name or 'the reader'}.\n\n"
            "Customer Context:\n"
            f"- Topics of Interest: {topics}\n"
            f"- Recent Books: {recent_books}\n"
            f"- Reading Goals: {goals}\n\n"
            "Requirements:\n"
            "- Keep it encouraging and positive\n"
            "- Reference their reading interests\n"
            "- Include a call to action to read today\n"
            "- Keep subject line under 50 characters\n"
            "- Keep email under 200 words\n"
            "- Address the reader as {{ customerName }} in the subject or body\n"
            "- Write {{ readingTopics }} where their topics should appear; never spell them out\n"
        )
