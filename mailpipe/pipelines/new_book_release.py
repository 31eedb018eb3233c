from mailpipe.datetime_utils import format_display_date, utcnow
from mailpipe.logging_config import get_logger
from mailpipe.models import TemplateType
from mailpipe.pipelines.base import Pipeline, PipelineResult, Recipient

logger = get_logger(__name__)


class NewBookReleasePipeline(Pipeline):
    """
    Announce a book to customers interested in its topics or genre.

    The book is the one passed in, or the most recently created published
    book. Each customer is told about a given book at most once.
    """

    pipeline_name = "NEW_BOOK_RELEASE"
    template_type = TemplateType.PREDEFINED
    default_template_code = "NEW_BOOK_RELEASE"
    empty_message = "No customers found with matching interests"

    SELECTION_LIMIT = 100
    RECENTLY_ACTIVE_DAYS = 30
    DEFAULT_CUSTOMER_NAME = "Reader"
    DEFAULT_GENRE = "General"

    def __init__(self, book=None, **kwargs):
        super().__init__(**kwargs)
        self.book = book

    def resolve_book(self):
        if self.book is None:
            self.book = self.books.latest_published()
        return self.book

    def book_tag(self, book):
        return f"book_release_{book.book_id}"

    def validate_book_data(self):
        book = self.book
        if book is None:
            return ["Book data is required"]
        errors = []
        if not book.title:
            errors.append("Book title is required")
        if not book.author:
            errors.append("Book author is required")
        return errors

    def run_pipeline(self):
        if self.resolve_book() is None:
            logger.info("No published book to announce", pipeline=self.pipeline_name)
            return PipelineResult(message="No published book to announce")
        errors = self.validate_book_data()
        if errors:
            return PipelineResult(failed=1, errors=errors, message="Book data is incomplete")
        return super().run_pipeline()

    def select_target_customers(self):
        book = self.resolve_book()
        if book is None:
            return []

        already_told = self.queue_items.customer_ids_with_tag(self.pipeline_name, self.book_tag(book))
        topics = [str(t).strip().lower() for t in (book.topics or []) if str(t).strip()]
        genre = (book.genre or "").strip().lower()

        if topics:
            interests = topics + ([genre] if genre and genre not in topics else [])
            customers = self.customers.active_interested_in(interests, exclude_ids=already_told,
                                                            limit=self.SELECTION_LIMIT)
        elif genre:
            logger.warning("Book has no topics, selecting customers by genre", book_id=book.book_id)
            customers = self.customers.active_interested_in([genre], exclude_ids=already_told,
                                                            limit=self.SELECTION_LIMIT)
        else:
            logger.warning("Book has no topics or genre, selecting recently active customers",
                           book_id=book.book_id)
            customers = self.customers.recently_active(self.RECENTLY_ACTIVE_DAYS, exclude_ids=already_told,
                                                       limit=self.SELECTION_LIMIT)

        logger.info("Selected customers for book release", book_id=book.book_id, title=book.title,
                    count=len(customers), excluded=len(already_told))
        return [Recipient.from_customer(c) for c in customers]

    def build_queue_items(self, recipients):
        book = self.resolve_book()
        now = utcnow()
        variables = {
            "bookTitle": book.title,
            "bookAuthor": book.author,
            "bookGenre": book.genre or self.DEFAULT_GENRE,
            "bookTopics": ", ".join(book.topics or []),
            "releaseDate": format_display_date(now),
        }
        return [
            self.make_draft(
                recipient,
                variables={
                    "customerName": recipient.name or self.DEFAULT_CUSTOMER_NAME,
                    "customerEmail": recipient.email,
                    **variables,
                },
                context_data={"bookId": book.book_id},
                tag=self.book_tag(book),
                scheduled_date=now,
            )
            for recipient in recipients
        ]
