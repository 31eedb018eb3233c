"""
Shared fixtures: a Flask app on in-memory SQLite with the predefined templates
seeded, plus small factories for customers, books, templates and queue items.
"""
import pytest

from mailpipe import create_app
from mailpipe.config import TestingConfig
from mailpipe.datetime_utils import utcnow
from mailpipe.engine import get_engine
from mailpipe.models import (
    Book,
    Customer,
    EmailQueueItem,
    EmailTemplate,
    QueueStatus,
    TemplateStatus,
    TemplateType,
    db,
)
from mailpipe.services.content_generation import MockContentGenerator
from mailpipe.services.email_transport import LogOnlyTransport


@pytest.fixture
def transport():
    return LogOnlyTransport()


@pytest.fixture
def content_generator():
    return MockContentGenerator()


@pytest.fixture
def app(transport, content_generator):
    """Create Flask application for testing."""
    app = create_app(TestingConfig, transport=transport, content_generator=content_generator)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def engine(app):
    return get_engine(app)


@pytest.fixture
def make_customer(app):
    counter = {"n": 0}

    def _make(name=None, email=None, status="active", topics=None, created_at=None, company=None):
        counter["n"] += 1
        customer = Customer(
            email=email or f"reader{counter['n']}@example.com",
            name=name if name is not None else f"Reader {counter['n']}",
            company=company,
            status=status,
            topics_of_interest=topics or [],
            created_at=created_at or utcnow(),
        )
        db.session.add(customer)
        db.session.commit()
        return customer

    return _make


@pytest.fixture
def make_book(app):
    def _make(title="The Quiet Garden", author="Ana Lima", genre="Fiction", topics=None,
              status="published", created_at=None):
        book = Book(title=title, author=author, genre=genre, topics=topics or [], status=status,
                    created_at=created_at or utcnow())
        db.session.add(book)
        db.session.commit()
        return book

    return _make


@pytest.fixture
def make_template(app):
    def _make(template_code="TEST_TEMPLATE", status=TemplateStatus.APPROVED,
              template_type=TemplateType.PREDEFINED, subject="Hello {{ customerName }}",
              html="<p>Hi {{ customerName }}</p>", text=None, required_variables=None):
        template = EmailTemplate(
            template_code=template_code,
            name=template_code.replace("_", " ").title(),
            subject_template=subject,
            html_template=html,
            text_template=text,
            template_type=template_type,
            status=status,
            required_variables=["customerName"] if required_variables is None else required_variables,
        )
        db.session.add(template)
        db.session.commit()
        return template

    return _make


@pytest.fixture
def make_item(app):
    def _make(customer, status=QueueStatus.SCHEDULED, pipeline_name="WELCOME_NEW_MEMBER",
              template_code="WELCOME_NEW_MEMBER", scheduled_date=None, variables=None,
              context_data=None, retry_count=0, next_attempt_at=None, created_at=None, tag=None):
        item = EmailQueueItem(
            customer_id=customer.customer_id,
            pipeline_name=pipeline_name,
            status=status,
            template_code=template_code,
            scheduled_date=scheduled_date,
            variables=variables or {},
            context_data=context_data or {},
            retry_count=retry_count,
            next_attempt_at=next_attempt_at,
            created_at=created_at or utcnow(),
            tag=tag,
        )
        db.session.add(item)
        db.session.commit()
        return item

    return _make
