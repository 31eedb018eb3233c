"""Wiring of the stateful pipeline components for one application instance."""
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from mailpipe.config import PipelineSettings
from mailpipe.repositories import (
    BookRepository,
    CustomerRepository,
    ExecutionLogRepository,
    QueueItemRepository,
    TemplateRepository,
)
from mailpipe.services.content_generation import ContentGenerator, create_content_generator
from mailpipe.services.email_dispatch import EmailDispatchService
from mailpipe.services.email_transport import EmailTransport, create_transport
from mailpipe.services.orchestrator import PipelineOrchestrator
from mailpipe.services.template_generation import TemplateGenerationService

EXTENSION_KEY = "mailpipe"


@dataclass
class Engine:
    settings: PipelineSettings
    orchestrator: PipelineOrchestrator
    generation: TemplateGenerationService
    dispatch: EmailDispatchService
    transport: EmailTransport
    content_generator: ContentGenerator
    scheduler: Optional[object] = None


def build_engine(config, transport=None, content_generator=None) -> Engine:
    """
    Build the orchestrator and both schedulers from a Flask config mapping.

    Args:
        config: Flask config (or any mapping with the same keys)
        transport: Override the configured email transport
        content_generator: Override the configured content generator
    """
    settings = PipelineSettings.from_mapping(config)
    transport = transport or create_transport(config)
    content_generator = content_generator or create_content_generator(config)

    queue_items = QueueItemRepository()
    templates = TemplateRepository()
    customers = CustomerRepository()
    books = BookRepository()

    orchestrator = PipelineOrchestrator(
        settings=settings,
        queue_items=queue_items,
        templates=templates,
        customers=customers,
        books=books,
        execution_logs=ExecutionLogRepository(),
        content_generator=content_generator,
    )
    generation = TemplateGenerationService(
        settings=settings,
        queue_items=queue_items,
        templates=templates,
        customers=customers,
        books=books,
        content_generator=content_generator,
    )
    dispatch = EmailDispatchService(
        settings=settings,
        queue_items=queue_items,
        templates=templates,
        customers=customers,
        transport=transport,
    )
    return Engine(
        settings=settings,
        orchestrator=orchestrator,
        generation=generation,
        dispatch=dispatch,
        transport=transport,
        content_generator=content_generator,
    )


def get_engine(app=None) -> Engine:
    """Engine of `app`, or of the current application."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
