"""
Pipeline base classes.

A pipeline selects recipients and turns them into queue item drafts. Pipelines
with a predefined template create SCHEDULED items directly; AI pipelines create
AWAITING_GENERATION items and later generate a template per item on request
of the generation scheduler.
"""
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from mailpipe.config import PipelineSettings
from mailpipe.datetime_utils import isoformat_utc, utcnow
from mailpipe.exceptions import TransientGenerationFailure, ValidationFailed
from mailpipe.logging_config import get_logger
from mailpipe.models import EmailTemplate, QueueStatus, TemplateStatus, TemplateType
from mailpipe.repositories import (
    BookRepository,
    CustomerRepository,
    QueueItemRepository,
    TemplateRepository,
)
from mailpipe.services.timeouts import run_with_timeout

logger = get_logger(__name__)

CREATION_STATUSES = (QueueStatus.SCHEDULED, QueueStatus.AWAITING_GENERATION)


@dataclass
class Recipient:
    customer_id: int
    email: str
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    topics_of_interest: List[str] = field(default_factory=list)

    @classmethod
    def from_customer(cls, customer):
        return cls(
            customer_id=customer.customer_id,
            email=customer.email,
            name=customer.name,
            created_at=customer.created_at,
            topics_of_interest=customer.topics(),
        )


@dataclass
class QueueItemDraft:
    customer_id: int
    pipeline_name: str
    status: QueueStatus
    template_code: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    context_data: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    tag: Optional[str] = None

    def validate(self):
        errors = []
        if not self.customer_id:
            errors.append("customer_id is required")
        if not self.pipeline_name:
            errors.append("pipeline_name is required")
        if self.status not in CREATION_STATUSES:
            errors.append(f"status must be one of {', '.join(s.value for s in CREATION_STATUSES)}")
        if self.status == QueueStatus.SCHEDULED and not self.template_code:
            errors.append("template_code is required for scheduled items")
        if self.status == QueueStatus.AWAITING_GENERATION and self.template_code:
            errors.append("template_code must be empty until content is generated")
        return errors


@dataclass
class PipelineResult:
    created: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    message: Optional[str] = None
    item_ids: List[int] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


@dataclass
class GenerationOutcome:
    template_id: Optional[int] = None
    template_code: Optional[str] = None
    error: Optional[str] = None
    retry_allowed: bool = True
    next_scheduled_date: Optional[datetime] = None

    @property
    def succeeded(self):
        return self.template_code is not None and self.error is None

    @classmethod
    def failure(cls, error, retry_allowed=True):
        return cls(error=error, retry_allowed=retry_allowed)


class Pipeline:
    """
    Base class for all pipelines.

    Subclasses set `pipeline_name`, `template_type` and (for predefined
    templates) `default_template_code`, and implement
    select_target_customers() and build_queue_items().
    """

    pipeline_name = None
    template_type = TemplateType.PREDEFINED
    default_template_code = None
    empty_message = "No recipients selected"

    def __init__(self, queue_items=None, templates=None, customers=None, books=None,
                 settings=None, content_generator=None):
        self.queue_items = queue_items or QueueItemRepository()
        self.templates = templates or TemplateRepository()
        self.customers = customers or CustomerRepository()
        self.books = books or BookRepository()
        self.settings = settings or PipelineSettings()
        self.content_generator = content_generator

    @property
    def requires_generation(self):
        return self.template_type == TemplateType.AI_GENERATED

    def select_target_customers(self) -> List[Recipient]:
        raise NotImplementedError(f"{type(self).__name__} must implement select_target_customers()")

    def build_queue_items(self, recipients: List[Recipient]) -> List[QueueItemDraft]:
        raise NotImplementedError(f"{type(self).__name__} must implement build_queue_items()")

    def run_pipeline(self) -> PipelineResult:
        """
        Select recipients, build drafts and insert them.

        Drafts that fail validation are counted as failed and skipped; a
        database error during the insert propagates to the caller.
        """
        recipients = self.select_target_customers()
        limit = self.settings.max_recipients_per_pipeline
        if len(recipients) > limit:
            logger.info("Recipient selection truncated", pipeline=self.pipeline_name,
                        selected=len(recipients), limit=limit)
            recipients = recipients[:limit]

        if not recipients:
            logger.info("Pipeline selected no recipients", pipeline=self.pipeline_name)
            return PipelineResult(message=self.empty_message)

        drafts = self.build_queue_items(recipients)

        valid, errors = [], []
        for draft in drafts:
            problems = draft.validate()
            if problems:
                errors.append(f"customer {draft.customer_id}: {'; '.join(problems)}")
            else:
                valid.append(draft)

        inserted = self.queue_items.bulk_insert(valid)
        result = PipelineResult(
            created=len(inserted),
            failed=len(errors),
            errors=errors,
            message=f"Created {len(inserted)} queue items for {len(recipients)} recipients",
            item_ids=[item.id for item in inserted],
        )
        if errors:
            logger.warning("Some queue items were not created", pipeline=self.pipeline_name,
                           failed=len(errors), errors=errors[:5])
        return result

    def make_draft(self, recipient, variables=None, context_data=None, tag=None, scheduled_date=None):
        """Draft for one recipient with the status implied by the template type."""
        base = dict(
            customer_id=recipient.customer_id,
            pipeline_name=self.pipeline_name,
            context_data=context_data or {},
            variables=variables or {},
            tag=tag or (self.pipeline_name or "").lower(),
            scheduled_date=scheduled_date or utcnow(),
        )
        if self.requires_generation:
            return QueueItemDraft(status=QueueStatus.AWAITING_GENERATION, template_code=None, **base)
        return QueueItemDraft(status=QueueStatus.SCHEDULED, template_code=self.default_template_code, **base)

    def validate_config(self):
        errors = []
        if not (self.pipeline_name or "").strip():
            errors.append("Pipeline name is required")
        if not isinstance(self.template_type, TemplateType):
            errors.append("Template type must be predefined or ai_generated")
        elif self.template_type == TemplateType.PREDEFINED and not self.default_template_code:
            errors.append("Default template code required for predefined template pipelines")
        return errors

    def get_info(self):
        return {
            "name": self.pipeline_name,
            "template_type": self.template_type.value,
            "default_template_code": self.default_template_code,
            "requires_generation": self.requires_generation,
            "requires_review": self.requires_generation,
        }


class AiGeneratedPipeline(Pipeline):
    """Pipeline whose items need a generated, human-reviewed template."""

    template_type = TemplateType.AI_GENERATED
    required_variables = ("customerName",)

    def build_prompt(self, customer, context_data) -> str:
        raise NotImplementedError(f"{type(self).__name__} must implement build_prompt()")

    def next_send_time(self) -> Optional[datetime]:
        return None

    def template_name(self, customer):
        return f"{self.pipeline_name} - {customer.email} - {isoformat_utc(utcnow())}"

    def generate_content(self, recipient_id, context_data) -> GenerationOutcome:
        """
        Generate and store a WAIT_REVIEW template for one recipient.

        Returns a failure outcome instead of raising for anything the
        scheduler should record on the item. Unexpected errors propagate and
        are treated as transient by the scheduler.
        """
        customer = self.customers.get(recipient_id)
        if customer is None:
            return GenerationOutcome.failure(f"Customer {recipient_id} not found", retry_allowed=False)
        if not customer.is_active():
            return GenerationOutcome.failure(f"Customer {recipient_id} is {customer.status}", retry_allowed=False)
        if self.content_generator is None:
            return GenerationOutcome.failure("No content generator configured", retry_allowed=False)

        context_data = context_data or {}
        prompt = self.build_prompt(customer, context_data)
        recipient_context = {**context_data, "customerName": customer.name, "customerEmail": customer.email}

        try:
            content = run_with_timeout(
                self.content_generator.generate,
                self.settings.generation_timeout_seconds,
                prompt,
                recipient_context,
                timeout_error=TransientGenerationFailure,
            )
        except (TransientGenerationFailure, ValidationFailed) as e:
            return GenerationOutcome.failure(str(e), retry_allowed=True)

        template_code = f"{self.pipeline_name.lower()}_{customer.customer_id}_{uuid.uuid4().hex[:12]}"
        fields = dict(
            template_code=template_code,
            name=self.template_name(customer),
            subject_template=content.subject,
            html_template=content.html,
            text_template=content.text,
            template_type=TemplateType.AI_GENERATED,
            status=TemplateStatus.WAIT_REVIEW,
            required_variables=list(self.required_variables),
            prompt=prompt,
            category=self.pipeline_name.lower(),
        )

        errors = EmailTemplate(**fields).validate()
        if errors:
            # A fresh generation may well produce usable content
            return GenerationOutcome.failure(f"Generated template invalid: {'; '.join(errors)}", retry_allowed=True)

        template = self.templates.create(**fields)
        logger.info("Template generated", pipeline=self.pipeline_name, customer_id=recipient_id,
                    template_code=template.template_code)
        return GenerationOutcome(
            template_id=template.template_id,
            template_code=template.template_code,
            next_scheduled_date=self.next_send_time(),
        )
