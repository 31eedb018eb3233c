import re
from enum import Enum

from flask_sqlalchemy import SQLAlchemy
from jinja2 import TemplateSyntaxError, meta
from jinja2.sandbox import SandboxedEnvironment

from mailpipe.datetime_utils import isoformat_utc, utcnow

db = SQLAlchemy()

# Subject and text bodies are plain text; only the HTML body escapes values
_text_env = SandboxedEnvironment(autoescape=False)
_html_env = SandboxedEnvironment(autoescape=True)

TEMPLATE_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class QueueStatus(Enum):
    AWAITING_GENERATION = "AWAITING_GENERATION"
    PENDING_REVIEW = "PENDING_REVIEW"
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    GENERATION_FAILED = "GENERATION_FAILED"
    SEND_FAILED = "SEND_FAILED"
    REJECTED = "REJECTED"


class TemplateType(Enum):
    PREDEFINED = "predefined"
    AI_GENERATED = "ai_generated"


class TemplateStatus(Enum):
    APPROVED = "APPROVED"
    WAIT_REVIEW = "WAIT_REVIEW"
    INACTIVE = "INACTIVE"


class ExecutionStatus(Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Customer(db.Model):
    """Email recipient."""
    __tablename__ = "customers"

    customer_id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    company = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="active", index=True)  # active, inactive, blacklisted
    topics_of_interest = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def is_active(self):
        return self.status == "active"

    def topics(self):
        """Lower-cased topics of interest."""
        return [str(t).strip().lower() for t in (self.topics_of_interest or []) if str(t).strip()]

    def __repr__(self):
        return f"<Customer {self.customer_id} - {self.email}>"

    def to_dict(self):
        return {
            'customer_id': self.customer_id,
            'email': self.email,
            'name': self.name,
            'company': self.company,
            'status': self.status,
            'topics_of_interest': self.topics_of_interest or [],
            'created_at': isoformat_utc(self.created_at),
        }


class Book(db.Model):
    __tablename__ = "books"

    book_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=True)
    genre = db.Column(db.String(100), nullable=True)
    topics = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default="published")  # draft, published, archived
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<Book {self.book_id} - {self.title}>"


class EmailTemplate(db.Model):
    """Predefined or AI-generated email content with Jinja2 placeholders."""
    __tablename__ = "email_templates"

    template_id = db.Column(db.Integer, primary_key=True)
    template_code = db.Column(db.String(100), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    subject_template = db.Column(db.Text, nullable=False)
    html_template = db.Column(db.Text, nullable=False)
    text_template = db.Column(db.Text, nullable=True)
    template_type = db.Column(db.Enum(TemplateType), nullable=False, default=TemplateType.PREDEFINED)
    status = db.Column(db.Enum(TemplateStatus), nullable=False, default=TemplateStatus.APPROVED, index=True)
    required_variables = db.Column(db.JSON, nullable=False, default=list)
    prompt = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<EmailTemplate {self.template_code} - {self.status}>"

    def is_approved(self):
        return self.status == TemplateStatus.APPROVED

    def is_waiting_review(self):
        return self.status == TemplateStatus.WAIT_REVIEW

    def can_be_used_for_sending(self):
        return self.is_approved() and bool((self.html_template or "").strip())

    def _bodies(self):
        return [
            (_text_env, self.subject_template or ""),
            (_html_env, self.html_template or ""),
            (_text_env, self.text_template or ""),
        ]

    def extract_variables(self):
        """
        Names of all placeholders used by the subject, HTML and text bodies.

        Raises:
            jinja2.TemplateSyntaxError: If a body does not parse
        """
        variables = set()
        for env, source in self._bodies():
            if source:
                variables |= meta.find_undeclared_variables(env.parse(source))
        return sorted(variables)

    def validate_required_variables(self):
        """Cross-check declared required variables against the placeholders in the bodies."""
        template_variables = self.extract_variables()
        required = list(self.required_variables or [])
        missing_from_template = [v for v in required if v not in template_variables]
        not_marked_required = [v for v in template_variables if v not in required]
        return {
            'is_valid': not missing_from_template,
            'missing_from_template': missing_from_template,
            'not_marked_required': not_marked_required,
            'all_template_variables': template_variables,
        }

    def validate(self):
        """Return a list of structural problems; empty when the template is valid."""
        errors = []
        if not (self.name or "").strip():
            errors.append("Template name is required")
        code = (self.template_code or "").strip()
        if not code:
            errors.append("Template code is required")
        elif len(code) > 100:
            errors.append("Template code must be less than 100 characters")
        elif not TEMPLATE_CODE_PATTERN.match(code):
            errors.append("Template code can only contain letters, numbers, underscores, and hyphens")
        if not (self.subject_template or "").strip():
            errors.append("Subject template is required")
        elif len(self.subject_template) > 255:
            errors.append("Subject template must be less than 255 characters")
        if not (self.html_template or "").strip():
            errors.append("HTML template is required")
        if not isinstance(self.template_type, TemplateType):
            errors.append("Template type must be predefined or ai_generated")
        if not isinstance(self.status, TemplateStatus):
            errors.append("Status must be APPROVED, WAIT_REVIEW, or INACTIVE")

        try:
            check = self.validate_required_variables()
        except TemplateSyntaxError as e:
            errors.append(f"Template syntax error: {e.message}")
        else:
            if check['missing_from_template']:
                errors.append(
                    f"Missing required variables in template: {', '.join(check['missing_from_template'])}"
                )
        return errors

    def validate_variable_values(self, variables):
        """Required variables that are missing or empty in `variables`."""
        errors = []
        for name in self.required_variables or []:
            value = (variables or {}).get(name)
            if value is None or value == "":
                errors.append(f"Required variable '{name}' is missing or empty")
        return errors

    def render(self, variables):
        """Render subject, HTML and text bodies against `variables`."""
        variables = variables or {}
        return {
            'subject': _text_env.from_string(self.subject_template or "").render(variables).strip(),
            'html': _html_env.from_string(self.html_template or "").render(variables),
            'text': _text_env.from_string(self.text_template).render(variables) if self.text_template else "",
        }

    def to_dict(self):
        try:
            template_variables = self.extract_variables()
        except TemplateSyntaxError:
            template_variables = []
        return {
            'template_id': self.template_id,
            'template_code': self.template_code,
            'name': self.name,
            'subject_template': self.subject_template,
            'html_template': self.html_template,
            'text_template': self.text_template,
            'template_type': self.template_type.value if self.template_type else None,
            'status': self.status.value if self.status else None,
            'required_variables': self.required_variables or [],
            'prompt': self.prompt,
            'category': self.category,
            'review_notes': self.review_notes,
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
            'can_be_used_for_sending': self.can_be_used_for_sending(),
            'template_variables': template_variables,
        }


class EmailQueueItem(db.Model):
    """One planned outbound email and its lifecycle state."""
    __tablename__ = "email_queue_items"
    __table_args__ = (
        db.Index("ix_email_queue_status_scheduled", "status", "scheduled_date"),
        db.Index("ix_email_queue_pipeline_created", "pipeline_name", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.customer_id"), nullable=False, index=True)
    pipeline_name = db.Column(db.String(100), nullable=False)
    status = db.Column(db.Enum(QueueStatus), nullable=False, default=QueueStatus.AWAITING_GENERATION)
    template_code = db.Column(db.String(100), nullable=True, index=True)
    scheduled_date = db.Column(db.DateTime, nullable=True)
    context_data = db.Column(db.JSON, nullable=False, default=dict)
    variables = db.Column(db.JSON, nullable=False, default=dict)
    tag = db.Column(db.String(255), nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    # Generation backoff: item is skipped by the generation scan until then
    next_attempt_at = db.Column(db.DateTime, nullable=True)

    provider_message_id = db.Column(db.String(255), nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<EmailQueueItem {self.id} - {self.pipeline_name} - {self.status}>"

    def is_due(self, now=None):
        if self.status != QueueStatus.SCHEDULED or self.scheduled_date is None:
            return False
        return self.scheduled_date <= (now or utcnow())

    def to_dict(self):
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'pipeline_name': self.pipeline_name,
            'status': self.status.value if self.status else None,
            'template_code': self.template_code,
            'scheduled_date': isoformat_utc(self.scheduled_date),
            'context_data': self.context_data or {},
            'variables': self.variables or {},
            'tag': self.tag,
            'retry_count': self.retry_count,
            'last_error': self.last_error,
            'next_attempt_at': isoformat_utc(self.next_attempt_at),
            'provider_message_id': self.provider_message_id,
            'sent_at': isoformat_utc(self.sent_at),
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }


class PipelineExecutionLog(db.Model):
    """Audit record of one pipeline run."""
    __tablename__ = "pipeline_execution_log"

    id = db.Column(db.Integer, primary_key=True)
    pipeline_name = db.Column(db.String(100), nullable=False, index=True)
    execution_step = db.Column(db.String(100), nullable=False, default="CREATE_QUEUE_ITEMS")
    status = db.Column(db.Enum(ExecutionStatus), nullable=False, default=ExecutionStatus.IN_PROGRESS, index=True)
    queue_items_created = db.Column(db.Integer, nullable=False, default=0)
    execution_data = db.Column(db.JSON, nullable=False, default=dict)
    error_message = db.Column(db.Text, nullable=True)
    execution_time_ms = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<PipelineExecutionLog {self.id} - {self.pipeline_name} - {self.status}>"

    def is_completed(self):
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED)

    def to_dict(self):
        return {
            'id': self.id,
            'pipeline_name': self.pipeline_name,
            'execution_step': self.execution_step,
            'status': self.status.value if self.status else None,
            'queue_items_created': self.queue_items_created,
            'execution_data': self.execution_data or {},
            'error_message': self.error_message,
            'execution_time_ms': self.execution_time_ms,
            'created_at': isoformat_utc(self.created_at),
        }
