"""
Static registry of the pipelines this service knows how to run.

The set of pipelines is closed: PipelineName enumerates them and PIPELINES maps
each to its definition. validate_registry() runs at startup and refuses to
start the application if any definition is malformed.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Type

from mailpipe.exceptions import ConfigurationError, NotFound
from mailpipe.models import TemplateType
from mailpipe.pipelines.base import AiGeneratedPipeline, Pipeline
from mailpipe.pipelines.daily_motivation import DailyMotivationPipeline
from mailpipe.pipelines.new_book_release import NewBookReleasePipeline
from mailpipe.pipelines.welcome_new_member import WelcomeNewMemberPipeline

VALID_CATEGORIES = ("engagement", "marketing", "retention", "onboarding")


class PipelineName(Enum):
    DAILY_MOTIVATION = "DAILY_MOTIVATION"
    NEW_BOOK_RELEASE = "NEW_BOOK_RELEASE"
    WELCOME_NEW_MEMBER = "WELCOME_NEW_MEMBER"


@dataclass(frozen=True)
class PipelineDefinition:
    name: PipelineName
    display_name: str
    description: str
    template_type: TemplateType
    requires_review: bool
    pipeline_class: Type[Pipeline]
    category: str
    frequency: str
    estimated_recipients: str
    default_template_code: Optional[str] = None

    def summary(self):
        return {
            "name": self.name.value,
            "display_name": self.display_name,
            "description": self.description,
            "template_type": self.template_type.value,
            "requires_review": self.requires_review,
            "category": self.category,
            "frequency": self.frequency,
            "estimated_recipients": self.estimated_recipients,
            "default_template_code": self.default_template_code,
        }


PIPELINES = {
    PipelineName.DAILY_MOTIVATION: PipelineDefinition(
        name=PipelineName.DAILY_MOTIVATION,
        display_name="Daily Reading Motivation",
        description="Motivational emails for engaged readers",
        template_type=TemplateType.AI_GENERATED,
        requires_review=True,
        pipeline_class=DailyMotivationPipeline,
        category="engagement",
        frequency="daily",
        estimated_recipients="10-50 engaged readers",
    ),
    PipelineName.NEW_BOOK_RELEASE: PipelineDefinition(
        name=PipelineName.NEW_BOOK_RELEASE,
        display_name="New Book Announcements",
        description="Announce new books to interested customers",
        template_type=TemplateType.PREDEFINED,
        requires_review=False,
        pipeline_class=NewBookReleasePipeline,
        category="marketing",
        frequency="on_demand",
        estimated_recipients="50-200 customers per book",
        default_template_code="NEW_BOOK_RELEASE",
    ),
    PipelineName.WELCOME_NEW_MEMBER: PipelineDefinition(
        name=PipelineName.WELCOME_NEW_MEMBER,
        display_name="Welcome New Members",
        description="Welcome emails for new customers",
        template_type=TemplateType.PREDEFINED,
        requires_review=False,
        pipeline_class=WelcomeNewMemberPipeline,
        category="onboarding",
        frequency="daily",
        estimated_recipients="10-50 new customers",
        default_template_code="WELCOME_NEW_MEMBER",
    ),
}


def _to_name(pipeline_name):
    if isinstance(pipeline_name, PipelineName):
        return pipeline_name
    try:
        return PipelineName(str(pipeline_name).strip().upper())
    except ValueError:
        raise NotFound("Pipeline", pipeline_name) from None


def has_pipeline(pipeline_name):
    try:
        return _to_name(pipeline_name) in PIPELINES
    except NotFound:
        return False


def get_definition(pipeline_name):
    """
    Definition for a registered pipeline.

    Raises:
        NotFound: If the name is not registered
    """
    name = _to_name(pipeline_name)
    definition = PIPELINES.get(name)
    if definition is None:
        raise NotFound("Pipeline", pipeline_name)
    return definition


def available_pipelines():
    return [name.value for name in PIPELINES]


def create_pipeline(pipeline_name, **deps):
    """Instantiate a pipeline with the given collaborators (repositories, settings, generator)."""
    return get_definition(pipeline_name).pipeline_class(**deps)


def pipelines_by_category(category):
    return {name.value: d.summary() for name, d in PIPELINES.items() if d.category == category}


def pipelines_by_template_type(template_type):
    template_type = TemplateType(template_type) if not isinstance(template_type, TemplateType) else template_type
    return {name.value: d.summary() for name, d in PIPELINES.items() if d.template_type == template_type}


def review_required_pipelines():
    return {name.value: d.summary() for name, d in PIPELINES.items() if d.requires_review}


def pipeline_summary():
    return [dict(d.summary(), can_execute=True) for d in PIPELINES.values()]


def execution_instructions(pipeline_name):
    definition = get_definition(pipeline_name)
    if definition.template_type == TemplateType.PREDEFINED:
        steps = [
            "Pipeline selects target customers",
            "Queue items created with SCHEDULED status",
            "Email dispatch sends them once their scheduled time has passed",
        ]
    else:
        steps = [
            "Pipeline selects target customers",
            "Queue items created with AWAITING_GENERATION status",
            "Template generation creates a personalised template per item",
            "Templates queued for review",
            "Reviewer approves or rejects each template",
            "Approved emails are scheduled and sent by email dispatch",
        ]
    return {"name": definition.name.value, "display_name": definition.display_name, "steps": steps}


def registry_stats():
    categories = {}
    for d in PIPELINES.values():
        categories[d.category] = categories.get(d.category, 0) + 1
    return {
        "total_pipelines": len(PIPELINES),
        "template_types": {
            t.value: sum(1 for d in PIPELINES.values() if d.template_type == t) for t in TemplateType
        },
        "review_required": sum(1 for d in PIPELINES.values() if d.requires_review),
        "categories": categories,
    }


def validate_definition(definition):
    """
    Structural problems with one definition.

    Args:
        definition: PipelineDefinition, or a registered pipeline name
    """
    if not isinstance(definition, PipelineDefinition):
        try:
            definition = get_definition(definition)
        except NotFound as e:
            return [str(e)]

    errors = []
    if not definition.display_name:
        errors.append("display_name is required")
    if not definition.description:
        errors.append("description is required")
    if not isinstance(definition.template_type, TemplateType):
        errors.append("template_type must be predefined or ai_generated")
    if not definition.category:
        errors.append("category is required")
    elif definition.category not in VALID_CATEGORIES:
        errors.append(f"category must be one of: {', '.join(VALID_CATEGORIES)}")

    cls = definition.pipeline_class
    if not (isinstance(cls, type) and issubclass(cls, Pipeline)):
        errors.append("pipeline_class must be a Pipeline subclass")
        return errors

    if cls.pipeline_name != definition.name.value:
        errors.append(f"pipeline_class declares name '{cls.pipeline_name}', expected '{definition.name.value}'")
    if cls.template_type != definition.template_type:
        errors.append("template_type does not match the pipeline class")
    if definition.template_type == TemplateType.AI_GENERATED:
        if not issubclass(cls, AiGeneratedPipeline):
            errors.append("ai_generated pipelines must provide generate_content")
        if not definition.requires_review:
            errors.append("ai_generated pipelines must require review")
    if definition.template_type == TemplateType.PREDEFINED:
        if not cls.default_template_code:
            errors.append("predefined pipelines must declare a default template code")
        elif definition.default_template_code and definition.default_template_code != cls.default_template_code:
            errors.append("default_template_code does not match the pipeline class")
    for method in ("select_target_customers", "build_queue_items"):
        if getattr(cls, method) is getattr(Pipeline, method):
            errors.append(f"pipeline_class must implement {method}")
    return errors


def validate_registry(pipelines=None):
    """
    Validate every definition.

    Raises:
        ConfigurationError: If any definition is malformed
    """
    pipelines = PIPELINES if pipelines is None else pipelines
    problems = {}
    for name, definition in pipelines.items():
        errors = validate_definition(definition)
        if errors:
            problems[getattr(name, "value", name)] = errors
    if problems:
        summary = "; ".join(f"{name}: {', '.join(errors)}" for name, errors in problems.items())
        raise ConfigurationError(f"Pipeline registry validation failed: {summary}")
    return {getattr(name, "value", name): [] for name in pipelines}
