"""
Pipeline orchestrator.

Runs registered pipelines on demand, never two runs of the same pipeline at
once, and records every run in the execution log whether it succeeds or not.
"""
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from mailpipe.datetime_utils import isoformat_utc, utcnow
from mailpipe.exceptions import AlreadyRunning, NotFound, ValidationFailed
from mailpipe.logging_config import ScanContext, get_logger
from mailpipe.models import ExecutionStatus, TemplateType, db
from mailpipe.pipelines import registry
from mailpipe.pipelines.base import PipelineResult
from mailpipe.services.single_flight import SingleFlight

logger = get_logger(__name__)


@dataclass
class ExecutionResult:
    pipeline_name: str
    success: bool
    execution_id: Optional[int] = None
    duration_ms: int = 0
    result: Optional[PipelineResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self):
        return {
            "pipeline_name": self.pipeline_name,
            "success": self.success,
            "execution_id": self.execution_id,
            "duration_ms": self.duration_ms,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "error_type": self.error_type,
        }


class PipelineOrchestrator:
    """Single-flight pipeline runner with execution logging and metrics."""

    def __init__(self, settings, queue_items, templates, customers, books, execution_logs,
                 content_generator=None, running=None):
        self.settings = settings
        self.queue_items = queue_items
        self.templates = templates
        self.customers = customers
        self.books = books
        self.execution_logs = execution_logs
        self.content_generator = content_generator
        self.running = running or SingleFlight("pipelines")

    def pipeline_dependencies(self):
        return dict(
            queue_items=self.queue_items,
            templates=self.templates,
            customers=self.customers,
            books=self.books,
            settings=self.settings,
            content_generator=self.content_generator,
        )

    def execute(self, pipeline_name, **pipeline_options) -> ExecutionResult:
        """
        Run one pipeline and record the run.

        Args:
            pipeline_name: Registered pipeline name
            **pipeline_options: Extra constructor arguments, e.g. book for NEW_BOOK_RELEASE

        Returns:
            ExecutionResult: success or failure of the run; pipeline errors are
            captured here, not raised

        Raises:
            NotFound: If the pipeline is not registered
            AlreadyRunning: If the pipeline is already running
        """
        definition = registry.get_definition(pipeline_name)
        name = definition.name.value

        with self.running.hold(name):
            started = time.monotonic()
            log = self.execution_logs.start(name, execution_data={
                "display_name": definition.display_name,
                "template_type": definition.template_type.value,
            })
            log_id = log.id

            try:
                pipeline = registry.create_pipeline(name, **self.pipeline_dependencies(), **pipeline_options)
                with ScanContext("pipeline_run", pipeline=name, execution_id=log_id):
                    result = pipeline.run_pipeline()
            except Exception as e:
                db.session.rollback()
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.error("Pipeline execution failed", pipeline=name, execution_id=log_id,
                             error=str(e), exc_info=True)
                self.execution_logs.close(
                    log_id,
                    ExecutionStatus.FAILED,
                    duration_ms,
                    error_message=str(e) or type(e).__name__,
                    execution_data={"error_type": type(e).__name__},
                )
                return ExecutionResult(
                    pipeline_name=name,
                    success=False,
                    execution_id=log_id,
                    duration_ms=duration_ms,
                    error=str(e) or type(e).__name__,
                    error_type=type(e).__name__,
                )

            duration_ms = int((time.monotonic() - started) * 1000)
            self.execution_logs.close(
                log_id,
                ExecutionStatus.SUCCESS,
                duration_ms,
                queue_items_created=result.created,
                execution_data={
                    "created": result.created,
                    "failed": result.failed,
                    "errors": result.errors[:50],
                    "message": result.message,
                },
            )
            logger.info("Pipeline execution completed", pipeline=name, execution_id=log_id,
                        created=result.created, failed=result.failed, duration_ms=duration_ms)
            return ExecutionResult(
                pipeline_name=name,
                success=True,
                execution_id=log_id,
                duration_ms=duration_ms,
                result=result,
            )

    def execute_sequence(self, pipeline_names) -> List[ExecutionResult]:
        """Run pipelines one after another; a failure never stops the rest."""
        results = []
        for pipeline_name in pipeline_names:
            try:
                results.append(self.execute(pipeline_name))
            except (AlreadyRunning, NotFound) as e:
                logger.warning("Pipeline skipped in sequence", pipeline=pipeline_name, error=str(e))
                results.append(ExecutionResult(
                    pipeline_name=str(pipeline_name),
                    success=False,
                    error=str(e),
                    error_type=type(e).__name__,
                ))
        return results

    def is_running(self, pipeline_name):
        return self.running.is_held(registry.get_definition(pipeline_name).name.value)

    def running_pipelines(self):
        return self.running.held_keys()

    def has_running_pipelines(self):
        return bool(self.running.held_keys())

    def pipeline_status(self, pipeline_name):
        definition = registry.get_definition(pipeline_name)
        name = definition.name.value
        recent = self.execution_logs.recent(name, limit=1)
        return {
            "name": name,
            "display_name": definition.display_name,
            "template_type": definition.template_type.value,
            "is_running": self.running.is_held(name),
            "last_execution": recent[0].to_dict() if recent else None,
            "queue_items": self.queue_items.counts_by_status(name),
        }

    def all_pipeline_statuses(self):
        return [self.pipeline_status(name) for name in registry.available_pipelines()]

    def execution_history(self, pipeline_name=None, page=1, per_page=20):
        if pipeline_name is not None:
            pipeline_name = registry.get_definition(pipeline_name).name.value
        if page < 1:
            raise ValidationFailed("page must be 1 or greater")
        if not 1 <= per_page <= 100:
            raise ValidationFailed("per_page must be between 1 and 100")

        logs, total = self.execution_logs.paginate(pipeline_name, page=page, per_page=per_page)
        return {
            "executions": [log.to_dict() for log in logs],
            "pagination": {
                "page": page,
                "per_page": per_page,
                "total": total,
                "pages": (total + per_page - 1) // per_page,
            },
        }

    def pipeline_metrics(self, pipeline_name):
        name = registry.get_definition(pipeline_name).name.value
        totals = self.execution_logs.aggregates(name)
        total = totals["total"]
        return {
            "pipeline_name": name,
            "total_executions": total,
            "successful_executions": totals["successful"],
            "failed_executions": totals["failed"],
            "success_rate": round(totals["successful"] / total * 100, 2) if total else 0.0,
            "average_duration_ms": round(totals["average_duration_ms"], 2),
            "total_items_created": totals["items_created"],
            "last_execution": isoformat_utc(totals["last_execution"]),
        }

    def all_pipeline_metrics(self):
        return {name: self.pipeline_metrics(name) for name in registry.available_pipelines()}

    def dashboard(self):
        counts = self.execution_logs.overall_counts()
        closed = counts[ExecutionStatus.SUCCESS.value] + counts[ExecutionStatus.FAILED.value]
        return {
            "pipelines": self.all_pipeline_statuses(),
            "running": self.running_pipelines(),
            "recent_executions": [log.to_dict() for log in self.execution_logs.recent(limit=10)],
            "overall": {
                "total_executions": sum(counts.values()),
                "successful_executions": counts[ExecutionStatus.SUCCESS.value],
                "failed_executions": counts[ExecutionStatus.FAILED.value],
                "success_rate": round(counts[ExecutionStatus.SUCCESS.value] / closed * 100, 2) if closed else 0.0,
            },
            "registry": registry.registry_stats(),
        }

    def validate_execution(self, pipeline_name) -> List[str]:
        """Reasons the pipeline cannot run right now; empty when it can."""
        try:
            definition = registry.get_definition(pipeline_name)
        except NotFound as e:
            return [str(e)]

        errors = list(registry.validate_definition(definition))
        name = definition.name.value
        if self.running.is_held(name):
            errors.append(f"Pipeline '{name}' is already running")

        pipeline = registry.create_pipeline(name, **self.pipeline_dependencies())
        errors.extend(pipeline.validate_config())

        if definition.template_type == TemplateType.PREDEFINED:
            template = self.templates.get_by_code(pipeline.default_template_code)
            if template is None:
                errors.append(f"Template '{pipeline.default_template_code}' does not exist")
            elif not template.can_be_used_for_sending():
                errors.append(f"Template '{pipeline.default_template_code}' is not approved for sending")
        elif self.content_generator is None:
            errors.append("No content generator configured")
        return errors

    def purge_old_executions(self, retention_days=None):
        """Delete closed execution logs older than the retention window."""
        retention_days = retention_days or self.settings.pipeline_log_retention_days
        if retention_days < 1:
            raise ValidationFailed("retention_days must be 1 or greater")
        cutoff = utcnow() - timedelta(days=retention_days)
        deleted = self.execution_logs.purge_closed_before(cutoff)
        logger.info("Execution logs purged", deleted=deleted, retention_days=retention_days,
                    cutoff=isoformat_utc(cutoff))
        return deleted

    def wait_for_idle(self, timeout=None):
        return self.running.wait_until_idle(timeout)
