"""
JSON trigger surface for pipelines, review and the two scan loops.
"""
from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from mailpipe.api import api_bp
from mailpipe.engine import get_engine
from mailpipe.exceptions import AlreadyRunning, MailpipeError, NotFound, ValidationFailed
from mailpipe.logging_config import get_logger
from mailpipe.pipelines import registry

logger = get_logger(__name__)

STATUS_CODES = (
    (NotFound, 404),
    (AlreadyRunning, 409),
    (ValidationFailed, 400),
)


def _error(message, error_type, status_code):
    return jsonify({"success": False, "error": message, "error_type": error_type}), status_code


@api_bp.errorhandler(MailpipeError)
def handle_mailpipe_error(e):
    for exc_type, status_code in STATUS_CODES:
        if isinstance(e, exc_type):
            logger.info("Request rejected", path=request.path, error=str(e), status_code=status_code)
            return _error(str(e), type(e).__name__, status_code)
    logger.error("Request failed", path=request.path, error=str(e), exc_info=True)
    return _error(str(e), type(e).__name__, 500)


@api_bp.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return _error(e.description, type(e).__name__, e.code)
    logger.error("Unhandled exception in API", path=request.path, error=str(e), exc_info=True)
    return _error(str(e), type(e).__name__, 500)


def _json_body():
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return body


def _positive_int(value, name):
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer") from None
    if number < 1:
        raise ValidationFailed(f"{name} must be 1 or greater")
    return number


# ==============================================================================
# Pipelines
# ==============================================================================

@api_bp.route("/pipelines", methods=["GET"])
def list_pipelines():
    return jsonify({
        "success": True,
        "pipelines": registry.pipeline_summary(),
        "stats": registry.registry_stats(),
    }), 200


@api_bp.route("/pipelines/<name>/run", methods=["POST"])
def run_pipeline(name):
    """
    Run a pipeline now.

    Optional body: {"book_id": 12} for NEW_BOOK_RELEASE.
    """
    engine = get_engine()
    body = _json_body()
    options = {}

    book_id = _positive_int(body.get("book_id"), "book_id")
    if book_id is not None:
        if registry.get_definition(name).name != registry.PipelineName.NEW_BOOK_RELEASE:
            raise ValidationFailed("book_id is only accepted by NEW_BOOK_RELEASE")
        book = engine.orchestrator.books.get(book_id)
        if book is None:
            raise NotFound("Book", book_id)
        options["book"] = book

    result = engine.orchestrator.execute(name, **options)
    return jsonify(result.to_dict()), 200 if result.success else 500


@api_bp.route("/pipelines/run-sequence", methods=["POST"])
def run_pipeline_sequence():
    names = _json_body().get("pipelines")
    if not isinstance(names, list) or not names or not all(isinstance(n, str) for n in names):
        raise ValidationFailed("'pipelines' must be a non-empty list of pipeline names")

    results = get_engine().orchestrator.execute_sequence(names)
    return jsonify({
        "success": all(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }), 200


@api_bp.route("/pipelines/status", methods=["GET"])
def all_pipeline_status():
    orchestrator = get_engine().orchestrator
    return jsonify({
        "success": True,
        "pipelines": orchestrator.all_pipeline_statuses(),
        "running": orchestrator.running_pipelines(),
    }), 200


@api_bp.route("/pipelines/<name>/status", methods=["GET"])
def pipeline_status(name):
    return jsonify({"success": True, "status": get_engine().orchestrator.pipeline_status(name)}), 200


@api_bp.route("/pipelines/<name>/validate", methods=["GET"])
def validate_pipeline(name):
    errors = get_engine().orchestrator.validate_execution(name)
    return jsonify({"success": True, "can_execute": not errors, "errors": errors}), 200


@api_bp.route("/pipelines/history", methods=["GET"])
def pipeline_history():
    history = get_engine().orchestrator.execution_history(
        pipeline_name=request.args.get("pipeline") or None,
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
    )
    return jsonify({"success": True, **history}), 200


@api_bp.route("/pipelines/metrics", methods=["GET"])
def all_pipeline_metrics():
    return jsonify({"success": True, "metrics": get_engine().orchestrator.all_pipeline_metrics()}), 200


@api_bp.route("/pipelines/<name>/metrics", methods=["GET"])
def pipeline_metrics(name):
    return jsonify({"success": True, "metrics": get_engine().orchestrator.pipeline_metrics(name)}), 200


@api_bp.route("/pipelines/dashboard", methods=["GET"])
def pipeline_dashboard():
    return jsonify({"success": True, "dashboard": get_engine().orchestrator.dashboard()}), 200


@api_bp.route("/executions/purge", methods=["POST"])
def purge_executions():
    retention_days = _positive_int(_json_body().get("retention_days"), "retention_days")
    deleted = get_engine().orchestrator.purge_old_executions(retention_days)
    return jsonify({"success": True, "deleted": deleted}), 200


# ==============================================================================
# Template review
# ==============================================================================

@api_bp.route("/templates/review", methods=["GET"])
def templates_for_review():
    queue = get_engine().generation.review_queue()
    return jsonify({"success": True, "templates": queue, "count": len(queue)}), 200


@api_bp.route("/templates/<int:template_id>/approve", methods=["POST"])
def approve_template(template_id):
    result = get_engine().generation.approve(template_id, scheduled_at=_json_body().get("scheduled_at"))
    return jsonify({"success": True, **result}), 200


@api_bp.route("/templates/<int:template_id>/reject", methods=["POST"])
def reject_template(template_id):
    result = get_engine().generation.reject(template_id, reason=_json_body().get("reason"))
    return jsonify({"success": True, **result}), 200


# ==============================================================================
# Scans and queue
# ==============================================================================

@api_bp.route("/generation/scan", methods=["POST"])
def trigger_generation_scan():
    batch_size = _positive_int(_json_body().get("batch_size"), "batch_size")
    result = get_engine().generation.scan(batch_size=batch_size)
    return jsonify({"success": True, "scan": result.to_dict()}), 200


@api_bp.route("/dispatch/scan", methods=["POST"])
def trigger_dispatch_scan():
    batch_size = _positive_int(_json_body().get("batch_size"), "batch_size")
    result = get_engine().dispatch.scan(batch_size=batch_size)
    return jsonify({"success": True, "scan": result.to_dict()}), 200


@api_bp.route("/queue/stats", methods=["GET"])
def queue_stats():
    engine = get_engine()
    stats = engine.generation.queue_statistics()
    stats["dispatch_in_progress"] = engine.dispatch.is_in_progress()
    return jsonify({"success": True, "stats": stats}), 200


@api_bp.route("/queue/<int:item_id>/requeue", methods=["POST"])
def requeue_item(item_id):
    item = get_engine().dispatch.requeue(item_id, scheduled_at=_json_body().get("scheduled_at"))
    return jsonify({"success": True, "item": item}), 200


@api_bp.route("/queue/<int:item_id>/retry-generation", methods=["POST"])
def retry_item_generation(item_id):
    item = get_engine().generation.retry_generation(item_id)
    return jsonify({"success": True, "item": item}), 200


@api_bp.route("/scheduler/tasks", methods=["GET"])
def scheduler_tasks():
    scheduler = get_engine().scheduler
    if scheduler is None:
        return jsonify({"success": True, "enabled": False, "tasks": []}), 200
    return jsonify({"success": True, "enabled": True, "running": scheduler.running, "tasks": scheduler.tasks()}), 200


@api_bp.route("/scheduler/tasks/<name>/<action>", methods=["POST"])
def control_scheduler_task(name, action):
    scheduler = get_engine().scheduler
    if scheduler is None:
        raise ValidationFailed("Scheduler is not enabled on this instance")
    handlers = {"pause": scheduler.pause, "resume": scheduler.resume, "cancel": scheduler.cancel}
    if action not in handlers:
        raise ValidationFailed(f"Unknown action '{action}' (expected pause, resume or cancel)")
    handlers[action](name)
    return jsonify({"success": True, "task": name, "action": action}), 200
