# Package
from flask import Blueprint

from mailpipe.logging_config import get_logger

logger = get_logger(__name__)

api_bp = Blueprint("api", __name__)

from mailpipe.api import routes  # noqa: E402,F401
