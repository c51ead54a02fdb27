"""
Structured Logging - optional JSON output for the `velora` logger tree.

Adds a per-request correlation id (set by the HTTP middleware) and the
user id when a handler binds one.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        usr_id = user_id_var.get("")
        if usr_id:
            log_entry["user_id"] = usr_id

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Attach a stdout handler to the `velora` logger (idempotent)."""
    root = logging.getLogger("velora")
    root.setLevel(level.upper())
    if any(getattr(h, "_velora_handler", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._velora_handler = True
    root.addHandler(handler)


def set_request_context(request_id: str = "", user_id: str = ""):
    """Set context variables for the current request."""
    if request_id:
        request_id_var.set(request_id)
    if user_id:
        user_id_var.set(user_id)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())[:12]
