"""
Publication Approvals — Structured Logging

Every component logs JSON lines through the publication_approvals
logger tree. Correlation fields are bound once per unit of work with
log_context() and are stamped on every line logged inside the block,
whichever module emits it:

    entity_id        publication the work is about
    change_event_id  change record being consumed from the feed
    instance_id      orchestrator instance
    trace_id         survives suspension, so start and resume correlate

WorkflowLogger adds orchestrator lifecycle actions on top.

Usage:
    from infra.logging import configure_logging, get_logger, log_context

    configure_logging(level="INFO", namespace=cfg.service_namespace, version=__version__)
    with log_context(entity_id="p1", change_event_id="chg_17"):
        get_logger("bridge").info("Resuming")   # line carries both fields
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

ROOT_LOGGER = "publication_approvals"

_bound: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "publication_approvals_log_context", default={},
)


# ═══════════════════════════════════════════════════════════════════
# Correlation Context
# ═══════════════════════════════════════════════════════════════════

@contextmanager
def log_context(**kwargs: Any) -> Iterator[dict[str, Any]]:
    """
    Bind correlation fields for the duration of the block. Nested
    blocks add to (and may override) the outer fields; empty values
    are ignored. The binding is per thread and per asyncio task.
    """
    merged = {**_bound.get(), **{k: v for k, v in kwargs.items() if v not in (None, "")}}
    token = _bound.set(merged)
    try:
        yield merged
    finally:
        _bound.reset(token)


def bound_fields() -> dict[str, Any]:
    """The correlation fields bound at this point."""
    return dict(_bound.get())


class CorrelationFilter(logging.Filter):
    """Copies the bound correlation fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation = bound_fields()
        return True


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    One JSON object per record. Key order: record basics, service
    attributes, correlation fields, then ``record.structured`` (set
    through ``extra=fields(...)`` or by WorkflowLogger), which wins on
    a clash.
    """

    def __init__(self, service_name: str = ROOT_LOGGER, namespace: str = "", version: str = ""):
        super().__init__()
        self.service_name = service_name
        self.namespace = namespace
        self.version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.namespace": self.namespace,
            "service.version": self.version,
        }
        entry.update(getattr(record, "correlation", {}))
        entry.update(getattr(record, "structured", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
    namespace: str = "",
    version: str = "",
) -> logging.Logger:
    """
    Send the publication_approvals logger tree to ``stream`` (stderr
    by default) as JSON lines. Safe to call again: the previous
    handler is replaced and child loggers fall back to the root level.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        service_name: service.name on every line
        namespace: service.namespace, the event source of this service
        version: service.version, normally approvals.__version__
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric)
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(JSONFormatter(service_name, namespace=namespace, version=version))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def fields(**kwargs: Any) -> dict[str, Any]:
    """Build the ``extra`` mapping for a structured log call."""
    return {"structured": kwargs}


def generate_trace_id() -> str:
    """32 hex chars, the width of an OpenTelemetry trace id."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Workflow Logger
# ═══════════════════════════════════════════════════════════════════

class WorkflowLogger:
    """
    Lifecycle actions for one orchestrator instance (workflow_start,
    state_enter, suspended, resumed, workflow_end). Each entry carries
    the instance's ids whether or not bind() is active; bind() extends
    them to everything else logged while the instance runs.
    """

    def __init__(
        self,
        instance_id: str,
        entity_id: str,
        workflow: str = "",
        trace_id: str | None = None,
    ):
        self.instance_id = instance_id
        self.entity_id = entity_id
        self.workflow = workflow
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("workflow")

    def ids(self) -> dict[str, str]:
        return {
            "trace_id": self.trace_id,
            "instance_id": self.instance_id,
            "entity_id": self.entity_id,
            "workflow": self.workflow,
        }

    def bind(self):
        return log_context(**self.ids())

    def _emit(self, level: int, action: str, **extra: Any):
        if self._logger.isEnabledFor(level):
            self._logger.log(level, action, extra=fields(**self.ids(), action=action, **extra))

    def on_workflow_start(self) -> None:
        self._emit(logging.INFO, "workflow_start")

    def on_state_enter(self, state: str, state_type: str) -> None:
        self._emit(logging.DEBUG, "state_enter", state=state, state_type=state_type)

    def on_suspended(self, state: str) -> None:
        self._emit(logging.INFO, "suspended", state=state)

    def on_resumed(self, state: str) -> None:
        self._emit(logging.INFO, "resumed", state=state)

    def on_workflow_end(self, status: str, result: str, reason: str = "") -> None:
        self._emit(logging.INFO, "workflow_end", status=status, result=result, reason=reason)
