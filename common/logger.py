"""Unified logger with trace_id tagging for API requests and valuation ticks."""
import logging
import uuid
from contextvars import ContextVar

from config.settings import LOG_LEVEL

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")

_factory_installed = False


def _install_record_factory() -> None:
    global _factory_installed
    if _factory_installed:
        return
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.trace_id = trace_id_var.get() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _factory_installed = True


def get_logger(name: str) -> logging.Logger:
    _install_record_factory()
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter(
            "[%(asctime)s] [%(trace_id)s] %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(fmt)
        logger.addHandler(handler)
        logger.setLevel(LOG_LEVEL.upper())
    return logger


def new_trace_id() -> str:
    tid = str(uuid.uuid4())[:8]
    trace_id_var.set(tid)
    return tid
