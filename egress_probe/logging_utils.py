"""Centralized logging utilities for probing runs.

Besides run-scoped handler setup, this module provides lightweight timing and
progress helpers:

- ``perf``: a decorator timing sync or async callables, logging one structured
  ``event=perf`` line with the duration and success state.
- ``perf_span``: a context manager timing arbitrary blocks with the same line.
- ``ProgressLog``: a counter that logs ``progress: done/total`` periodically
  while probes complete.

All helpers write to the logger hierarchy configured by ``configure_logging``
so timings land in the per-run log file under ``logs/``.
"""

import functools
import inspect
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from egress_probe.config import AppConfig

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [run=%(run_id)s] %(message)s"


class _RunContextFilter(logging.Filter):
    """Inject the current run identifier into every log record."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self._run_id
        return True


def _sanitize_run_id(run_id: str) -> str:
    """Convert a run identifier into a filesystem-friendly token."""
    return "".join(ch if ch.isalnum() or ch in ("-", "_") else "-" for ch in run_id)


def generate_run_id() -> str:
    """Return a default run identifier based on the current UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def configure_logging(
    config: AppConfig,
    run_id: Optional[str] = None,
    include_console: bool = True,
    fmt: str = DEFAULT_LOG_FORMAT,
) -> Path:
    """Configure root logging handlers for the current run.

    Console output goes to stderr so a run can stream its JSON result on stdout.
    """
    resolved_run_id = run_id or generate_run_id()
    safe_run_id = _sanitize_run_id(resolved_run_id)

    log_dir = config.log_directory
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{config.app_name}-{safe_run_id}.log"

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers = [logging.FileHandler(log_path, encoding="utf-8")]
    if include_console:
        handlers.append(logging.StreamHandler(sys.stderr))

    for handler in handlers:
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RunContextFilter(resolved_run_id))
        root_logger.addHandler(handler)

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    root_logger.setLevel(level)
    # httpx logs every request at INFO; keep per-probe chatter out of run logs
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    return log_path


def _format_tags(tags: Optional[Mapping[str, Any]]) -> str:
    """Return a compact, sorted ``{k=v, ...}`` rendering of tags."""
    if not tags:
        return "{}"
    items = ", ".join(f"{k}={tags[k]!r}" for k in sorted(tags))
    return "{" + items + "}"


def _log_perf(
    logger: logging.Logger,
    level: int,
    name: str,
    start_ns: int,
    success: bool,
    tags: Optional[Mapping[str, Any]],
) -> None:
    duration_ms = (time.monotonic_ns() - start_ns) / 1_000_000.0
    logger.log(
        level,
        "event=perf name=%s duration_ms=%.3f success=%s tags=%s",
        name,
        duration_ms,
        str(success).lower(),
        _format_tags(tags),
    )


def perf(
    name: Optional[str] = None,
    *,
    tags: Optional[Mapping[str, Any]] = None,
    level: int = logging.INFO,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator that logs execution time of a function or coroutine function.

    Args:
        name: Optional span name; defaults to ``<module>.<qualname>``.
        tags: Optional mapping of additional metadata to include in the log.
        level: Logging level to use (defaults to ``logging.INFO``).
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        span_name = name or f"{func.__module__}.{func.__qualname__}"
        logger = logging.getLogger(func.__module__)

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start_ns = time.monotonic_ns()
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    _log_perf(logger, level, span_name, start_ns, False, tags)
                    raise
                _log_perf(logger, level, span_name, start_ns, True, tags)
                return result

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start_ns = time.monotonic_ns()
            try:
                result = func(*args, **kwargs)
            except Exception:
                _log_perf(logger, level, span_name, start_ns, False, tags)
                raise
            _log_perf(logger, level, span_name, start_ns, True, tags)
            return result

        return sync_wrapper

    return decorator


class perf_span:
    """Context manager to time an arbitrary code block and log its duration.

    Example:
        with perf_span("probe.total", tags={"nodes": 12}):
            run_probe_job(...)
    """

    def __init__(
        self,
        name: str,
        *,
        tags: Optional[Mapping[str, Any]] = None,
        level: int = logging.INFO,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._name = name
        self._tags = tags or {}
        self._level = level
        self._logger = logger or logging.getLogger(__name__)
        self._start_ns: Optional[int] = None

    def __enter__(self) -> "perf_span":
        self._start_ns = time.monotonic_ns()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        start_ns = self._start_ns if self._start_ns is not None else time.monotonic_ns()
        _log_perf(self._logger, self._level, self._name, start_ns, exc_type is None, self._tags)
        # Do not suppress exceptions
        return False


class ProgressLog:
    """Count finished probes and log progress every ``every`` completions.

    The last completion is always logged so a run ends with a final count.
    """

    def __init__(
        self,
        total: int,
        *,
        every: int = 10,
        label: str = "probes",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.total = total
        self.done = 0
        self.passed = 0
        self._every = max(1, every)
        self._label = label
        self._logger = logger or logging.getLogger(__name__)

    def tick(self, passed: bool) -> None:
        self.done += 1
        if passed:
            self.passed += 1
        if self.done % self._every == 0 or self.done == self.total:
            self._logger.info(
                "progress: %d/%d %s (passed: %d)",
                self.done,
                self.total,
                self._label,
                self.passed,
            )


__all__ = [
    "configure_logging",
    "generate_run_id",
    "DEFAULT_LOG_FORMAT",
    "perf",
    "perf_span",
    "ProgressLog",
]
