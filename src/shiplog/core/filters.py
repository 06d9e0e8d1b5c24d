"""
Filter pipeline applied to every log before it is persisted.
"""

from typing import Any, Callable, List, Tuple

import structlog

logger = structlog.get_logger(__name__)

LogFilter = Callable[[Any], Any]


class FilterPipeline:
    """
    Ordered, append-only sequence of pure log transforms.

    Filters run left to right; each receives the previous filter's output.
    Errors raised by a filter propagate to the caller untouched.
    """

    def __init__(self) -> None:
        self._filters: List[LogFilter] = []

    def add(self, log_filter: LogFilter) -> None:
        """Append a filter to the end of the pipeline."""
        if not callable(log_filter):
            raise TypeError(f"filter must be callable, got {type(log_filter).__name__}")
        self._filters.append(log_filter)
        logger.debug(
            "Filter registered",
            filter=getattr(log_filter, "__name__", type(log_filter).__name__),
            position=len(self._filters)
        )

    def apply(self, log: Any) -> Any:
        value = log
        for log_filter in self._filters:
            value = log_filter(value)
        return value

    @property
    def filters(self) -> Tuple[LogFilter, ...]:
        return tuple(self._filters)

    def __len__(self) -> int:
        return len(self._filters)
