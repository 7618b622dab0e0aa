"""
Processor registry — queue-native job kind → processor instance.

Workers only see the kind label carried by the Celery message, so lookup is
by kind; the router's table is the single source of truth for which kinds
belong to which job type.
"""

from __future__ import annotations

from docflow.core.exceptions import QueueConfigurationError
from docflow.pipeline.router import resolve_route
from docflow.processors.base import BaseProcessor


class ProcessorRegistry:

    def __init__(self, processors: list[BaseProcessor] | None = None) -> None:
        self._by_kind: dict[str, BaseProcessor] = {}
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: BaseProcessor) -> None:
        for job_type in processor.job_types:
            self._by_kind[resolve_route(job_type).kind] = processor

    def get(self, kind: str) -> BaseProcessor:
        try:
            return self._by_kind[kind]
        except KeyError:
            raise QueueConfigurationError(f"No processor registered for kind: {kind!r}") from None

    def kinds(self) -> list[str]:
        return sorted(self._by_kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self._by_kind
