"""
Queue registry — one backend handle per named queue, built once at startup.

The orchestrator never looks queues up in module globals; it receives this
struct and asks it for the handle behind a job type or a queue name. The
legacy single queue is optional and only consulted as a secondary lookup.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from docflow.core.exceptions import NotFoundError
from docflow.pipeline.constants import JobType
from docflow.pipeline.interfaces import QueueBackend
from docflow.pipeline.router import resolve_route


@dataclass
class QueueRegistry:
    queues: dict[str, QueueBackend] = field(default_factory=dict)
    legacy: QueueBackend | None = None

    def get(self, name: str) -> QueueBackend:
        if self.legacy is not None and name == self.legacy.name:
            return self.legacy
        try:
            return self.queues[name]
        except KeyError:
            raise NotFoundError(f"Queue not found: {name}") from None

    def for_job_type(self, job_type: JobType | str) -> QueueBackend:
        return self.get(resolve_route(job_type).queue_name)

    def names(self) -> list[str]:
        """Primary queue names, then the legacy queue when configured."""
        names = list(self.queues)
        if self.legacy is not None:
            names.append(self.legacy.name)
        return names

    def all(self) -> list[QueueBackend]:
        backends = list(self.queues.values())
        if self.legacy is not None:
            backends.append(self.legacy)
        return backends
