"""
Processing Services
═══════════════════

  processing.py   ProcessingService: enqueue, status, retry, cancel, queue
                  administration and retention
  events.py       ProcessingEventHandler: worker outcomes → document stage,
                  downstream chaining, audit log
  factory.py      cached object graph for API and worker processes
"""

from docflow.services.events import ProcessingEventHandler
from docflow.services.processing import ProcessingService

__all__ = ["ProcessingEventHandler", "ProcessingService"]
