"""
Queue adapters.

  registry.py        job type → queue handle, plus the optional legacy queue
  celery_backend.py  QueueBackend over Celery send_task / control
  ledger.py          Redis per-job state, counts and pause flag for each queue
"""
