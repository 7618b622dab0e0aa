"""Celery worker entry point: ``celery -A docflow.workers.celery_app worker -Q <queue>``."""
