# wms_replenishment/batch/__init__.py

from .replen_job import run_replen_job, check_thresholds, generate_tasks

__all__ = [
    'run_replen_job',
    'check_thresholds',
    'generate_tasks'
]
