"""Expose Celery tasks so autodiscovery loads them."""

from . import cleanup

__all__ = ["cleanup"]
