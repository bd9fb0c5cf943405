"""Background worker model: strategy router, client caches, offline queue and version transitions."""

from cashheros.worker.worker import Registration, ServiceWorker, create_worker

__all__ = ["Registration", "ServiceWorker", "create_worker"]
