"""
Worker module.
Contains the polling worker and the job handler registry.
"""

from gearqueue.worker.handlers import HandlerRegistry, get_registry, register_handler
from gearqueue.worker.main import Worker, run

__all__ = ["Worker", "run", "HandlerRegistry", "get_registry", "register_handler"]
