"""
CaseFlow Engine - Routes Package

Modular API routers for the workflow engine.
"""

from .common import set_permission_check
from .queues import aging_router, router as queues_router, set_dependencies as set_queues_deps
from .work_items import router as work_items_router, set_dependencies as set_work_items_deps

__all__ = [
    'work_items_router', 'set_work_items_deps',
    'queues_router', 'aging_router', 'set_queues_deps',
    'set_permission_check',
]
