"""
Print Broker Settlement Hub - Routes Package

Modular API routers for the settlement hub.
"""

from .jobs import router as jobs_router, set_dependencies as set_jobs_deps
from .chain_documents import router as chain_documents_router, set_dependencies as set_chain_documents_deps
from .pricing import router as pricing_router, set_dependencies as set_pricing_deps
from .webhooks import router as webhooks_router, set_dependencies as set_webhooks_deps

__all__ = [
    'jobs_router', 'set_jobs_deps',
    'chain_documents_router', 'set_chain_documents_deps',
    'pricing_router', 'set_pricing_deps',
    'webhooks_router', 'set_webhooks_deps',
]
