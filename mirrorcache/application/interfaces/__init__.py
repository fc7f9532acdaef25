"""Application interfaces (ports): data service protocols and request context.

No runtime imports from mirrorcache.infrastructure or mirrorcache.api.
"""

from mirrorcache.application.interfaces.data_service import (
    ActivePredicate,
    DataService,
    NextHandler,
    RequestContext,
    Transaction,
)

__all__ = [
    "ActivePredicate",
    "DataService",
    "NextHandler",
    "RequestContext",
    "Transaction",
]
