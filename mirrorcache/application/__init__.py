"""Application layer: interfaces and services.

Depends only on domain and protocol definitions (DIP).
Infrastructure implements the interfaces (primary store, replica store).
"""

from mirrorcache.application.interfaces import DataService, RequestContext
from mirrorcache.application.services import ReferenceResolver

__all__ = ["DataService", "ReferenceResolver", "RequestContext"]
