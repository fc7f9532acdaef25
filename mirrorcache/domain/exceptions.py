"""Domain exceptions for the replication cache.

Defines exceptions that represent resolution and model violations. These
are independent of infrastructure concerns. The coordinator converts every
cache-side exception into a primary-store fallback; the HTTP layer maps them
to responses in exception handlers.
"""

from typing import Any


class MirrorCacheException(Exception):
    """Base exception for all mirrorcache errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code.
        details: Additional error context (e.g. entity, tenant).
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            error_code: Optional machine-readable code; defaults to class name.
            details: Optional dict of extra context.
        """
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation for API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class UnknownEntityException(MirrorCacheException):
    """Raised when a name is not defined in the data model."""

    def __init__(self, entity: str) -> None:
        super().__init__(
            f"Unknown entity: {entity}",
            "UNKNOWN_ENTITY",
            {"entity": entity},
        )


class ModelDefinitionException(MirrorCacheException):
    """Raised when the data model is malformed (fatal at startup)."""

    def __init__(self, message: str, entity: str | None = None) -> None:
        details = {"entity": entity} if entity else {}
        super().__init__(message, "MODEL_DEFINITION_ERROR", details)


class ResolutionAmbiguityException(MirrorCacheException):
    """Raised when the resolver cannot classify a query shape.

    Never fatal: the coordinator treats it as "no relevant refs".
    """

    def __init__(self, reason: str, path: tuple[str, ...] | None = None) -> None:
        details: dict[str, Any] = {"reason": reason}
        if path:
            details["path"] = ".".join(path)
        super().__init__(
            f"Query references cannot be resolved: {reason}",
            "RESOLUTION_AMBIGUITY",
            details,
        )


class QueryCompilationException(MirrorCacheException):
    """Raised when a query descriptor cannot be translated to SQL."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Query cannot be compiled: {reason}",
            "QUERY_COMPILATION_ERROR",
            {"reason": reason},
        )
