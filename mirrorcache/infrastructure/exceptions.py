"""Infrastructure exceptions for replica stores and cache entries.

Extend MirrorCacheException so the coordinator and the HTTP layer handle
them consistently. The coordinator never lets them reach the caller of a
read: they are counted and the read falls back to the primary.
"""

from mirrorcache.domain.exceptions import MirrorCacheException


class ReplicaStoreException(MirrorCacheException):
    """Base exception for replica store operations."""


class StoreProvisionException(ReplicaStoreException):
    """Tenant replica store could not be opened, deployed or copied."""

    def __init__(self, tenant: str | None, reason: str) -> None:
        super().__init__(
            f"Failed to provision replica store for tenant: {tenant or 'default'}",
            "STORE_PROVISION_ERROR",
            {"tenant": tenant, "reason": reason},
        )


class ConsistencyMismatchException(ReplicaStoreException):
    """Row counts differ between the primary and the replica after a load."""

    def __init__(self, entity: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Replica load of {entity} is inconsistent: expected {expected} rows, got {actual}",
            "CONSISTENCY_MISMATCH",
            {"entity": entity, "expected": expected, "actual": actual},
        )


class RetryBudgetExceededException(ReplicaStoreException):
    """Entry failed more often than the retry budget allows; it stays INVALID."""

    def __init__(self, entity: str, tenant: str | None, failures: int) -> None:
        super().__init__(
            f"Replica of {entity} is invalid after {failures} failed loads",
            "RETRY_BUDGET_EXCEEDED",
            {"entity": entity, "tenant": tenant, "failures": failures},
        )
