"""Logging configuration for the application.

Records carry the request tenant ("default" outside a tenant request) so
replica loads and fallbacks of different tenants can be told apart.
"""

import logging
import sys

from mirrorcache.core.config import get_settings
from mirrorcache.core.tenant_context import get_tenant_id

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(tenant)s] %(message)s"

# Chatty third-party loggers kept at WARNING unless SQL echo is on
_QUIET_LOGGERS = ("aiosqlite", "sqlalchemy.engine")


class TenantLogFilter(logging.Filter):
    """Adds the current tenant id to each record as `tenant`."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "tenant"):
            record.tenant = get_tenant_id() or "default"
        return True


def setup_logging() -> None:
    """Configure application-wide logging.

    Level is DEBUG when settings.debug is True, otherwise INFO. Output goes
    to stdout.
    """
    settings = get_settings()
    log_level = logging.DEBUG if settings.debug else logging.INFO
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TenantLogFilter())
    logging.basicConfig(level=log_level, format=LOG_FORMAT, handlers=[handler])
    if not settings.database_echo:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
