"""Startup helpers for the rotation components.

Wires settings, logging, storage and the pool together and keeps a
process-wide pool instance.
"""

from structlog import get_logger

from kiro_rotation.config.settings import RotationSettings, get_settings
from kiro_rotation.core.logging import configure_logging
from kiro_rotation.rotation.interfaces import RefreshTokenCodec
from kiro_rotation.rotation.pool import AccountPool
from kiro_rotation.rotation.storage import AccountStore


logger = get_logger(__name__)


# Global pool instance (initialized by init_account_pool)
_pool: AccountPool | None = None


def get_account_pool() -> AccountPool:
    """Get the global account pool instance.

    Returns:
        AccountPool instance

    Raises:
        RuntimeError: If pool not initialized
    """
    if _pool is None:
        raise RuntimeError(
            "Account pool not initialized. Call init_account_pool() at startup."
        )
    return _pool


def init_account_pool(
    settings: RotationSettings | None = None,
    codec: RefreshTokenCodec | None = None,
) -> AccountPool:
    """Initialize the global account pool from configuration.

    Args:
        settings: Settings to use; defaults to the environment-derived settings
        codec: Refresh-token codec for credential refresh and export

    Returns:
        Initialized AccountPool
    """
    global _pool
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)

    store = AccountStore.from_settings(settings)
    _pool = AccountPool.load_from_disk(
        store,
        settings.strategy,
        codec=codec,
        default_region=settings.default_region,
        toast_debounce_ms=settings.toast_debounce_ms,
    )
    logger.info(
        "account_pool_initialized",
        strategy=str(settings.strategy),
        accounts=_pool.account_count,
    )
    return _pool


def reset_account_pool() -> None:
    """Drop the global pool instance (useful for testing)."""
    global _pool
    _pool = None
