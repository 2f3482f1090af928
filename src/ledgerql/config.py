"""Settings of the engine, read from environment variables.

=========================  ================================================  ==========================
Variable                   Default                                           Meaning
=========================  ================================================  ==========================
``STARKNET_RPC_URL``       ``https://starknet-mainnet.public.blastapi.io``   Chain node endpoint
``START_BLOCK``            ``100000``                                        First block on empty store
``BATCH_SIZE``             ``10``                                            Blocks per poll
``SYNC_INTERVAL``          ``30000``                                         Milliseconds between polls
``ENABLE_INDEXER``         ``true``                                          Anything but ``false``
``DATABASE_URL``           ``sqlite:///ledgerql.db``                         SQLAlchemy database URL
``RATE_LIMIT_PER_MINUTE``  ``60``                                            Queries per user
``CACHE_MAX_SIZE``         ``100``                                           Cached results
``CACHE_TTL_SECONDS``      ``300``                                           Cached results lifetime
``LOG_LEVEL``              ``INFO``                                          Minimum log level
``LOG_JSON``               ``false``                                         JSON lines logs
``INDEX_STORAGE_DIFFS``    ``false``                                         Index storage diffs
=========================  ================================================  ==========================

Invalid values, like a non numeric ``BATCH_SIZE``, raise a :class:`pydantic.ValidationError`.
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

DEFAULT_RPC_URL = "https://starknet-mainnet.public.blastapi.io"

ENVIRONMENT_VARIABLES = {
    "rpc_url": "STARKNET_RPC_URL",
    "start_block": "START_BLOCK",
    "batch_size": "BATCH_SIZE",
    "sync_interval_ms": "SYNC_INTERVAL",
    "database_url": "DATABASE_URL",
    "rate_limit_per_minute": "RATE_LIMIT_PER_MINUTE",
    "cache_max_size": "CACHE_MAX_SIZE",
    "cache_ttl_seconds": "CACHE_TTL_SECONDS",
    "log_level": "LOG_LEVEL",
}

FLAG_VARIABLES = {
    "log_json": "LOG_JSON",
    "index_storage_diffs": "INDEX_STORAGE_DIFFS",
}


class Settings(BaseModel):
    model_config = {"frozen": True}

    rpc_url: str = DEFAULT_RPC_URL
    start_block: int = Field(default=100000, ge=0)
    batch_size: int = Field(default=10, ge=1)
    sync_interval_ms: int = Field(default=30000, ge=0)
    enable_indexer: bool = True
    database_url: str = "sqlite:///ledgerql.db"
    rate_limit_per_minute: int = Field(default=60, ge=1)
    cache_max_size: int = Field(default=100, ge=1)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    log_level: str = "INFO"
    log_json: bool = False
    index_storage_diffs: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build the settings from the environment, missing variables take the defaults.

        :param environ: The variables to read, :data:`os.environ` by default.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {
            field: environ[var] for field, var in ENVIRONMENT_VARIABLES.items() if var in environ
        }
        for field, var in FLAG_VARIABLES.items():
            if var in environ:
                values[field] = environ[var].strip().lower() in ("1", "true", "yes", "on")
        if "ENABLE_INDEXER" in environ:
            # Enabled unless explicitly disabled.
            values["enable_indexer"] = environ["ENABLE_INDEXER"].strip().lower() != "false"
        return cls.model_validate(values)
