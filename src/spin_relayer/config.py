#!/usr/bin/env python3
"""Configuration management for the spin finality relayer.

This module provides type-safe configuration dataclasses with validation
for the relayer. Configuration is loaded from environment variables with
defaults suitable for a local development network.
"""

import logging
import os
from dataclasses import dataclass
from typing import ClassVar
from urllib.parse import urlparse

from .retry import RetryPolicy

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class ChainEndpointConfig:
    """Connection and signing settings for one chain.

    Attributes:
        name: Chain name used in logs ("fastchain" or "parachain")
        ws_url: Websocket RPC endpoint
        signer_uri: Secret URI the sr25519 signing keypair is derived from
    """

    name: str
    ws_url: str
    signer_uri: str

    def __post_init__(self) -> None:
        """Validate endpoint configuration."""
        if not self.ws_url:
            raise ValueError(f"{self.name} websocket URL is required")

        parsed = urlparse(self.ws_url)
        if parsed.scheme not in ('ws', 'wss'):
            raise ValueError(
                f"Invalid {self.name} URL scheme: {parsed.scheme}. Expected ws or wss"
            )
        if not parsed.hostname:
            raise ValueError(f"Invalid {self.name} URL: {self.ws_url}")

        if not self.signer_uri:
            raise ValueError(f"{self.name} signer URI is required")

    @property
    def masked_signer(self) -> str:
        """Signer URI safe for logs: dev URIs shown, anything else masked."""
        if self.signer_uri.startswith("//") and len(self.signer_uri) <= 10:
            return self.signer_uri
        return "[CONFIGURED]"


@dataclass(frozen=True, slots=True)
class TransactionConfig:
    """Submission timeout and retry tuning, in milliseconds as configured."""

    timeout_ms: int = 60_000
    retry_max_attempts: int = 8
    retry_base_delay_ms: int = 1_500
    retry_max_delay_ms: int = 20_000
    retry_jitter: float = 0.2

    def __post_init__(self) -> None:
        """Validate transaction configuration."""
        if self.timeout_ms <= 0:
            raise ValueError(f"Transaction timeout must be positive, got {self.timeout_ms}")
        if self.retry_max_attempts < 1:
            raise ValueError(
                f"Retry attempts must be at least 1, got {self.retry_max_attempts}"
            )
        if self.retry_base_delay_ms < 0:
            raise ValueError(
                f"Retry base delay must be non-negative, got {self.retry_base_delay_ms}"
            )
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError(
                f"Retry max delay ({self.retry_max_delay_ms}) must not be below "
                f"base delay ({self.retry_base_delay_ms})"
            )
        if not 0 <= self.retry_jitter <= 1:
            raise ValueError(f"Retry jitter must be between 0 and 1, got {self.retry_jitter}")

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_ms / 1000,
            max_delay=self.retry_max_delay_ms / 1000,
            jitter=self.retry_jitter,
        )


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    """Reconnect and session restart backoff, in milliseconds as configured."""

    connect_max_attempts: int = 10
    connect_base_delay_ms: int = 1_000
    connect_max_delay_ms: int = 30_000
    restart_delay_ms: int = 2_000
    restart_max_delay_ms: int = 60_000

    def __post_init__(self) -> None:
        """Validate connection configuration."""
        if self.connect_max_attempts < 1:
            raise ValueError(
                f"Connect attempts must be at least 1, got {self.connect_max_attempts}"
            )
        if self.connect_base_delay_ms < 0 or self.restart_delay_ms < 0:
            raise ValueError("Connection delays must be non-negative")
        if self.connect_max_delay_ms < self.connect_base_delay_ms:
            raise ValueError(
                f"Connect max delay ({self.connect_max_delay_ms}) must not be below "
                f"base delay ({self.connect_base_delay_ms})"
            )
        if self.restart_max_delay_ms < self.restart_delay_ms:
            raise ValueError(
                f"Restart max delay ({self.restart_max_delay_ms}) must not be below "
                f"restart delay ({self.restart_delay_ms})"
            )

    @property
    def restart_delay(self) -> float:
        return self.restart_delay_ms / 1000

    @property
    def restart_max_delay(self) -> float:
        return self.restart_max_delay_ms / 1000

    def connect_policy(self, jitter: float = 0.0) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.connect_max_attempts,
            base_delay=self.connect_base_delay_ms / 1000,
            max_delay=self.connect_max_delay_ms / 1000,
            jitter=jitter,
        )


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the spin finality relayer.

    Attributes:
        fastchain: Fastchain endpoint and anchoring signer
        parachain: Parachain endpoint and proof/sudo signer
        transactions: Submission timeout and retry tuning
        connection: Reconnect and restart backoff
        block_number_bytes: Width of fastchain block numbers in justifications
        status_log_interval: Seconds between periodic status log lines
    """

    fastchain: ChainEndpointConfig
    parachain: ChainEndpointConfig
    transactions: TransactionConfig = TransactionConfig()
    connection: ConnectionConfig = ConnectionConfig()
    block_number_bytes: int = 8
    status_log_interval: int = 30

    SUPPORTED_BLOCK_NUMBER_BYTES: ClassVar[set[int]] = {4, 8}

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if self.block_number_bytes not in self.SUPPORTED_BLOCK_NUMBER_BYTES:
            raise ValueError(
                f"Unsupported block number width: {self.block_number_bytes}. "
                f"Supported widths: {', '.join(map(str, sorted(self.SUPPORTED_BLOCK_NUMBER_BYTES)))}"
            )
        if self.status_log_interval <= 0:
            raise ValueError(
                f"Status log interval must be positive, got {self.status_log_interval}"
            )

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Load configuration from environment variables.

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If an environment variable is invalid
        """
        fastchain = ChainEndpointConfig(
            name="fastchain",
            ws_url=os.environ.get("FASTCHAIN_WS", "ws://127.0.0.1:11144"),
            signer_uri=os.environ.get("FASTCHAIN_SIGNER_URI", "//Alice"),
        )
        parachain = ChainEndpointConfig(
            name="parachain",
            ws_url=os.environ.get("PARACHAIN_WS", "ws://127.0.0.1:9988"),
            signer_uri=os.environ.get("PARACHAIN_SIGNER_URI", "//Bob"),
        )

        transactions = TransactionConfig(
            timeout_ms=_env_int("TX_TIMEOUT_MS", 60_000),
            retry_max_attempts=_env_int("TX_RETRY_MAX_ATTEMPTS", 8),
            retry_base_delay_ms=_env_int("TX_RETRY_BASE_DELAY_MS", 1_500),
            retry_max_delay_ms=_env_int("TX_RETRY_MAX_DELAY_MS", 20_000),
            retry_jitter=_env_float("RETRY_JITTER", 0.2),
        )

        connection = ConnectionConfig(
            connect_max_attempts=_env_int("CONNECT_MAX_ATTEMPTS", 10),
            connect_base_delay_ms=_env_int("CONNECT_BASE_DELAY_MS", 1_000),
            connect_max_delay_ms=_env_int("CONNECT_MAX_DELAY_MS", 30_000),
            restart_delay_ms=_env_int("SESSION_RESTART_DELAY_MS", 2_000),
            restart_max_delay_ms=_env_int("SESSION_RESTART_MAX_DELAY_MS", 60_000),
        )

        return cls(
            fastchain=fastchain,
            parachain=parachain,
            transactions=transactions,
            connection=connection,
            block_number_bytes=_env_int("FASTCHAIN_BLOCK_NUMBER_BYTES", 8),
            status_log_interval=_env_int("STATUS_LOG_INTERVAL", 30),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Spin Finality Relayer Configuration")
        logger.info("=" * 60)

        for chain in (self.fastchain, self.parachain):
            logger.info(f"{chain.name.capitalize()}:")
            logger.info(f"  WS URL: {chain.ws_url}")
            logger.info(f"  Signer: {chain.masked_signer}")

        logger.info("Transactions:")
        logger.info(f"  Timeout: {self.transactions.timeout_ms} ms")
        logger.info(
            f"  Retry: {self.transactions.retry_max_attempts} attempts, "
            f"{self.transactions.retry_base_delay_ms}-{self.transactions.retry_max_delay_ms} ms, "
            f"jitter {self.transactions.retry_jitter}"
        )

        logger.info("Connection:")
        logger.info(
            f"  Connect: {self.connection.connect_max_attempts} attempts, "
            f"{self.connection.connect_base_delay_ms}-{self.connection.connect_max_delay_ms} ms"
        )
        logger.info(
            f"  Session restart: {self.connection.restart_delay_ms}-"
            f"{self.connection.restart_max_delay_ms} ms"
        )

        logger.info(f"Fastchain block number width: {self.block_number_bytes} bytes")
        logger.info(f"Status log interval: {self.status_log_interval} seconds")
        logger.info("=" * 60)
