"""
Configuration management for GraphSync.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for relay and store settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class EventSourceBackend(Enum):
    """Supported upstream event sources."""

    RELAY = "relay"
    MEMORY = "memory"


class GraphBackend(Enum):
    """Supported graph stores."""

    SQLITE = "sqlite"
    NEO4J = "neo4j"


class QueueBackend(Enum):
    """Supported retry queue backings."""

    DIRECTORY = "directory"
    SQLITE = "sqlite"


class MissingEventPolicy(Enum):
    """What to do when a queued key has no current event upstream."""

    NOOP = "noop"
    REVOKE = "revoke"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _parse_enum(enum_cls: type[Enum], env_name: str, default: str) -> Enum:
    value = os.getenv(env_name, default).lower()
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)  # type: ignore[attr-defined]
        raise ValueError(f"Invalid {env_name} '{value}'. Must be one of: {choices}")


@dataclass(frozen=True)
class RelayConfig:
    """Relay connection configuration.

    Attributes:
        url: Relay websocket URL
        timeout_seconds: Connect and per-frame receive timeout
        export_page_size: Events per REQ when paging a full export
        author_batch: Authors per REQ for batched latest-id lookups
    """

    url: str = "ws://localhost:7777"
    timeout_seconds: float = 10.0
    export_page_size: int = 500
    author_batch: int = 100

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("RELAY_URL", "ws://localhost:7777"),
            timeout_seconds=float(os.getenv("RELAY_TIMEOUT_SECONDS", "10")),
            export_page_size=int(os.getenv("RELAY_EXPORT_PAGE_SIZE", "500")),
            author_batch=int(os.getenv("RELAY_SWEEP_AUTHOR_BATCH", "100")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite databases
        graph_db_name: SQLite graph database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/graphsync"
    graph_db_name: str = "graph.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/graphsync"),
            graph_db_name=os.getenv("GRAPH_DB_NAME", "graph.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class Neo4jConfig:
    """Neo4j graph store configuration.

    Attributes:
        uri: Bolt URI
        user: Username
        password: Password (never logged)
        database: Database name
        write_batch: Rows per UNWIND during bulk load
    """

    uri: str = "bolt://localhost:7687"
    user: str = "neo4j"
    password: str = "neo4j"
    database: str = "neo4j"
    write_batch: int = 1000

    @classmethod
    def from_env(cls) -> Neo4jConfig:
        """Load configuration from environment variables."""
        return cls(
            uri=os.getenv("NEO4J_URI", "bolt://localhost:7687"),
            user=os.getenv("NEO4J_USER", "neo4j"),
            password=os.getenv("NEO4J_PASSWORD", "neo4j"),
            database=os.getenv("NEO4J_DATABASE", "neo4j"),
            write_batch=int(os.getenv("NEO4J_WRITE_BATCH", "1000")),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Retry queue configuration.

    Attributes:
        queue_dir: Directory holding markers (or the queue database)
        max_concurrent: Keys applied concurrently by the consumer
        poll_interval_seconds: Sleep between consumer passes when idle
        alert_after_attempts: Failed attempts before a key is escalated
    """

    queue_dir: str = "/var/lib/graphsync/queue"
    max_concurrent: int = 5
    poll_interval_seconds: float = 5.0
    alert_after_attempts: int = 10

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Load configuration from environment variables."""
        return cls(
            queue_dir=os.getenv("QUEUE_DIR", "/var/lib/graphsync/queue"),
            max_concurrent=int(os.getenv("QUEUE_MAX_CONCURRENT", "5")),
            poll_interval_seconds=float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "5")),
            alert_after_attempts=int(os.getenv("QUEUE_ALERT_AFTER_ATTEMPTS", "10")),
        )


@dataclass(frozen=True)
class ReconcileConfig:
    """Reconciliation configuration.

    Attributes:
        watched_kinds: Event kinds mirrored into the graph
        missing_event_policy: Policy for keys with no current event
    """

    watched_kinds: tuple[int, ...] = (3, 10000, 1984)
    missing_event_policy: MissingEventPolicy = MissingEventPolicy.NOOP

    @classmethod
    def from_env(cls) -> ReconcileConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("WATCHED_KINDS", "3,10000,1984")
        try:
            kinds = tuple(int(k) for k in raw.split(",") if k.strip())
        except ValueError:
            raise ValueError(f"Invalid WATCHED_KINDS '{raw}'. Must be comma-separated integers")
        return cls(
            watched_kinds=kinds,
            missing_event_policy=_parse_enum(  # type: ignore[arg-type]
                MissingEventPolicy, "MISSING_EVENT_POLICY", "noop"
            ),
        )


@dataclass(frozen=True)
class SweepConfig:
    """Comparison sweep configuration.

    Attributes:
        interval_seconds: Minimum time between sweeps
        batch_size: Actors compared per batch
    """

    interval_seconds: int = 3600
    batch_size: int = 1000

    @classmethod
    def from_env(cls) -> SweepConfig:
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600")),
            batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "1000")),
        )


@dataclass(frozen=True)
class BulkConfig:
    """Bulk extraction configuration.

    Attributes:
        output_dir: Directory for normalized tables
        workers: Worker processes (0 = cores - 1, minimum 1)
    """

    output_dir: str = "/var/lib/graphsync/bulk"
    workers: int = 0

    @classmethod
    def from_env(cls) -> BulkConfig:
        """Load configuration from environment variables."""
        return cls(
            output_dir=os.getenv("BULK_OUTPUT_DIR", "/var/lib/graphsync/bulk"),
            workers=int(os.getenv("BULK_WORKERS", "0")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Ops HTTP endpoint configuration."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8081

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("HTTP_ENABLED", "true"),
            host=os.getenv("HTTP_HOST", "127.0.0.1"),
            port=int(os.getenv("HTTP_PORT", "8081")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class SyncConfig:
    """Complete GraphSync configuration.

    This aggregates all configuration sections and provides validation.
    """

    event_source: EventSourceBackend = EventSourceBackend.RELAY
    graph_backend: GraphBackend = GraphBackend.SQLITE
    queue_backend: QueueBackend = QueueBackend.DIRECTORY
    relay: RelayConfig = field(default_factory=RelayConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    neo4j: Neo4jConfig = field(default_factory=Neo4jConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            event_source=_parse_enum(EventSourceBackend, "EVENT_SOURCE", "relay"),  # type: ignore[arg-type]
            graph_backend=_parse_enum(GraphBackend, "GRAPH_BACKEND", "sqlite"),  # type: ignore[arg-type]
            queue_backend=_parse_enum(QueueBackend, "QUEUE_BACKEND", "directory"),  # type: ignore[arg-type]
            relay=RelayConfig.from_env(),
            storage=StorageConfig.from_env(),
            neo4j=Neo4jConfig.from_env(),
            queue=QueueConfig.from_env(),
            reconcile=ReconcileConfig.from_env(),
            sweep=SweepConfig.from_env(),
            bulk=BulkConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.event_source == EventSourceBackend.RELAY:
            if not self.relay.url.startswith(("ws://", "wss://")):
                raise ValueError("RELAY_URL must be a ws:// or wss:// URL")

        if self.graph_backend == GraphBackend.NEO4J and not self.neo4j.uri:
            raise ValueError("NEO4J_URI is required when GRAPH_BACKEND=neo4j")

        if not self.reconcile.watched_kinds:
            raise ValueError("WATCHED_KINDS must name at least one kind")
        if self.queue.max_concurrent < 1:
            raise ValueError("QUEUE_MAX_CONCURRENT must be at least 1")
        if self.sweep.batch_size < 1:
            raise ValueError("SWEEP_BATCH_SIZE must be at least 1")
        if self.bulk.workers < 0:
            raise ValueError("BULK_WORKERS must be 0 (auto) or positive")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "GraphSync configuration loaded",
            extra={
                "event_source": self.event_source.value,
                "relay_url": self.relay.url
                if self.event_source == EventSourceBackend.RELAY
                else None,
                "graph_backend": self.graph_backend.value,
                "neo4j_uri": self.neo4j.uri if self.graph_backend == GraphBackend.NEO4J else None,
                "queue_backend": self.queue_backend.value,
                "queue_dir": self.queue.queue_dir,
                "data_dir": self.storage.data_dir,
                "watched_kinds": list(self.reconcile.watched_kinds),
                "missing_event_policy": self.reconcile.missing_event_policy.value,
                "log_level": self.observability.log_level,
            },
        )
