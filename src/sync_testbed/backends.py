"""Image specifications for the testbed's backing services.

Each ``BackendSpec`` carries everything needed to start and health-check a
stateful backing container (database, cache). The ``ServiceSpec`` describes
the sync service, which is started on the testbed network and pointed at
the database through an environment variable.

Specs are compile-time constants; settings may swap the image reference
via :func:`resolve_image`, nothing else.

Key Concepts:
    POSTGRES: Relational database, logical replication enabled, alias ``database``.
    REDIS: Cache, image defaults only.
    ELECTRIC: Sync service, pinned by digest, HTTP on 3000.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TypeVar

# ---------------------------------------------------------------------------
# Specifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackendSpec:
    """Specification for a backing-service container."""

    name: str
    """Short name (e.g., 'postgres')."""

    image: str
    """Docker image with pinned tag."""

    port: int
    """Internal container port."""

    scheme: str
    """URI scheme clients use (postgresql, redis)."""

    healthcheck_cmd: list[str]
    """Docker HEALTHCHECK CMD arguments."""

    env: dict[str, str] = field(default_factory=dict)
    """Environment variables for the container."""

    command: list[str] = field(default_factory=list)
    """Arguments appended after the image (server flags)."""

    network_alias: str | None = None
    """Stable name under which siblings address this container."""

    startup_timeout: int = 60
    """Seconds to wait for the container to become healthy."""

    default_user: str = ""
    default_password: str = ""
    default_database: str = ""


@dataclass(frozen=True)
class ServiceSpec:
    """Specification for an HTTP service container started on the network."""

    name: str
    image: str
    internal_port: int
    upstream_env: str
    """Environment variable that receives the upstream database URI."""

    env: dict[str, str] = field(default_factory=dict)
    healthcheck_path: str | None = None
    """HTTP path that answers 200 once the service is ready."""

    startup_timeout: int = 60
    """Seconds to wait for the mapped port to accept connections."""


# ---------------------------------------------------------------------------
# Pre-defined images
# ---------------------------------------------------------------------------

DATABASE_ALIAS = "database"

POSTGRES = BackendSpec(
    name="postgres",
    image="docker.io/postgres:14",
    port=5432,
    scheme="postgresql",
    # TCP check: the entrypoint's init-phase server listens on the socket only.
    healthcheck_cmd=["pg_isready", "-h", "127.0.0.1", "-U", "test", "-d", "test"],
    env={
        "POSTGRES_USER": "test",
        "POSTGRES_PASSWORD": "test",
        "POSTGRES_DB": "test",
    },
    command=["-c", "listen_addresses=*", "-c", "wal_level=logical"],
    network_alias=DATABASE_ALIAS,
    default_user="test",
    default_password="test",
    default_database="test",
)

REDIS = BackendSpec(
    name="redis",
    image="docker.io/redis:7.2",
    port=6379,
    scheme="redis",
    healthcheck_cmd=["redis-cli", "ping"],
)

ELECTRIC = ServiceSpec(
    name="electric",
    image=(
        "electricsql/electric:1.0.0-beta.15"
        "@sha256:4ae0f895753b82684aa31ea1c708e9e86d0a9bca355acb7270dcb24062520810"
    ),
    internal_port=3000,
    upstream_env="DATABASE_URL",
    healthcheck_path="/v1/health",
)

SpecT = TypeVar("SpecT", BackendSpec, ServiceSpec)

# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------

BACKENDS: dict[str, BackendSpec] = {spec.name: spec for spec in (POSTGRES, REDIS)}
SERVICES: dict[str, ServiceSpec] = {ELECTRIC.name: ELECTRIC}


def get_image_spec(name: str) -> BackendSpec | ServiceSpec:
    """Look up a spec by name (case-insensitive).

    Raises
    ------
    ValueError
        If no backend or service has that name.
    """
    key = name.lower().strip()
    if key in BACKENDS:
        return BACKENDS[key]
    if key in SERVICES:
        return SERVICES[key]
    available = ", ".join(sorted([*BACKENDS, *SERVICES]))
    raise ValueError(f"Unknown image spec {name!r}. Available: {available}")


def resolve_image(spec: SpecT, override: str | None) -> SpecT:
    """Return ``spec`` with its image replaced when ``override`` is set."""
    if override:
        return replace(spec, image=override)
    return spec


__all__ = [
    "BACKENDS",
    "DATABASE_ALIAS",
    "ELECTRIC",
    "POSTGRES",
    "REDIS",
    "SERVICES",
    "BackendSpec",
    "ServiceSpec",
    "get_image_spec",
    "resolve_image",
]
