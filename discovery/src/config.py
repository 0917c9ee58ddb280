from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from discovery.src.crd import GroupVersionKind


class ConfigError(RuntimeError):
    """Raised when the tracker configuration is invalid."""


@dataclass(frozen=True)
class TrackerConfig:
    """Immutable process configuration loaded at startup.

    Attributes:
        rate_limit_seconds:  Minimum spacing of watch/ticker-triggered rebuilds.
        collection_interval_seconds:  Period of the rate-limited safety-net rebuild.
        full_rescan_interval_seconds:  Period of the forced rebuild plus CRD UID refresh.
        discovery_workers:  Parallel group-version scans per rebuild (also the
                 discovery connection pool size).
        watch_timeout_seconds:  Server-side timeout of one CRD watch stream.
        health_port:  Port of the health/metrics server.
        wait_for_crds:  CRDs that must be established before the tracker starts.
        crd_wait_timeout_seconds:  Overall deadline for ``wait_for_crds``.
    """

    rate_limit_seconds: int = 5
    collection_interval_seconds: int = 30
    full_rescan_interval_seconds: int = 900
    discovery_workers: int = 16
    watch_timeout_seconds: int = 300
    health_port: int = 8081
    wait_for_crds: tuple[GroupVersionKind, ...] = ()
    crd_wait_timeout_seconds: int = 150


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_gvk_list(raw: str) -> tuple[GroupVersionKind, ...]:
    """Parse ``group/version/Kind`` entries separated by commas."""
    gvks: list[GroupVersionKind] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = [part.strip() for part in entry.split("/")]
        if len(parts) != 3 or not all(parts):
            raise ConfigError(
                f"WAIT_FOR_CRDS entries must look like group/version/Kind, got: {entry!r}"
            )
        gvks.append(GroupVersionKind(group=parts[0], version=parts[1], kind=parts[2]))
    return tuple(gvks)


def load_config(env: Mapping[str, str] | None = None) -> TrackerConfig:
    """Load tracker config from the environment.

    Environment variables (with defaults):
        ``RATE_LIMIT_SECONDS`` (``5``), ``COLLECTION_INTERVAL_SECONDS`` (``30``),
        ``FULL_RESCAN_INTERVAL_SECONDS`` (``900``), ``DISCOVERY_WORKERS`` (``16``),
        ``WATCH_TIMEOUT_SECONDS`` (``300``), ``HEALTH_PORT`` (``8081``),
        ``WAIT_FOR_CRDS`` (empty), ``CRD_WAIT_TIMEOUT_SECONDS`` (``150``).
    """
    values = env if env is not None else os.environ

    collection_interval = env_int("COLLECTION_INTERVAL_SECONDS", 30, minimum=1, env=values)
    full_rescan_interval = env_int("FULL_RESCAN_INTERVAL_SECONDS", 900, minimum=1, env=values)
    if full_rescan_interval <= collection_interval:
        raise ConfigError(
            "FULL_RESCAN_INTERVAL_SECONDS must be greater than COLLECTION_INTERVAL_SECONDS"
        )

    return TrackerConfig(
        rate_limit_seconds=env_int("RATE_LIMIT_SECONDS", 5, minimum=0, env=values),
        collection_interval_seconds=collection_interval,
        full_rescan_interval_seconds=full_rescan_interval,
        discovery_workers=env_int("DISCOVERY_WORKERS", 16, minimum=1, maximum=256, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535, env=values),
        wait_for_crds=parse_gvk_list(values.get("WAIT_FOR_CRDS", "")),
        crd_wait_timeout_seconds=env_int("CRD_WAIT_TIMEOUT_SECONDS", 150, minimum=1, env=values),
    )
