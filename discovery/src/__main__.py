from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable

from discovery.src.config import load_config
from discovery.src.crd import CRDWaiter
from discovery.src.health import start_health_server
from discovery.src.kube import build_clients, load_kube_configuration
from discovery.src.metrics import METRICS
from discovery.src.tracker import ResourceTracker

RUNTIME_VERSION = "0.1.0"
REDACTED = "[REDACTED]"
# Each pattern captures the text to keep in group 1; whatever follows it is the secret.
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(
        r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key"
        r"|client-key-data|client-certificate-data)\b[\"']?\s*[:=]\s*[\"']?)[^\s,;\"']+"
    ),
    re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)[^&\s]+"),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    """Mask bearer tokens and credential-looking values, e.g. from kubeconfig errors."""
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(lambda match: match.group(1) + REDACTED, value)
    return value


class JSONFormatter(logging.Formatter):
    """Single-line JSON log records.

    The thread name is included because the tracker logs from the watch, scheduler and
    discovery worker threads concurrently.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def make_change_logger(tracker: ResourceTracker) -> Callable[[], None]:
    def _log_change() -> None:
        snapshot = tracker.get_snapshot()
        LOGGER.info(
            "API resource snapshot changed: %d group-versions, %d resources",
            len(snapshot),
            snapshot.resource_count(),
        )

    return _log_change


def main() -> None:
    """Tracker entrypoint: configure logging, wait for required CRDs, and run until signalled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    crd_api, discovery_client = build_clients(discovery_pool_maxsize=config.discovery_workers)

    tracker = ResourceTracker(
        discovery_client=discovery_client,
        crd_api=crd_api,
        rate_limit_seconds=config.rate_limit_seconds,
        collection_interval_seconds=config.collection_interval_seconds,
        full_rescan_interval_seconds=config.full_rescan_interval_seconds,
        discovery_workers=config.discovery_workers,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )
    tracker.subscribe(make_change_logger(tracker))

    health_server = start_health_server(ready=tracker.ready, port=config.health_port)
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if config.wait_for_crds:
            CRDWaiter(crd_api).wait_for_crds(
                config.wait_for_crds,
                timeout=config.crd_wait_timeout_seconds,
                stop_event=shutdown_event,
            )

        tracker.start(stop_event=shutdown_event)
        shutdown_event.wait()
    finally:
        tracker.stop()
        health_server.shutdown()
        LOGGER.info("Resource tracker stopped")


if __name__ == "__main__":
    main()
