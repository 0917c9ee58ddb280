from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum

from kubernetes import watch
from kubernetes.client import ApiException, ApiextensionsV1Api

from discovery.src.backoff import Cancelled, Sometimes, forever_watch_backoff, retry_forever
from discovery.src.crd import CRDIdentitySet, CRDInfo
from discovery.src.events import (
    CRDEvent,
    EventType,
    MalformedEventError,
    WatchError,
    decode_watch_event,
)
from discovery.src.metrics import METRICS
from discovery.src.scanner import DiscoveryAPI, group_version_key, scan_group_version
from discovery.src.snapshot import APIResourcesByGroupVersion

Subscriber = Callable[[], None]


class TrackerNotStartedError(RuntimeError):
    """Raised by the read API before the first snapshot has been collected."""

    def __init__(self) -> None:
        super().__init__("resource tracker not started")


class TrackerStartError(RuntimeError):
    """Raised when the tracker cannot build its initial state."""


class RebuildOutcome(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class ResourceTracker:
    """Tracks the API resources the cluster serves and signals when they change.

    The snapshot is refreshed three ways, each on its own daemon thread:

    1. A CRD watch triggers a rate-limited rebuild for every CRD event that can change
       the served resources.  ADDED events for already known CRD UIDs are the watch's
       bootstrap replay and are ignored; events for terminating CRDs are ignored until
       the DELETED event, so their resources stay visible during teardown.
    2. A short-interval ticker triggers a rate-limited rebuild in case the watch missed
       or coalesced something.
    3. A long-interval ticker refreshes the known CRD UIDs and forces a rebuild that
       bypasses the rate limiter, catching up on anything lost while disconnected.

    Only one rebuild runs at a time; a rebuild requested while another is in flight is
    skipped, not queued.  A rebuild replaces the snapshot as a whole and only when it
    completed for every group-version, so readers see either the old or the new snapshot.
    Subscribers are called after each rebuild that changed the snapshot.
    """

    def __init__(
        self,
        discovery_client: DiscoveryAPI,
        crd_api: ApiextensionsV1Api,
        *,
        rate_limit_seconds: float = 5.0,
        collection_interval_seconds: float = 30.0,
        full_rescan_interval_seconds: float = 900.0,
        discovery_workers: int = 16,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        if discovery_workers < 1:
            raise ValueError("discovery_workers must be >= 1")
        self.discovery_client = discovery_client
        self.crd_api = crd_api
        self.collection_interval_seconds = collection_interval_seconds
        self.full_rescan_interval_seconds = full_rescan_interval_seconds
        self.discovery_workers = discovery_workers
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._rate_limiter = Sometimes(rate_limit_seconds)
        self._rebuild_lock = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._snapshot = APIResourcesByGroupVersion()
        self._crd_uids = CRDIdentitySet()
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._watch_stream_count = 0

    # -- public API ---------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> None:
        """Register *callback* to run after every rebuild that changes the snapshot.

        A callback signals failure by raising; the error is logged and the remaining
        callbacks still run.
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def get_snapshot(self) -> APIResourcesByGroupVersion:
        """Return a copy of the current snapshot.

        Raises :class:`TrackerNotStartedError` until the initial collection completed.
        """
        if not self.ready.is_set():
            raise TrackerNotStartedError()
        with self._snapshot_lock:
            return self._snapshot.deep_copy()

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Collect the initial snapshot, mark the tracker ready and start the background loops.

        The initial CRD listing and the first rebuild run synchronously; their failures
        are raised to the caller and leave the tracker not ready.  The background threads
        run until *stop_event* is set or :meth:`stop` is called.
        """
        stop = stop_event or threading.Event()
        self._stop = stop

        try:
            self.refresh_crd_uids()
        except Exception as exc:
            raise TrackerStartError("unable to initialize CRD identity set") from exc

        self.rebuild(stop)
        self.ready.set()
        self.logger.info(
            "Resource tracker ready with %d group-versions", len(self._snapshot)
        )

        self._threads = [
            threading.Thread(
                target=self._run_watch, args=(stop,), name="crd-watch", daemon=True
            ),
            threading.Thread(
                target=self._periodic_collection,
                args=(stop,),
                name="periodic-collection",
                daemon=True,
            ),
            threading.Thread(
                target=self._periodic_full_rescan,
                args=(stop,),
                name="periodic-full-rescan",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, join_timeout: float = 10.0) -> None:
        """Stop the background loops and interrupt any open watch stream.

        ``watch.Watch.stop()`` shuts down the stream's socket, so a watch blocked on a
        quiet stream returns without waiting for ``watch_timeout_seconds``.
        """
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

        for thread in self._threads:
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                self.logger.warning(
                    "Thread %s did not stop within %ss", thread.name, join_timeout
                )
        self._threads = []

    # -- snapshot collection ------------------------------------------------

    def rebuild(self, stop_event: threading.Event | None = None) -> RebuildOutcome:
        """Run one discovery pass and install the result if it differs.

        Returns ``SKIPPED`` without doing anything when another rebuild holds the lock.
        Any discovery failure is raised and leaves the installed snapshot untouched;
        a stop request during the pass raises :class:`Cancelled`.
        """
        stop = stop_event or self._stop
        if not self._rebuild_lock.acquire(blocking=False):
            self.logger.debug("API resource collection already in progress; skipping")
            METRICS.rebuilds_total.labels(outcome=RebuildOutcome.SKIPPED.value).inc()
            return RebuildOutcome.SKIPPED

        try:
            started = time.monotonic()
            try:
                group_versions = self.discovery_client.server_group_versions()
            except Exception:
                METRICS.api_discovery_errors_total.inc()
                METRICS.rebuilds_total.labels(outcome="failed").inc()
                raise
            self.logger.debug("Discovered %d group-versions", len(group_versions))

            try:
                collected = self._collect_group_versions(group_versions, stop)
            except Exception:
                METRICS.rebuilds_total.labels(outcome="failed").inc()
                raise
            METRICS.api_discovery_duration_seconds.observe(time.monotonic() - started)

            with self._snapshot_lock:
                if collected.equals(self._snapshot):
                    self.logger.debug("API resources unchanged")
                    outcome = RebuildOutcome.UNCHANGED
                else:
                    self._snapshot = collected
                    outcome = RebuildOutcome.CHANGED
            if outcome is RebuildOutcome.CHANGED:
                METRICS.tracked_group_versions.set(len(collected))
                self.logger.info(
                    "API resources updated: %d group-versions, %d resources",
                    len(collected),
                    collected.resource_count(),
                )
            METRICS.rebuilds_total.labels(outcome=outcome.value).inc()
            return outcome
        finally:
            self._rebuild_lock.release()

    def _collect_group_versions(
        self, group_versions: list[tuple[str, str]], stop: threading.Event
    ) -> APIResourcesByGroupVersion:
        """Scan all group-versions on a bounded worker pool.

        The first failure marks the pass as aborted: queued scans are cancelled and
        scans that have not started yet return without calling the API.
        """
        results = APIResourcesByGroupVersion()
        results_lock = threading.Lock()
        aborted = threading.Event()

        def scan(group: str, version: str) -> None:
            if stop.is_set():
                raise Cancelled("stop requested during API resource collection")
            if aborted.is_set():
                return
            key = group_version_key(group, version)
            try:
                resources = scan_group_version(self.discovery_client, group, version)
            except Exception:
                aborted.set()
                METRICS.api_discovery_errors_total.inc()
                self.logger.exception("Failed to discover API resources for %s", key)
                raise
            with results_lock:
                results.setdefault(key, []).extend(resources)

        with ThreadPoolExecutor(
            max_workers=self.discovery_workers, thread_name_prefix="discovery"
        ) as pool:
            futures = [pool.submit(scan, group, version) for group, version in group_versions]
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                aborted.set()
                for future in futures:
                    future.cancel()
                raise

        if stop.is_set():
            raise Cancelled("stop requested during API resource collection")
        return results

    def refresh_crd_uids(self) -> None:
        """Replace the known CRD UIDs with those currently listed by the API server."""
        crd_list = self.crd_api.list_custom_resource_definition()
        uids = []
        for item in getattr(crd_list, "items", None) or []:
            try:
                uids.append(CRDInfo.from_object(item).uid)
            except ValueError:
                self.logger.warning("Skipping listed CRD without uid")
        self._crd_uids.replace(uids)
        METRICS.tracked_crds.set(len(uids))
        self.logger.debug("Refreshed CRD identity set with %d CRDs", len(uids))

    def _notify_subscribers(self) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback()
            except Exception:
                METRICS.subscriber_errors_total.inc()
                self.logger.exception("API resource change subscriber failed")

    def _collect_and_notify(self, stop: threading.Event) -> RebuildOutcome | None:
        """Rebuild and notify subscribers on change.  Errors are logged, never raised."""
        try:
            outcome = self.rebuild(stop)
        except Cancelled:
            self.logger.debug("API resource collection cancelled")
            return None
        except ApiException as exc:
            self.logger.error(
                "Failed to collect API resources (status=%s, reason=%s)",
                exc.status,
                exc.reason,
            )
            return None
        except Exception:
            self.logger.exception("Failed to collect API resources")
            return None

        if outcome is RebuildOutcome.CHANGED:
            self._notify_subscribers()
        return outcome

    def _trigger_rate_limited(self, stop: threading.Event) -> bool:
        """Request a rebuild through the rate limiter; returns False when it was dropped."""
        fired = self._rate_limiter.do(lambda: self._collect_and_notify(stop))
        if not fired:
            self.logger.debug("Rate limiter dropped API resource collection trigger")
        return fired

    # -- CRD watch ----------------------------------------------------------

    def handle_crd_event(self, event: CRDEvent, stop: threading.Event | None = None) -> bool:
        """Apply one CRD watch event.  Returns True when a rebuild was requested.

        Any ADDED, MODIFIED or DELETED event may change the served resources (a
        modification can add or drop versions), except ADDED replays of known CRDs and
        non-DELETED events for terminating CRDs.
        """
        crd = event.crd
        self.logger.debug("CRD watch event %s for %s (uid=%s)", event.type.value, crd.name, crd.uid)

        if event.type is EventType.ADDED and not self._crd_uids.add(crd.uid):
            return False
        METRICS.tracked_crds.set(len(self._crd_uids))

        if crd.terminating and event.type is not EventType.DELETED:
            self.logger.info(
                "Skipping API resource collection for terminating CRD %s", crd.name
            )
            return False

        self._trigger_rate_limited(stop or self._stop)
        return True

    def _watch_crds(self, stop: threading.Event) -> bool:
        """Consume one CRD watch stream.

        Returns True when the stream ended cleanly (server-side timeout or stop), False
        after a connection failure, an error event or an unexpected exception.
        """
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        # stop() reads the active watcher after setting the event; a stop that landed
        # before registration has to be seen here, not after a quiet stream times out.
        if stop.is_set():
            with self._watcher_lock:
                self._active_watcher = None
            return True
        if self._watch_stream_count > 0:
            METRICS.watch_reconnects_total.inc()
        self._watch_stream_count += 1

        try:
            stream = watcher.stream(
                self.crd_api.list_custom_resource_definition,
                timeout_seconds=self.watch_timeout_seconds,
            )
            self.logger.info("Starting CRD watch")
            for raw_event in stream:
                if stop.is_set():
                    break
                try:
                    event = decode_watch_event(raw_event)
                except MalformedEventError as exc:
                    self.logger.warning("Ignoring malformed CRD watch event: %s", exc)
                    continue

                if isinstance(event, WatchError):
                    METRICS.watch_errors_total.inc()
                    self.logger.warning(
                        "CRD watch error event received (code=%s, reason=%s): %s",
                        event.code,
                        event.reason,
                        event.message,
                    )
                    return False
                self.handle_crd_event(event, stop)

            self.logger.info("CRD watch stream closed")
            return True
        except ApiException as exc:
            METRICS.watch_errors_total.inc()
            if exc.status in {401, 403}:
                self.logger.error(
                    "Kubernetes API denied CRD watch (status=%s). "
                    "Check RBAC for customresourcedefinitions list/watch.",
                    exc.status,
                )
            else:
                self.logger.exception("Kubernetes API CRD watch error")
            return False
        except Exception:
            METRICS.watch_errors_total.inc()
            self.logger.exception("Unexpected CRD watch error")
            return False
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def _run_watch(self, stop: threading.Event) -> None:
        try:
            retry_forever(stop, forever_watch_backoff(), self._watch_crds)
        except Cancelled:
            self.logger.info("Stopping CRD watch")

    # -- schedulers ---------------------------------------------------------

    def _periodic_collection(self, stop: threading.Event) -> None:
        self.logger.info(
            "Starting periodic API resource collection (interval=%ss)",
            self.collection_interval_seconds,
        )
        while not stop.wait(timeout=self.collection_interval_seconds):
            self._trigger_rate_limited(stop)
        self.logger.info("Stopping periodic API resource collection")

    def full_rescan(self, stop: threading.Event | None = None) -> RebuildOutcome | None:
        """Refresh the known CRD UIDs and force a rebuild that bypasses the rate limiter.

        A failed UID refresh is logged and the rebuild still runs.
        """
        self.logger.info("Performing full rescan to account for missed events")
        try:
            self.refresh_crd_uids()
        except Exception:
            self.logger.exception("Failed to refresh CRD identity set during full rescan")

        outcome = self._collect_and_notify(stop or self._stop)
        if outcome is RebuildOutcome.CHANGED:
            self.logger.info("Full rescan completed with changes")
        elif outcome is not None:
            self.logger.debug("Full rescan completed (%s)", outcome.value)
        return outcome

    def _periodic_full_rescan(self, stop: threading.Event) -> None:
        self.logger.info(
            "Starting periodic full rescan (interval=%ss)", self.full_rescan_interval_seconds
        )
        while not stop.wait(timeout=self.full_rescan_interval_seconds):
            self.full_rescan(stop)
        self.logger.info("Stopping periodic full rescan")
