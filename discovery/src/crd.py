from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, NamedTuple

from kubernetes.client import ApiException, ApiextensionsV1Api

from discovery.src.backoff import Backoff, Cancelled

ESTABLISHED_CONDITION = "Established"
MIN_REQUEST_TIMEOUT_SECONDS = 0.001


class CRDNotEstablishedError(RuntimeError):
    """Raised when a CRD did not report ``Established=True`` before the deadline."""

    def __init__(self, crd_name: str, message: str | None = None) -> None:
        super().__init__(message or f"CRD {crd_name} was not established in time")
        self.crd_name = crd_name


class GroupVersionKind(NamedTuple):
    group: str
    version: str
    kind: str

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Kind={self.kind}"


def object_field(obj: Any, *names: str) -> Any:
    """Read the first present attribute or mapping key among *names*.

    Watch payloads arrive either as generated client models (snake_case attributes)
    or as raw JSON dicts (camelCase keys).
    """
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


@dataclass(frozen=True)
class CRDInfo:
    """The parts of a CustomResourceDefinition the tracker and waiter care about."""

    name: str
    uid: str
    terminating: bool = False
    established: bool = False

    @classmethod
    def from_object(cls, obj: Any) -> CRDInfo:
        """Build from a ``V1CustomResourceDefinition`` or its raw dict form.

        Raises ``ValueError`` when the object carries no ``metadata.uid``.
        """
        metadata = object_field(obj, "metadata")
        uid = object_field(metadata, "uid")
        if not uid:
            raise ValueError("CustomResourceDefinition has no metadata.uid")

        established = False
        conditions = object_field(object_field(obj, "status"), "conditions") or []
        for condition in conditions:
            if object_field(condition, "type") == ESTABLISHED_CONDITION:
                established = object_field(condition, "status") == "True"
                break

        return cls(
            name=str(object_field(metadata, "name") or ""),
            uid=str(uid),
            terminating=object_field(metadata, "deletion_timestamp", "deletionTimestamp") is not None,
            established=established,
        )


class CRDIdentitySet:
    """Thread-safe set of known CRD UIDs.

    Used to recognise the synthetic ADDED events every new watch replays for CRDs that
    already exist.
    """

    def __init__(self, uids: Iterable[str] = ()) -> None:
        self._uids: set[str] = set(uids)
        self._lock = threading.Lock()

    def __contains__(self, uid: object) -> bool:
        with self._lock:
            return uid in self._uids

    def __len__(self) -> int:
        with self._lock:
            return len(self._uids)

    def add(self, uid: str) -> bool:
        """Add *uid*; return False when it was already known."""
        with self._lock:
            if uid in self._uids:
                return False
            self._uids.add(uid)
            return True

    def replace(self, uids: Iterable[str]) -> None:
        new_uids = set(uids)
        with self._lock:
            self._uids = new_uids


def pluralize(kind: str) -> str:
    """Lower-case plural of a Kind using the usual Kubernetes heuristic.

    ``Address`` -> ``addresses``, ``Policy`` -> ``policies``,
    ``Gateway`` -> ``gateways``, ``RoleDefinition`` -> ``roledefinitions``.
    """
    lower = kind.lower()
    if lower.endswith("s"):
        return lower + "es"
    if lower.endswith("y"):
        if len(lower) >= 2 and lower[-2] in "aeiou":
            return lower + "s"
        return lower[:-1] + "ies"
    return lower + "s"


def crd_name_from_gvk(gvk: GroupVersionKind) -> str:
    """CRD object names follow ``<plural>.<group>``."""
    return f"{pluralize(gvk.kind)}.{gvk.group}"


def crd_wait_backoff() -> Backoff:
    return Backoff(duration=0.5, factor=1.5, jitter=0.1, steps=30, cap=10.0)


class CRDWaiter:
    """Blocks until CustomResourceDefinitions report ``Established=True``.

    Each CRD is polled with capped exponential backoff.  Not-found, API errors and a
    missing or false ``Established`` condition are all retried until the shared deadline
    or the attempt budget runs out.
    """

    def __init__(
        self,
        crd_api: ApiextensionsV1Api,
        logger: logging.Logger | None = None,
        max_attempts: int = 30,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.crd_api = crd_api
        self.logger = logger or logging.getLogger(__name__)
        self.max_attempts = max_attempts

    def wait_for_crds(
        self,
        gvks: Iterable[GroupVersionKind],
        timeout: float,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Wait for the CRDs backing *gvks*; see :meth:`wait_for_established`."""
        gvk_list = list(gvks)
        for gvk in gvk_list:
            self.logger.info("Waiting for CRD %s (%s)", crd_name_from_gvk(gvk), gvk)
        self.wait_for_established(
            [crd_name_from_gvk(gvk) for gvk in gvk_list],
            timeout=timeout,
            stop_event=stop_event,
        )

    def wait_for_established(
        self,
        names: Iterable[str],
        timeout: float,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Wait until every named CRD is established, all within *timeout* seconds.

        Raises :class:`CRDNotEstablishedError` naming the first CRD still not ready when
        the deadline or attempt budget is exhausted, and :class:`Cancelled` when
        *stop_event* is set while waiting.
        """
        stop = stop_event or threading.Event()
        deadline = time.monotonic() + timeout
        for name in names:
            self._wait_for_crd(name, deadline, stop)
            self.logger.info("CRD %s is established", name)

    def _is_established(self, name: str, request_timeout: float) -> bool:
        try:
            crd = self.crd_api.read_custom_resource_definition(
                name=name, _request_timeout=request_timeout
            )
        except ApiException as exc:
            if exc.status == 404:
                self.logger.debug("CRD %s not found, retrying", name)
            else:
                self.logger.debug("Error fetching CRD %s (status=%s), retrying", name, exc.status)
            return False
        except Exception as exc:
            self.logger.debug("Error fetching CRD %s, retrying: %s", name, exc)
            return False

        try:
            info = CRDInfo.from_object(crd)
        except ValueError:
            self.logger.debug("CRD %s has no uid yet, retrying", name)
            return False
        if not info.established:
            self.logger.debug("CRD %s not yet established, retrying", name)
        return info.established

    def _wait_for_crd(self, name: str, deadline: float, stop: threading.Event) -> None:
        backoff = crd_wait_backoff()
        for attempt in range(1, self.max_attempts + 1):
            if stop.is_set():
                raise Cancelled(f"stopped while waiting for CRD {name}")
            # The read itself must not outlive the deadline.
            request_timeout = max(deadline - time.monotonic(), MIN_REQUEST_TIMEOUT_SECONDS)
            if self._is_established(name, request_timeout):
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0 or attempt == self.max_attempts:
                break
            if stop.wait(timeout=min(backoff.step(), remaining)):
                raise Cancelled(f"stopped while waiting for CRD {name}")

        raise CRDNotEstablishedError(name, f"failed waiting for CRD {name}: not established in time")
