from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

RBAC_GROUP = "rbac.authorization.k8s.io"
FINALIZER_VERBS = ("update", "list", "watch")
NODE_METRICS_VERBS = ("get", "list", "watch")


class DiscoveryAPI(Protocol):
    def server_group_versions(self) -> list[tuple[str, str]]: ...

    def server_resources_for_group_version(self, group_version: str) -> Any: ...


@dataclass(frozen=True)
class APIResource:
    """One resource (or ``<resource>/<subresource>``) served by a group-version."""

    name: str
    namespaced: bool
    kind: str
    verbs: tuple[str, ...] = ()

    @property
    def is_subresource(self) -> bool:
        return "/" in self.name


def group_version_key(group: str, version: str) -> str:
    """Return the snapshot key for a group-version (``v1`` for the core group)."""
    if not group:
        return version
    return f"{group}/{version}"


def scan_group_version(discovery: DiscoveryAPI, group: str, version: str) -> list[APIResource]:
    """List the resources of one group-version and add what discovery leaves out.

    Discovery omits verbs and subresources that RBAC rules can still reference, so the
    reported list is augmented:

    - ``*/status`` and ``*/finalizers`` subresources get ``list`` and ``watch``.
    - ``roles`` and ``rolebindings`` in ``rbac.authorization.k8s.io/v1`` get ``bind``;
      ``roles`` also gets ``escalate``.
    - every top-level resource gets a synthetic ``<name>/finalizers`` entry with
      ``update``, ``list`` and ``watch``.
    - core ``v1`` ``nodes`` gets a synthetic ``nodes/metrics`` entry with ``get``,
      ``list`` and ``watch``.
    """
    resource_list = discovery.server_resources_for_group_version(group_version_key(group, version))
    is_rbac_v1 = group == RBAC_GROUP and version == "v1"

    result: list[APIResource] = []
    for discovered in getattr(resource_list, "resources", None) or []:
        resource = APIResource(
            name=discovered.name,
            namespaced=bool(discovered.namespaced),
            kind=discovered.kind or "",
            verbs=tuple(discovered.verbs or ()),
        )
        verbs = list(resource.verbs)

        if resource.is_subresource and resource.name.endswith(("/status", "/finalizers")):
            verbs.extend(("list", "watch"))
        if is_rbac_v1 and resource.name in {"roles", "rolebindings"}:
            verbs.append("bind")
        if is_rbac_v1 and resource.name == "roles":
            verbs.append("escalate")

        resource = replace(resource, verbs=tuple(verbs))
        result.append(resource)

        if resource.is_subresource:
            continue

        result.append(replace(resource, name=f"{resource.name}/finalizers", verbs=FINALIZER_VERBS))
        if group == "" and version == "v1" and resource.name == "nodes":
            result.append(replace(resource, name="nodes/metrics", verbs=NODE_METRICS_VERBS))

    LOGGER.debug(
        "Scanned %d resources for %s", len(result), group_version_key(group, version)
    )
    return result
