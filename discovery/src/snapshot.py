from __future__ import annotations

from collections import Counter

from discovery.src.scanner import APIResource


def _signature(resource: APIResource) -> tuple[str, bool, str, frozenset[str]]:
    return resource.name, resource.namespaced, resource.kind, frozenset(resource.verbs)


class APIResourcesByGroupVersion(dict[str, list[APIResource]]):
    """Maps group-version keys (``v1``, ``apps/v1``) to the resources they serve.

    A snapshot is never edited after it is installed in the tracker; each rebuild
    produces a new instance.
    """

    def equals(self, other: APIResourcesByGroupVersion) -> bool:
        """Change-detection equality.

        Compares the set of group-versions and, per group-version, the multiset of
        resources keyed by name, ``namespaced``, ``kind`` and the verbs as a set.
        Resource order and verb order are ignored; a name listed twice (a discovered
        ``*/finalizers`` next to the synthetic one) counts twice.
        """
        if self.keys() != other.keys():
            return False
        return all(
            Counter(map(_signature, resources)) == Counter(map(_signature, other[group_version]))
            for group_version, resources in self.items()
        )

    def deep_copy(self) -> APIResourcesByGroupVersion:
        # Descriptors are frozen, so copying the per-key lists is enough.
        return APIResourcesByGroupVersion(
            {group_version: list(resources) for group_version, resources in self.items()}
        )

    def resource_count(self) -> int:
        return sum(len(resources) for resources in self.values())
