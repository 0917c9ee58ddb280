from __future__ import annotations

from discovery.src.scanner import APIResource
from discovery.src.snapshot import APIResourcesByGroupVersion


def _pods(verbs: tuple[str, ...] = ("get", "list", "watch")) -> APIResource:
    return APIResource(name="pods", namespaced=True, kind="Pod", verbs=verbs)


def _snapshot(**entries: list[APIResource]) -> APIResourcesByGroupVersion:
    return APIResourcesByGroupVersion(
        {key.replace("__", "/"): value for key, value in entries.items()}
    )


def test_equal_snapshots_are_equal_in_both_directions() -> None:
    a = _snapshot(v1=[_pods()])
    b = _snapshot(v1=[_pods()])

    assert a.equals(b)
    assert b.equals(a)


def test_verb_order_does_not_matter() -> None:
    a = _snapshot(v1=[_pods(("get", "list", "watch"))])
    b = _snapshot(v1=[_pods(("watch", "get", "list"))])

    assert a.equals(b)
    assert b.equals(a)


def test_resource_order_does_not_matter() -> None:
    configmaps = APIResource(name="configmaps", namespaced=True, kind="ConfigMap", verbs=("get",))
    a = _snapshot(v1=[_pods(), configmaps])
    b = _snapshot(v1=[configmaps, _pods()])

    assert a.equals(b)


def test_different_verbs_are_not_equal() -> None:
    a = _snapshot(v1=[_pods(("get", "list"))])
    b = _snapshot(v1=[_pods(("get", "list", "watch"))])

    assert not a.equals(b)
    assert not b.equals(a)


def test_different_group_versions_are_not_equal() -> None:
    a = _snapshot(v1=[_pods()])
    b = _snapshot(apps__v1=[_pods()])
    c = _snapshot(v1=[_pods()], apps__v1=[_pods()])

    assert not a.equals(b)
    assert not a.equals(c)
    assert not c.equals(a)


def test_namespaced_and_kind_are_compared() -> None:
    base = _snapshot(v1=[_pods()])
    cluster_scoped = _snapshot(
        v1=[APIResource(name="pods", namespaced=False, kind="Pod", verbs=("get", "list", "watch"))]
    )
    renamed_kind = _snapshot(
        v1=[APIResource(name="pods", namespaced=True, kind="Other", verbs=("get", "list", "watch"))]
    )

    assert not base.equals(cluster_scoped)
    assert not base.equals(renamed_kind)


def test_resource_names_and_counts_are_compared() -> None:
    services = APIResource(name="services", namespaced=True, kind="Service", verbs=("get",))
    a = _snapshot(v1=[_pods()])
    b = _snapshot(v1=[services])
    c = _snapshot(v1=[_pods(), services])

    assert not a.equals(b)
    assert not a.equals(c)


def test_empty_snapshots_are_equal() -> None:
    assert APIResourcesByGroupVersion().equals(APIResourcesByGroupVersion())


def test_deep_copy_is_independent() -> None:
    original = _snapshot(v1=[_pods()])

    copied = original.deep_copy()
    copied["v1"].append(APIResource(name="services", namespaced=True, kind="Service"))
    copied["apps/v1"] = []

    assert [resource.name for resource in original["v1"]] == ["pods"]
    assert "apps/v1" not in original
    assert isinstance(copied, APIResourcesByGroupVersion)


def test_resource_count_sums_all_group_versions() -> None:
    snapshot = _snapshot(v1=[_pods(), _pods()], apps__v1=[_pods()])

    assert snapshot.resource_count() == 3


def test_duplicate_names_compare_symmetrically() -> None:
    pods = _pods()
    services = APIResource(name="services", namespaced=True, kind="Service", verbs=("get",))
    a = _snapshot(v1=[pods, pods])
    b = _snapshot(v1=[pods, services])

    assert a.equals(b) is b.equals(a)
    assert not a.equals(b)


def test_duplicate_finalizers_entry_replaced_by_new_subresource_is_a_change() -> None:
    widgets = APIResource(name="widgets", namespaced=True, kind="Widget", verbs=("get",))
    finalizers = APIResource(
        name="widgets/finalizers", namespaced=True, kind="Widget", verbs=("update", "list", "watch")
    )
    status = APIResource(
        name="widgets/status", namespaced=True, kind="Widget", verbs=("get", "list", "watch")
    )
    old = _snapshot(example_com__v1=[widgets, finalizers, finalizers])
    new = _snapshot(example_com__v1=[widgets, status, finalizers])

    assert not new.equals(old)
    assert not old.equals(new)
