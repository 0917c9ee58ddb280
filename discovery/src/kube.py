from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import ApiClient, ApiextensionsV1Api, V1APIResourceList
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


class DiscoveryClient:
    """Minimal client for the Kubernetes discovery endpoints (``/api`` and ``/apis``)."""

    def __init__(self, api_client: ApiClient, request_timeout: float | None = 30) -> None:
        self.api_client = api_client
        self.request_timeout = request_timeout
        self._core_api = client.CoreApi(api_client)
        self._apis_api = client.ApisApi(api_client)

    def server_group_versions(self) -> list[tuple[str, str]]:
        """Return every served ``(group, version)``, core group first.

        All versions of a group are returned, not only the preferred one.
        """
        core = self._core_api.get_api_versions(_request_timeout=self.request_timeout)
        group_versions = [("", version) for version in core.versions or []]

        groups = self._apis_api.get_api_versions(_request_timeout=self.request_timeout)
        for group in groups.groups or []:
            for group_version in group.versions or []:
                group_versions.append((group.name, group_version.version))
        return group_versions

    def server_resources_for_group_version(self, group_version: str) -> V1APIResourceList:
        # The core group is served under /api, every other group under /apis.
        prefix = "/apis" if "/" in group_version else "/api"
        return self.api_client.call_api(
            f"{prefix}/{group_version}",
            "GET",
            header_params={"Accept": "application/json"},
            response_type="V1APIResourceList",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _request_timeout=self.request_timeout,
        )


def build_discovery_client(pool_maxsize: int = 16) -> DiscoveryClient:
    """Return a discovery client on its own connection pool.

    A parallel discovery pass opens one request per group-version, so the pool is sized
    to the worker count and kept apart from the shared default client.
    """
    configuration = client.Configuration.get_default_copy()
    configuration.connection_pool_maxsize = pool_maxsize
    return DiscoveryClient(ApiClient(configuration))


def build_clients(discovery_pool_maxsize: int = 16) -> tuple[ApiextensionsV1Api, DiscoveryClient]:
    """Return the CRD API and a dedicated discovery client using the active kube configuration."""
    return client.ApiextensionsV1Api(), build_discovery_client(discovery_pool_maxsize)
