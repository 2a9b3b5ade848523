"""
Cluster Client - Polymorphic CRUD and watch over arbitrary resource kinds.

Every kind the cluster serves is handled through the same small capability
set {get, list, create, update, delete, watch}, parameterized by group,
version and kind. KubeClient implements it with kubernetes_asyncio, resolving
kinds through the dynamic client's API discovery.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from kubernetes_asyncio import client, config as k8s_config, watch
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.dynamic import DynamicClient
from kubernetes_asyncio.dynamic.exceptions import ResourceNotFoundError

from errors import ClusterAPIError, UnknownKindError
from resources import GroupVersionKind, ResourceID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class APIResource:
    """Discovery information for one kind."""

    name: str  # plural resource name used in URL paths
    kind: str
    namespaced: bool


@dataclass
class WatchEvent:
    """A single event from a watch stream."""

    type: str  # ADDED, MODIFIED, DELETED, BOOKMARK, ERROR
    object: Dict[str, Any]


class ClusterClient(ABC):
    """Capability interface over the cluster API."""

    @abstractmethod
    async def resource_info(self, gvk: GroupVersionKind) -> APIResource:
        """
        Resolve a kind through discovery.

        Raises:
            UnknownKindError: If the cluster does not serve the kind
        """
        pass

    @abstractmethod
    async def get(self, resource_id: ResourceID) -> Optional[Dict[str, Any]]:
        """Return the live object, or None when it does not exist."""
        pass

    @abstractmethod
    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], str]:
        """Return (items, list resource version)."""
        pass

    @abstractmethod
    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object; 409 AlreadyExists when it exists."""
        pass

    @abstractmethod
    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace an object.

        The object's metadata.resourceVersion is the optimistic-concurrency
        precondition; a stale version fails with 409 Conflict.
        """
        pass

    @abstractmethod
    async def delete(
        self, resource_id: ResourceID, resource_version: Optional[str] = None
    ) -> None:
        """Delete an object, optionally only at ``resource_version``."""
        pass

    @abstractmethod
    def watch(
        self,
        gvk: GroupVersionKind,
        resource_version: str = "",
        namespace: Optional[str] = None,
    ) -> AsyncIterator[WatchEvent]:
        """Stream change events starting after ``resource_version``."""
        pass


class KubeClient(ClusterClient):
    """ClusterClient backed by the kubernetes_asyncio dynamic client."""

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        verify_ssl: bool = True,
        request_timeout: float = 30,
        watch_timeout: int = 300,
    ):
        self.kubeconfig = kubeconfig
        self.context = context
        self._verify_ssl = verify_ssl
        self._request_timeout = request_timeout
        self._watch_timeout = watch_timeout
        self._api_client: Optional[client.ApiClient] = None
        self._dynamic: Optional[DynamicClient] = None
        self._resources: Dict[GroupVersionKind, Any] = {}
        self._discovery_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, kube_config) -> "KubeClient":
        """Build from a KubeConfig section."""
        return cls(
            kubeconfig=kube_config.kubeconfig,
            context=kube_config.context,
            verify_ssl=kube_config.verify_ssl,
            request_timeout=kube_config.request_timeout,
            watch_timeout=kube_config.watch_timeout,
        )

    async def connect(self) -> None:
        """Load credentials and run API discovery."""
        if self._dynamic is not None:
            return
        configuration = client.Configuration()
        if self.kubeconfig:
            await k8s_config.load_kube_config(
                config_file=self.kubeconfig,
                context=self.context,
                client_configuration=configuration,
            )
        else:
            k8s_config.load_incluster_config(client_configuration=configuration)
        configuration.verify_ssl = self._verify_ssl
        self._api_client = client.ApiClient(configuration)
        self._dynamic = await DynamicClient(self._api_client)
        logger.info(f"Connected to cluster API at {configuration.host}")

    async def close(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
        self._api_client = None
        self._dynamic = None
        self._resources.clear()

    def _ensure_connected(self) -> DynamicClient:
        if self._dynamic is None:
            raise RuntimeError("KubeClient not connected. Call connect() first.")
        return self._dynamic

    async def _resource(self, gvk: GroupVersionKind):
        dynamic = self._ensure_connected()
        async with self._discovery_lock:
            resource = self._resources.get(gvk)
            if resource is None:
                try:
                    resource = await dynamic.resources.get(
                        api_version=gvk.api_version, kind=gvk.kind
                    )
                except ResourceNotFoundError as e:
                    raise UnknownKindError(f"the cluster does not serve {gvk}") from e
                self._resources[gvk] = resource
        return resource

    async def resource_info(self, gvk: GroupVersionKind) -> APIResource:
        resource = await self._resource(gvk)
        return APIResource(
            name=resource.name, kind=resource.kind, namespaced=bool(resource.namespaced)
        )

    async def _call(self, verb: str, gvk: GroupVersionKind, **kwargs) -> Dict[str, Any]:
        dynamic = self._ensure_connected()
        resource = await self._resource(gvk)
        try:
            result = await getattr(dynamic, verb)(
                resource, _request_timeout=self._request_timeout, **kwargs
            )
        except ApiException as e:
            raise _cluster_error(e) from e
        return result.to_dict() if result is not None else {}

    async def get(self, resource_id: ResourceID) -> Optional[Dict[str, Any]]:
        try:
            return await self._call(
                "get",
                resource_id.gvk,
                name=resource_id.name,
                namespace=resource_id.namespace or None,
            )
        except ClusterAPIError as e:
            if e.not_found:
                return None
            raise

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], str]:
        data = await self._call(
            "get", gvk, namespace=namespace, label_selector=label_selector
        )
        items = []
        for item in data.get("items") or []:
            # List items omit apiVersion/kind.
            item.setdefault("apiVersion", gvk.api_version)
            item.setdefault("kind", gvk.kind)
            items.append(item)
        return items, (data.get("metadata") or {}).get("resourceVersion", "")

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource_id = ResourceID.from_object(obj)
        return await self._call(
            "create", resource_id.gvk, body=obj, namespace=resource_id.namespace or None
        )

    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        resource_id = ResourceID.from_object(obj)
        return await self._call(
            "replace",
            resource_id.gvk,
            body=obj,
            name=resource_id.name,
            namespace=resource_id.namespace or None,
        )

    async def delete(
        self, resource_id: ResourceID, resource_version: Optional[str] = None
    ) -> None:
        body: Dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "DeleteOptions",
            "propagationPolicy": "Background",
        }
        if resource_version:
            body["preconditions"] = {"resourceVersion": resource_version}
        await self._call(
            "delete",
            resource_id.gvk,
            name=resource_id.name,
            namespace=resource_id.namespace or None,
            body=body,
        )

    async def watch(
        self,
        gvk: GroupVersionKind,
        resource_version: str = "",
        namespace: Optional[str] = None,
    ) -> AsyncIterator[WatchEvent]:
        self._ensure_connected()
        resource = await self._resource(gvk)
        params: Dict[str, Any] = {
            "namespace": namespace,
            "timeout_seconds": self._watch_timeout,
            "serialize": False,
        }
        if resource_version:
            params["resource_version"] = resource_version
        try:
            async with watch.Watch().stream(resource.get, **params) as stream:
                async for event in stream:
                    obj = event.get("raw_object") or event.get("object") or {}
                    yield WatchEvent(type=event.get("type", ""), object=obj)
        except ApiException as e:
            raise _cluster_error(e) from e


def _api_error(status: int, text: str, reason: str = "") -> ClusterAPIError:
    message = text
    try:
        data = json.loads(text)
        reason = data.get("reason", reason)
        message = data.get("message", text)
    except (TypeError, ValueError, AttributeError):
        pass
    return ClusterAPIError(status, reason, message)


def _cluster_error(error: ApiException) -> ClusterAPIError:
    """Map a kubernetes_asyncio ApiException onto ClusterAPIError."""
    return _api_error(error.status or 0, error.body or "", error.reason or "")
