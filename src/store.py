"""
Object Store - Thin facade over the Kubernetes API.

The only I/O boundary used by the reconciliation engine. Objects are typed
``kubernetes_asyncio`` models; writes carry the object's resourceVersion so
the API server can reject stale updates with a conflict.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type, Union

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiClient, ApiException

from errors import (
    ConflictError,
    NotFoundError,
    StoreError,
    TransientStoreError,
    TypeMismatchError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a namespaced cluster object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class KindInfo:
    """How to read and write one built-in object kind."""

    kind: str
    api_version: str
    model: Type
    api: Type
    read: str
    create: str
    replace: str


class Scheme:
    """
    Registry of the object kinds the store knows how to handle.

    Constructed once at startup and passed by reference to the store and the
    reconcilers.
    """

    def __init__(self):
        self._by_kind: Dict[str, KindInfo] = {}
        self._by_model: Dict[Type, KindInfo] = {}

    def register(self, info: KindInfo) -> None:
        """Register a kind, replacing any previous registration."""
        if info.kind in self._by_kind:
            logger.warning(f"Overwriting existing kind registration: {info.kind}")
        self._by_kind[info.kind] = info
        self._by_model[info.model] = info

    def lookup(self, kind_or_type: Union[str, Type, Any]) -> KindInfo:
        """
        Find the registration for a kind name, a model class or a model instance.

        Raises:
            TypeMismatchError: If nothing is registered for it.
        """
        if isinstance(kind_or_type, str):
            info = self._by_kind.get(kind_or_type)
        elif isinstance(kind_or_type, type):
            info = self._by_model.get(kind_or_type)
        else:
            info = self._by_model.get(type(kind_or_type))

        if info is None:
            if isinstance(kind_or_type, str):
                name = kind_or_type
            elif isinstance(kind_or_type, type):
                name = kind_or_type.__name__
            else:
                name = type(kind_or_type).__name__
            raise TypeMismatchError(f"Kind {name} is not registered in the scheme")
        return info

    def kinds(self) -> List[str]:
        """List registered kind names."""
        return sorted(self._by_kind.keys())

    @classmethod
    def default(cls) -> "Scheme":
        """Scheme with every kind the operator manages."""
        scheme = cls()
        scheme.register(
            KindInfo(
                kind="Deployment",
                api_version="apps/v1",
                model=client.V1Deployment,
                api=client.AppsV1Api,
                read="read_namespaced_deployment",
                create="create_namespaced_deployment",
                replace="replace_namespaced_deployment",
            )
        )
        scheme.register(
            KindInfo(
                kind="ServiceAccount",
                api_version="v1",
                model=client.V1ServiceAccount,
                api=client.CoreV1Api,
                read="read_namespaced_service_account",
                create="create_namespaced_service_account",
                replace="replace_namespaced_service_account",
            )
        )
        scheme.register(
            KindInfo(
                kind="ConfigMap",
                api_version="v1",
                model=client.V1ConfigMap,
                api=client.CoreV1Api,
                read="read_namespaced_config_map",
                create="create_namespaced_config_map",
                replace="replace_namespaced_config_map",
            )
        )
        return scheme


class _ManifestResponse:
    """Stand-in for a REST response so ApiClient can deserialize plain dicts."""

    def __init__(self, data: Dict[str, Any]):
        self.data = json.dumps(data)


@contextmanager
def translate_api_errors(description: str):
    """
    Map client exceptions onto the store error taxonomy.

    Args:
        description: What was being attempted, used in error messages.
    """
    try:
        yield
    except ApiException as e:
        status = e.status or 0
        message = f"{description}: {status} {e.reason}"
        if status == 404:
            raise NotFoundError(message, status=status) from e
        if status == 409:
            raise ConflictError(message, status=status) from e
        if status == 429 or status >= 500 or status == 0:
            raise TransientStoreError(message, status=status) from e
        raise StoreError(message, status=status) from e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransientStoreError(f"{description}: {e}") from e


class ObjectStore:
    """
    Get/create/update of cluster objects with optimistic concurrency.

    Conflicts surface as :class:`ConflictError`, absence as
    :class:`NotFoundError`, network trouble as :class:`TransientStoreError`.
    """

    def __init__(self, api_client: ApiClient, scheme: Optional[Scheme] = None):
        self.api_client = api_client
        self.scheme = scheme or Scheme.default()
        self._apis: Dict[Type, Any] = {}

    def _api(self, info: KindInfo) -> Any:
        return self._api_for(info.api)

    def _custom_api(self) -> client.CustomObjectsApi:
        return self._api_for(client.CustomObjectsApi)

    def _api_for(self, api_class: Type) -> Any:
        if api_class not in self._apis:
            self._apis[api_class] = api_class(self.api_client)
        return self._apis[api_class]

    async def get(
        self, kind_or_type: Union[str, Type], namespace: str, name: str
    ) -> Any:
        """
        Fetch a live object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        info = self.scheme.lookup(kind_or_type)
        api = self._api(info)
        with translate_api_errors(f"get {info.kind} {namespace}/{name}"):
            return await getattr(api, info.read)(name, namespace)

    async def create(self, obj: Any) -> Any:
        """
        Create an object.

        Raises:
            ConflictError: If an object with the same name already exists.
        """
        info = self.scheme.lookup(obj)
        self._fill_type_meta(info, obj)
        namespace = obj.metadata.namespace
        api = self._api(info)
        with translate_api_errors(
            f"create {info.kind} {namespace}/{obj.metadata.name}"
        ):
            return await getattr(api, info.create)(namespace, obj)

    async def update(self, obj: Any) -> Any:
        """
        Replace an object, guarded by its resourceVersion.

        Raises:
            ConflictError: If the resourceVersion is stale.
        """
        info = self.scheme.lookup(obj)
        self._fill_type_meta(info, obj)
        namespace = obj.metadata.namespace
        name = obj.metadata.name
        api = self._api(info)
        with translate_api_errors(
            f"update {info.kind} {namespace}/{name} "
            f"(resourceVersion {obj.metadata.resource_version})"
        ):
            return await getattr(api, info.replace)(name, namespace, obj)

    @staticmethod
    def _fill_type_meta(info: KindInfo, obj: Any) -> None:
        if not obj.api_version:
            obj.api_version = info.api_version
        if not obj.kind:
            obj.kind = info.kind

    # Custom resources are handled as plain dicts

    async def get_custom_object(
        self, group: str, version: str, plural: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        """Fetch a custom resource as a dict."""
        with translate_api_errors(f"get {plural}.{group} {namespace}/{name}"):
            return await self._custom_api().get_namespaced_custom_object(
                group, version, namespace, plural, name
            )

    async def list_custom_objects(
        self, group: str, version: str, plural: str, namespace: str = ""
    ) -> List[Dict[str, Any]]:
        """List custom resources in a namespace, or cluster-wide for ``""``."""
        api = self._custom_api()
        with translate_api_errors(f"list {plural}.{group}"):
            if namespace:
                result = await api.list_namespaced_custom_object(
                    group, version, namespace, plural
                )
            else:
                result = await api.list_cluster_custom_object(group, version, plural)
        return result.get("items", [])

    async def watch_custom_objects(
        self,
        group: str,
        version: str,
        plural: str,
        namespace: str = "",
        timeout_seconds: int = 300,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """
        Stream ``(event_type, object)`` pairs for a custom resource.

        The stream ends when the server-side timeout expires; callers are
        expected to restart it.
        """
        api = self._custom_api()
        kwargs: Dict[str, Any] = {
            "group": group,
            "version": version,
            "plural": plural,
            "timeout_seconds": timeout_seconds,
        }
        if namespace:
            func = api.list_namespaced_custom_object
            kwargs["namespace"] = namespace
        else:
            func = api.list_cluster_custom_object

        w = watch.Watch()
        try:
            with translate_api_errors(f"watch {plural}.{group}"):
                async for event in w.stream(func, **kwargs):
                    yield event["type"], event["object"]
        finally:
            w.stop()

    # Manifest conversion

    def to_model(self, kind: str, data: Dict[str, Any]) -> Any:
        """Build a typed model from a manifest dict."""
        info = self.scheme.lookup(kind)
        return self.api_client.deserialize(
            _ManifestResponse(data), info.model.__name__
        )

    def to_dict(self, obj: Any) -> Dict[str, Any]:
        """Render a model as a manifest dict with API field names."""
        return self.api_client.sanitize_for_serialization(obj)
