"""
Capability Probe - Cluster API discovery.

Discovers which API groups and kinds the cluster serves so reconcilers can
vary their behaviour on clusters that lack an optional API. Discovery runs
once at startup; the resulting snapshot is read-only and shared by every
reconciler for the lifetime of the process.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Tuple

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient

from errors import StoreError
from store import translate_api_errors

logger = logging.getLogger(__name__)

CORE_GROUP = ""


@dataclass(frozen=True)
class CapabilitySnapshot:
    """Set of ``(group, kind)`` pairs served by the cluster."""

    kinds_available: FrozenSet[Tuple[str, str]] = field(default_factory=frozenset)
    group_versions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_pairs(
        cls, pairs: Iterable[Tuple[str, str]], group_versions: Iterable[str] = ()
    ) -> "CapabilitySnapshot":
        return cls(frozenset(pairs), frozenset(group_versions))

    def has_kind(self, group: str, kind: str) -> bool:
        """Whether the cluster serves ``kind`` in API ``group``."""
        return (group, kind) in self.kinds_available

    def has_group(self, group: str) -> bool:
        """Whether the cluster serves any kind in API ``group``."""
        return any(g == group for g, _ in self.kinds_available)

    def kinds(self) -> List[Tuple[str, str]]:
        """All ``(group, kind)`` pairs, sorted."""
        return sorted(self.kinds_available)

    def __len__(self) -> int:
        return len(self.kinds_available)


class CapabilityProbe:
    """Queries the discovery endpoints of the API server."""

    def __init__(self, api_client: ApiClient):
        self.api_client = api_client

    async def discover(self) -> CapabilitySnapshot:
        """
        Build a capability snapshot.

        A group whose discovery call fails (typically an aggregated API whose
        backing service is down) is skipped with a warning rather than
        failing the whole discovery.

        Returns:
            The snapshot of served ``(group, kind)`` pairs.

        Raises:
            StoreError: If the core resources or the group list cannot be read.
        """
        pairs = set()
        group_versions = set()

        with translate_api_errors("discover core API resources"):
            core = await client.CoreV1Api(self.api_client).get_api_resources()
        group_versions.add(core.group_version)
        pairs.update(self._kinds(CORE_GROUP, core.resources))

        with translate_api_errors("discover API groups"):
            group_list = await client.ApisApi(self.api_client).get_api_versions()

        for group in group_list.groups or []:
            preferred = group.preferred_version or group.versions[0]
            group_version = preferred.group_version
            try:
                resources = await self._group_resources(group_version)
            except StoreError as e:
                logger.warning(f"Skipping API group {group_version}: {e}")
                continue
            group_versions.add(group_version)
            pairs.update(self._kinds(group.name, resources.resources))

        snapshot = CapabilitySnapshot.from_pairs(pairs, group_versions)
        logger.info(
            f"Discovered {len(snapshot)} kinds in {len(group_versions)} group versions"
        )
        return snapshot

    async def _group_resources(self, group_version: str):
        with translate_api_errors(f"discover {group_version}"):
            return await self.api_client.call_api(
                f"/apis/{group_version}",
                "GET",
                response_types_map={200: "V1APIResourceList"},
                auth_settings=["BearerToken"],
                _return_http_data_only=True,
            )

    @staticmethod
    def _kinds(group: str, resources) -> List[Tuple[str, str]]:
        # Sub-resources such as pods/log share the parent kind
        return [
            (group, resource.kind)
            for resource in resources or []
            if "/" not in resource.name
        ]
