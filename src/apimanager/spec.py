"""
APIManager custom resource model.

Only the subset of the resource the operator's reconcilers consume is
modelled; unknown fields are ignored.
"""

from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import (
    V1LocalObjectReference,
    V1OwnerReference,
    V1ResourceRequirements,
    V1Toleration,
)
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GROUP = "apps.3scale.net"
VERSION = "v1alpha1"
KIND = "APIManager"
PLURAL = "apimanagers"

DISABLE_ASYNC_ANNOTATION = "apps.3scale.net/disable-async"

DEFAULT_APP_LABEL = "3scale-api-management"
DEFAULT_IMAGE_PULL_SECRET = "threescale-registry-auth"
DEFAULT_BACKEND_IMAGE = "quay.io/3scale/apisonator:latest"
DEFAULT_SYSTEM_IMAGE = "quay.io/3scale/porta:latest"


class SpecModel(BaseModel):
    """Base for models read from camelCase manifests."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class ObjectMetaSpec(SpecModel):
    name: str
    namespace: str = ""
    uid: str = ""
    generation: Optional[int] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: Optional[str] = None


class LocalObjectReferenceSpec(SpecModel):
    name: str


class ResourceRequirementsSpec(SpecModel):
    limits: Optional[Dict[str, str]] = None
    requests: Optional[Dict[str, str]] = None


class TolerationSpec(SpecModel):
    key: Optional[str] = None
    operator: Optional[str] = None
    value: Optional[str] = None
    effect: Optional[str] = None
    toleration_seconds: Optional[int] = None


class ComponentSpec(SpecModel):
    """Deployment tunables shared by every component."""

    replicas: Optional[int] = Field(None, ge=0)
    resources: Optional[ResourceRequirementsSpec] = None
    priority_class_name: Optional[str] = None
    tolerations: Optional[List[TolerationSpec]] = None
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None

    def resource_requirements(
        self, default: V1ResourceRequirements
    ) -> V1ResourceRequirements:
        if self.resources is None:
            return default
        return V1ResourceRequirements(
            limits=self.resources.limits, requests=self.resources.requests
        )

    def v1_tolerations(self) -> Optional[List[V1Toleration]]:
        if self.tolerations is None:
            return None
        return [V1Toleration(**t.model_dump()) for t in self.tolerations]


class BackendSpec(SpecModel):
    image: Optional[str] = None
    listener_spec: ComponentSpec = Field(default_factory=ComponentSpec)
    worker_spec: ComponentSpec = Field(default_factory=ComponentSpec)
    cron_spec: ComponentSpec = Field(default_factory=ComponentSpec)


class SystemSpec(SpecModel):
    image: Optional[str] = None
    app_spec: ComponentSpec = Field(default_factory=ComponentSpec)


class MonitoringSpec(SpecModel):
    enabled: bool = False


class APIManagerSpec(SpecModel):
    wildcard_domain: str = ""
    app_label: str = DEFAULT_APP_LABEL
    image_pull_secrets: Optional[List[LocalObjectReferenceSpec]] = None
    backend: BackendSpec = Field(default_factory=BackendSpec)
    system: SystemSpec = Field(default_factory=SystemSpec)
    monitoring: MonitoringSpec = Field(default_factory=MonitoringSpec)


class APIManager(SpecModel):
    """An ``apps.3scale.net/v1alpha1`` APIManager."""

    api_version: str = f"{GROUP}/{VERSION}"
    kind: str = KIND
    metadata: ObjectMetaSpec
    spec: APIManagerSpec = Field(default_factory=APIManagerSpec)

    @classmethod
    def parse(cls, obj: Dict[str, Any]) -> "APIManager":
        """
        Parse a manifest dict.

        Raises:
            pydantic.ValidationError: If the manifest is malformed.
        """
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def async_disabled(self) -> bool:
        """Whether the disable-async annotation is set to ``"true"``."""
        value = self.metadata.annotations.get(DISABLE_ASYNC_ANNOTATION, "")
        return value.lower() == "true"

    @property
    def monitoring_enabled(self) -> bool:
        return self.spec.monitoring.enabled

    @property
    def backend_image(self) -> str:
        return self.spec.backend.image or DEFAULT_BACKEND_IMAGE

    @property
    def system_image(self) -> str:
        return self.spec.system.image or DEFAULT_SYSTEM_IMAGE

    def image_pull_secrets(self) -> List[V1LocalObjectReference]:
        if self.spec.image_pull_secrets is None:
            return [V1LocalObjectReference(name=DEFAULT_IMAGE_PULL_SECRET)]
        return [V1LocalObjectReference(name=s.name) for s in self.spec.image_pull_secrets]

    def owner_reference(self) -> V1OwnerReference:
        """Controller reference set on every object created for this APIManager."""
        return V1OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.metadata.name,
            uid=self.metadata.uid,
            controller=True,
            block_owner_deletion=True,
        )
