"""
Deployment mutators.

Each mutator converges one group of fields of an existing Deployment towards
the desired one. Mutators that index containers positionally require the
``"containers"`` guarantee, provided by the container resources mutator
which self-heals a drifted container list.
"""

import copy
import logging
from typing import Any, List

from kubernetes_asyncio.client import V1Deployment, V1ObjectMeta

from errors import InvariantViolationError
from reconcilers.helpers import (
    cmp_resources,
    find_env_var,
    merge_map,
    object_diff,
    reconcile_env_vars,
    remove_duplicate_env_vars,
    remove_env_var,
    set_env_var,
    env_var_reconciler,
)
from reconcilers.pipeline import MutateFn, MutatorPipeline, mutator

logger = logging.getLogger(__name__)

CONTAINERS = "containers"

LISTENER_WORKERS = "LISTENER_WORKERS"
CONFIG_REDIS_ASYNC = "CONFIG_REDIS_ASYNC"

LISTENER_ASYNC_ARGS = [
    "bin/3scale_backend",
    "-s",
    "falcon",
    "start",
    "-e",
    "production",
    "-p",
    "3000",
    "-x",
    "/dev/stdout",
]
LISTENER_ARGS = [
    "bin/3scale_backend",
    "start",
    "-e",
    "production",
    "-p",
    "3000",
    "-x",
    "/dev/stdout",
]

# system-database and zync-database TLS volumes, no longer mounted
TLS_VOLUME_NAMES = ("writable-tls", "tls-secret")


def object_info(obj: Any) -> str:
    return f"Deployment {obj.metadata.namespace}/{obj.metadata.name}"


def _pod_spec(obj: V1Deployment):
    return obj.spec.template.spec


def _template_meta(obj: V1Deployment) -> V1ObjectMeta:
    if obj.spec.template.metadata is None:
        obj.spec.template.metadata = V1ObjectMeta()
    return obj.spec.template.metadata


def _replace_pod_spec_field(field: str, desired: V1Deployment, existing: V1Deployment) -> bool:
    desired_value = getattr(_pod_spec(desired), field)
    existing_value = getattr(_pod_spec(existing), field)
    if existing_value == desired_value:
        return False

    logger.info(
        f"{object_info(desired)} spec.template.spec.{field} has changed:\n"
        f"{object_diff(existing_value, desired_value)}"
    )
    setattr(_pod_spec(existing), field, copy.deepcopy(desired_value))
    return True


def deployment_annotations_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    merged, updated = merge_map(existing.metadata.annotations, desired.metadata.annotations)
    if updated:
        existing.metadata.annotations = merged
    return updated


def deployment_labels_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    merged, updated = merge_map(existing.metadata.labels, desired.metadata.labels)
    if updated:
        existing.metadata.labels = merged
    return updated


def deployment_replicas_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    if existing.spec.replicas == desired.spec.replicas:
        return False
    logger.info(
        f"{object_info(desired)} spec.replicas changed from "
        f"{existing.spec.replicas} to {desired.spec.replicas}"
    )
    existing.spec.replicas = desired.spec.replicas
    return True


def deployment_affinity_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    return _replace_pod_spec_field("affinity", desired, existing)


def deployment_tolerations_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    return _replace_pod_spec_field("tolerations", desired, existing)


def deployment_topology_spread_constraints_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    return _replace_pod_spec_field("topology_spread_constraints", desired, existing)


def deployment_priority_class_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    return _replace_pod_spec_field("priority_class_name", desired, existing)


def deployment_strategy_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    if existing.spec.strategy == desired.spec.strategy:
        return False
    existing.spec.strategy = copy.deepcopy(desired.spec.strategy)
    return True


@mutator(provides=(CONTAINERS,))
def deployment_container_resources_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    """
    Reconcile the resources of the single container.

    The desired Deployment must have exactly one container. An existing
    Deployment with a different container count gets desired's container
    list wholesale.
    """
    desired_containers = _pod_spec(desired).containers or []
    if len(desired_containers) != 1:
        raise InvariantViolationError(
            f"{object_info(desired)} desired spec.template.spec.containers "
            f"length changed to '{len(desired_containers)}', should be 1"
        )

    existing_spec = _pod_spec(existing)
    if len(existing_spec.containers or []) != 1:
        logger.info(
            f"{object_info(desired)} spec.template.spec.containers length changed "
            f"to '{len(existing_spec.containers or [])}', recreating containers"
        )
        existing_spec.containers = copy.deepcopy(desired_containers)
        return True

    existing_container = existing_spec.containers[0]
    desired_resources = desired_containers[0].resources
    if cmp_resources(existing_container.resources, desired_resources):
        return False

    logger.info(
        f"{object_info(desired)} spec.template.spec.containers[0].resources "
        f"have changed:\n{object_diff(existing_container.resources, desired_resources)}"
    )
    existing_container.resources = copy.deepcopy(desired_resources)
    return True


def deployment_pod_template_labels_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    desired_meta = desired.spec.template.metadata or V1ObjectMeta()
    existing_meta = existing.spec.template.metadata or V1ObjectMeta()
    merged, updated = merge_map(existing_meta.labels, desired_meta.labels)
    if updated:
        _template_meta(existing).labels = merged
    return updated


def deployment_pod_template_annotations_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    desired_meta = desired.spec.template.metadata or V1ObjectMeta()
    existing_meta = existing.spec.template.metadata or V1ObjectMeta()
    merged, updated = merge_map(existing_meta.annotations, desired_meta.annotations)
    if updated:
        _template_meta(existing).annotations = merged
    return updated


@mutator(requires=(CONTAINERS,))
def deployment_args_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    updated = False
    for desired_container, existing_container in zip(
        _pod_spec(desired).containers, _pod_spec(existing).containers
    ):
        if existing_container.args != desired_container.args:
            existing_container.args = copy.deepcopy(desired_container.args)
            updated = True
    return updated


@mutator(requires=(CONTAINERS,))
def deployment_probes_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    updated = False
    for desired_container, existing_container in zip(
        _pod_spec(desired).containers, _pod_spec(existing).containers
    ):
        if existing_container.liveness_probe != desired_container.liveness_probe:
            existing_container.liveness_probe = copy.deepcopy(
                desired_container.liveness_probe
            )
            updated = True
        if existing_container.readiness_probe != desired_container.readiness_probe:
            existing_container.readiness_probe = copy.deepcopy(
                desired_container.readiness_probe
            )
            updated = True
    return updated


@mutator(requires=(CONTAINERS,))
def deployment_pod_container_image_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    updated = False
    for desired_container, existing_container in zip(
        _pod_spec(desired).containers, _pod_spec(existing).containers
    ):
        if existing_container.image != desired_container.image:
            logger.info(
                f"{object_info(desired)} container {existing_container.name} image "
                f"changed from {existing_container.image} to {desired_container.image}"
            )
            existing_container.image = desired_container.image
            updated = True
    return updated


def deployment_pod_init_container_image_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    """Add missing init containers and keep the images of the others in sync."""
    existing_spec = _pod_spec(existing)
    init_containers = list(existing_spec.init_containers or [])
    updated = False

    for idx, desired_container in enumerate(_pod_spec(desired).init_containers or []):
        if idx >= len(init_containers):
            logger.info(
                f"{object_info(desired)} added missing init container "
                f"{desired_container.name}"
            )
            init_containers.append(copy.deepcopy(desired_container))
            updated = True
            continue
        if init_containers[idx].image != desired_container.image:
            init_containers[idx].image = desired_container.image
            updated = True

    if updated:
        existing_spec.init_containers = init_containers
    return updated


def deployment_pod_init_container_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    """
    Make the init containers match desired exactly.

    Excess init containers are truncated, missing ones appended and any
    positionally mismatched one replaced wholesale.
    """
    desired_init = _pod_spec(desired).init_containers or []
    existing_spec = _pod_spec(existing)
    init_containers = list(existing_spec.init_containers or [])
    updated = False

    if len(init_containers) > len(desired_init):
        init_containers = init_containers[: len(desired_init)]
        updated = True

    for idx, desired_container in enumerate(desired_init):
        if idx >= len(init_containers):
            init_containers.append(copy.deepcopy(desired_container))
            updated = True
        elif init_containers[idx] != desired_container:
            init_containers[idx] = copy.deepcopy(desired_container)
            updated = True

    if updated:
        logger.info(f"{object_info(desired)} init containers have changed")
        existing_spec.init_containers = init_containers
    return updated


def _shapes_match(desired: V1Deployment, existing: V1Deployment) -> bool:
    desired_spec, existing_spec = _pod_spec(desired), _pod_spec(existing)
    if len(desired_spec.containers or []) != len(existing_spec.containers or []):
        logger.warning(
            f"Not reconciling {object_info(desired)}: existing and desired "
            f"do not have same number of containers"
        )
        return False
    if len(desired_spec.init_containers or []) != len(
        existing_spec.init_containers or []
    ):
        logger.warning(
            f"Not reconciling {object_info(desired)}: existing and desired "
            f"do not have same number of init containers"
        )
        return False
    return True


def _container_pairs(desired: V1Deployment, existing: V1Deployment):
    desired_spec, existing_spec = _pod_spec(desired), _pod_spec(existing)
    yield from zip(desired_spec.init_containers or [], existing_spec.init_containers or [])
    yield from zip(desired_spec.containers or [], existing_spec.containers or [])


def deployment_env_var_mutator(desired: V1Deployment, existing: V1Deployment) -> bool:
    """
    Merge desired env vars into existing, by name, for every container.

    Variables only present in existing are kept. When the container or init
    container counts differ nothing is touched.
    """
    if not _shapes_match(desired, existing):
        return False

    updated = False
    for desired_container, existing_container in _container_pairs(desired, existing):
        env, changed = reconcile_env_vars(desired_container.env, existing_container.env)
        if changed:
            existing_container.env = env
            updated = True
    return updated


def deployment_env_var_reconciler(
    desired: V1Deployment, existing: V1Deployment, env_var: str
) -> bool:
    """Reconcile a single env var across all containers and init containers."""
    if not _shapes_match(desired, existing):
        return False

    updated = False
    for desired_container, existing_container in _container_pairs(desired, existing):
        env = list(existing_container.env or [])
        if env_var_reconciler(desired_container.env, env, env_var):
            existing_container.env = env
            updated = True
    return updated


def env_var_mutator(env_var: str) -> MutateFn:
    """Mutator reconciling only ``env_var``."""

    def mutate(desired: V1Deployment, existing: V1Deployment) -> bool:
        return deployment_env_var_reconciler(desired, existing, env_var)

    mutate.__name__ = f"deployment_{env_var.lower()}_env_var_mutator"
    return mutate


def deployment_remove_duplicate_env_var_mutator(
    _: V1Deployment, existing: V1Deployment
) -> bool:
    existing_spec = _pod_spec(existing)
    updated = False
    for container in (existing_spec.containers or []) + (
        existing_spec.init_containers or []
    ):
        pruned = remove_duplicate_env_vars(container.env)
        if len(pruned) != len(container.env or []):
            container.env = pruned
            updated = True
    return updated


def _sync_volume_mounts(existing_container, desired_container) -> bool:
    mounts = list(existing_container.volume_mounts or [])
    names = {mount.name for mount in mounts}
    updated = False
    for desired_mount in desired_container.volume_mounts or []:
        if desired_mount.name not in names:
            mounts.append(copy.deepcopy(desired_mount))
            names.add(desired_mount.name)
            updated = True
    if updated:
        existing_container.volume_mounts = mounts
    return updated


def deployment_sync_volumes_and_mounts_mutator(
    desired: V1Deployment, existing: V1Deployment
) -> bool:
    """
    Add volumes and volume mounts missing from existing.

    Additive only: nothing existing has and desired lacks is ever removed.
    """
    existing_spec = _pod_spec(existing)
    volumes = list(existing_spec.volumes or [])
    names = {volume.name for volume in volumes}
    changed = False

    for desired_volume in _pod_spec(desired).volumes or []:
        if desired_volume.name not in names:
            volumes.append(copy.deepcopy(desired_volume))
            names.add(desired_volume.name)
            changed = True
    if changed:
        existing_spec.volumes = volumes

    for desired_container, existing_container in _container_pairs(desired, existing):
        if _sync_volume_mounts(existing_container, desired_container):
            changed = True

    return changed


def remove_volumes_mutator(*volume_names: str) -> MutateFn:
    """
    Mutator deleting the named volumes and every mount referencing them.

    Reports a change only when something was actually removed.
    """
    names = frozenset(volume_names)

    def mutate(_: V1Deployment, existing: V1Deployment) -> bool:
        existing_spec = _pod_spec(existing)
        changed = False

        volumes = existing_spec.volumes or []
        if any(volume.name in names for volume in volumes):
            existing_spec.volumes = [v for v in volumes if v.name not in names]
            changed = True

        for container in (existing_spec.containers or []) + (
            existing_spec.init_containers or []
        ):
            mounts = container.volume_mounts or []
            if any(mount.name in names for mount in mounts):
                container.volume_mounts = [m for m in mounts if m.name not in names]
                changed = True

        if changed:
            logger.info(
                f"{object_info(existing)} removed volumes {', '.join(sorted(names))}"
            )
        return changed

    mutate.__name__ = "deployment_remove_volumes_mutator"
    return mutate


deployment_remove_tls_volumes_and_mounts_mutator = remove_volumes_mutator(
    *TLS_VOLUME_NAMES
)
deployment_remove_tls_volumes_and_mounts_mutator.__name__ = (
    "deployment_remove_tls_volumes_and_mounts_mutator"
)


def _pin_listener_args(existing: V1Deployment, args: List[str]) -> bool:
    container = _pod_spec(existing).containers[0]
    if container.args == args:
        return False
    container.args = list(args)
    return True


@mutator(requires=(CONTAINERS,))
def deployment_listener_args_mutator(_: V1Deployment, existing: V1Deployment) -> bool:
    """Run the listener under falcon (async mode)."""
    return _pin_listener_args(existing, LISTENER_ASYNC_ARGS)


@mutator(requires=(CONTAINERS,))
def deployment_listener_async_disable_args_mutator(
    _: V1Deployment, existing: V1Deployment
) -> bool:
    return _pin_listener_args(existing, LISTENER_ARGS)


@mutator(requires=(CONTAINERS,))
def deployment_listener_env_mutator(_: V1Deployment, existing: V1Deployment) -> bool:
    """
    Async mode: LISTENER_WORKERS must be set and non-zero, CONFIG_REDIS_ASYNC is 1.
    """
    container = _pod_spec(existing).containers[0]
    env = list(container.env or [])
    updated = False

    workers = find_env_var(env, LISTENER_WORKERS)
    if workers is None or workers.value == "0":
        updated = set_env_var(env, LISTENER_WORKERS, "1")
    if set_env_var(env, CONFIG_REDIS_ASYNC, "1"):
        updated = True

    if updated:
        container.env = env
    return updated


@mutator(requires=(CONTAINERS,))
def deployment_listener_async_disable_env_mutator(
    _: V1Deployment, existing: V1Deployment
) -> bool:
    """Async disabled: no LISTENER_WORKERS, CONFIG_REDIS_ASYNC is 0."""
    container = _pod_spec(existing).containers[0]
    env = list(container.env or [])
    updated = False

    if find_env_var(env, LISTENER_WORKERS) is not None:
        env = remove_env_var(env, LISTENER_WORKERS)
        updated = True
    if set_env_var(env, CONFIG_REDIS_ASYNC, "0"):
        updated = True

    if updated:
        container.env = env
    return updated


def _pin_worker_async(existing: V1Deployment, value: str) -> bool:
    container = _pod_spec(existing).containers[0]
    env = list(container.env or [])
    if not set_env_var(env, CONFIG_REDIS_ASYNC, value):
        return False
    container.env = env
    return True


@mutator(requires=(CONTAINERS,))
def deployment_worker_env_mutator(_: V1Deployment, existing: V1Deployment) -> bool:
    return _pin_worker_async(existing, "1")


@mutator(requires=(CONTAINERS,))
def deployment_worker_disable_async_env_mutator(
    _: V1Deployment, existing: V1Deployment
) -> bool:
    return _pin_worker_async(existing, "0")


def generic_backend_deployment_mutators() -> List[MutateFn]:
    """Mutators shared by every backend and system Deployment."""
    return [
        deployment_annotations_mutator,
        deployment_container_resources_mutator,
        deployment_affinity_mutator,
        deployment_tolerations_mutator,
        deployment_pod_template_labels_mutator,
        deployment_priority_class_mutator,
        deployment_topology_spread_constraints_mutator,
        deployment_pod_template_annotations_mutator,
        deployment_args_mutator,
        deployment_probes_mutator,
        deployment_pod_container_image_mutator,
        deployment_pod_init_container_image_mutator,
    ]


def deployment_mutator(*mutators: MutateFn) -> MutatorPipeline[V1Deployment]:
    return MutatorPipeline(V1Deployment, *mutators)
