"""
Field-level helpers shared by the object mutators.
"""

import copy
import difflib
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import yaml
from kubernetes_asyncio.client import V1EnvVar, V1ResourceRequirements

logger = logging.getLogger(__name__)


def merge_map(
    existing: Optional[Dict[str, str]], desired: Optional[Dict[str, str]]
) -> Tuple[Dict[str, str], bool]:
    """
    Merge ``desired`` into ``existing``.

    Keys only present in ``existing`` are kept; ``desired`` wins on conflicts.

    Returns:
        The merged map and whether it differs from ``existing``.
    """
    merged = dict(existing or {})
    updated = False
    for key, value in (desired or {}).items():
        if merged.get(key) != value or key not in merged:
            merged[key] = value
            updated = True
    return merged, updated


def env_var_from_value(name: str, value: str) -> V1EnvVar:
    return V1EnvVar(name=name, value=value)


def find_env_var(env: Optional[List[V1EnvVar]], name: str) -> Optional[V1EnvVar]:
    for env_var in env or []:
        if env_var.name == name:
            return env_var
    return None


def remove_env_var(env: Optional[List[V1EnvVar]], name: str) -> List[V1EnvVar]:
    return [env_var for env_var in env or [] if env_var.name != name]


def env_var_reconciler(
    desired: Optional[List[V1EnvVar]], existing: List[V1EnvVar], name: str
) -> bool:
    """
    Reconcile the variable ``name`` of ``existing`` in place.

    Added when in desired and not in existing, updated when both have it but
    the definitions differ. A variable only present in existing is kept.

    Returns:
        Whether ``existing`` was modified.
    """
    desired_var = find_env_var(desired, name)
    if desired_var is None:
        return False

    for idx, existing_var in enumerate(existing):
        if existing_var.name == name:
            if existing_var == desired_var:
                return False
            existing[idx] = copy.deepcopy(desired_var)
            return True

    existing.append(copy.deepcopy(desired_var))
    return True


def reconcile_env_vars(
    desired: Optional[List[V1EnvVar]], existing: Optional[List[V1EnvVar]]
) -> Tuple[List[V1EnvVar], bool]:
    """
    Reconcile every variable defined in ``desired`` into ``existing``.

    Returns:
        The resulting env list and whether it changed.
    """
    result = list(existing or [])
    updated = False
    for desired_var in desired or []:
        if env_var_reconciler(desired, result, desired_var.name):
            updated = True
    return result, updated


def remove_duplicate_env_vars(env: Optional[List[V1EnvVar]]) -> List[V1EnvVar]:
    """Keep the first definition of every variable name."""
    seen = set()
    pruned = []
    for env_var in env or []:
        if env_var.name in seen:
            continue
        seen.add(env_var.name)
        pruned.append(env_var)
    return pruned


def set_env_var(env: List[V1EnvVar], name: str, value: str) -> bool:
    """
    Pin ``name`` to a literal ``value`` in ``env``, appending it when missing.

    Returns:
        Whether ``env`` was modified.
    """
    for idx, env_var in enumerate(env):
        if env_var.name == name:
            if env_var.value == value and env_var.value_from is None:
                return False
            env[idx] = env_var_from_value(name, value)
            return True
    env.append(env_var_from_value(name, value))
    return True


def _plain(value: Any) -> Any:
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def object_diff(existing: Any, desired: Any) -> str:
    """Render a unified YAML diff between two field values."""
    before = yaml.safe_dump(_plain(existing), sort_keys=True, default_flow_style=False)
    after = yaml.safe_dump(_plain(desired), sort_keys=True, default_flow_style=False)
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile="existing",
            tofile="desired",
        )
    )


_QUANTITY_MULTIPLIERS = {
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


def parse_quantity(quantity: Any) -> Decimal:
    """
    Parse a Kubernetes resource quantity ("500m", "1Gi", "2") into a Decimal.

    Raises:
        ValueError: If the quantity is malformed.
    """
    if isinstance(quantity, (int, float, Decimal)):
        return Decimal(str(quantity))

    text = str(quantity).strip()
    multiplier = Decimal(1)
    # Two-letter binary suffixes must be tried before single letters
    for suffix in sorted(_QUANTITY_MULTIPLIERS, key=len, reverse=True):
        if text.endswith(suffix):
            text = text[: -len(suffix)]
            multiplier = _QUANTITY_MULTIPLIERS[suffix]
            break

    try:
        return Decimal(text) * multiplier
    except InvalidOperation as e:
        raise ValueError(f"Invalid quantity: {quantity!r}") from e


def _quantities_equal(
    existing: Optional[Dict[str, Any]], desired: Optional[Dict[str, Any]]
) -> bool:
    existing = existing or {}
    desired = desired or {}
    if existing.keys() != desired.keys():
        return False
    try:
        return all(
            parse_quantity(existing[key]) == parse_quantity(desired[key])
            for key in existing
        )
    except ValueError:
        return existing == desired


def cmp_resources(
    existing: Optional[V1ResourceRequirements],
    desired: Optional[V1ResourceRequirements],
) -> bool:
    """
    Compare resource requirements by quantity value.

    The API server canonicalises quantities ("1000m" comes back as "1"), so a
    plain structural comparison would report a change on every reconcile.
    """
    existing = existing or V1ResourceRequirements()
    desired = desired or V1ResourceRequirements()
    return (
        _quantities_equal(existing.limits, desired.limits)
        and _quantities_equal(existing.requests, desired.requests)
        and getattr(existing, "claims", None) == getattr(desired, "claims", None)
    )
