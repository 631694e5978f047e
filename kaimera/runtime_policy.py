"""Runtime policy table: runtime selector -> image, tolerations, limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from kaimera.errors import PolicyConfigError, UnknownRuntimeError

logger = logging.getLogger(__name__)

CPU_IMAGE = "patnaikshekhar/vllm-cpu:1"
GPU_IMAGE = "vllm/vllm-openai:latest"
GPU_RESOURCE = "nvidia.com/gpu"


@dataclass(frozen=True)
class Toleration:
    key: str
    operator: str = "Exists"
    effect: Optional[str] = None
    value: Optional[str] = None


@dataclass(frozen=True)
class RuntimePolicy:
    image: str
    tolerations: Tuple[Toleration, ...] = ()
    limits: Mapping[str, str] = field(default_factory=dict)


DEFAULT_POLICIES: Dict[str, RuntimePolicy] = {
    "cpu": RuntimePolicy(image=CPU_IMAGE),
    "gpu": RuntimePolicy(
        image=GPU_IMAGE,
        tolerations=(Toleration(key=GPU_RESOURCE, operator="Exists", effect="NoSchedule"),),
        limits={GPU_RESOURCE: "1"},
    ),
}

# An unset runtime behaves as cpu.
ALIASES: Dict[str, str] = {"": "cpu"}


def resolve_policy(runtime: Optional[str], table: Optional[Mapping[str, RuntimePolicy]] = None) -> RuntimePolicy:
    """
    Look up the policy for a runtime selector.

    Args:
        runtime: Value of spec.runtime ("" and None mean cpu)
        table: Policy table (defaults to DEFAULT_POLICIES)

    Returns:
        RuntimePolicy for the runtime

    Raises:
        UnknownRuntimeError: If the runtime is not in the table
    """
    if table is None:
        table = DEFAULT_POLICIES
    key = (runtime or "").strip()
    key = ALIASES.get(key, key)
    policy = table.get(key)
    if policy is None:
        raise UnknownRuntimeError(runtime or "", list(table.keys()))
    return policy


def _parse_toleration(raw: Any, runtime: str) -> Toleration:
    if not isinstance(raw, dict) or not raw.get("key"):
        raise PolicyConfigError(f"runtime '{runtime}': each toleration needs a 'key'")
    return Toleration(
        key=str(raw["key"]),
        operator=str(raw.get("operator", "Exists")),
        effect=raw.get("effect"),
        value=raw.get("value"),
    )


def _parse_policy(runtime: str, raw: Any) -> RuntimePolicy:
    if not isinstance(raw, dict) or not raw.get("image"):
        raise PolicyConfigError(f"runtime '{runtime}' needs an 'image'")
    tolerations: List[Toleration] = [_parse_toleration(t, runtime) for t in raw.get("tolerations") or []]
    limits = raw.get("limits") or {}
    if not isinstance(limits, dict):
        raise PolicyConfigError(f"runtime '{runtime}': 'limits' must be a mapping")
    return RuntimePolicy(
        image=str(raw["image"]),
        tolerations=tuple(tolerations),
        limits={str(k): str(v) for k, v in limits.items()},
    )


def load_policy_table(path: str) -> Dict[str, RuntimePolicy]:
    """Load runtime policies from a YAML file, merged over the defaults.

    Expected layout::

        runtimes:
          gpu:
            image: vllm/vllm-openai:v0.6.0
            tolerations:
              - {key: nvidia.com/gpu, operator: Exists, effect: NoSchedule}
            limits:
              nvidia.com/gpu: "1"
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise PolicyConfigError(f"failed to read runtime policy file {path}: {e}") from e

    runtimes = data.get("runtimes") if isinstance(data, dict) else None
    if not isinstance(runtimes, dict):
        raise PolicyConfigError(f"{path}: expected a top-level 'runtimes' mapping")

    table = dict(DEFAULT_POLICIES)
    for runtime, raw in runtimes.items():
        table[str(runtime)] = _parse_policy(str(runtime), raw)

    logger.info(f"Loaded runtime policy file {path}: {sorted(table)}")
    return table
