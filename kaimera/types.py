"""ModelDeployment custom resource types (kaimera.ai/v1)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from kaimera.errors import InvalidObjectError

GROUP = "kaimera.ai"
VERSION = "v1"
KIND = "ModelDeployment"
PLURAL = "modeldeployments"
API_VERSION = f"{GROUP}/{VERSION}"


@dataclass(frozen=True)
class Request:
    """Identity of one object handed to the reconciler."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ObjectMeta:
    name: str
    namespace: str
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ModelDeploymentSpec:
    model_name: str = ""
    replicas: int = 0
    max_model_length: int = 0
    runtime: str = ""  # "" | cpu | gpu
    node_selector_labels: Dict[str, str] = field(default_factory=dict)


def _int_field(spec: Dict[str, Any], key: str) -> int:
    raw = spec.get(key)
    if raw is None or raw == "":
        return 0
    if isinstance(raw, bool):
        raise InvalidObjectError(f"spec.{key} must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidObjectError(f"spec.{key} must be an integer, got {raw!r}") from None


def _labels_field(spec: Dict[str, Any], key: str) -> Dict[str, str]:
    raw = spec.get(key) or {}
    if not isinstance(raw, dict):
        raise InvalidObjectError(f"spec.{key} must be a mapping, got {type(raw).__name__}")
    return {str(k): str(v) for k, v in raw.items()}


@dataclass
class ModelDeployment:

    metadata: ObjectMeta
    spec: ModelDeploymentSpec = field(default_factory=ModelDeploymentSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def request(self) -> Request:
        return Request(namespace=self.namespace, name=self.name)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ModelDeployment":
        """Parse the dict returned by the custom objects API.

        Missing spec fields take their zero values; defaulting happens when
        the child objects are built.
        """
        meta = obj.get("metadata") or {}
        name = meta.get("name")
        namespace = meta.get("namespace")
        if not name or not namespace:
            raise InvalidObjectError(f"{KIND} is missing metadata.name or metadata.namespace")

        spec = obj.get("spec") or {}
        if not isinstance(spec, dict):
            raise InvalidObjectError(f"{KIND} {namespace}/{name} has a non-object spec")
        return cls(
            metadata=ObjectMeta(
                name=name,
                namespace=namespace,
                uid=meta.get("uid"),
                resource_version=meta.get("resourceVersion"),
                generation=meta.get("generation"),
                labels=dict(meta.get("labels") or {}),
            ),
            spec=ModelDeploymentSpec(
                model_name=str(spec.get("modelName") or ""),
                replicas=_int_field(spec, "replicas"),
                max_model_length=_int_field(spec, "maxModelLength"),
                runtime=str(spec.get("runtime") or ""),
                node_selector_labels=_labels_field(spec, "nodeSelectorLabels"),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.metadata.uid:
            meta["uid"] = self.metadata.uid
        if self.metadata.resource_version:
            meta["resourceVersion"] = self.metadata.resource_version
        if self.metadata.labels:
            meta["labels"] = dict(self.metadata.labels)
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": meta,
            "spec": {
                "modelName": self.spec.model_name,
                "replicas": self.spec.replicas,
                "maxModelLength": self.spec.max_model_length,
                "runtime": self.spec.runtime,
                "nodeSelectorLabels": dict(self.spec.node_selector_labels),
            },
        }
