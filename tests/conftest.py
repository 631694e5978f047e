import copy
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from kubernetes.client.exceptions import ApiException

from kaimera.types import ModelDeployment, ModelDeploymentSpec, ObjectMeta


class FakeControlPlane:
    """In-memory stand-in for ControlPlane that records every call."""

    def __init__(self) -> None:
        self.model_deployments: Dict[Tuple[str, str], Any] = {}
        self.deployments: Dict[Tuple[str, str], Any] = {}
        self.services: Dict[Tuple[str, str], Any] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail: Dict[str, ApiException] = {}
        self.on_call = None

    def _record(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        if self.on_call is not None:
            self.on_call(op)
        if op in self.fail:
            raise self.fail[op]

    def writes(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if not c[0].startswith("get_")]

    def get_model_deployment(self, namespace: str, name: str) -> Optional[ModelDeployment]:
        self._record("get_model_deployment", name)
        md = self.model_deployments.get((namespace, name))
        if isinstance(md, dict):
            # Raw custom-object dicts are parsed as ControlPlane does.
            return ModelDeployment.from_dict(md)
        return copy.deepcopy(md)

    def get_deployment(self, namespace: str, name: str):
        self._record("get_deployment", name)
        return copy.deepcopy(self.deployments.get((namespace, name)))

    def create_deployment(self, deployment):
        self._record("create_deployment", deployment.metadata.name)
        key = (deployment.metadata.namespace, deployment.metadata.name)
        if key in self.deployments:
            raise ApiException(status=409, reason="AlreadyExists")
        self.deployments[key] = copy.deepcopy(deployment)
        return deployment

    def replace_deployment(self, deployment):
        self._record("replace_deployment", deployment.metadata.name)
        key = (deployment.metadata.namespace, deployment.metadata.name)
        if key not in self.deployments:
            raise ApiException(status=404, reason="Not Found")
        self.deployments[key] = copy.deepcopy(deployment)
        return deployment

    def get_service(self, namespace: str, name: str):
        self._record("get_service", name)
        return copy.deepcopy(self.services.get((namespace, name)))

    def create_service(self, service):
        self._record("create_service", service.metadata.name)
        key = (service.metadata.namespace, service.metadata.name)
        if key in self.services:
            raise ApiException(status=409, reason="AlreadyExists")
        self.services[key] = copy.deepcopy(service)
        return service

    def replace_service(self, service):
        self._record("replace_service", service.metadata.name)
        key = (service.metadata.namespace, service.metadata.name)
        if key not in self.services:
            raise ApiException(status=404, reason="Not Found")
        self.services[key] = copy.deepcopy(service)
        return service


def make_md(
    name: str = "llama-7b",
    namespace: str = "default",
    model_name: Optional[str] = None,
    replicas: int = 0,
    max_model_length: int = 0,
    runtime: str = "",
    node_selector_labels: Optional[Dict[str, str]] = None,
    uid: Optional[str] = "3f1c2a9e-0000-4000-8000-000000000001",
) -> ModelDeployment:
    return ModelDeployment(
        metadata=ObjectMeta(name=name, namespace=namespace, uid=uid),
        spec=ModelDeploymentSpec(
            model_name=model_name if model_name is not None else name,
            replicas=replicas,
            max_model_length=max_model_length,
            runtime=runtime,
            node_selector_labels=dict(node_selector_labels or {}),
        ),
    )


@pytest.fixture
def fake_cp() -> FakeControlPlane:
    return FakeControlPlane()
