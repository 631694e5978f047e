"""Generate the Deployment and Service that serve a ModelDeployment."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from kubernetes.client import (
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Toleration,
)

from kaimera.runtime_policy import RuntimePolicy, resolve_policy
from kaimera.types import ModelDeployment, ModelDeploymentSpec

DEFAULT_REPLICAS = 1
DEFAULT_MAX_MODEL_LENGTH = 512
CONTAINER_NAME = "app"
CONTAINER_PORT = 8000
SERVICE_PORT = 80


def effective_replicas(spec: ModelDeploymentSpec) -> int:
    return max(DEFAULT_REPLICAS, int(spec.replicas or 0))


def effective_max_model_length(spec: ModelDeploymentSpec) -> int:
    if spec.max_model_length and spec.max_model_length > 0:
        return int(spec.max_model_length)
    return DEFAULT_MAX_MODEL_LENGTH


def pod_labels(md: ModelDeployment) -> Dict[str, str]:
    """Labels shared by the pod template and the Service selector."""
    return {"app": md.name}


def serve_command(spec: ModelDeploymentSpec) -> List[str]:
    return [
        "vllm",
        "serve",
        "--dtype",
        "auto",
        "--max-model-len",
        str(effective_max_model_length(spec)),
        spec.model_name,
    ]


def _tolerations(policy: RuntimePolicy) -> Optional[List[V1Toleration]]:
    if not policy.tolerations:
        return None
    return [
        V1Toleration(key=t.key, operator=t.operator, effect=t.effect, value=t.value)
        for t in policy.tolerations
    ]


def build_deployment(
    md: ModelDeployment,
    policies: Optional[Mapping[str, RuntimePolicy]] = None,
) -> V1Deployment:
    """
    Build the full desired Deployment for a ModelDeployment.

    The intent object is not modified; replicas and max model length are
    defaulted here.

    Args:
        md: The owning ModelDeployment
        policies: Runtime policy table (defaults to the built-in table)

    Returns:
        V1Deployment without owner references

    Raises:
        UnknownRuntimeError: If spec.runtime is not in the policy table
    """
    policy = resolve_policy(md.spec.runtime, policies)

    container = V1Container(
        name=CONTAINER_NAME,
        image=policy.image,
        image_pull_policy="IfNotPresent",
        command=serve_command(md.spec),
        resources=V1ResourceRequirements(limits=dict(policy.limits) or None),
    )

    pod_spec = V1PodSpec(
        containers=[container],
        node_selector=dict(md.spec.node_selector_labels) or None,
        tolerations=_tolerations(policy),
    )

    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(name=md.name, namespace=md.namespace),
        spec=V1DeploymentSpec(
            replicas=effective_replicas(md.spec),
            selector=V1LabelSelector(match_labels=pod_labels(md)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=pod_labels(md)),
                spec=pod_spec,
            ),
        ),
    )


def build_service(md: ModelDeployment) -> V1Service:
    """Build the ClusterIP Service forwarding port 80 to the model server."""
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(name=md.name, namespace=md.namespace),
        spec=V1ServiceSpec(
            type="ClusterIP",
            selector=pod_labels(md),
            ports=[
                V1ServicePort(
                    protocol="TCP",
                    port=SERVICE_PORT,
                    target_port=CONTAINER_PORT,
                )
            ],
        ),
    )
