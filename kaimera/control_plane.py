"""Typed access to the Kubernetes API objects the controller reads and writes."""

from __future__ import annotations

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client import ApiClient, V1Deployment, V1Service
from kubernetes.client.exceptions import ApiException

from kaimera import types

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 30.0


def load_kube_config(kubeconfig_path: Optional[str] = None) -> None:
    """Load in-cluster config, falling back to a kubeconfig file."""
    if kubeconfig_path:
        config.load_kube_config(config_file=kubeconfig_path)
        logger.info(f"Loaded kubeconfig {kubeconfig_path}")
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def is_not_found(e: ApiException) -> bool:
    return e.status == 404


def is_conflict(e: ApiException) -> bool:
    return e.status == 409


class ControlPlane:
    """
    get/create/replace for ModelDeployments and their children.

    get_* return None when the object does not exist; every other API error
    propagates as ApiException.
    """

    def __init__(
        self,
        api_client: Optional[ApiClient] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self.api_client = api_client or ApiClient()
        self.request_timeout = request_timeout
        self.apps = client.AppsV1Api(self.api_client)
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    # -------- ModelDeployment --------

    def get_model_deployment(self, namespace: str, name: str) -> Optional[types.ModelDeployment]:
        try:
            obj = self.custom.get_namespaced_custom_object(
                group=types.GROUP,
                version=types.VERSION,
                namespace=namespace,
                plural=types.PLURAL,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return types.ModelDeployment.from_dict(obj)

    # -------- Deployment --------

    def get_deployment(self, namespace: str, name: str) -> Optional[V1Deployment]:
        try:
            return self.apps.read_namespaced_deployment(
                name=name, namespace=namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def create_deployment(self, deployment: V1Deployment) -> V1Deployment:
        return self.apps.create_namespaced_deployment(
            namespace=deployment.metadata.namespace,
            body=deployment,
            _request_timeout=self.request_timeout,
        )

    def replace_deployment(self, deployment: V1Deployment) -> V1Deployment:
        return self.apps.replace_namespaced_deployment(
            name=deployment.metadata.name,
            namespace=deployment.metadata.namespace,
            body=deployment,
            _request_timeout=self.request_timeout,
        )

    # -------- Service --------

    def get_service(self, namespace: str, name: str) -> Optional[V1Service]:
        try:
            return self.core.read_namespaced_service(
                name=name, namespace=namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def create_service(self, service: V1Service) -> V1Service:
        return self.core.create_namespaced_service(
            namespace=service.metadata.namespace,
            body=service,
            _request_timeout=self.request_timeout,
        )

    def replace_service(self, service: V1Service) -> V1Service:
        return self.core.replace_namespaced_service(
            name=service.metadata.name,
            namespace=service.metadata.namespace,
            body=service,
            _request_timeout=self.request_timeout,
        )
