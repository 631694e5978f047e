"""Reconcile a ModelDeployment into its Deployment and Service."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional

from kubernetes.client import V1Service

from kaimera.builder import build_deployment, build_service
from kaimera.control_plane import ControlPlane
from kaimera.errors import InvalidObjectError, ReconcileCancelled, UnknownRuntimeError
from kaimera.ownership import Scheme, default_scheme, set_controller_reference
from kaimera.runtime_policy import RuntimePolicy
from kaimera.types import ModelDeployment, Request

logger = logging.getLogger(__name__)

# Errors that will not go away by reconciling the same object again.
PERMANENT_ERRORS = (UnknownRuntimeError, InvalidObjectError)


@dataclass(frozen=True)
class ChildAction:
    kind: str
    verb: str  # create | update
    name: str


@dataclass
class ReconcileResult:
    request: Request
    error: Optional[BaseException] = None
    actions: List[ChildAction] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def requeue(self) -> bool:
        if self.error is None:
            return False
        return not isinstance(self.error, (ReconcileCancelled,) + PERMANENT_ERRORS)


@dataclass
class _Child:
    """How to fetch, build and write one owned kind."""
    kind: str
    get: Callable[[str, str], Any]
    build: Callable[[ModelDeployment], Any]
    create: Callable[[Any], Any]
    replace: Callable[[Any], Any]
    carry_over: Callable[[Any, Any], None]


def _carry_metadata(live: Any, desired: Any) -> None:
    desired.metadata.resource_version = live.metadata.resource_version
    # Keep references other controllers or users added; a foreign
    # controller reference then makes the owner link fail.
    refs = list(live.metadata.owner_references or [])
    desired.metadata.owner_references = refs or None


# spec.clusterIPs is cluster_i_ps in older client releases and cluster_ips
# in newer ones.
_CLUSTER_IPS_ATTRS = ("cluster_ips", "cluster_i_ps")


def _cluster_ips_attr(spec: Any) -> Optional[str]:
    for attr in _CLUSTER_IPS_ATTRS:
        if hasattr(spec, attr):
            return attr
    return None


def get_cluster_ips(spec: Any) -> Optional[List[str]]:
    attr = _cluster_ips_attr(spec)
    return getattr(spec, attr) if attr else None


def set_cluster_ips(spec: Any, ips: Optional[List[str]]) -> None:
    attr = _cluster_ips_attr(spec)
    if attr is None:
        raise AttributeError(f"{type(spec).__name__} has no clusterIPs field")
    setattr(spec, attr, ips)


def _carry_service_fields(live: V1Service, desired: V1Service) -> None:
    _carry_metadata(live, desired)
    # clusterIP is allocated by the API server and cannot be cleared.
    if live.spec is not None:
        desired.spec.cluster_ip = live.spec.cluster_ip
        set_cluster_ips(desired.spec, get_cluster_ips(live.spec))


class Reconciler:
    """
    Converges one ModelDeployment at a time.

    Every call rebuilds the full desired Deployment and Service and writes
    them: create when absent, full replace when present. The two children are
    checked independently, so a missing Service is created even when the
    Deployment already exists. Nothing is retried here; the caller decides
    what to do with a failed ReconcileResult.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        scheme: Optional[Scheme] = None,
        policies: Optional[Mapping[str, RuntimePolicy]] = None,
    ) -> None:
        self.control_plane = control_plane
        self.scheme = scheme or default_scheme()
        self.policies = policies
        self._children = [
            _Child(
                kind="Deployment",
                get=control_plane.get_deployment,
                build=lambda md: build_deployment(md, self.policies),
                create=control_plane.create_deployment,
                replace=control_plane.replace_deployment,
                carry_over=_carry_metadata,
            ),
            _Child(
                kind="Service",
                get=control_plane.get_service,
                build=build_service,
                create=control_plane.create_service,
                replace=control_plane.replace_service,
                carry_over=_carry_service_fields,
            ),
        ]

    def reconcile(self, request: Request, cancel: Optional[threading.Event] = None) -> ReconcileResult:
        """
        Reconcile the ModelDeployment identified by request.

        Args:
            request: Namespace and name of the ModelDeployment
            cancel: Optional event; once set, no further API calls are made

        Returns:
            ReconcileResult carrying the first error encountered, if any
        """
        result = ReconcileResult(request=request)
        try:
            self._check_cancelled(cancel, request)
            md = self.control_plane.get_model_deployment(request.namespace, request.name)
            if md is None:
                logger.info(f"ModelDeployment {request} not found, nothing to reconcile")
                return result

            logger.info(f"Reconciling ModelDeployment {request} with model {md.spec.model_name}")
            for child in self._children:
                self._check_cancelled(cancel, request)
                result.actions.append(self._reconcile_child(md, child, cancel))
        except Exception as e:
            result.error = e
            if isinstance(e, ReconcileCancelled):
                logger.warning(f"Reconcile of {request} cancelled")
            else:
                logger.error(f"Reconcile of {request} failed: {e}")
        return result

    def _reconcile_child(
        self, md: ModelDeployment, child: _Child, cancel: Optional[threading.Event]
    ) -> ChildAction:
        live = child.get(md.namespace, md.name)
        desired = child.build(md)
        if live is not None:
            child.carry_over(live, desired)
        set_controller_reference(md, desired, self.scheme)
        self._check_cancelled(cancel, md.request)

        if live is None:
            logger.info(f"Creating {child.kind} {md.namespace}/{md.name}")
            child.create(desired)
            return ChildAction(kind=child.kind, verb="create", name=md.name)

        logger.info(f"Updating {child.kind} {md.namespace}/{md.name}")
        child.replace(desired)
        return ChildAction(kind=child.kind, verb="update", name=md.name)

    @staticmethod
    def _check_cancelled(cancel: Optional[threading.Event], request: Request) -> None:
        if cancel is not None and cancel.is_set():
            raise ReconcileCancelled(f"reconcile of {request} cancelled")
