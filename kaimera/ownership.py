"""Controller owner references, so children are garbage collected with their owner."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kubernetes.client import V1OwnerReference

from kaimera import types
from kaimera.errors import AlreadyOwnedError, OwnershipError, UnregisteredTypeError


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


class Scheme:
    """Maps Python types to the API group/version/kind they are stored as."""

    def __init__(self) -> None:
        self._kinds: Dict[type, GroupVersionKind] = {}

    def register(self, obj_type: type, group: str, version: str, kind: str) -> None:
        self._kinds[obj_type] = GroupVersionKind(group=group, version=version, kind=kind)

    def gvk_for(self, obj: Any) -> GroupVersionKind:
        gvk = self._kinds.get(type(obj))
        if gvk is None:
            raise UnregisteredTypeError(type(obj))
        return gvk

    def is_registered(self, obj_type: type) -> bool:
        return obj_type in self._kinds


def default_scheme() -> Scheme:
    scheme = Scheme()
    scheme.register(types.ModelDeployment, types.GROUP, types.VERSION, types.KIND)
    return scheme


def _same_group(a: str, b: str) -> bool:
    return a.split("/")[0] == b.split("/")[0]


def _controller_of(refs: List[V1OwnerReference]) -> Optional[V1OwnerReference]:
    for ref in refs:
        if ref.controller:
            return ref
    return None


def set_controller_reference(owner: types.ModelDeployment, child: Any, scheme: Scheme) -> Any:
    """
    Mark owner as the managing controller of child.

    The reference is recorded in child.metadata.owner_references; an existing
    reference to the same owner is replaced rather than duplicated.

    Args:
        owner: Owning object, its type must be registered with scheme
        child: Kubernetes model object (V1Deployment, V1Service, ...)
        scheme: Type registry used to stamp apiVersion/kind

    Returns:
        The same child object

    Raises:
        UnregisteredTypeError: If owner's type is unknown to scheme
        AlreadyOwnedError: If child is controlled by a different object
        OwnershipError: If owner has no uid or lives in another namespace
    """
    gvk = scheme.gvk_for(owner)
    if not owner.metadata.uid:
        raise OwnershipError(f"{gvk.kind} {owner.namespace}/{owner.name} has no uid")

    meta = child.metadata
    if meta.namespace and owner.namespace != meta.namespace:
        raise OwnershipError(
            f"cross-namespace owner references are disallowed: owner {owner.namespace}/{owner.name}, "
            f"child namespace {meta.namespace}"
        )

    ref = V1OwnerReference(
        api_version=gvk.api_version,
        kind=gvk.kind,
        name=owner.name,
        uid=owner.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )

    refs = list(meta.owner_references or [])
    existing = _controller_of(refs)
    if existing is not None and existing.uid != ref.uid:
        raise AlreadyOwnedError(f"{meta.namespace}/{meta.name}", existing.kind, existing.name)

    for i, current in enumerate(refs):
        if current.uid == ref.uid or (
            current.kind == ref.kind and current.name == ref.name and _same_group(current.api_version, ref.api_version)
        ):
            refs[i] = ref
            break
    else:
        refs.append(ref)

    meta.owner_references = refs
    return child


def controller_owner(obj: Any, kind: str = types.KIND) -> Optional[V1OwnerReference]:
    """Return obj's controller reference if it points at the given kind."""
    meta = getattr(obj, "metadata", None)
    if meta is None:
        return None
    ref = _controller_of(list(meta.owner_references or []))
    if ref is None or ref.kind != kind:
        return None
    return ref
