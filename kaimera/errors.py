"""Exception types raised by the controller."""

from __future__ import annotations


class KaimeraError(Exception):
    """Base class for controller errors."""


class UnknownRuntimeError(KaimeraError):
    """Raised when a ModelDeployment names a runtime the policy table lacks."""

    def __init__(self, runtime: str, known: list[str]) -> None:
        self.runtime = runtime
        self.known = sorted(known)
        super().__init__(f"unknown runtime {runtime!r} (known: {', '.join(self.known)})")


class PolicyConfigError(KaimeraError):
    """Raised when a runtime policy file cannot be parsed."""


class InvalidObjectError(KaimeraError):
    """Raised when a custom object is missing required fields."""


class OwnershipError(KaimeraError):
    """Raised when an owner reference cannot be set on a child object."""


class UnregisteredTypeError(OwnershipError):
    def __init__(self, obj_type: type) -> None:
        self.obj_type = obj_type
        super().__init__(f"type {obj_type.__name__} is not registered with the scheme")


class AlreadyOwnedError(OwnershipError):
    def __init__(self, child: str, owner_kind: str, owner_name: str) -> None:
        super().__init__(f"object {child} is already owned by another {owner_kind} controller {owner_name}")


class ReconcileCancelled(KaimeraError):
    """Raised when a reconcile is aborted through its cancellation event."""
