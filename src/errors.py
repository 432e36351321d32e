"""
Error taxonomy for machine reconciliation.

Every failure carries the machine id and operation group when they are
known, so an operator can go and inspect the machine by hand.
"""

from typing import Any, Optional


class MachineError(Exception):
    """Base class for all reconciliation failures."""

    def __init__(
        self,
        message: str,
        machine_id: Optional[str] = None,
        group: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.machine_id = machine_id
        self.group = group

    def __str__(self) -> str:
        context = []
        if self.machine_id:
            context.append(f"machine {self.machine_id}")
        if self.group:
            context.append(f"group {self.group}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


# --- Local checks (raised before any remote call) ---
class ValidationFailedError(MachineError):
    """Desired config violates a local constraint."""

    pass


class ImmutableFieldChangedError(MachineError):
    """An immutable field differs from the value the machine was created with."""

    def __init__(
        self,
        field: str,
        old: Any,
        new: Any,
        machine_id: Optional[str] = None,
    ):
        super().__init__(
            f"Cannot change {field} on existing machine ({old!r} -> {new!r})",
            machine_id=machine_id,
        )
        self.field = field
        self.old = old
        self.new = new


class NoBootDiskError(MachineError):
    """A boot-disk operation was requested but the machine has no boot disk."""

    pass


# --- Remote failures ---
class MachineNotFoundError(MachineError):
    """The machine does not exist on the remote side."""

    pass


class RemoteRejectedError(MachineError):
    """The control plane refused the request."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        remote_message: str = "",
        machine_id: Optional[str] = None,
        group: Optional[str] = None,
    ):
        super().__init__(message, machine_id=machine_id, group=group)
        self.status = status
        self.remote_message = remote_message


class TransientIOError(MachineError):
    """Network or transport failure; safe to retry the whole pass later."""

    pass
