"""
Change detection between two desired configs.

The previously applied config and the newly requested one are compared
field by field; changed fields are grouped into operation groups, each of
which maps onto exactly one remote call.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, List, Optional

from errors import ImmutableFieldChangedError
from models import DesiredConfig, SizingMode

logger = logging.getLogger(__name__)

# Fields fixed at creation; OVC has no call that changes them
IMMUTABLE_FIELDS = ("image_id", "cloudspace_id")


def check_immutable(
    prior: DesiredConfig,
    desired: DesiredConfig,
    machine_id: Optional[str] = None,
) -> None:
    """
    Reject changes to immutable fields of an existing machine.

    Pure and local. Must run before the first remote call of an update pass.

    Raises:
        ImmutableFieldChangedError: On the first immutable field that differs
    """
    for field_name in IMMUTABLE_FIELDS:
        old = getattr(prior, field_name)
        new = getattr(desired, field_name)
        if old != new:
            raise ImmutableFieldChangedError(
                field_name, old, new, machine_id=machine_id
            )


@dataclass(frozen=True)
class OperationGroup(ABC):
    """A cluster of changed fields applied by one remote call."""

    name: ClassVar[str] = ""
    order: ClassVar[int] = 0

    @abstractmethod
    def describe(self) -> str:
        """Human-readable summary of the remote call."""
        pass


@dataclass(frozen=True)
class MetadataUpdate(OperationGroup):
    """Rename and/or re-describe the machine. None means unchanged."""

    name: ClassVar[str] = "metadata"
    order: ClassVar[int] = 0

    new_name: Optional[str] = None
    description: Optional[str] = None

    def describe(self) -> str:
        changes = []
        if self.new_name is not None:
            changes.append(f"name={self.new_name!r}")
        if self.description is not None:
            changes.append(f"description={self.description!r}")
        return f"update metadata ({', '.join(changes)})"


@dataclass(frozen=True)
class ComputeResize(OperationGroup):
    """Resize the machine to a new sizing mode."""

    name: ClassVar[str] = "compute"
    order: ClassVar[int] = 1

    sizing: SizingMode

    def describe(self) -> str:
        return f"resize ({self.sizing})"


@dataclass(frozen=True)
class DiskUpdate(OperationGroup):
    """Resize the boot disk and/or change its IOPS limit. None means unchanged."""

    name: ClassVar[str] = "disk"
    order: ClassVar[int] = 2

    size: Optional[int] = None
    iops: Optional[int] = None

    def describe(self) -> str:
        changes = []
        if self.size is not None:
            changes.append(f"size={self.size}")
        if self.iops is not None:
            changes.append(f"iops={self.iops}")
        return f"update boot disk ({', '.join(changes)})"


def classify_changes(
    prior: DesiredConfig, desired: DesiredConfig
) -> List[OperationGroup]:
    """
    Partition the changes between two configs into operation groups.

    Args:
        prior: The config applied by the last successful pass
        desired: The config requested for this pass

    Returns:
        Operation groups in application order: metadata, compute, disk.
        Empty when nothing changed.
    """
    groups: List[OperationGroup] = []

    # Identity / metadata
    new_name = desired.name if desired.name != prior.name else None
    description = (
        desired.description if desired.description != prior.description else None
    )
    if new_name is not None or description is not None:
        groups.append(MetadataUpdate(new_name=new_name, description=description))

    # Compute sizing
    if desired.sizing != prior.sizing:
        groups.append(ComputeResize(sizing=desired.sizing))

    # Boot disk
    size = desired.disksize if desired.disksize != prior.disksize else None
    iops = None
    if desired.iops is not None and desired.iops != prior.iops:
        iops = desired.iops
    elif desired.iops is None and prior.iops is not None:
        logger.warning(
            f"iops removed from config of {desired.name}; "
            f"the boot disk keeps its current limit"
        )
    if size is not None or iops is not None:
        groups.append(DiskUpdate(size=size, iops=iops))

    if desired.userdata != prior.userdata:
        logger.warning(
            f"userdata of {desired.name} changed; it only applies at creation "
            f"and is ignored for existing machines"
        )

    return sorted(groups, key=lambda group: group.order)
