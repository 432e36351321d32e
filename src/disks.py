"""
Boot disk resolution and attribute normalization.

Both work purely on an already fetched ActualState; neither talks to the
control plane.
"""

import logging
from typing import Any, Dict, List

from errors import NoBootDiskError
from models import ActualState

logger = logging.getLogger(__name__)


def resolve_boot_disk(state: ActualState) -> int:
    """
    Find the boot disk of a machine.

    Args:
        state: The freshly fetched machine state

    Returns:
        The boot disk's numeric identifier. If the control plane reports
        more than one boot disk, the lowest identifier wins.

    Raises:
        NoBootDiskError: If no disk carries the boot tag
    """
    boot_disks = [disk for disk in state.disks if disk.is_boot]
    if not boot_disks:
        raise NoBootDiskError(
            f"Machine {state.name or state.machine_id} has no boot disk",
            machine_id=state.machine_id,
        )

    if len(boot_disks) > 1:
        logger.warning(
            f"Machine {state.machine_id} reports {len(boot_disks)} boot disks "
            f"({', '.join(str(d.disk_id) for d in boot_disks)}), "
            f"using the lowest id"
        )

    return min(disk.disk_id for disk in boot_disks)


def flatten_disks(state: ActualState) -> List[Dict[str, Any]]:
    """Map every disk of the machine to a plain dict, boot or not."""
    result = [
        {
            "id": disk.disk_id,
            "name": disk.name,
            "description": disk.description,
            "type": disk.type,
            "status": disk.status,
            "size_max": disk.size_max,
        }
        for disk in state.disks
    ]
    logger.debug(f"Disks for machine {state.machine_id}: {result}")
    return result


def normalize_attributes(state: ActualState) -> Dict[str, Any]:
    """
    Build the resource attribute set from a machine state.

    Always regenerated from the given state; nothing is merged with
    previously stored attributes.
    """
    return {
        "id": state.machine_id,
        "name": state.name,
        "description": state.description,
        "cloudspace_id": state.cloudspace_id,
        "image_id": state.image_id,
        "hostname": state.hostname,
        "status": state.status,
        "update_time": state.update_time,
        "creationtime": state.creation_time,
        "username": state.username,
        "password": state.password,
        "ip_address": state.ip_address,
        "memory": state.memory,
        "vcpus": state.vcpus,
        "size_id": state.size_id,
        "disks": flatten_disks(state),
    }
