"""
Machine Engine - Create / Read / Update / Delete / Exists for one machine.

The engine converges a single OVC machine towards a desired config. Local
constraints are checked before any remote call; once remote calls start,
a failure aborts the pass immediately and nothing already applied is rolled
back. Re-running the pass is safe because every group is re-derived from
the configs and every disk operation re-reads the machine first.
"""

import logging
from typing import Any, List, Mapping, Optional, Tuple, Union

from diff import (
    ComputeResize,
    DiskUpdate,
    MetadataUpdate,
    OperationGroup,
    check_immutable,
    classify_changes,
)
from disks import resolve_boot_disk
from errors import MachineError, MachineNotFoundError
from models import ActualState, DesiredConfig
from plugins.gateways.base import MachineGateway

logger = logging.getLogger(__name__)

ConfigInput = Union[DesiredConfig, Mapping[str, Any]]


def plan_update(
    machine_id: str, prior: ConfigInput, desired: ConfigInput
) -> List[OperationGroup]:
    """
    Compute the operation groups an update would apply, without any
    remote call.

    Raises:
        ValidationFailedError: If either config is invalid
        ImmutableFieldChangedError: If an immutable field changed
    """
    prior = DesiredConfig.from_spec(prior)
    desired = DesiredConfig.from_spec(desired)
    check_immutable(prior, desired, machine_id=machine_id)
    return classify_changes(prior, desired)


class MachineEngine:
    """
    Reconciliation engine for a single machine resource.

    Holds no state besides the injected gateway, so one engine can serve
    any number of independent passes.
    """

    def __init__(self, gateway: MachineGateway):
        self.gateway = gateway

    async def exists(self, machine_id: str) -> bool:
        """
        Check whether a machine exists.

        Existence checks are advisory: any error, not-found or otherwise,
        is discarded and reported as False.
        """
        if not machine_id:
            return False
        try:
            await self.gateway.get_machine(machine_id)
        except Exception as e:
            logger.debug(f"Existence check for machine {machine_id} failed: {e}")
            return False
        return True

    async def read(self, machine_id: str) -> Optional[ActualState]:
        """
        Fetch the current state of a machine.

        Returns:
            The machine state, or None when the machine no longer exists
            and the caller should drop its local record.
        """
        try:
            state = await self.gateway.get_machine(machine_id)
        except MachineNotFoundError:
            logger.info(f"Machine {machine_id} not found, dropping record")
            return None
        return state

    async def create(self, desired: ConfigInput) -> Tuple[str, ActualState]:
        """
        Create a machine.

        When iops is set, the boot disk's IOPS limit is applied right after
        the machine is created. If that step fails the error is raised even
        though the machine now exists; the caller decides whether to keep it.

        Returns:
            Tuple of (machine_id, state after creation)

        Raises:
            ValidationFailedError: Before any remote call, if the config is invalid
            NoBootDiskError: If iops is set and the new machine has no boot disk
        """
        desired = DesiredConfig.from_spec(desired)

        machine_id = await self.gateway.create_machine(desired)
        logger.info(f"New machine ID for {desired.name}: {machine_id}")

        if desired.iops is not None:
            group = DiskUpdate(iops=desired.iops)
            await self._apply_group(machine_id, group)

        state = await self._refresh(machine_id)
        return machine_id, state

    def plan(
        self,
        machine_id: str,
        prior: ConfigInput,
        desired: ConfigInput,
    ) -> List[OperationGroup]:
        """Local part of update(); see plan_update."""
        return plan_update(machine_id, prior, desired)

    async def update(
        self,
        machine_id: str,
        prior: ConfigInput,
        desired: ConfigInput,
    ) -> ActualState:
        """
        Converge an existing machine from the prior config to the desired one.

        Groups are applied strictly in order: metadata, compute resize, boot
        disk. The first failing group aborts the pass.

        Args:
            machine_id: The machine to update
            prior: The config applied by the last successful pass
            desired: The config requested for this pass

        Returns:
            The machine state after all groups have been applied
        """
        groups = self.plan(machine_id, prior, desired)

        if not groups:
            logger.info(f"No changes needed for machine {machine_id}")
        for group in groups:
            await self._apply_group(machine_id, group)

        return await self._refresh(machine_id)

    async def delete(self, machine_id: str) -> None:
        """Permanently delete a machine."""
        await self.gateway.delete_machine(machine_id, permanent=True)
        logger.info(f"Deleted machine {machine_id}")

    # Private helper methods

    async def _apply_group(self, machine_id: str, group: OperationGroup) -> None:
        """Issue the remote call for one operation group."""
        logger.info(f"Machine {machine_id}: {group.describe()}")
        try:
            if isinstance(group, MetadataUpdate):
                await self.gateway.update_machine_metadata(
                    machine_id, name=group.new_name, description=group.description
                )
            elif isinstance(group, ComputeResize):
                await self.gateway.resize_machine(machine_id, group.sizing)
            elif isinstance(group, DiskUpdate):
                state = await self.gateway.get_machine(machine_id)
                disk_id = resolve_boot_disk(state)
                await self.gateway.update_disk(
                    disk_id, size=group.size, iops=group.iops
                )
            else:
                raise TypeError(f"Unknown operation group: {group!r}")
        except MachineError as e:
            if e.machine_id is None:
                e.machine_id = machine_id
            if e.group is None:
                e.group = group.name
            logger.error(f"Machine {machine_id}: {group.name} group failed: {e}")
            raise

    async def _refresh(self, machine_id: str) -> ActualState:
        """Read a machine that must exist."""
        state = await self.read(machine_id)
        if state is None:
            raise MachineNotFoundError(
                "Machine disappeared during reconciliation", machine_id=machine_id
            )
        return state
