"""
Machine Reconciler - drives one reconciliation pass per named machine.

Picks the engine entry point from the stored record (create, update,
recreate when the machine vanished remotely, destroy), records status and
history, and saves the record store after every pass. Failures are captured
in the ReconcileResult rather than raised, so that one failing machine does
not stop the others.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from diff import DiskUpdate
from disks import normalize_attributes
from engine import MachineEngine, plan_update
from errors import MachineError, MachineNotFoundError, ValidationFailedError
from models import ActualState, DesiredConfig
from state import ResourceRecord, ResourceStatus, StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of one reconciliation pass."""

    success: bool = False
    message: str = ""
    action: str = "noop"
    machine_id: Optional[str] = None
    operations: List[str] = field(default_factory=list)


@dataclass
class ReconcilePlan:
    """What a pass would do, computed without any remote call."""

    name: str
    action: str
    machine_id: Optional[str] = None
    operations: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.action != "noop"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _config_from_state(state: ActualState, desired: DesiredConfig) -> DesiredConfig:
    """
    Rebuild the applied config of a machine adopted without one.

    Sizing follows the desired mode so only real differences show up. IOPS
    cannot be read back, so a desired IOPS limit is always (re)applied.
    """
    boot_disks = [disk for disk in state.disks if disk.is_boot]
    disksize = boot_disks[0].size_max if boot_disks else desired.disksize
    values: Dict[str, Any] = {
        "cloudspace_id": state.cloudspace_id,
        "name": state.name or desired.name,
        "description": state.description,
        "image_id": state.image_id,
        "disksize": disksize or desired.disksize,
        "userdata": desired.userdata,
    }
    if desired.size_id is not None:
        values["size_id"] = state.size_id
    else:
        values["memory"] = state.memory or desired.memory
        values["vcpus"] = state.vcpus or desired.vcpus
    return DesiredConfig.from_spec(values)


def plan_machine(store: StateStore, name: str, spec: Mapping[str, Any]) -> ReconcilePlan:
    """
    Compute what a reconciliation pass would do for a machine.

    Works from the stored record alone and needs no gateway.

    Raises:
        ValidationFailedError: If the config is invalid
        ImmutableFieldChangedError: If an immutable field changed
    """
    desired = DesiredConfig.from_spec(spec)
    record = store.get(name)

    if record is None or not record.machine_id:
        operations = [f"create machine {desired.name}"]
        if desired.iops is not None:
            operations.append(DiskUpdate(iops=desired.iops).describe())
        return ReconcilePlan(name=name, action="create", operations=operations)

    if record.applied is None:
        return ReconcilePlan(
            name=name,
            action="update",
            machine_id=record.machine_id,
            operations=["compare with live machine state"],
        )

    groups = plan_update(record.machine_id, record.applied, desired)
    return ReconcilePlan(
        name=name,
        action="update" if groups else "noop",
        machine_id=record.machine_id,
        operations=[group.describe() for group in groups],
    )


class MachineReconciler:
    """Runs reconciliation passes for named machines against a record store."""

    def __init__(self, engine: MachineEngine, store: StateStore):
        self.engine = engine
        self.store = store

    def _determine_trigger_reason(
        self, record: Optional[ResourceRecord], spec: Mapping[str, Any]
    ) -> str:
        """Determine why this reconciliation was triggered."""
        try:
            desired = DesiredConfig.from_spec(spec).to_spec()
        except ValidationFailedError:
            desired = None
        if record is None or record.last_reconcile_time is None:
            return "initial"
        elif record.status == ResourceStatus.FAILED:
            return "retry"
        elif record.applied != desired:
            return "spec_change"
        else:
            # Periodic re-run with an unchanged config
            return "scheduled"

    def plan(self, name: str, spec: Mapping[str, Any]) -> ReconcilePlan:
        """Compute what reconcile() would do for a machine."""
        return plan_machine(self.store, name, spec)

    async def reconcile(self, name: str, spec: Mapping[str, Any]) -> ReconcileResult:
        """
        Reconcile one named machine towards the given spec.

        Args:
            name: Record name of the machine
            spec: Desired config fields

        Returns:
            ReconcileResult describing what happened
        """
        existing = self.store.get(name)
        record = existing or ResourceRecord(name=name)
        trigger_reason = self._determine_trigger_reason(existing, spec)
        start_time = time.monotonic()
        result = ReconcileResult(machine_id=record.machine_id)

        record.status = ResourceStatus.RECONCILING
        record.status_message = "Starting reconciliation"
        self.store.put(record)

        try:
            desired = DesiredConfig.from_spec(spec)
            state = None

            if record.machine_id:
                if record.applied is not None:
                    # Local checks fail the pass before any remote call
                    self.engine.plan(record.machine_id, record.applied, desired)
                state = await self.engine.read(record.machine_id)
                if state is None:
                    logger.warning(
                        f"Machine {record.machine_id} of {name} no longer exists, "
                        f"recreating"
                    )
                    record.machine_id = None
                    record.applied = None
                    result.action = "recreate"

            if not record.machine_id:
                if result.action != "recreate":
                    result.action = "create"
                state = await self._create(record, desired, result)
            else:
                prior = record.applied
                if prior is None:
                    prior = _config_from_state(state, desired)
                groups = self.engine.plan(record.machine_id, prior, desired)
                result.action = "update" if groups else "noop"
                result.operations = [group.describe() for group in groups]
                state = await self.engine.update(record.machine_id, prior, desired)

            record.applied = desired.to_spec()
            record.attributes = normalize_attributes(state)
            record.status = ResourceStatus.READY
            record.status_message = "Reconciliation successful"
            result.success = True
            result.message = record.status_message
            logger.info(f"Successfully reconciled {name} ({result.action})")

        except MachineError as e:
            record.status = ResourceStatus.FAILED
            record.status_message = str(e)
            result.success = False
            result.message = str(e)
            logger.error(f"Failed to reconcile {name}: {e}")
        except Exception as e:
            logger.error(f"Error reconciling {name}: {e}", exc_info=True)
            record.status = ResourceStatus.FAILED
            record.status_message = f"Reconciliation error: {e}"
            result.success = False
            result.message = record.status_message

        finally:
            result.machine_id = record.machine_id
            record.last_reconcile_time = _now()
            record.add_history(
                {
                    "time": record.last_reconcile_time,
                    "trigger_reason": trigger_reason,
                    "action": result.action,
                    "success": result.success,
                    "message": result.message,
                    "duration_seconds": round(time.monotonic() - start_time, 3),
                }
            )
            self.store.put(record)
            self.store.save()

        return result

    async def _create(
        self, record: ResourceRecord, desired: DesiredConfig, result: ReconcileResult
    ) -> ActualState:
        """Create the machine, keeping its id even if a later step fails."""
        result.operations = [f"create machine {desired.name}"]
        if desired.iops is not None:
            result.operations.append(DiskUpdate(iops=desired.iops).describe())

        try:
            machine_id, state = await self.engine.create(desired)
        except MachineError as e:
            if e.machine_id:
                # The machine exists; without iops recorded as applied, the
                # next pass re-applies the IOPS limit instead of creating again.
                record.machine_id = e.machine_id
                record.applied = desired.model_copy(update={"iops": None}).to_spec()
            raise

        record.machine_id = machine_id
        return state

    async def refresh(self, name: str) -> ReconcileResult:
        """Re-read a machine and update its stored attributes."""
        record = self.store.get(name)
        if record is None:
            return ReconcileResult(message=f"No record named {name}")
        if not record.machine_id:
            return ReconcileResult(success=True, message="Machine not created yet")

        result = ReconcileResult(action="refresh", machine_id=record.machine_id)
        try:
            state = await self.engine.read(record.machine_id)
            if state is None:
                record.machine_id = None
                record.applied = None
                record.attributes = {}
                record.status = ResourceStatus.PENDING
                record.status_message = "Machine no longer exists"
            else:
                record.attributes = normalize_attributes(state)
                record.status_message = "Refreshed"
            result.success = True
            result.message = record.status_message
        except MachineError as e:
            result.message = str(e)
            logger.error(f"Failed to refresh {name}: {e}")
        finally:
            self.store.save()

        return result

    async def destroy(self, name: str) -> ReconcileResult:
        """Delete a machine and forget its record."""
        record = self.store.get(name)
        if record is None:
            return ReconcileResult(message=f"No record named {name}")

        result = ReconcileResult(action="destroy", machine_id=record.machine_id)
        if record.machine_id:
            record.status = ResourceStatus.DELETING
            try:
                await self.engine.delete(record.machine_id)
            except MachineNotFoundError:
                logger.info(
                    f"Machine {record.machine_id} of {name} already gone, "
                    f"removing record"
                )
            except MachineError as e:
                record.status = ResourceStatus.FAILED
                record.status_message = str(e)
                result.message = str(e)
                logger.error(f"Failed to destroy {name}: {e}")
                self.store.save()
                return result

        self.store.remove(name)
        self.store.save()
        result.success = True
        result.message = "Destroyed"
        logger.info(f"Destroyed and removed record {name}")
        return result

    async def import_machine(self, name: str, machine_id: str) -> ReconcileResult:
        """
        Adopt an existing machine under a record name.

        The next reconcile() compares the desired config with the live state
        of the machine, since no applied config is known.
        """
        result = ReconcileResult(action="import", machine_id=machine_id)
        if self.store.get(name) is not None:
            result.message = f"Record {name} already exists"
            return result

        try:
            state = await self.engine.read(machine_id)
        except MachineError as e:
            result.message = str(e)
            return result
        if state is None:
            result.message = f"Machine {machine_id} does not exist"
            return result

        record = ResourceRecord(
            name=name,
            machine_id=machine_id,
            attributes=normalize_attributes(state),
            status=ResourceStatus.READY,
            status_message="Imported",
        )
        self.store.put(record)
        self.store.save()
        result.success = True
        result.message = "Imported"
        return result
