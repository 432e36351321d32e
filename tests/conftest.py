"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from engine import MachineEngine
from errors import MachineNotFoundError
from models import ActualState, ByResources, BySizeID, DesiredConfig, DiskInfo
from plugins.gateways.base import MachineGateway


class FakeGateway(MachineGateway):
    """In-memory gateway that records every call it receives."""

    def __init__(self):
        self.calls: List[Tuple[Any, ...]] = []
        self.machines: Dict[str, ActualState] = {}
        self.failures: Dict[str, Exception] = {}
        self.boot_disk = True
        self.config: Optional[Dict[str, Any]] = None
        self._next_id = 100

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config):
        self.config = config

    @property
    def mutating_calls(self) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] != "get_machine"]

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def _machine(self, machine_id: str) -> ActualState:
        if machine_id not in self.machines:
            raise MachineNotFoundError("not found", machine_id=machine_id)
        return self.machines[machine_id]

    async def get_machine(self, machine_id):
        self.calls.append(("get_machine", machine_id))
        self._maybe_fail("get_machine")
        return self._machine(machine_id)

    async def create_machine(self, desired):
        self.calls.append(("create_machine", desired.name))
        self._maybe_fail("create_machine")
        self._next_id += 1
        machine_id = str(self._next_id)
        sizing = desired.sizing
        disks = [
            DiskInfo(
                disk_id=self._next_id * 10,
                name="Boot disk",
                type="B" if self.boot_disk else "D",
                status="ASSIGNED",
                size_max=desired.disksize,
            )
        ]
        self.machines[machine_id] = ActualState(
            machine_id=machine_id,
            name=desired.name,
            description=desired.description,
            cloudspace_id=desired.cloudspace_id,
            image_id=desired.image_id,
            hostname=desired.name,
            status="RUNNING",
            update_time=1700000000.0,
            creation_time=1700000000.0,
            username="cloudscalers",
            password="s3cret",
            ip_address="192.168.103.5",
            memory=sizing.memory if isinstance(sizing, ByResources) else 2048,
            vcpus=sizing.vcpus if isinstance(sizing, ByResources) else 2,
            size_id=sizing.size_id if isinstance(sizing, BySizeID) else 0,
            disks=disks,
        )
        return machine_id

    async def update_machine_metadata(self, machine_id, name=None, description=None):
        self.calls.append(("update_machine_metadata", machine_id, name, description))
        self._maybe_fail("update_machine_metadata")
        machine = self._machine(machine_id)
        if name is not None:
            machine.name = name
        if description is not None:
            machine.description = description

    async def resize_machine(self, machine_id, sizing):
        self.calls.append(("resize_machine", machine_id, sizing))
        self._maybe_fail("resize_machine")
        machine = self._machine(machine_id)
        if isinstance(sizing, ByResources):
            machine.memory = sizing.memory
            machine.vcpus = sizing.vcpus
        else:
            machine.size_id = sizing.size_id

    async def update_disk(self, disk_id, size=None, iops=None):
        self.calls.append(("update_disk", disk_id, size, iops))
        self._maybe_fail("update_disk")
        for machine in self.machines.values():
            for index, disk in enumerate(machine.disks):
                if disk.disk_id == disk_id and size is not None:
                    machine.disks[index] = DiskInfo(
                        disk_id=disk.disk_id,
                        name=disk.name,
                        description=disk.description,
                        type=disk.type,
                        status=disk.status,
                        size_max=size,
                    )

    async def delete_machine(self, machine_id, permanent=True):
        self.calls.append(("delete_machine", machine_id, permanent))
        self._maybe_fail("delete_machine")
        self._machine(machine_id)
        del self.machines[machine_id]


@pytest.fixture
def fake_gateway():
    """Create a call-recording in-memory gateway."""
    return FakeGateway()


@pytest.fixture
def engine(fake_gateway):
    """Create an engine bound to the fake gateway."""
    return MachineEngine(fake_gateway)


@pytest.fixture
def sample_spec():
    """Sample desired machine config using explicit resources."""
    return {
        "cloudspace_id": 42,
        "name": "web1",
        "description": "frontend",
        "image_id": 7,
        "disksize": 20,
        "memory": 1024,
        "vcpus": 2,
    }


@pytest.fixture
def sample_config(sample_spec):
    """Sample DesiredConfig built from sample_spec."""
    return DesiredConfig.from_spec(sample_spec)


@pytest.fixture
def machine_payload():
    """Sample OVC machines/get response."""
    return {
        "id": 1234,
        "name": "web1",
        "description": "frontend",
        "hostname": "web1",
        "status": "RUNNING",
        "updateTime": 1700000100,
        "creationTime": 1700000000,
        "cloudspaceid": 42,
        "imageid": 7,
        "sizeid": 3,
        "memory": 1024,
        "vcpus": 2,
        "accounts": [{"login": "cloudscalers", "password": "s3cret"}],
        "interfaces": [{"ipAddress": "192.168.103.5"}],
        "disks": [
            {
                "id": 55,
                "name": "Metadata iso",
                "descr": "",
                "type": "M",
                "status": "ASSIGNED",
                "sizeMax": 0,
            },
            {
                "id": 56,
                "name": "Boot disk",
                "descr": "Machine disk of type B",
                "type": "B",
                "status": "ASSIGNED",
                "sizeMax": 20,
            },
        ],
    }
