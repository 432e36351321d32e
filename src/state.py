"""
Record Store - JSON file of reconciled machine records.

The remote machine id is the only thing that must survive between passes;
the applied config is kept so the next pass can diff against it, and the
last normalized attributes are kept for display.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Number of reconciliation history entries kept per record
MAX_HISTORY = 20


class ResourceStatus(Enum):
    """Status of a machine record."""

    PENDING = "pending"
    RECONCILING = "reconciling"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


@dataclass
class ResourceRecord:
    """Host-side record for one named machine."""

    name: str
    machine_id: Optional[str] = None
    applied: Optional[Dict[str, Any]] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: ResourceStatus = ResourceStatus.PENDING
    status_message: str = ""
    last_reconcile_time: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def add_history(self, entry: Dict[str, Any]) -> None:
        """Append a history entry, keeping only the most recent ones."""
        self.history.append(entry)
        del self.history[:-MAX_HISTORY]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceRecord":
        return cls(
            name=data["name"],
            machine_id=data.get("machine_id"),
            applied=data.get("applied"),
            attributes=data.get("attributes") or {},
            status=ResourceStatus(data.get("status", ResourceStatus.PENDING.value)),
            status_message=data.get("status_message") or "",
            last_reconcile_time=data.get("last_reconcile_time"),
            history=data.get("history") or [],
        )


class StateStore:
    """Loads and saves machine records in a single JSON file."""

    def __init__(self, path: str):
        self.path = path
        self._records: Dict[str, ResourceRecord] = {}

    def load(self) -> None:
        """Load records from disk; a missing file means no records."""
        if not os.path.exists(self.path):
            logger.debug(f"State file {self.path} does not exist, starting empty")
            self._records = {}
            return

        with open(self.path, "r") as f:
            data = json.load(f)

        self._records = {
            name: ResourceRecord.from_dict(record)
            for name, record in data.get("machines", {}).items()
        }
        logger.debug(f"Loaded {len(self._records)} records from {self.path}")

    def save(self) -> None:
        """Write all records atomically."""
        data = {
            "version": 1,
            "machines": {
                name: record.to_dict() for name, record in sorted(self._records.items())
            },
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".ovc-state-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def get(self, name: str) -> Optional[ResourceRecord]:
        return self._records.get(name)

    def put(self, record: ResourceRecord) -> None:
        self._records[record.name] = record

    def remove(self, name: str) -> bool:
        """Remove a record. Returns True if it existed."""
        return self._records.pop(name, None) is not None

    def list(self) -> List[ResourceRecord]:
        return [self._records[name] for name in sorted(self._records)]
