"""
Data model for a single OVC machine resource.

DesiredConfig is the caller's intent for one reconciliation pass and is
validated once, on ingestion. ActualState and DiskInfo mirror what the
control plane reports for the machine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from errors import ValidationFailedError

# Disk type tag OVC uses for the boot volume
BOOT_DISK_TYPE = "B"


# Sizing modes


@dataclass(frozen=True)
class BySizeID:
    """Machine sized by a predefined size identifier."""

    size_id: int


@dataclass(frozen=True)
class ByResources:
    """Machine sized by an explicit memory (MB) and vCPU pair."""

    memory: int
    vcpus: int


SizingMode = Union[BySizeID, ByResources]


class DesiredConfig(BaseModel):
    """Declared target configuration for one machine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cloudspace_id: int = Field(..., description="Cloudspace the machine lives in")
    name: str = Field(..., min_length=1, description="Machine name")
    description: str = Field("", description="Free-form description")
    size_id: Optional[int] = Field(None, description="Predefined size identifier")
    memory: Optional[int] = Field(None, gt=0, description="Memory in MB")
    vcpus: Optional[int] = Field(None, gt=0, description="Number of vCPUs")
    image_id: int = Field(..., description="Boot image, fixed at creation")
    disksize: int = Field(..., gt=0, description="Boot disk size in GB")
    iops: Optional[int] = Field(None, gt=0, description="Boot disk max IOPS")
    userdata: Optional[str] = Field(None, description="Cloud-init data, creation only")

    @model_validator(mode="after")
    def validate_sizing(self) -> "DesiredConfig":
        has_resources = self.memory is not None or self.vcpus is not None
        if self.size_id is not None and has_resources:
            raise ValueError("size_id conflicts with memory/vcpus; set only one")
        if self.size_id is None:
            if not has_resources:
                raise ValueError("either size_id or memory and vcpus must be set")
            if self.memory is None or self.vcpus is None:
                raise ValueError("memory and vcpus must be set together")
        return self

    @property
    def sizing(self) -> SizingMode:
        """The active sizing mode."""
        if self.size_id is not None:
            return BySizeID(self.size_id)
        return ByResources(memory=self.memory, vcpus=self.vcpus)

    @classmethod
    def from_spec(
        cls, spec: Union["DesiredConfig", Mapping[str, Any]]
    ) -> "DesiredConfig":
        """
        Build a DesiredConfig from a raw spec mapping.

        Args:
            spec: A mapping of field values, or an already validated config

        Returns:
            The validated DesiredConfig

        Raises:
            ValidationFailedError: If the config violates any field constraint
        """
        if isinstance(spec, cls):
            return spec
        if not isinstance(spec, Mapping):
            raise ValidationFailedError(
                f"Invalid machine config: expected a mapping, "
                f"got {type(spec).__name__}"
            )
        try:
            return cls.model_validate(dict(spec))
        except ValidationError as e:
            messages = []
            for error in e.errors():
                path = ".".join(str(p) for p in error["loc"]) or "(root)"
                messages.append(f"{path}: {error['msg']}")
            raise ValidationFailedError(
                "Invalid machine config: " + "; ".join(messages)
            ) from e

    def to_spec(self) -> Dict[str, Any]:
        """Plain dict form, as persisted by the record store."""
        return self.model_dump()


@dataclass(frozen=True)
class DiskInfo:
    """A disk attached to a machine."""

    disk_id: int
    name: str = ""
    description: str = ""
    type: str = ""
    status: str = ""
    size_max: int = 0

    @property
    def is_boot(self) -> bool:
        return self.type == BOOT_DISK_TYPE

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "DiskInfo":
        return cls(
            disk_id=int(payload["id"]),
            name=payload.get("name") or "",
            description=payload.get("descr") or "",
            type=payload.get("type") or "",
            status=payload.get("status") or "",
            size_max=int(payload.get("sizeMax") or 0),
        )


@dataclass
class ActualState:
    """Last observed remote truth for a machine."""

    machine_id: str
    name: str = ""
    description: str = ""
    cloudspace_id: int = 0
    image_id: int = 0
    hostname: str = ""
    status: str = ""
    update_time: float = 0.0
    creation_time: float = 0.0
    username: str = ""
    password: str = field(default="", repr=False)  # Never log password
    ip_address: str = ""
    memory: int = 0
    vcpus: int = 0
    size_id: int = 0
    disks: List[DiskInfo] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "ActualState":
        """
        Map an OVC machines/get response onto ActualState.

        Credentials come from the first account and the address from the
        first interface; both are left empty when the lists are empty.
        """
        accounts = payload.get("accounts") or []
        interfaces = payload.get("interfaces") or []
        account = accounts[0] if accounts else {}
        interface = interfaces[0] if interfaces else {}

        return cls(
            machine_id=str(payload["id"]),
            name=payload.get("name") or "",
            description=payload.get("description") or "",
            cloudspace_id=int(payload.get("cloudspaceid") or 0),
            image_id=int(payload.get("imageid") or 0),
            hostname=payload.get("hostname") or "",
            status=payload.get("status") or "",
            update_time=float(payload.get("updateTime") or 0),
            creation_time=float(payload.get("creationTime") or 0),
            username=account.get("login") or "",
            password=account.get("password") or "",
            ip_address=interface.get("ipAddress") or "",
            memory=int(payload.get("memory") or 0),
            vcpus=int(payload.get("vcpus") or 0),
            size_id=int(payload.get("sizeid") or 0),
            disks=[DiskInfo.from_api(d) for d in payload.get("disks") or []],
        )
