"""
Gateway Plugin Base - Abstract interface to a machine control plane.

A gateway fetches and mutates remote machine state on behalf of the
reconciliation engine. Each call is a single request/response; remote
failures are translated into the errors in errors.py at this boundary.
The default shipped gateway talks to OpenvCloud.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from models import ActualState, DesiredConfig, SizingMode


class MachineGateway(ABC):
    """
    Abstract base class for gateway plugins.

    Implementations own transport, authentication, timeouts and the
    retry policy for transient failures. The engine never retries.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this gateway (e.g., 'ovc')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Gateway version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the gateway with configuration.

        Called once when the gateway is loaded.

        Args:
            config: Gateway-specific configuration dictionary
        """
        pass

    async def close(self) -> None:
        """Release connections. Default implementation holds none."""
        return None

    @abstractmethod
    async def get_machine(self, machine_id: str) -> ActualState:
        """
        Fetch the current state of a machine. Safe to retry.

        Raises:
            MachineNotFoundError: If the machine does not exist
            TransientIOError: On transport failure
        """
        pass

    @abstractmethod
    async def create_machine(self, desired: DesiredConfig) -> str:
        """
        Create a machine and return its remote identifier.

        Not idempotent: calling it twice creates two machines.

        Raises:
            RemoteRejectedError: If the control plane refuses the request
        """
        pass

    @abstractmethod
    async def update_machine_metadata(
        self,
        machine_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Change name and/or description. None leaves a field untouched."""
        pass

    @abstractmethod
    async def resize_machine(self, machine_id: str, sizing: SizingMode) -> None:
        """Resize the machine to the given sizing mode. Safe to retry."""
        pass

    @abstractmethod
    async def update_disk(
        self,
        disk_id: int,
        size: Optional[int] = None,
        iops: Optional[int] = None,
    ) -> None:
        """Change a disk's size and/or IOPS limit. Safe to retry."""
        pass

    @abstractmethod
    async def delete_machine(self, machine_id: str, permanent: bool = True) -> None:
        """
        Delete a machine.

        Args:
            machine_id: The machine to delete
            permanent: Skip the recycle bin; the machine cannot be restored
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load gateway-specific configuration from environment variables.

        Override this method in subclasses to define how the gateway
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this gateway.
        """
        return {}
