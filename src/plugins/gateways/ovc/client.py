"""
OVC Gateway Plugin - Implements MachineGateway for OpenvCloud.

Talks to the OpenvCloud cloudapi over HTTPS. Every call is a JSON POST
authenticated with an itsyou.online JWT.
"""

import asyncio
import json
import logging
import os
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from errors import (
    MachineNotFoundError,
    RemoteRejectedError,
    TransientIOError,
)
from models import ActualState, ByResources, BySizeID, DesiredConfig, SizingMode
from plugins.gateways.base import MachineGateway

logger = logging.getLogger(__name__)


def _remote_id(machine_id: str) -> int:
    """OVC machine ids are integers; anything else cannot exist remotely."""
    try:
        return int(machine_id)
    except (TypeError, ValueError):
        raise MachineNotFoundError(
            f"Invalid OVC machine id: {machine_id!r}", machine_id=machine_id
        )


class OVCGateway(MachineGateway):
    """
    Gateway that manages machines through the OpenvCloud cloudapi.

    Reads, resizes and disk updates are retried on transient failures with
    exponential backoff. Creation, metadata updates and deletion are not.
    """

    def __init__(self):
        self.url: Optional[str] = None
        self.api_base_url: str = ""
        self.jwt: Optional[str] = None
        self.client_id: Optional[str] = None
        self.client_secret: Optional[str] = None
        self.iyo_url: str = "https://itsyou.online"
        self.request_timeout: int = 60  # seconds per request
        self.max_retries: int = 3

        # Exponential backoff configuration
        self.backoff_base_delay: float = 1.0  # base delay in seconds
        self.backoff_max_delay: float = 30.0  # max delay in seconds
        self.backoff_jitter_factor: float = 0.1  # ±10% jitter

    @property
    def name(self) -> str:
        return "ovc"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load OVC gateway configuration from environment variables."""
        return {
            "url": os.getenv("OVC_URL", ""),
            "jwt": os.getenv("OVC_JWT", ""),
            "client_id": os.getenv("OVC_CLIENT_ID", ""),
            "client_secret": os.getenv("OVC_CLIENT_SECRET", ""),
            "iyo_url": os.getenv("OVC_IYO_URL", "https://itsyou.online"),
            "request_timeout": int(os.getenv("OVC_REQUEST_TIMEOUT", "60")),
            "max_retries": int(os.getenv("OVC_MAX_RETRIES", "3")),
            "backoff_base_delay": float(os.getenv("OVC_BACKOFF_BASE_DELAY", "1.0")),
            "backoff_max_delay": float(os.getenv("OVC_BACKOFF_MAX_DELAY", "30.0")),
            "backoff_jitter_factor": float(
                os.getenv("OVC_BACKOFF_JITTER_FACTOR", "0.1")
            ),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the gateway with configuration."""
        self.url = config.get("url")
        if not self.url:
            raise ValueError(
                "OVC URL not configured. Set OVC_URL environment variable."
            )
        self.api_base_url = f"{self.url.rstrip('/')}/restmachine"
        self.jwt = config.get("jwt") or None
        self.client_id = config.get("client_id") or None
        self.client_secret = config.get("client_secret") or None
        self.iyo_url = config.get("iyo_url", self.iyo_url)
        self.request_timeout = config.get("request_timeout", self.request_timeout)
        self.max_retries = config.get("max_retries", self.max_retries)
        self.backoff_base_delay = config.get(
            "backoff_base_delay", self.backoff_base_delay
        )
        self.backoff_max_delay = config.get("backoff_max_delay", self.backoff_max_delay)
        self.backoff_jitter_factor = config.get(
            "backoff_jitter_factor", self.backoff_jitter_factor
        )

        if not self.jwt and not (self.client_id and self.client_secret):
            logger.warning(
                "OVC credentials not configured. Set OVC_JWT or "
                "OVC_CLIENT_ID and OVC_CLIENT_SECRET environment variables."
            )

        logger.debug(
            f"OVC gateway initialized: api_base_url={self.api_base_url}, "
            f"timeout={self.request_timeout}s, max_retries={self.max_retries}"
        )

    async def get_machine(self, machine_id: str) -> ActualState:
        """Fetch a machine's current state."""
        payload = await self._with_retry(
            "get machine",
            lambda: self._post(
                "machines/get", {"machineId": _remote_id(machine_id)}, machine_id
            ),
        )
        return ActualState.from_api(payload)

    async def create_machine(self, desired: DesiredConfig) -> str:
        """Create a machine and return its id."""
        body: Dict[str, Any] = {
            "cloudspaceId": desired.cloudspace_id,
            "name": desired.name,
            "description": desired.description,
            "imageId": desired.image_id,
            "disksize": desired.disksize,
        }
        body.update(self._sizing_params(desired.sizing))
        if desired.userdata:
            body["userdata"] = desired.userdata

        machine_id = await self._post("machines/create", body)
        logger.info(f"Created machine {desired.name}: id {machine_id}")
        return str(machine_id)

    async def update_machine_metadata(
        self,
        machine_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {"machineId": _remote_id(machine_id)}
        if name is not None:
            body["name"] = name
        if description is not None:
            body["description"] = description
        await self._post("machines/update", body, machine_id)

    async def resize_machine(self, machine_id: str, sizing: SizingMode) -> None:
        body: Dict[str, Any] = {"machineId": _remote_id(machine_id)}
        body.update(self._sizing_params(sizing))
        await self._with_retry(
            "resize machine",
            lambda: self._post("machines/resize", body, machine_id),
        )

    async def update_disk(
        self,
        disk_id: int,
        size: Optional[int] = None,
        iops: Optional[int] = None,
    ) -> None:
        body: Dict[str, Any] = {"diskId": disk_id}
        if size is not None:
            body["size"] = size
        if iops is not None:
            body["iops"] = iops
        await self._with_retry(
            "update disk", lambda: self._post("disks/update", body)
        )

    async def delete_machine(self, machine_id: str, permanent: bool = True) -> None:
        await self._post(
            "machines/delete",
            {"machineId": _remote_id(machine_id), "permanently": permanent},
            machine_id,
        )
        logger.info(f"Deleted machine {machine_id} (permanently={permanent})")

    # Private helper methods

    @staticmethod
    def _sizing_params(sizing: SizingMode) -> Dict[str, Any]:
        """Request parameters for a sizing mode."""
        if isinstance(sizing, BySizeID):
            return {"sizeId": sizing.size_id}
        if isinstance(sizing, ByResources):
            return {"memory": sizing.memory, "vcpus": sizing.vcpus}
        raise TypeError(f"Unknown sizing mode: {sizing!r}")

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff delay for a retry attempt, with jitter."""
        delay = min(self.backoff_base_delay * (2**attempt), self.backoff_max_delay)
        jitter = delay * self.backoff_jitter_factor
        return max(0.0, delay + random.uniform(-jitter, jitter))

    async def _with_retry(
        self, operation: str, call: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run a safe-to-retry call, retrying on transient failures."""
        attempt = 0
        while True:
            try:
                return await call()
            except TransientIOError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        f"Giving up on {operation} after {attempt + 1} attempts: {e}"
                    )
                    raise
                delay = self._backoff_delay(attempt)
                logger.warning(
                    f"Transient failure on {operation}: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                attempt += 1
                await asyncio.sleep(delay)

    async def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for OVC API requests."""
        headers = {"Content-Type": "application/json"}
        if not self.jwt and self.client_id and self.client_secret:
            self.jwt = await self._fetch_jwt()
        if self.jwt:
            headers["Authorization"] = f"bearer {self.jwt}"
        return headers

    async def _fetch_jwt(self) -> str:
        """Obtain a JWT from itsyou.online with client credentials."""
        url = f"{self.iyo_url.rstrip('/')}/v1/oauth/access_token"
        params = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "response_type": "id_token",
        }
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, params=params) as response:
                    body = await response.text()
                    if response.status != 200:
                        raise RemoteRejectedError(
                            "Failed to obtain JWT from itsyou.online",
                            status=response.status,
                            remote_message=body,
                        )
                    logger.debug("Obtained JWT from itsyou.online")
                    return body.strip()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"Failed to reach itsyou.online: {e}") from e

    async def _post(
        self,
        path: str,
        body: Dict[str, Any],
        machine_id: Optional[str] = None,
    ) -> Any:
        """POST to a cloudapi endpoint and return the decoded response."""
        url = f"{self.api_base_url}/cloudapi/{path}"
        headers = await self._get_headers()
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, headers=headers, json=body) as response:
                    text = await response.text()
                    if response.status != 200:
                        self._raise_for_status(path, response.status, text, machine_id)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(
                f"Request to {path} failed: {e or type(e).__name__}",
                machine_id=machine_id,
            ) from e

        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    @staticmethod
    def _raise_for_status(
        path: str, status: int, text: str, machine_id: Optional[str] = None
    ) -> None:
        """Translate a non-200 response into a gateway error."""
        logger.debug(f"{path} returned {status}: {text}")
        if status == 404:
            raise MachineNotFoundError(f"{path}: not found", machine_id=machine_id)
        if 400 <= status < 500:
            raise RemoteRejectedError(
                f"{path} rejected with {status}: {text}",
                status=status,
                remote_message=text,
                machine_id=machine_id,
            )
        raise TransientIOError(
            f"{path} failed with {status}: {text}", machine_id=machine_id
        )
