"""Unit tests for the OVC gateway plugin."""

import logging
import os
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
import pytest_asyncio

from errors import MachineNotFoundError, RemoteRejectedError, TransientIOError
from models import ByResources, BySizeID, DesiredConfig
from plugins.gateways.ovc import OVCGateway


@pytest_asyncio.fixture
async def gateway():
    """Initialized OVC gateway with retries that do not sleep."""
    gw = OVCGateway()
    await gw.initialize(
        {
            "url": "https://ovc.example.com/",
            "jwt": "token",
            "max_retries": 2,
            "backoff_jitter_factor": 0.0,
        }
    )
    return gw


@pytest.fixture
def no_sleep():
    with patch(
        "plugins.gateways.ovc.client.asyncio.sleep", new_callable=AsyncMock
    ) as sleep:
        yield sleep


# ==================== Configuration Tests ====================


@pytest.mark.asyncio
class TestInitialize:
    """Tests for OVCGateway configuration."""

    async def test_missing_url_raises(self):
        with pytest.raises(ValueError) as exc_info:
            await OVCGateway().initialize({})
        assert "OVC_URL" in str(exc_info.value)

    async def test_api_base_url(self, gateway):
        assert gateway.api_base_url == "https://ovc.example.com/restmachine"
        assert gateway.max_retries == 2

    async def test_missing_credentials_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            await OVCGateway().initialize({"url": "https://ovc.example.com"})
        assert "credentials not configured" in caplog.text

    async def test_load_config_from_env(self):
        env_vars = {
            "OVC_URL": "https://ovc.example.com",
            "OVC_CLIENT_ID": "id",
            "OVC_CLIENT_SECRET": "secret",
            "OVC_MAX_RETRIES": "5",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = OVCGateway.load_config_from_env()
        assert cfg["url"] == "https://ovc.example.com"
        assert cfg["client_id"] == "id"
        assert cfg["max_retries"] == 5
        assert cfg["iyo_url"] == "https://itsyou.online"


# ==================== Request Body Tests ====================


@pytest.mark.asyncio
class TestRequests:
    """Tests for the cloudapi requests each operation issues."""

    async def test_get_machine(self, gateway, machine_payload):
        with patch.object(
            gateway, "_post", AsyncMock(return_value=machine_payload)
        ) as post:
            state = await gateway.get_machine("1234")
        post.assert_awaited_once_with("machines/get", {"machineId": 1234}, "1234")
        assert state.machine_id == "1234"

    async def test_get_machine_invalid_id(self, gateway):
        with patch.object(gateway, "_post", AsyncMock()) as post:
            with pytest.raises(MachineNotFoundError):
                await gateway.get_machine("not-a-number")
        post.assert_not_called()

    async def test_create_machine_by_resources(self, gateway, sample_spec):
        desired = DesiredConfig.from_spec(dict(sample_spec, userdata="#cloud-config"))
        with patch.object(gateway, "_post", AsyncMock(return_value=1234)) as post:
            machine_id = await gateway.create_machine(desired)
        assert machine_id == "1234"
        post.assert_awaited_once_with(
            "machines/create",
            {
                "cloudspaceId": 42,
                "name": "web1",
                "description": "frontend",
                "imageId": 7,
                "disksize": 20,
                "memory": 1024,
                "vcpus": 2,
                "userdata": "#cloud-config",
            },
        )

    async def test_create_machine_by_size_id(self, gateway, sample_spec):
        spec = dict(sample_spec, size_id=3)
        del spec["memory"], spec["vcpus"]
        with patch.object(gateway, "_post", AsyncMock(return_value=1)) as post:
            await gateway.create_machine(DesiredConfig.from_spec(spec))
        body = post.await_args.args[1]
        assert body["sizeId"] == 3
        assert "memory" not in body
        assert "userdata" not in body

    async def test_update_metadata_sends_only_changes(self, gateway):
        with patch.object(gateway, "_post", AsyncMock(return_value=True)) as post:
            await gateway.update_machine_metadata("1234", description="")
        post.assert_awaited_once_with(
            "machines/update", {"machineId": 1234, "description": ""}, "1234"
        )

    async def test_resize_machine(self, gateway):
        with patch.object(gateway, "_post", AsyncMock(return_value=True)) as post:
            await gateway.resize_machine("1234", ByResources(memory=2048, vcpus=4))
            await gateway.resize_machine("1234", BySizeID(5))
        assert post.await_args_list[0].args[1] == {
            "machineId": 1234,
            "memory": 2048,
            "vcpus": 4,
        }
        assert post.await_args_list[1].args[1] == {"machineId": 1234, "sizeId": 5}

    async def test_update_disk(self, gateway):
        with patch.object(gateway, "_post", AsyncMock(return_value=True)) as post:
            await gateway.update_disk(56, iops=500)
        post.assert_awaited_once_with("disks/update", {"diskId": 56, "iops": 500})

    async def test_delete_machine(self, gateway):
        with patch.object(gateway, "_post", AsyncMock(return_value=True)) as post:
            await gateway.delete_machine("1234")
        post.assert_awaited_once_with(
            "machines/delete", {"machineId": 1234, "permanently": True}, "1234"
        )


# ==================== Retry Tests ====================


@pytest.mark.asyncio
class TestRetry:
    """Tests for retrying transient failures."""

    async def test_get_machine_retried(self, gateway, machine_payload, no_sleep):
        post = AsyncMock(
            side_effect=[
                TransientIOError("reset"),
                TransientIOError("reset"),
                machine_payload,
            ]
        )
        with patch.object(gateway, "_post", post):
            state = await gateway.get_machine("1234")
        assert state.name == "web1"
        assert post.await_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    async def test_gives_up_after_max_retries(self, gateway, no_sleep):
        post = AsyncMock(side_effect=TransientIOError("unavailable"))
        with patch.object(gateway, "_post", post):
            with pytest.raises(TransientIOError):
                await gateway.update_disk(56, size=40)
        assert post.await_count == 3

    async def test_rejection_not_retried(self, gateway, no_sleep):
        post = AsyncMock(side_effect=RemoteRejectedError("bad size", status=400))
        with patch.object(gateway, "_post", post):
            with pytest.raises(RemoteRejectedError):
                await gateway.resize_machine("1234", BySizeID(99))
        assert post.await_count == 1
        no_sleep.assert_not_called()

    @pytest.mark.parametrize("operation", ["create", "metadata", "delete"])
    async def test_non_idempotent_calls_not_retried(
        self, gateway, sample_config, no_sleep, operation
    ):
        post = AsyncMock(side_effect=TransientIOError("timeout"))
        calls = {
            "create": lambda: gateway.create_machine(sample_config),
            "metadata": lambda: gateway.update_machine_metadata("1234", name="x"),
            "delete": lambda: gateway.delete_machine("1234"),
        }
        with patch.object(gateway, "_post", post):
            with pytest.raises(TransientIOError):
                await calls[operation]()
        assert post.await_count == 1

    async def test_backoff_delay_is_capped(self, gateway):
        gateway.backoff_max_delay = 5.0
        assert gateway._backoff_delay(0) == 1.0
        assert gateway._backoff_delay(2) == 4.0
        assert gateway._backoff_delay(10) == 5.0


# ==================== Transport Tests ====================


class TestRaiseForStatus:
    """Tests for translating HTTP status codes into errors."""

    def test_not_found(self):
        with pytest.raises(MachineNotFoundError) as exc_info:
            OVCGateway._raise_for_status("machines/get", 404, "", "1234")
        assert exc_info.value.machine_id == "1234"

    @pytest.mark.parametrize("status", [400, 403, 409])
    def test_client_errors_rejected(self, status):
        with pytest.raises(RemoteRejectedError) as exc_info:
            OVCGateway._raise_for_status("machines/resize", status, "no capacity")
        assert exc_info.value.status == status
        assert exc_info.value.remote_message == "no capacity"

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_transient(self, status):
        with pytest.raises(TransientIOError):
            OVCGateway._raise_for_status("machines/get", status, "oops")


@pytest.mark.asyncio
class TestTransport:
    """Tests for authentication and connection handling."""

    async def test_headers_with_jwt(self, gateway):
        headers = await gateway._get_headers()
        assert headers["Authorization"] == "bearer token"

    async def test_headers_fetch_jwt_once(self):
        gw = OVCGateway()
        await gw.initialize(
            {"url": "https://ovc", "client_id": "id", "client_secret": "secret"}
        )
        with patch.object(gw, "_fetch_jwt", AsyncMock(return_value="fresh")) as fetch:
            await gw._get_headers()
            headers = await gw._get_headers()
        fetch.assert_awaited_once()
        assert headers["Authorization"] == "bearer fresh"

    async def test_connection_error_is_transient(self, gateway):
        session = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with patch("plugins.gateways.ovc.client.aiohttp.ClientSession", session):
            with pytest.raises(TransientIOError) as exc_info:
                await gateway._post("machines/get", {"machineId": 1}, "1")
        assert exc_info.value.machine_id == "1"
