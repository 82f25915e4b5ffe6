"""Tests for the HTTP broker client."""

from unittest.mock import MagicMock

import pytest
import requests

from mansion.broker.base import (
    AuthenticationError,
    BrokerError,
    QuotaExceededError,
    TooManyVirtualMachinesError,
    VirtualMachineConfigurationError,
)
from mansion.broker.http import HttpBrokerClient, HttpVirtualMachineRef
from mansion.broker.spec import HardwareSpec, VirtualMachineSpec, VmStateId


def response(status=200, json_body=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = "Reason"
    resp.headers = headers or {}
    if json_body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = json_body
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return HttpBrokerClient("https://broker.test/", token="secret", session=session, sleep=lambda s: None)


class TestCreateVirtualMachine:
    def test_posts_hardware_and_reads_location(self, client, session):
        session.post.return_value = response(201, headers={"Location": "https://broker.test/lxc/vm/abc"})

        vm = client.create_virtual_machine("lxc", HardwareSpec("xlarge"))

        assert vm.url == "https://broker.test/lxc/vm/abc"
        assert vm.id == "abc"
        session.post.assert_called_once_with(
            "https://broker.test/lxc/createVirtualMachine", json={"size": "xlarge"}, timeout=30
        )

    def test_missing_location(self, client, session):
        session.post.return_value = response(201)
        with pytest.raises(BrokerError):
            client.create_virtual_machine("lxc", HardwareSpec("small"))

    def test_network_error_wrapped(self, client, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(BrokerError) as excinfo:
            client.create_virtual_machine("lxc", HardwareSpec("small"))
        assert isinstance(excinfo.value, OSError)

    def test_authentication_error(self, client, session):
        session.post.return_value = response(401)
        with pytest.raises(AuthenticationError) as excinfo:
            client.create_virtual_machine("lxc", HardwareSpec("small"))
        assert excinfo.value.status_code == 401

    def test_quota_error(self, client, session):
        session.post.return_value = response(
            409, {"error": "quota", "message": "no osx", "vmType": "osx", "hardwareSize": "large"}
        )
        with pytest.raises(QuotaExceededError) as excinfo:
            client.create_virtual_machine("osx", HardwareSpec("large"))

        assert not isinstance(excinfo.value, TooManyVirtualMachinesError)
        assert excinfo.value.vm_type == "osx"
        assert excinfo.value.hardware_size == "large"
        assert str(excinfo.value) == "no osx"

    def test_too_many_vms_error(self, client, session):
        session.post.return_value = response(409, {"error": "too-many-vms", "vmType": "lxc"})
        with pytest.raises(TooManyVirtualMachinesError) as excinfo:
            client.create_virtual_machine("lxc", HardwareSpec("small"))
        assert excinfo.value.vm_type == "lxc"

    def test_other_status(self, client, session):
        session.post.return_value = response(500)
        with pytest.raises(BrokerError) as excinfo:
            client.create_virtual_machine("lxc", HardwareSpec("small"))
        assert excinfo.value.status_code == 500


class TestVirtualMachineRef:
    def test_setup_posts_spec(self, client, session):
        session.post.return_value = response(200)
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")
        spec = VirtualMachineSpec(configs=[{"kind": "env"}])

        vm.setup(spec)

        session.post.assert_called_once_with(
            "https://broker.test/lxc/vm/abc/setup", json={"configs": [{"kind": "env"}]}, timeout=30
        )

    @pytest.mark.parametrize("status", [400, 422])
    def test_setup_rejected(self, client, session, status):
        session.post.return_value = response(status)
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        with pytest.raises(VirtualMachineConfigurationError):
            vm.setup(VirtualMachineSpec())

    def test_boot_polls_until_running(self, client, session):
        session.post.return_value = response(200)
        session.get.side_effect = [
            response(200, {"id": "abc", "state": {"id": "booting"}}),
            response(200, {"id": "abc", "state": {"id": "booting"}}),
            response(200, {"id": "abc", "state": {"id": "running"}}),
        ]
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        vm.boot_sync()

        session.post.assert_called_once_with("https://broker.test/lxc/vm/abc/boot", json=None, timeout=30)
        assert session.get.call_count == 3

    def test_boot_error_state(self, client, session):
        session.post.return_value = response(200)
        session.get.return_value = response(200, {"id": "abc", "state": {"id": "error"}})
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        with pytest.raises(BrokerError):
            vm.boot_sync()

    def test_boot_times_out(self, client, session):
        session.post.return_value = response(200)
        session.get.return_value = response(200, {"id": "abc", "state": {"id": "booting"}})
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        with pytest.raises(BrokerError, match="forever"):
            vm.boot_sync()
        assert session.get.call_count == 60

    def test_renew_dispose_memo(self, client, session):
        session.post.return_value = response(200)
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc/")

        vm.renew()
        vm.set_memo({"builds": []})
        vm.dispose()

        urls = [c.args[0] for c in session.post.call_args_list]
        assert urls == [
            "https://broker.test/lxc/vm/abc/renew",
            "https://broker.test/lxc/vm/abc/memo",
            "https://broker.test/lxc/vm/abc/dispose",
        ]

    def test_get_state(self, client, session):
        session.get.return_value = response(200, {
            "id": "abc",
            "state": {"id": "running"},
            "fileSystems": {"/scratch": "https://broker.test/fs/1"},
        })
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        state = vm.get_state()

        assert state.file_system_url_for("/scratch") == "https://broker.test/fs/1"
        session.get.assert_called_once_with("https://broker.test/lxc/vm/abc/.", timeout=30)


    def test_unknown_state_tolerated(self, client, session):
        session.get.return_value = response(200, {"id": "abc", "state": {"id": "shutdown"}})
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        assert vm.get_state().state == VmStateId.UNKNOWN

    def test_non_object_state_rejected(self, client, session):
        session.get.return_value = response(200, ["not", "a", "vm"])
        vm = HttpVirtualMachineRef(client, "https://broker.test/lxc/vm/abc")

        with pytest.raises(BrokerError):
            vm.get_state()


class TestFileSystemsAndSnapshots:
    def test_snapshot_location(self, client, session):
        session.post.return_value = response(201, headers={"Location": "https://broker.test/snapshots/9"})

        snapshot = client.file_system("https://broker.test/fs/1").snapshot()

        assert snapshot.url == "https://broker.test/snapshots/9"
        assert snapshot.host == "broker.test"

    def test_snapshot_dispose(self, client, session):
        session.post.return_value = response(200)
        client.snapshot("https://broker.test/snapshots/9").dispose()
        session.post.assert_called_once_with("https://broker.test/snapshots/9/dispose", json=None, timeout=30)


class TestSession:
    def test_session_has_auth_and_retries(self):
        client = HttpBrokerClient("https://broker.test/", token="secret")
        session = client.get_session()

        assert session.headers["Authorization"] == "Bearer secret"
        adapter = session.get_adapter("https://broker.test/")
        assert adapter.max_retries.total == 4
        assert 503 in adapter.max_retries.status_forcelist
        client.close()
        assert client._session is None
