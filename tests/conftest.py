"""Pytest configuration and shared fixtures."""

from concurrent.futures import Executor, Future
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from mansion.broker.base import BrokerClient, FileSystemRef, SnapshotRef, VirtualMachineRef
from mansion.broker.spec import VirtualMachineState, VmStateId
from mansion.data.clan import FileSystemClan
from mansion.data.models import Size, Template
from mansion.data.persistence import ClanStore
from mansion.nodes.base import Connector
from mansion.nodes.node import MansionNode


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ManualExecutor(Executor):
    """Executor that queues work until ``run_pending`` is called."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)

    def shutdown(self, wait=True, **kwargs):
        self.pending.clear()


class FakeSnapshot(SnapshotRef):
    def __init__(self, broker, url):
        super().__init__(url)
        self.broker = broker

    def dispose(self):
        if self.broker.dispose_snapshot_error:
            raise self.broker.dispose_snapshot_error
        self.broker.disposed_snapshots.append(self.url)


class FakeFileSystem(FileSystemRef):
    def __init__(self, broker, url):
        super().__init__(url)
        self.broker = broker

    def snapshot(self):
        if self.broker.snapshot_error:
            raise self.broker.snapshot_error
        self.broker.snapshot_count += 1
        url = f"http://{self.broker.host}/snapshots/{self.broker.snapshot_count}"
        return FakeSnapshot(self.broker, url)


class FakeVm(VirtualMachineRef):
    def __init__(self, broker, url):
        super().__init__(url)
        self.broker = broker
        self.setup_specs = []
        self.booted = False
        self.renewals = 0
        self.disposed = False
        self.memo = None

    def setup(self, spec):
        self.setup_specs.append(spec.copy())
        if self.broker.setup_errors:
            raise self.broker.setup_errors.pop(0)

    def boot_sync(self):
        if self.broker.boot_error:
            raise self.broker.boot_error
        self.booted = True

    def renew(self):
        if self.broker.renew_error:
            raise self.broker.renew_error
        self.renewals += 1

    def dispose(self):
        self.disposed = True

    def get_state(self):
        return VirtualMachineState(
            id=self.id,
            state=VmStateId.RUNNING,
            file_systems=dict(self.broker.file_systems) or None,
            sshd_host=self.host,
            sshd_port=22,
        )

    def set_memo(self, memo):
        self.memo = memo


class FakeBroker(BrokerClient):
    """In-memory broker; failures are injected through attributes."""

    def __init__(self, host="broker.test"):
        self.host = host
        self.vms = []
        self.create_errors = []
        self.setup_errors = []
        self.boot_error = None
        self.renew_error = None
        self.snapshot_error = None
        self.dispose_snapshot_error = None
        self.file_systems = {}
        self.snapshot_count = 0
        self.disposed_snapshots = []

    def create_virtual_machine(self, mansion_type, hardware):
        if self.create_errors:
            raise self.create_errors.pop(0)
        vm = FakeVm(self, f"http://{self.host}/{mansion_type}/vm{len(self.vms) + 1}")
        vm.hardware = hardware
        self.vms.append(vm)
        return vm

    def file_system(self, url):
        return FakeFileSystem(self, url)

    def snapshot(self, url):
        return FakeSnapshot(self, url)


class FakeConnector(Connector):
    """Fails the first ``failures`` attempts with ``error``."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or ConnectionRefusedError("connection refused")
        self.attempts = 0

    def connect(self, node):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error


@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory for tests."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def store(temp_data_dir):
    return ClanStore(temp_data_dir)


@pytest.fixture
def template():
    return Template(
        id="lxc-fedora17",
        mansion_type="lxc",
        spec=[{"kind": "file-system", "from": "http://broker.test/snapshots/base", "path": "/scratch"}],
        persistent_paths=("/scratch",),
        default_size=Size.XLARGE,
    )


@pytest.fixture
def make_node(broker, store, clock):
    """Build a live node on a fresh fake VM."""

    def _make(template, listeners=(), **kwargs):
        vm = broker.create_virtual_machine(template.mansion_type, None)
        clan = FileSystemClan(template, broker, store, clock=clock)
        return MansionNode(vm, template, template.label, clan, listeners=listeners, clock=clock, **kwargs)

    return _make
