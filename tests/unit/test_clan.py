"""Tests for file system clans and lineages."""

from mansion.broker.base import BrokerError
from mansion.broker.spec import VirtualMachineSpec, VirtualMachineState, VmStateId
from mansion.data.clan import FileSystemClan, FileSystemLineage


def vm_state(file_systems):
    return VirtualMachineState(id="vm1", state=VmStateId.RUNNING, file_systems=file_systems)


class TestFileSystemLineage:
    def test_host(self):
        assert FileSystemLineage("/scratch", "http://broker.test/snapshots/1").host == "broker.test"

    def test_apply_only_on_same_host(self):
        lineage = FileSystemLineage("/scratch", "http://broker.test/snapshots/1")
        spec = VirtualMachineSpec()

        assert lineage.apply_to(spec, "other.test") is False
        assert spec.configs == []
        assert lineage.apply_to(spec, "broker.test") is True
        assert spec.file_systems() == {"/scratch": "http://broker.test/snapshots/1"}

    def test_obsoletes_same_path_and_host(self):
        old = FileSystemLineage("/scratch", "http://a.test/snapshots/1")
        assert FileSystemLineage("/scratch", "http://a.test/snapshots/2").obsoletes(old)
        assert not FileSystemLineage("/scratch", "http://b.test/snapshots/2").obsoletes(old)
        assert not FileSystemLineage("/home", "http://a.test/snapshots/2").obsoletes(old)


class TestFileSystemClan:
    def test_add_disposes_superseded_snapshot(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.add(FileSystemLineage("/scratch", "http://broker.test/snapshots/1"))
        clan.add(FileSystemLineage("/scratch", "http://broker.test/snapshots/2"))

        assert [l.snapshot for l in clan] == ["http://broker.test/snapshots/2"]
        assert broker.disposed_snapshots == ["http://broker.test/snapshots/1"]

    def test_add_keeps_lineages_of_other_hosts(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.add(FileSystemLineage("/scratch", "http://a.test/snapshots/1"))
        clan.add(FileSystemLineage("/scratch", "http://b.test/snapshots/1"))

        assert len(clan) == 2
        assert broker.disposed_snapshots == []

    def test_add_survives_dispose_failure(self, template, broker, store, clock):
        broker.dispose_snapshot_error = BrokerError("gone")
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.add(FileSystemLineage("/scratch", "http://broker.test/snapshots/1"))
        clan.add(FileSystemLineage("/scratch", "http://broker.test/snapshots/2"))

        assert [l.snapshot for l in clan] == ["http://broker.test/snapshots/2"]

    def test_apply_overlays_template_baseline(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.add(FileSystemLineage("/scratch", "http://broker.test/snapshots/7"))
        spec = VirtualMachineSpec(configs=list(template.spec))

        clan.apply_to(spec, "broker.test")

        assert spec.file_systems() == {"/scratch": "http://broker.test/snapshots/7"}

    def test_update_snapshots_persistent_paths(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        state = vm_state({"/scratch": "http://broker.test/fs/1", "/tmp": "http://broker.test/fs/2"})

        clan.update(state, vm_created_at=clock.now)

        assert [l.path for l in clan] == ["/scratch"]
        assert store.load_clan(template.id)["lineages"][0]["path"] == "/scratch"

    def test_update_without_file_systems_is_noop(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.update(vm_state(None), vm_created_at=clock.now)
        assert clan.is_empty()
        assert store.load_clan(template.id) is None

    def test_update_skipped_after_destroy(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        created_at = clock.now
        clock.advance(10)
        clan.dispose_all()

        clan.update(vm_state({"/scratch": "http://broker.test/fs/1"}), vm_created_at=created_at)

        assert clan.is_empty()
        assert broker.snapshot_count == 0

    def test_update_continues_when_snapshot_fails(self, template, broker, store, clock):
        broker.snapshot_error = BrokerError("broken")
        clan = FileSystemClan(template, broker, store, clock=clock)

        clan.update(vm_state({"/scratch": "http://broker.test/fs/1"}), vm_created_at=clock.now)

        assert clan.is_empty()

    def test_dispose_all(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.add(FileSystemLineage("/scratch", "http://a.test/snapshots/1"))
        clan.add(FileSystemLineage("/scratch", "http://b.test/snapshots/1"))

        clan.dispose_all()

        assert clan.is_empty()
        assert clan.last_destroyed_at == clock.now
        assert sorted(broker.disposed_snapshots) == [
            "http://a.test/snapshots/1",
            "http://b.test/snapshots/1",
        ]
        assert store.load_clan(template.id)["lineages"] == []

    def test_save_and_load_round_trip(self, template, broker, store, clock):
        clan = FileSystemClan(template, broker, store, clock=clock)
        clan.add(FileSystemLineage("/scratch", "http://a.test/snapshots/1"))
        clan.last_destroyed_at = 123.0
        clan.save()

        loaded = FileSystemClan(template, broker, store, clock=clock)
        loaded.load()

        assert list(loaded) == list(clan)
        assert loaded.last_destroyed_at == 123.0
        assert loaded.to_dict() == clan.to_dict()
