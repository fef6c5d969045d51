"""Tests for vmmanager.vm (LifecycleOrchestrator)."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from vmmanager.exceptions import (
    DeleteError,
    DuplicateIdentityError,
    ImageFetchError,
    LaunchError,
    NotFoundError,
    PartialDeleteError,
    ResizeError,
    SeedGenerationError,
    StorageError,
    ValidationError,
    VMBusyError,
)
from vmmanager.image import ImagePreparer
from vmmanager.models import CreateRequest, PortForward, ProcessStats
from vmmanager.vm import LifecycleOrchestrator


class FakePreparer(ImagePreparer):
    """Writes placeholder artifacts instead of fetching images."""

    def __init__(self, settings):
        super().__init__(settings)
        self.prepared = []
        self.resized = []
        self.fail_with = None

    def prepare(self, config):
        if self.fail_with is not None:
            raise self.fail_with
        config.image_file.write_bytes(b"qcow2")
        config.seed_file.write_bytes(b"iso")
        self.prepared.append(config)
        return config.image_file, config.seed_file

    def resize(self, config, new_size):
        if self.fail_with is not None:
            raise self.fail_with
        self.resized.append(new_size)


class FakeController:
    def __init__(self, settings):
        self.settings = settings
        self.running = set()
        self.started = []
        self.crash_on_start = False

    def log_path(self, config):
        return config.image_file.parent / f"{config.vm_name}.log"

    def is_running(self, config):
        return config.vm_name in self.running

    def find_pids(self, config):
        return [1000] if config.vm_name in self.running else []

    def start(self, config):
        self.started.append(config.vm_name)
        if self.crash_on_start:
            self.log_path(config).write_text("qemu: could not set up host forwarding rule\n")
        else:
            self.running.add(config.vm_name)
        return 1000

    def exit_code(self, config):
        return 1 if self.crash_on_start else None

    def stop(self, config):
        if config.vm_name not in self.running:
            return False
        self.running.discard(config.vm_name)
        return True

    def resource_usage(self, config):
        if config.vm_name not in self.running:
            return None
        return ProcessStats(pid=1000, cpu_percent=5.0, memory_percent=1.0, rss_bytes=1, vms_bytes=2, image_bytes=5)


@pytest.fixture(autouse=True)
def free_host_ports(monkeypatch):
    monkeypatch.setattr("vmmanager.vm.port_in_use", lambda port: False)


@pytest.fixture
def orchestrator(settings):
    return LifecycleOrchestrator(settings, preparer=FakePreparer(settings), controller=FakeController(settings))


def _request(os_image, name="web1", **kwargs):
    return CreateRequest(os_image=os_image, vm_name=name, **kwargs)


class TestCreate:
    def test_persists_and_prepares(self, orchestrator, os_image):
        cfg = orchestrator.create_vm(_request(os_image, port_forwards="8080:80"))
        assert orchestrator.store.load("web1") == cfg
        assert orchestrator.preparer.prepared == [cfg]
        assert cfg.image_file.exists()
        assert cfg.seed_file.exists()

    def test_duplicate_rejected(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with pytest.raises(DuplicateIdentityError):
            orchestrator.create_vm(_request(os_image, ssh_port="2223"))

    def test_port_claimed_by_other_vm(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image, port_forwards="8080:80"))
        with pytest.raises(ValidationError, match="claimed by VM 'web1'"):
            orchestrator.create_vm(_request(os_image, "web2", ssh_port="8080"))

    def test_port_busy_on_host(self, orchestrator, os_image, monkeypatch):
        monkeypatch.setattr("vmmanager.vm.port_in_use", lambda port: port == 2222)
        with pytest.raises(ValidationError, match="in use"):
            orchestrator.create_vm(_request(os_image))
        assert orchestrator.store.list() == []

    def test_invalid_input_writes_nothing(self, orchestrator, os_image, settings):
        with pytest.raises(ValidationError):
            orchestrator.create_vm(_request(os_image, "bad name"))
        assert list(settings.store_root.iterdir()) == []

    def test_preparation_failure_leaves_no_record(self, orchestrator, os_image):
        orchestrator.preparer.fail_with = ImageFetchError("unreachable")
        with pytest.raises(ImageFetchError):
            orchestrator.create_vm(_request(os_image))
        assert not orchestrator.store.exists("web1")


class TestQueries:
    def test_list_and_resolve(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image, "web2", ssh_port="2223"))
        orchestrator.create_vm(_request(os_image, "web1"))
        orchestrator.start_vm("web2")
        assert orchestrator.list_vms() == [("web1", "stopped"), ("web2", "running")]
        assert orchestrator.resolve("2") == "web2"
        assert orchestrator.resolve("web1") == "web1"
        with pytest.raises(NotFoundError, match="1-2"):
            orchestrator.resolve("3")
        with pytest.raises(NotFoundError):
            orchestrator.resolve("ghost")

    def test_performance_when_stopped(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        report = orchestrator.show_performance("web1")
        assert report.state == "stopped"
        assert report.stats is None

    def test_missing_vm(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.show_info("ghost")


class TestStartStop:
    def test_start_and_stop(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.start_vm("web1")
        assert orchestrator.show_info("web1").state == "running"
        assert orchestrator.stop_vm("web1") is True
        assert orchestrator.stop_vm("web1") is False

    def test_start_running_rejected(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.start_vm("web1")
        with pytest.raises(VMBusyError, match="already running"):
            orchestrator.start_vm("web1")
        assert orchestrator.controller.started == ["web1"]

    def test_missing_image(self, orchestrator, os_image):
        cfg = orchestrator.create_vm(_request(os_image))
        cfg.image_file.unlink()
        with pytest.raises(ImageFetchError, match="not found"):
            orchestrator.start_vm("web1")

    def test_missing_seed_regenerated(self, orchestrator, os_image):
        cfg = orchestrator.create_vm(_request(os_image))
        cfg.seed_file.unlink()
        orchestrator.start_vm("web1")
        assert len(orchestrator.preparer.prepared) == 2
        assert cfg.seed_file.exists()

    def test_crash_during_grace(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.controller.crash_on_start = True
        with pytest.raises(LaunchError) as exc:
            orchestrator.start_vm("web1")
        assert "code 1" in str(exc.value)
        assert "host forwarding rule" in str(exc.value)


class TestEdit:
    def test_disk_size_not_editable(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with pytest.raises(ValidationError, match="resize"):
            orchestrator.edit_vm("web1", {"disk_size": "40G"})

    def test_unknown_field(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with pytest.raises(ValidationError, match="os_type"):
            orchestrator.edit_vm("web1", {"os_type": "debian"})

    def test_password_change_regenerates_seed(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        updated = orchestrator.edit_vm("web1", {"password": "s3cret"})
        assert updated.password == "s3cret"
        assert orchestrator.store.load("web1").password == "s3cret"
        assert orchestrator.preparer.prepared[-1].password == "s3cret"

    def test_resource_change_keeps_seed(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        updated = orchestrator.edit_vm("web1", {"memory_mb": "4096", "cpus": 4, "gui_mode": "y"})
        assert (updated.memory_mb, updated.cpus, updated.gui_mode) == (4096, 4, True)
        assert len(orchestrator.preparer.prepared) == 1

    def test_no_change(self, orchestrator, os_image):
        cfg = orchestrator.create_vm(_request(os_image))
        with patch.object(orchestrator.store, "save") as save:
            assert orchestrator.edit_vm("web1", {"hostname": "web1"}) == cfg
        save.assert_not_called()

    def test_invalid_value_keeps_record(self, orchestrator, os_image):
        cfg = orchestrator.create_vm(_request(os_image))
        with pytest.raises(ValidationError):
            orchestrator.edit_vm("web1", {"username": "Root"})
        assert orchestrator.store.load("web1") == cfg

    def test_forward_collides_with_own_ssh_port(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with pytest.raises(ValidationError, match="Port conflict"):
            orchestrator.edit_vm("web1", {"port_forwards": "2222:80"})

    def test_port_claimed_by_other_vm(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.create_vm(_request(os_image, "web2", ssh_port="2223"))
        with pytest.raises(ValidationError, match="web2"):
            orchestrator.edit_vm("web1", {"ssh_port": "2223"})

    def test_own_ports_stay_available(self, orchestrator, os_image, monkeypatch):
        orchestrator.create_vm(_request(os_image, port_forwards="8080:80"))
        orchestrator.start_vm("web1")
        monkeypatch.setattr("vmmanager.vm.port_in_use", lambda port: port in (2222, 8080))
        updated = orchestrator.edit_vm("web1", {"port_forwards": "8080:80,8443:443"})
        assert updated.port_forwards == [PortForward(8080, 80), PortForward(8443, 443)]

    def test_seed_failure_keeps_old_record(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.preparer.fail_with = SeedGenerationError("cloud-localds failed")
        with pytest.raises(SeedGenerationError):
            orchestrator.edit_vm("web1", {"hostname": "renamed"})
        assert orchestrator.store.load("web1").hostname == "web1"

    def test_running_vm_warned(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.start_vm("web1")
        with patch("vmmanager.vm.log") as mock_log:
            orchestrator.edit_vm("web1", {"memory_mb": "1024"})
        assert mock_log.call_args[0][0] == "WARN"


class TestDelete:
    def test_removes_everything(self, orchestrator, os_image, settings):
        cfg = orchestrator.create_vm(_request(os_image))
        orchestrator.controller.log_path(cfg).write_text("boot\n")
        orchestrator.delete_vm("web1")
        assert list(settings.store_root.iterdir()) == []
        with pytest.raises(NotFoundError):
            orchestrator.show_info("web1")

    def test_running_rejected(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.start_vm("web1")
        with pytest.raises(VMBusyError):
            orchestrator.delete_vm("web1")
        assert orchestrator.store.exists("web1")

    def test_artifact_failure_keeps_record(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with patch.object(orchestrator.preparer, "remove_artifacts", side_effect=PermissionError("denied")):
            with pytest.raises(DeleteError) as exc:
                orchestrator.delete_vm("web1")
        assert exc.value.phase == "artifacts"
        assert not isinstance(exc.value, PartialDeleteError)
        assert orchestrator.store.exists("web1")
        orchestrator.delete_vm("web1")
        assert not orchestrator.store.exists("web1")

    def test_record_failure_is_partial(self, orchestrator, os_image):
        cfg = orchestrator.create_vm(_request(os_image))
        with patch.object(orchestrator.store, "delete", side_effect=StorageError("read-only")):
            with pytest.raises(PartialDeleteError) as exc:
                orchestrator.delete_vm("web1")
        assert exc.value.phase == "record"
        assert not cfg.image_file.exists()


class TestResize:
    def test_grow(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        updated = orchestrator.resize_disk("web1", "50g")
        assert updated.disk_size == "50G"
        assert orchestrator.store.load("web1").disk_size == "50G"
        assert orchestrator.preparer.resized == ["50G"]

    def test_same_size_noop(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.resize_disk("web1", "20G")
        assert orchestrator.preparer.resized == []

    def test_shrink_rejected(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with pytest.raises(ValidationError, match="smaller"):
            orchestrator.resize_disk("web1", "10G")

    def test_running_rejected(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.start_vm("web1")
        with pytest.raises(VMBusyError):
            orchestrator.resize_disk("web1", "50G")

    def test_failure_keeps_recorded_size(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        orchestrator.preparer.fail_with = ResizeError("both strategies failed")
        with pytest.raises(ResizeError):
            orchestrator.resize_disk("web1", "50G")
        assert orchestrator.store.load("web1").disk_size == "20G"


class TestWalkthrough:
    def test_web1_lifecycle(self, orchestrator, os_image, settings):
        cfg = orchestrator.create_vm(_request(os_image, port_forwards="8080:80"))
        assert cfg.host_ports() == [2222, 8080]

        orchestrator.start_vm("web1")
        info = orchestrator.show_info("web1")
        assert info.state == "running"
        assert info.pids == [1000]
        assert orchestrator.show_performance("web1").stats.pid == 1000

        orchestrator.stop_vm("web1")
        assert orchestrator.list_vms() == [("web1", "stopped")]

        orchestrator.delete_vm("web1")
        assert orchestrator.list_vms() == []
        assert list(settings.store_root.iterdir()) == []


class TestControlCharacters:
    def test_newline_password_rejected_and_store_stays_usable(self, orchestrator, os_image):
        with pytest.raises(ValidationError, match="control characters"):
            orchestrator.create_vm(_request(os_image, password="pa\nss"))
        assert orchestrator.list_vms() == []
        orchestrator.create_vm(_request(os_image, "web2", password="pass"))
        assert orchestrator.show_info("web2").config.password == "pass"

    def test_newline_password_rejected_on_edit(self, orchestrator, os_image):
        orchestrator.create_vm(_request(os_image))
        with pytest.raises(ValidationError):
            orchestrator.edit_vm("web1", {"password": "new\r\npass"})
        assert orchestrator.store.load("web1").password == "ubuntu"
