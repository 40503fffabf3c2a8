"""Tests for hyvebuild.steps module."""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import call, patch

import pytest

from hyvebuild.constants import (
    STATE_CANCEL,
    STATE_CANCELLED,
    STATE_DISK_FILENAME,
    STATE_ERROR,
    STATE_HALTED,
    STATE_HTTP_IP,
    STATE_HTTP_PORT,
    STATE_ISO_PATH,
)
from hyvebuild.exceptions import BuildError
from hyvebuild.pipeline import StepAction
from hyvebuild.steps import (
    StepBootWait,
    StepCreateDisk,
    StepDownload,
    StepHTTPServer,
    StepPrepareOutputDir,
    StepRun,
    StepTypeBootCommand,
    StepWaitForShutdown,
    halt,
    hyve_args,
)


class TestHalt:
    def test_records_error(self):
        state = {}
        assert halt(state, "it broke") is StepAction.HALT
        assert isinstance(state[STATE_ERROR], BuildError)
        assert str(state[STATE_ERROR]) == "it broke"


class TestStepDownload:
    def test_success(self, state, tmp_path):
        with patch("hyvebuild.steps.download_iso", return_value=Path("/cache/abc.iso")) as mock_dl:
            step = StepDownload(["http://example.com/a.iso"], "abc", "md5", cache_dir=tmp_path)
            assert step.run(state) is StepAction.CONTINUE
        assert state[STATE_ISO_PATH] == "/cache/abc.iso"
        args = mock_dl.call_args[0]
        assert args == (["http://example.com/a.iso"], "abc", "md5", tmp_path)

    def test_failure_halts(self, state):
        with patch("hyvebuild.steps.download_iso", side_effect=BuildError("all mirrors down")):
            result = StepDownload(["http://example.com/a.iso"], "abc", "md5").run(state)
        assert result is StepAction.HALT
        assert str(state[STATE_ERROR]) == "Error downloading ISO: all mirrors down"


class TestStepPrepareOutputDir:
    def test_creates_directory(self, state, default_build_config):
        assert StepPrepareOutputDir().run(state) is StepAction.CONTINUE
        assert Path(default_build_config.output_directory).is_dir()

    def test_force_replaces_existing(self, state, default_build_config):
        out = Path(default_build_config.output_directory)
        out.mkdir()
        (out / "stale.raw").write_text("old")
        default_build_config.force = True
        assert StepPrepareOutputDir().run(state) is StepAction.CONTINUE
        assert out.is_dir()
        assert not (out / "stale.raw").exists()

    def test_cleanup_keeps_directory_on_success(self, state, default_build_config):
        step = StepPrepareOutputDir()
        step.run(state)
        step.cleanup(state)
        assert Path(default_build_config.output_directory).is_dir()

    @pytest.mark.parametrize("flag", [STATE_CANCELLED, STATE_HALTED])
    def test_cleanup_removes_directory_on_failure(self, state, default_build_config, flag):
        step = StepPrepareOutputDir()
        step.run(state)
        state[flag] = True
        step.cleanup(state)
        assert not Path(default_build_config.output_directory).exists()

    def test_cleanup_without_run_leaves_directory(self, state, default_build_config):
        out = Path(default_build_config.output_directory)
        out.mkdir()
        state[STATE_HALTED] = True
        StepPrepareOutputDir().cleanup(state)
        assert out.is_dir()


class TestStepCreateDisk:
    def test_creates_disk(self, state, fake_driver, default_build_config):
        del state[STATE_DISK_FILENAME]
        assert StepCreateDisk().run(state) is StepAction.CONTINUE
        expected = str(Path(default_build_config.output_directory) / "test-vm.raw")
        fake_driver.qemu_img.assert_called_once_with("create", "-f", "raw", expected, "40000M")
        assert state[STATE_DISK_FILENAME] == "test-vm.raw"

    def test_failure_halts(self, state, fake_driver):
        fake_driver.qemu_img.side_effect = BuildError("QemuImg error: disk full")
        assert StepCreateDisk().run(state) is StepAction.HALT
        assert str(state[STATE_ERROR]) == "Error creating hard drive: QemuImg error: disk full"


class TestStepHTTPServer:
    def test_no_directory(self, state):
        del state[STATE_HTTP_PORT]
        assert StepHTTPServer().run(state) is StepAction.CONTINUE
        assert state[STATE_HTTP_PORT] == 0
        assert state[STATE_HTTP_IP] == "10.0.2.2"

    def test_starts_and_stops_server(self, state, default_build_config):
        default_build_config.http_directory = "/srv/http"
        with patch("hyvebuild.steps.BootFileServer") as mock_server_cls:
            mock_server_cls.return_value.start.return_value = 8555
            step = StepHTTPServer()
            assert step.run(state) is StepAction.CONTINUE
            assert state[STATE_HTTP_PORT] == 8555
            mock_server_cls.assert_called_once_with(Path("/srv/http"), 8000, 9000)
            step.cleanup(state)
            mock_server_cls.return_value.shutdown.assert_called_once()

    def test_start_failure_halts(self, state, default_build_config):
        default_build_config.http_directory = "/srv/http"
        with patch("hyvebuild.steps.BootFileServer") as mock_server_cls:
            mock_server_cls.return_value.start.side_effect = BuildError("No free port")
            step = StepHTTPServer()
            assert step.run(state) is StepAction.HALT
            step.cleanup(state)
            mock_server_cls.return_value.shutdown.assert_not_called()
        assert "Error starting HTTP server" in str(state[STATE_ERROR])


class TestHyveArgs:
    def test_defaults(self, default_build_config):
        args = hyve_args(default_build_config, "/isos/install.iso", "test-vm.raw", 0, "10.0.2.2")
        disk = str(Path(default_build_config.output_directory) / "test-vm.raw")
        assert args == [
            "-A",
            "-s", "0:0,hostbridge",
            "-s", "31,lpc",
            "-l", "com1,autopty",
            "-s", "2:0,virtio-net",
            "-s", "3,ahci-cd,/isos/install.iso",
            "-s", f"4,virtio-blk,{disk}",
            "-f", 'kexec,/boot/vmlinuz,/boot/initrd.gz,"earlyprintk=serial console=ttyS0"',
        ]

    def test_memory_and_cpus(self, default_build_config):
        default_build_config.memory_size = "2G"
        default_build_config.cpus = 2
        args = hyve_args(default_build_config, "/a.iso", "d.raw", 0, "10.0.2.2")
        assert args[:5] == ["-A", "-m", "2G", "-c", "2"]

    def test_hyveargs_rendered_last(self, default_build_config):
        default_build_config.hyveargs = ["-U", "{{ .Name }}", "-s", "5,virtio-9p,{{ .HTTPIP }}:{{ .HTTPPort }}"]
        args = hyve_args(default_build_config, "/a.iso", "d.raw", 8123, "192.168.64.1")
        assert args[-4:] == ["-U", "test-vm", "-s", "5,virtio-9p,192.168.64.1:8123"]

    def test_bad_hyvearg(self, default_build_config):
        default_build_config.hyveargs = ["{{ .Nope }}"]
        with pytest.raises(BuildError):
            hyve_args(default_build_config, "/a.iso", "d.raw", 0, "10.0.2.2")


class TestStepRun:
    def test_launches(self, state, fake_driver):
        assert StepRun().run(state) is StepAction.CONTINUE
        launched = fake_driver.launch.call_args[0]
        assert "3,ahci-cd,/isos/install.iso" in launched

    def test_launch_failure(self, state, fake_driver):
        fake_driver.launch.side_effect = BuildError("bhyve/xhyve failed to start (exit code 1).")
        assert StepRun().run(state) is StepAction.HALT
        assert str(state[STATE_ERROR]).startswith("Error launching VM:")

    def test_bad_hyveargs(self, state, fake_driver, default_build_config):
        default_build_config.hyveargs = ["{{ .Nope }}"]
        assert StepRun().run(state) is StepAction.HALT
        assert str(state[STATE_ERROR]).startswith("Error processing hyveargs:")
        fake_driver.launch.assert_not_called()

    def test_cleanup_stops_vm(self, state, fake_driver):
        StepRun().cleanup(state)
        fake_driver.stop.assert_called_once()

    def test_cleanup_logs_stop_error(self, state, fake_driver, capsys):
        fake_driver.stop.side_effect = OSError("no such process")
        StepRun().cleanup(state)
        assert "Error shutting down VM" in capsys.readouterr().out


class TestStepBootWait:
    def test_zero_wait(self, state):
        assert StepBootWait().run(state) is StepAction.CONTINUE

    def test_waits(self, state, default_build_config):
        default_build_config.boot_wait = 0.01
        assert StepBootWait().run(state) is StepAction.CONTINUE

    def test_cancel_interrupts(self, state, default_build_config):
        default_build_config.boot_wait = 30.0
        state[STATE_CANCEL].cancel()
        assert StepBootWait().run(state) is StepAction.HALT
        assert STATE_ERROR not in state


class TestStepTypeBootCommand:
    def test_empty_command_skipped(self, state):
        with patch("hyvebuild.steps.SerialPort") as mock_serial:
            assert StepTypeBootCommand().run(state) is StepAction.CONTINUE
        mock_serial.assert_not_called()

    def test_types_rendered_command(self, state, default_build_config):
        default_build_config.boot_command = ["ks={{ .HTTPIP }}:{{ .HTTPPort }}<wait>\n"]
        with patch("hyvebuild.steps.SerialPort") as mock_serial, \
             patch("hyvebuild.typist.time.sleep") as mock_sleep:
            step = StepTypeBootCommand()
            assert step.run(state) is StepAction.CONTINUE
        mock_serial.assert_called_once_with("/dev/ttys004", baudrate=9600)
        port = mock_serial.return_value
        written = b"".join(c.args[0] for c in port.write.call_args_list)
        assert written == b"ks=10.0.2.2:8123\n"
        assert call(1) in mock_sleep.call_args_list
        step.cleanup(state)
        port.close.assert_called_once()

    def test_no_tty(self, state, fake_driver, default_build_config):
        default_build_config.boot_command = ["x"]
        fake_driver.tty = ""
        assert StepTypeBootCommand().run(state) is StepAction.HALT
        assert "No serial device" in str(state[STATE_ERROR])

    def test_open_failure(self, state, default_build_config):
        default_build_config.boot_command = ["x"]
        with patch("hyvebuild.steps.SerialPort", side_effect=OSError("busy")):
            assert StepTypeBootCommand().run(state) is StepAction.HALT
        assert str(state[STATE_ERROR]) == "Error connecting to /dev/ttys004: busy"

    def test_render_failure(self, state, default_build_config):
        default_build_config.boot_command = ["{{ .Unknown }}"]
        with patch("hyvebuild.steps.SerialPort"):
            assert StepTypeBootCommand().run(state) is StepAction.HALT
        assert str(state[STATE_ERROR]).startswith("Error preparing boot command:")

    def test_write_failure(self, state, default_build_config):
        default_build_config.boot_command = ["abc"]
        with patch("hyvebuild.steps.SerialPort") as mock_serial, \
             patch("hyvebuild.typist.time.sleep"):
            mock_serial.return_value.write.side_effect = OSError("I/O error")
            assert StepTypeBootCommand().run(state) is StepAction.HALT
        assert mock_serial.return_value.write.call_count == 1
        assert str(state[STATE_ERROR]) == "Error typing boot command: I/O error"

    def test_cancel_stops_typing(self, state, default_build_config):
        default_build_config.boot_command = ["abcdef"]
        cancel = state[STATE_CANCEL]

        def fake_write(data):
            if data == b"b":
                cancel.cancel()
            return 1

        with patch("hyvebuild.steps.SerialPort") as mock_serial, \
             patch("hyvebuild.typist.time.sleep"):
            mock_serial.return_value.write.side_effect = fake_write
            assert StepTypeBootCommand().run(state) is StepAction.HALT
        assert mock_serial.return_value.write.call_count == 2
        assert STATE_ERROR not in state

    def test_cleanup_without_run(self, state):
        StepTypeBootCommand().cleanup(state)


class TestStepWaitForShutdown:
    def test_vm_shuts_down(self, state, fake_driver):
        fake_driver.wait_for_shutdown.return_value = True
        assert StepWaitForShutdown().run(state) is StepAction.CONTINUE

    def test_detaches_from_build_token(self, state, fake_driver):
        fake_driver.wait_for_shutdown.return_value = True
        for _ in range(3):
            assert StepWaitForShutdown().run(state) is StepAction.CONTINUE
        assert state[STATE_CANCEL]._callbacks == []

    def test_timeout(self, state, fake_driver, default_build_config):
        default_build_config.shutdown_timeout = 0.05

        def block_until(stop):
            stop.wait(5)
            return False

        fake_driver.wait_for_shutdown.side_effect = block_until
        assert StepWaitForShutdown().run(state) is StepAction.HALT
        assert str(state[STATE_ERROR]) == "Timeout while waiting for machine to shut down."

    def test_cancelled(self, state, fake_driver):
        cancel = state[STATE_CANCEL]

        def block_until(stop):
            stop.wait(5)
            return False

        fake_driver.wait_for_shutdown.side_effect = block_until
        threading.Timer(0.05, cancel.cancel).start()
        assert StepWaitForShutdown().run(state) is StepAction.HALT
        assert STATE_ERROR not in state
