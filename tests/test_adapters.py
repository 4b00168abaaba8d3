"""
Tests for adapters: compose ps parsing, node replies, the docker driver and mocks.
"""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from nodestack.adapters.containers.docker import DockerComposeDriver, _parse_ps
from nodestack.adapters.mock import MockContainerDriver, ScriptedNodeRpc
from nodestack.adapters.rpc.node_rpc import HttpNodeRpc, parse_sync_reply
from nodestack.core.errors import ConnectivityError


def _completed(stdout: str = "", stderr: str = "", code: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=code, stdout=stdout, stderr=stderr)


# ── Compose ps ───────────────────────────────────────────────────────


class TestParsePs:
    def test_json_array(self):
        assert _parse_ps('[{"Service": "a"}, {"Service": "b"}]') == [{"Service": "a"}, {"Service": "b"}]

    def test_json_lines(self):
        out = '{"Service": "a"}\n\n{"Service": "b"}\n'
        assert [e["Service"] for e in _parse_ps(out)] == ["a", "b"]

    def test_single_object(self):
        assert _parse_ps('{"Service": "a"}') == [{"Service": "a"}]

    def test_garbage_lines_skipped(self):
        assert _parse_ps('warning: foo\n{"Service": "a"}') == [{"Service": "a"}]

    def test_empty(self):
        assert _parse_ps("  ") == []


class TestDockerComposeDriver:
    def _driver(self, tmp_path):
        return DockerComposeDriver(tmp_path / "docker-compose.yml", project="kaspa")

    def test_status_running_healthy(self, tmp_path):
        out = '{"Service": "kaspa-node", "State": "running", "Health": "healthy"}'
        with patch("subprocess.run", return_value=_completed(out)) as run:
            status = self._driver(tmp_path).status("kaspa-node")
        assert status.exists and status.running
        assert status.healthy
        cmd = run.call_args[0][0]
        assert cmd[:3] == ["docker", "compose", "-f"]
        assert ["-p", "kaspa"] == cmd[4:6]

    def test_status_exited(self, tmp_path):
        out = '{"Service": "kaspa-node", "State": "exited", "Health": ""}'
        with patch("subprocess.run", return_value=_completed(out)):
            status = self._driver(tmp_path).status("kaspa-node")
        assert status.exists
        assert not status.running
        assert status.health == "none"

    def test_status_missing_container(self, tmp_path):
        with patch("subprocess.run", return_value=_completed("")):
            status = self._driver(tmp_path).status("kaspa-node")
        assert not status.exists

    def test_status_daemon_down(self, tmp_path):
        err = _completed(stderr="Cannot connect to the Docker daemon", code=1)
        with patch("subprocess.run", return_value=err):
            with pytest.raises(ConnectivityError):
                self._driver(tmp_path).status("kaspa-node")

    def test_status_timeout(self, tmp_path):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired("docker", 15)):
            with pytest.raises(ConnectivityError) as exc:
                self._driver(tmp_path).status("kaspa-node")
        assert exc.value.timed_out

    def test_start_failure_is_a_receipt(self, tmp_path):
        with patch("subprocess.run", return_value=_completed(stderr="port is already allocated", code=1)):
            receipt = self._driver(tmp_path).start("kaspa-node")
        assert receipt.failed
        assert receipt.error == "port is already allocated"
        assert receipt.metadata["return_code"] == 1

    def test_start_timeout_is_a_receipt(self, tmp_path):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired("docker", 120)):
            receipt = self._driver(tmp_path).start("kaspa-node")
        assert receipt.failed
        assert receipt.timed_out

    def test_missing_binary(self, tmp_path):
        with patch("subprocess.run", side_effect=FileNotFoundError("docker")):
            receipt = self._driver(tmp_path).stop("kaspa-node")
        assert receipt.failed
        assert "Cannot run docker" in receipt.error

    def test_logs_tail(self, tmp_path):
        with patch("subprocess.run", return_value=_completed("a\nb\nc\n")):
            assert self._driver(tmp_path).logs("kaspa-node", tail=2) == ["b", "c"]


# ── Node RPC ─────────────────────────────────────────────────────────


class TestParseSyncReply:
    def test_camel_case_in_result(self):
        raw = '{"jsonrpc": "2.0", "result": {"currentHeight": 5, "targetHeight": 10, "isSynced": false}}'
        sample = parse_sync_reply(raw)
        assert (sample.current_height, sample.target_height, sample.is_synced) == (5, 10, False)

    def test_bare_snake_case(self):
        sample = parse_sync_reply(b'{"current_height": 10, "target_height": 10, "is_synced": true}')
        assert sample.is_synced

    def test_error_reply(self):
        with pytest.raises(ConnectivityError, match="Node error"):
            parse_sync_reply('{"error": {"code": -1, "message": "not ready"}}')

    def test_not_json(self):
        with pytest.raises(ConnectivityError, match="Malformed"):
            parse_sync_reply("<html>")

    def test_not_an_object(self):
        with pytest.raises(ConnectivityError, match="not an object"):
            parse_sync_reply("[1, 2]")

    def test_negative_height(self):
        with pytest.raises(ConnectivityError):
            parse_sync_reply('{"currentHeight": -1, "targetHeight": 10}')


class TestHttpNodeRpc:
    def test_unreachable(self):
        rpc = HttpNodeRpc("http://127.0.0.1:9/", timeout=0.5)
        assert rpc.endpoint == "http://127.0.0.1:9"
        with pytest.raises(ConnectivityError) as exc:
            rpc.get_sync_status()
        assert exc.value.target == "http://127.0.0.1:9"


# ── Mocks ────────────────────────────────────────────────────────────


class TestMockContainerDriver:
    def test_start_marks_running(self):
        driver = MockContainerDriver()
        assert driver.start("kaspa-node").ok
        status = driver.status("kaspa-node")
        assert status.running and status.healthy

    def test_unknown_service_does_not_exist(self):
        assert not MockContainerDriver().status("nope").exists

    def test_set_failure(self):
        driver = MockContainerDriver()
        driver.set_failure("start", "kaspa-node", "disk full")
        receipt = driver.start("kaspa-node")
        assert receipt.failed
        assert receipt.error == "disk full"
        assert not driver.status("kaspa-node").running
        driver.clear_failure("start", "kaspa-node")
        assert driver.start("kaspa-node").ok

    def test_stop(self):
        driver = MockContainerDriver()
        driver.start("kaspa-node")
        driver.stop("kaspa-node")
        assert not driver.status("kaspa-node").running

    def test_call_log(self):
        driver = MockContainerDriver()
        driver.prepare("a")
        driver.start("a")
        driver.status("a")
        assert driver.call_log == [("prepare", "a"), ("start", "a"), ("status", "a")]
        assert driver.calls("start") == ["a"]

    def test_unreachable(self):
        driver = MockContainerDriver()
        driver.set_unreachable()
        with pytest.raises(ConnectivityError):
            driver.status("a")

    def test_logs_tail(self):
        driver = MockContainerDriver()
        driver.set_logs("a", ["1", "2", "3"])
        assert driver.logs("a", tail=2) == ["2", "3"]


class TestScriptedNodeRpc:
    def test_last_reading_repeats(self):
        rpc = ScriptedNodeRpc([(1, 10, False), (10, 10, True)])
        assert rpc.get_sync_status().current_height == 1
        assert rpc.get_sync_status().is_synced
        assert rpc.get_sync_status().is_synced
        assert rpc.calls == 3

    def test_raises_scripted_error(self):
        rpc = ScriptedNodeRpc([ConnectivityError("down"), (1, 1, True)])
        with pytest.raises(ConnectivityError):
            rpc.get_sync_status()
        assert rpc.get_sync_status().is_synced

    def test_empty_script_rejected(self):
        with pytest.raises(ValueError):
            ScriptedNodeRpc([])
