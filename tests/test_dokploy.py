"""
Tests for the Dokploy app tunnel helpers and the VM SSH wait.
"""

import base64
import shlex

import pytest
import yaml

from minipc import dokploy
from minipc.dokploy import (
    DokploySetup, tunnel_name_for, render_dokploy_config, encode_credentials, remote_command,
    SSH_POLL_ATTEMPTS, SSH_POLL_INTERVAL, REMOTE_CONF_DIR,
)
from minipc.error_handling import NetworkError
from minipc.state import VmConf

TID = "6f1c2a3b-1111-2222-3333-444455556666"


@pytest.fixture
def conf():
    c = VmConf()
    c["VM_NAME"] = "server-vm"
    c["VM_USER"] = "ubuntu"
    c["VM_STATIC_IP"] = "192.168.122.10/24"
    return c


@pytest.fixture(autouse=True)
def no_keygen(monkeypatch):
    monkeypatch.setattr(dokploy, "try_capture", lambda *a, **kw: "")


class TestRendering:
    def test_tunnel_name(self):
        assert tunnel_name_for("server-vm") == "dokploy-server-vm"
        assert tunnel_name_for("") == "dokploy-server"

    def test_config_routes_wildcard_to_traefik(self):
        config = yaml.safe_load(render_dokploy_config(TID, "example.com"))
        assert config["tunnel"] == TID
        assert config["credentials-file"] == "/etc/cloudflared/creds.json"
        assert config["ingress"] == [
            {"hostname": "*.example.com", "service": "http://dokploy-traefik:80"},
            {"service": "http_status:404"},
        ]

    def test_encode_credentials(self, tmp_path):
        creds = tmp_path / f"{TID}.json"
        creds.write_text('{"TunnelID": "x"}')
        assert base64.b64decode(encode_credentials(str(creds))) == b'{"TunnelID": "x"}'

    def test_remote_command(self):
        words = shlex.split(remote_command(TID, "example.com", "QUJD"))
        env = dict(w.split("=", 1) for w in words[:4])
        assert env["CONF_DIR"] == REMOTE_CONF_DIR
        assert env["DOKPLOY_CREDS_B64"] == "QUJD"
        assert env["DOKPLOY_CONFIG"] == render_dokploy_config(TID, "example.com")
        assert words[4:] == ["sudo", "-E", "bash", "-s"]


class TestWaitForVmSsh:
    def test_reachable_immediately(self, conf):
        setup = DokploySetup(conf, "alice", sleep=lambda s: None, probe=lambda host, port=22: True)
        assert setup.wait_for_vm_ssh() == "192.168.122.10"

    def test_alternative_address(self, conf, monkeypatch):
        monkeypatch.setattr(dokploy, "safe_text_ask", lambda *a, **kw: "10.0.0.7")
        setup = DokploySetup(conf, "alice", sleep=lambda s: None, probe=lambda host, port=22: host == "10.0.0.7")
        assert setup.wait_for_vm_ssh() == "10.0.0.7"
        assert setup.host == "10.0.0.7"

    def test_alternative_unreachable(self, conf, monkeypatch):
        monkeypatch.setattr(dokploy, "safe_text_ask", lambda *a, **kw: "10.0.0.7")
        setup = DokploySetup(conf, "alice", sleep=lambda s: None, probe=lambda host, port=22: False)
        with pytest.raises(NetworkError) as exc:
            setup.wait_for_vm_ssh()
        assert exc.value.code == "MPC-E502"

    def test_polling_exhausted(self, conf, monkeypatch):
        monkeypatch.setattr(dokploy, "safe_text_ask", lambda *a, **kw: "")
        sleeps = []
        setup = DokploySetup(conf, "alice", sleep=sleeps.append, probe=lambda host, port=22: False)
        with pytest.raises(NetworkError) as exc:
            setup.wait_for_vm_ssh()
        assert exc.value.code == "MPC-E503"
        assert sleeps == [SSH_POLL_INTERVAL] * SSH_POLL_ATTEMPTS

    def test_polling_succeeds(self, conf, monkeypatch):
        monkeypatch.setattr(dokploy, "safe_text_ask", lambda *a, **kw: "")
        answers = iter([False, False, True])
        setup = DokploySetup(conf, "alice", sleep=lambda s: None, probe=lambda host, port=22: next(answers))
        assert setup.wait_for_vm_ssh() == "192.168.122.10"
