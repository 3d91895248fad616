"""
Tests for the phase 3 guest helpers and the SSH wait loop.
"""

import shlex

import pytest

from config import CONFIG
from minipc import guest
from minipc.error_handling import NetworkError
from minipc.guest import (
    GuestOptions, GuestSetup, VmChoice, parse_virsh_list, parse_domifaddr, vm_choices,
    build_remote_script, remote_command, tunnel_test_command,
    TUNNEL_TOKEN, TUNNEL_LOGIN, TUNNEL_SKIP,
)
from minipc.state import VmConf, read_state, set_state

VIRSH_LIST = """ Id   Name        State
----------------------------
 1    server-vm   running
 -    old-vm      shut off
"""

DOMIFADDR = """ Name       MAC address          Protocol     Address
-------------------------------------------------------------------------------
 vnet0      52:54:00:aa:bb:cc    ipv4         192.168.122.45/24
"""


@pytest.fixture
def conf():
    c = VmConf()
    for key, value in {"VM_NAME": "server-vm", "VM_USER": "ubuntu", "VM_STATIC_IP": "192.168.122.10/24",
                       "VM_TUNNEL_HOST": "vm-ab12cd34.example.com", "VM_TUNNEL_NAME": "server-vm-ssh"}.items():
        c[key] = value
    return c


class TestParsing:
    def test_virsh_list(self):
        assert parse_virsh_list(VIRSH_LIST) == [("server-vm", "running"), ("old-vm", "shut off")]

    def test_domifaddr(self):
        assert parse_domifaddr(DOMIFADDR) == "192.168.122.45"
        assert parse_domifaddr("") == ""

    def test_vm_choices(self):
        choices = vm_choices([("server-vm", "running")],
                             ["/x/generated-vm/server-vm.conf", "/x/generated-vm/new-vm.conf"])
        assert choices == [
            VmChoice("server-vm", "running", "/x/generated-vm/server-vm.conf"),
            VmChoice("new-vm", "", "/x/generated-vm/new-vm.conf"),
        ]
        assert choices[0].installed and not choices[1].installed

    def test_tunnel_test_command(self):
        cmd = tunnel_test_command("ubuntu", "vm.example.com")
        assert "ProxyCommand=websocat -E --binary - wss://%h" in cmd
        assert cmd[-2:] == ["ubuntu@vm.example.com", "true"]


class TestRemoteScript:
    def test_token_mode(self, conf):
        script = build_remote_script(conf, GuestOptions(tunnel_mode=TUNNEL_TOKEN, tunnel_token="ey J"))
        assert script.startswith("#!/usr/bin/env bash\n# minipc guest setup: server-vm\n")
        assert "CF_TUNNEL_TOKEN='ey J'" in script
        assert 'cloudflared service install "$CF_TUNNEL_TOKEN"' in script

    def test_token_mode_without_token_skips(self, conf):
        script = build_remote_script(conf, GuestOptions(tunnel_mode=TUNNEL_TOKEN))
        assert "CF_TUNNEL_TOKEN" not in script
        assert "Tunnel install skipped" in script

    def test_login_mode(self, conf):
        assert "cloudflared login" in build_remote_script(conf, GuestOptions(tunnel_mode=TUNNEL_LOGIN))

    def test_skip_mode(self, conf):
        assert "Tunnel install skipped" in build_remote_script(conf, GuestOptions(tunnel_mode=TUNNEL_SKIP))

    def test_remote_command(self, conf):
        command = remote_command(conf, GuestOptions(sriov_deb_url="https://example.com/a b.deb"), "/tmp/s.sh")
        words = shlex.split(command.split(";", 1)[0])
        assert "VM_NAME=server-vm" in words
        assert "VM_AUTOINSTALL=yes" in words
        assert "SRIOV_DEB_URL=https://example.com/a b.deb" in words
        assert words[-3:] == ["-E", "bash", "/tmp/s.sh"]
        assert command.endswith("rm -f /tmp/s.sh; exit $status")


class TestWaitForSsh:
    @pytest.fixture
    def setup(self, conf, monkeypatch):
        monkeypatch.setitem(CONFIG, "SSH_POLL_ATTEMPTS_AUTOINSTALL", 5)
        monkeypatch.setitem(CONFIG, "SSH_POLL_REPORT_EVERY", 2)
        sleeps = []
        s = GuestSetup(conf, "alice", sleep=sleeps.append)
        s.sleeps = sleeps
        monkeypatch.setattr(s, "resolve_vm_ip", lambda: "192.168.122.45")
        monkeypatch.setattr(s, "domstate", lambda: "running")
        return s

    def test_saved_address(self, setup, monkeypatch):
        set_state(VM_SSH_IP="10.1.1.1")
        monkeypatch.setattr(setup, "ssh_alive", lambda host: host == "10.1.1.1")
        assert setup.wait_for_ssh() == "10.1.1.1"
        assert setup.sleeps == []

    def test_polls_until_alive(self, setup, monkeypatch):
        answers = iter([False, False, True])
        monkeypatch.setattr(setup, "ssh_alive", lambda host: next(answers))
        assert setup.wait_for_ssh() == "192.168.122.45"
        assert setup.sleeps == [CONFIG['SSH_POLL_INTERVAL']] * 2
        assert setup.host == "192.168.122.45"
        assert read_state()["VM_SSH_IP"] == "192.168.122.45"

    def test_manual_address_unreachable(self, setup, monkeypatch):
        monkeypatch.setattr(setup, "ssh_alive", lambda host: False)
        monkeypatch.setattr(guest, "safe_text_ask", lambda *a, **kw: "10.9.9.9")
        with pytest.raises(NetworkError) as exc:
            setup.wait_for_ssh()
        assert exc.value.code == "MPC-E501"
        assert len(setup.sleeps) == 5

    def test_manual_address_reachable(self, setup, monkeypatch):
        monkeypatch.setattr(setup, "ssh_alive", lambda host: host == "10.9.9.9")
        monkeypatch.setattr(guest, "safe_text_ask", lambda *a, **kw: "10.9.9.9")
        assert setup.wait_for_ssh() == "10.9.9.9"

    def test_empty_answer_polls_again(self, setup, monkeypatch):
        rounds = []
        monkeypatch.setattr(setup, "resolve_vm_ip", lambda: rounds.append(1) or "192.168.122.45")
        monkeypatch.setattr(setup, "ssh_alive", lambda host: host == "10.9.9.9")
        answers = iter(["", "10.9.9.9"])
        monkeypatch.setattr(guest, "safe_text_ask", lambda *a, **kw: next(answers))
        assert setup.wait_for_ssh() == "10.9.9.9"
        assert len(rounds) == 2
        assert len(setup.sleeps) == 10

    def test_manual_install_uses_shorter_bound(self, setup, monkeypatch):
        setup.conf["VM_AUTOINSTALL"] = "no"
        monkeypatch.setattr(setup, "ssh_alive", lambda host: False)
        monkeypatch.setattr(guest, "safe_text_ask", lambda *a, **kw: "10.9.9.9")
        with pytest.raises(NetworkError):
            setup.wait_for_ssh()
        assert len(setup.sleeps) == CONFIG["SSH_POLL_ATTEMPTS"] == 60
