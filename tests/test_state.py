"""
Tests for the KEY="value" conf and state files.
"""

import os

import pytest

from minipc.error_handling import ConfigurationError
from minipc.state import (
    VmConf, parse_kv, update_kv_text, conf_path, list_confs, state_path,
    read_state, set_state, init_state, mark_phase, phase_done, remember_vm,
)


class TestParseKv:
    """Test parse_kv on shell-style files."""

    def test_quoted_and_unquoted_values(self):
        text = 'A="one two"\nB=plain\nC=\'single\'\nexport D="x"\n'
        assert parse_kv(text) == {"A": "one two", "B": "plain", "C": "single", "D": "x"}

    def test_comments_and_inline_comments(self):
        text = '# VM_NAME="ignored"\nVM_NAME=server # trailing\n'
        assert parse_kv(text) == {"VM_NAME": "server"}

    def test_escapes_inside_double_quotes(self):
        assert parse_kv(r'A="say \"hi\" \$HOME"')["A"] == 'say "hi" $HOME'

    def test_later_keys_win(self):
        assert parse_kv('A="1"\nA="2"\n')["A"] == "2"


class TestUpdateKvText:
    """Test in-place key rewriting."""

    def test_rewrites_existing_and_appends_missing(self):
        text = '# header\nA="1"\nB="2"\n'
        result = update_kv_text(text, {"B": "3", "C": "new"})
        assert result == '# header\nA="1"\nB="3"\nC="new"\n'

    def test_commented_key_is_not_rewritten(self):
        result = update_kv_text('# A="1"\n', {"A": "2"})
        assert result.splitlines() == ['# A="1"', 'A="2"']

    def test_values_are_escaped(self):
        result = update_kv_text("", {"A": 'has "quotes" and $vars'})
        assert parse_kv(result)["A"] == 'has "quotes" and $vars'


class TestVmConf:
    """Test the VmConf wrapper."""

    def test_properties(self):
        conf = VmConf({"VM_NAME": "srv", "VM_RAM_MB": "8192", "VM_VCPUS": "4",
                       "VM_STATIC_IP": "192.168.122.50/24", "GPU_PASSTHROUGH": "yes",
                       "GPU_IGD_LPC": "no"})
        assert conf.name == "srv"
        assert conf.ram_mb == 8192
        assert conf.vcpus == 4
        assert conf.disk_gb == 0
        assert conf.ssh_host == "192.168.122.50"
        assert conf.gpu_passthrough is True
        assert conf.igd_lpc is False

    def test_autoinstall_defaults_to_yes(self):
        assert VmConf().autoinstall is True
        assert VmConf({"VM_AUTOINSTALL": "no"}).autoinstall is False

    def test_setitem_stores_strings(self):
        conf = VmConf()
        conf["VM_VCPUS"] = 6
        assert conf["VM_VCPUS"] == "6"
        assert "VM_VCPUS" in conf

    def test_render_has_sections_and_extras(self):
        conf = VmConf({"VM_NAME": "srv", "CUSTOM_KEY": "x"})
        text = conf.render()
        assert text.startswith("# minipc VM configuration: srv\n")
        assert "# --- GPU (SR-IOV) ---" in text
        assert "# --- Extra ---" in text
        assert parse_kv(text)["CUSTOM_KEY"] == "x"

    def test_save_and_load(self, vm_conf_dir):
        conf = VmConf({"VM_NAME": "srv", "VM_USER": "alice"})
        path = conf.save()
        assert path == conf_path("srv")
        assert path.startswith(str(vm_conf_dir))
        loaded = VmConf.load(path)
        assert loaded.user == "alice"
        assert loaded.path == path

    def test_load_missing_raises(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc:
            VmConf.load(str(tmp_path / "nope.conf"))
        assert exc.value.code == "MPC-E201"

    def test_update_patches_file(self):
        conf = VmConf({"VM_NAME": "srv"})
        conf.save()
        conf.update(VM_TUNNEL_HOST="vm-abc.example.com")
        assert VmConf.load(conf.path).get("VM_TUNNEL_HOST") == "vm-abc.example.com"
        assert conf.get("VM_TUNNEL_HOST") == "vm-abc.example.com"

    def test_update_without_path_raises(self):
        with pytest.raises(ConfigurationError):
            VmConf({"VM_NAME": "srv"}).update(A="1")

    def test_list_confs_sorted(self, vm_conf_dir):
        assert list_confs() == []
        VmConf({"VM_NAME": "b"}).save()
        VmConf({"VM_NAME": "a"}).save()
        assert [os.path.basename(p) for p in list_confs()] == ["a.conf", "b.conf"]


class TestPhaseState:
    """Test the .state file helpers."""

    def test_init_state_creates_once(self):
        assert init_state(PHASE1_DONE="yes") is True
        state = read_state()
        assert state["PHASE1_DONE"] == "yes"
        assert state["PHASE2_DONE"] == "no"
        assert init_state() is False
        with open(state_path(), encoding="utf-8") as f:
            assert f.readline().startswith("# Auto-generated")

    def test_mark_phase(self):
        assert phase_done(2) is False
        mark_phase(2)
        assert phase_done(2) is True
        mark_phase(2, done=False)
        assert phase_done(2) is False

    def test_set_state_keeps_other_keys(self):
        set_state(VM_SSH_IP="10.0.0.5")
        set_state(LAST_VM_NAME="srv")
        assert read_state() == {"VM_SSH_IP": "10.0.0.5", "LAST_VM_NAME": "srv"}

    def test_remember_vm(self):
        remember_vm(VmConf({"VM_NAME": "srv"}))
        state = read_state()
        assert state["LAST_VM_NAME"] == "srv"
        assert state["LAST_VM_CONF"] == conf_path("srv")
