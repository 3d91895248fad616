"""
Tests for VM definition helpers: resource limits, libvirt XML and virt-install.
"""

from xml.etree import ElementTree

import psutil
import pytest

from config import CONFIG
from minipc.error_handling import ConfigurationError
from minipc.state import VmConf
from minipc.system import SystemInfo
from minipc.vm import (
    vcpu_limits, default_ram_gb, disk_path_for, iso_default_path, detect_pf_pci_id,
    split_pci_address, render_virtiofs_xml, render_hostdev_xml, virt_install_command,
    random_tunnel_host, free_gb,
)


def make_info(threads=16, ram_mb=32768):
    return SystemInfo(os_family="arch", os_name="CachyOS", cpu_model="Intel Core i5-12450H",
                      cpu_gen="12", threads=threads, ram_mb=ram_mb, kernel="6.12.10",
                      igpu="Intel UHD", dgpu="")


class TestResources:
    @pytest.mark.parametrize("threads,expected", [
        (16, (12, 14)),
        (4, (2, 2)),
        (2, (2, 2)),
    ])
    def test_vcpu_limits(self, threads, expected):
        assert vcpu_limits(make_info(threads=threads)) == expected

    def test_default_ram(self):
        assert default_ram_gb(make_info(ram_mb=32768)) == 19
        assert default_ram_gb(make_info(ram_mb=4096)) == CONFIG['DEFAULT_MIN_RAM_GB']

    def test_paths(self):
        assert disk_path_for("/var/lib/libvirt/images/", "server-vm") == "/var/lib/libvirt/images/server-vm.qcow2"
        assert iso_default_path("/home/alice", "https://example.com/a/ubuntu.iso") == "/home/alice/iso/ubuntu.iso"

    def test_free_gb_walks_up_to_existing_parent(self, tmp_path):
        expected = psutil.disk_usage(str(tmp_path)).free // (1024 ** 3)
        assert free_gb(str(tmp_path / "not" / "yet" / "created")) == expected


class TestPci:
    def test_detect_pf(self):
        lspci = ("0000:00:00.0 Host bridge [0600]: Intel Corporation Device [8086:4621]\n"
                 "0000:00:02.0 VGA compatible controller [0300]: Intel Corporation Alder Lake-P GT1 [8086:46a3]\n")
        assert detect_pf_pci_id(lspci) == "0000:00:02.0"
        assert detect_pf_pci_id("") == CONFIG['GPU_DEFAULT_PCI_ID']

    def test_split(self):
        assert split_pci_address("0000:00:02.0") == ("0000", "00", "02", "0")
        assert split_pci_address("00:02.0") == ("0000", "00", "02", "0")

    @pytest.mark.parametrize("bad", ["", "00:02", "zz:00:02.0", "0000:00:02.9"])
    def test_split_invalid(self, bad):
        with pytest.raises(ConfigurationError) as exc:
            split_pci_address(bad)
        assert exc.value.code == "MPC-E202"


class TestXml:
    def test_virtiofs(self):
        xml = render_virtiofs_xml("/home/alice/shared", "shared")
        assert '<driver type="virtiofs"/>' in xml
        assert '<source dir="/home/alice/shared"/>' in xml
        assert '<target dir="shared"/>' in xml

    def test_virtiofs_escapes_paths(self):
        xml = render_virtiofs_xml("/home/alice/Tom's & Jerry's <data>", "shared")
        source = ElementTree.fromstring(xml).find("source")
        assert source.get("dir") == "/home/alice/Tom's & Jerry's <data>"

    def test_hostdev_uses_vf1(self):
        xml = render_hostdev_xml("0000:00:02.0", "/usr/share/kvm/igd.rom")
        assert '<address domain="0x0000" bus="0x00" slot="0x02" function="0x1"/>' in xml
        assert '<rom file="/usr/share/kvm/igd.rom"/>' in xml
        assert 'slot="0x02" function="0x0"/>\n</hostdev>' in xml

    def test_hostdev_escapes_rom_path(self):
        xml = render_hostdev_xml("0000:00:02.0", '/opt/roms/"igd" & co.rom')
        assert ElementTree.fromstring(xml).find("rom").get("file") == '/opt/roms/"igd" & co.rom'


class TestVirtInstall:
    def test_command(self):
        conf = VmConf()
        for key, value in {"VM_NAME": "server-vm", "VM_RAM_MB": 8192, "VM_VCPUS": 4, "VM_DISK_GB": 64,
                           "VM_DISK_PATH": "/var/lib/libvirt/images/server-vm.qcow2",
                           "VM_OS_VARIANT": "ubuntu24.04", "VM_ISO_PATH": "/home/alice/iso/u.iso"}.items():
            conf[key] = value
        cmd = virt_install_command(conf)
        assert cmd[0] == "virt-install"
        assert cmd[cmd.index("--name") + 1] == "server-vm"
        assert cmd[cmd.index("--memory") + 1] == "8192"
        assert cmd[cmd.index("--vcpus") + 1] == "4"
        assert cmd[cmd.index("--disk") + 1] == \
            "path=/var/lib/libvirt/images/server-vm.qcow2,size=64,format=qcow2,bus=virtio"
        assert cmd[cmd.index("--memorybacking") + 1] == "source.type=memfd,access.mode=shared"
        assert cmd[cmd.index("--cdrom") + 1] == "/home/alice/iso/u.iso"

    def test_random_tunnel_host(self):
        host = random_tunnel_host("example.com")
        assert host.startswith("vm-") and host.endswith(".example.com")
        assert len(host.split(".")[0]) == len("vm-") + 8
