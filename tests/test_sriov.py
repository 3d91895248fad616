"""
Tests for the SR-IOV config rendering and boot loader patching.
"""

import requests

from config import CONFIG
from minipc.sriov import (
    gpu_profile, kernel_gpu_args, render_modprobe_conf, render_tmpfiles_conf, render_udev_rule,
    patch_limine_text, patch_grub_text, grub_regenerate_command, limine_default_entry,
    set_limine_default_text, limine_lts_entry_number, patch_limine_conf_text,
    grub_entry_for_kernel, latest_dkms_deb_url,
)


LIMINE_CONF = """timeout: 5
default_entry: 2
remember_last_entry: yes

/+CachyOS
  //linux-cachyos
    protocol: linux
  //linux-cachyos-lts
    protocol: linux
"""

GRUB_CFG = """menuentry 'Ubuntu' --class ubuntu {
}
submenu 'Advanced options for Ubuntu' $menuentry_id_option 'gnulinux-advanced' {
	menuentry 'Ubuntu, with Linux 6.8.0-45-generic (recovery mode)' {
	}
menuentry 'Ubuntu, with Linux 6.8.0-45-generic' --class ubuntu {
	}
}
"""


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status}")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        return self.response


class TestGpuProfiles:
    def test_known_generation(self):
        profile = gpu_profile(9)
        assert profile.rom_file == "ADL-H_RPL-H_GOPv21_igd.rom"
        assert profile.igd_lpc is True
        assert profile.as_vars()["GPU_IGD_LPC"] == "yes"
        assert profile.rom_url.endswith("/ADL-H_RPL-H_GOPv21_igd.rom")

    def test_unknown_generation_falls_back_to_default(self):
        assert gpu_profile("bogus").gen == CONFIG['GPU_DEFAULT_GEN']
        assert gpu_profile(99).gen == CONFIG['GPU_DEFAULT_GEN']

    def test_string_generation(self):
        assert gpu_profile("4").igd_lpc is False


class TestRendering:
    def test_kernel_gpu_args(self):
        assert kernel_gpu_args(2) == "i915.enable_guc=3 i915.max_vfs=2 module_blacklist=xe plymouth.enable=0"
        assert kernel_gpu_args(7, quiet_boot=False) == "i915.enable_guc=3 i915.max_vfs=7 module_blacklist=xe"

    def test_modprobe_conf(self):
        text = render_modprobe_conf(3)
        assert "blacklist xe\n" in text
        assert "options i915 enable_guc=3 max_vfs=3\n" in text

    def test_tmpfiles_conf(self):
        assert render_tmpfiles_conf(2).endswith("sriov_numvfs - - - - 2\n")

    def test_udev_rule(self):
        rule = render_udev_rule("a7a0")
        assert 'ATTR{device}=="0xa7a0"' in rule
        assert "vfio-pci" in rule


class TestKernelCmdline:
    def test_patch_limine(self):
        text = 'KERNEL_CMDLINE[default]+="quiet splash rw"\n'
        patched = patch_limine_text(text, "i915.enable_guc=3")
        assert patched == 'KERNEL_CMDLINE[default]+="quiet rw i915.enable_guc=3"\n'
        assert patch_limine_text(patched, "i915.enable_guc=3") == patched

    def test_patch_grub(self):
        text = 'GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\nGRUB_TIMEOUT=5\n'
        patched = patch_grub_text(text, "intel_iommu=on iommu=pt", marker="intel_iommu=on")
        assert patched.startswith('GRUB_CMDLINE_LINUX_DEFAULT="quiet intel_iommu=on iommu=pt"\n')

    def test_grub_regenerate_command(self):
        assert grub_regenerate_command("ubuntu") == ["update-grub"]
        assert grub_regenerate_command("fedora") == ["grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"]
        assert grub_regenerate_command("arch") == ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"]


class TestBootEntries:
    def test_limine_default_entry(self):
        assert limine_default_entry("6.12.9-2-cachyos-lts") == "*lts"
        assert limine_default_entry("6.12.9-2-cachyos") == "*cachyos"

    def test_set_limine_default_text(self):
        assert set_limine_default_text('A="1"', "*lts") == 'A="1"\nDEFAULT_ENTRY="*lts"\n'
        assert set_limine_default_text('DEFAULT_ENTRY="*"\n', "*lts") == 'DEFAULT_ENTRY="*lts"\n'

    def test_limine_lts_entry_number(self):
        # group header counts as entry 1
        assert limine_lts_entry_number(LIMINE_CONF) == 3
        assert limine_lts_entry_number("/+Other\n  //linux\n") is None

    def test_patch_limine_conf_text(self):
        patched = patch_limine_conf_text(LIMINE_CONF, 3)
        assert "default_entry: 3" in patched
        assert "remember_last_entry: no" in patched

    def test_grub_entry_for_kernel(self):
        assert grub_entry_for_kernel(GRUB_CFG, "6.8.0-45-generic") == \
            "Advanced options for Ubuntu>Ubuntu, with Linux 6.8.0-45-generic"
        assert grub_entry_for_kernel(GRUB_CFG, "6.99") is None


class TestDkmsRelease:
    def test_picks_amd64_deb(self):
        session = FakeSession(FakeResponse({"assets": [
            {"name": "i915-sriov-dkms_2025.01.22.tar.gz", "browser_download_url": "https://x/tar"},
            {"name": "i915-sriov-dkms_2025.01.22_amd64.deb", "browser_download_url": "https://x/deb"},
        ]}))
        assert latest_dkms_deb_url(session) == "https://x/deb"
        assert session.urls == [CONFIG['SRIOV_DKMS_RELEASES_API']]

    def test_http_error_returns_none(self):
        assert latest_dkms_deb_url(FakeSession(FakeResponse({}, status=403))) is None

    def test_no_deb_asset(self):
        assert latest_dkms_deb_url(FakeSession(FakeResponse({"assets": []}))) is None
