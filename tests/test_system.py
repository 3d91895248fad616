"""
Tests for host detection helpers.
"""

from minipc.system import (
    SystemInfo, detect_os, cpu_generation, parse_kernel_version, kernel_at_least,
    display_devices, dkms_sriov_kernel, check_requirements,
)


LSPCI = (
    "00:00.0 Host bridge: Intel Corporation Device 4621 (rev 02)\n"
    "00:02.0 VGA compatible controller: Intel Corporation Alder Lake-P GT2 [Iris Xe Graphics] (rev 0c)\n"
    "01:00.0 3D controller: NVIDIA Corporation GA107M\n"
    "02:00.0 Display controller: Advanced Micro Devices, Inc. [AMD/ATI] Navi 24\n"
)


def _info(**overrides):
    values = dict(os_family="arch", os_name="CachyOS", cpu_model="i7-12700H", cpu_gen="",
                  threads=20, ram_mb=32768, kernel="6.12.9-2-cachyos", igpu="Intel Iris Xe",
                  dgpu="", uefi=True, iommu_active=True, sriov_dkms_kernel="")
    values.update(overrides)
    return SystemInfo(**values)


class TestDetectOs:
    def test_known_families(self):
        assert detect_os("cachyos") == "arch"
        assert detect_os("linuxmint") == "ubuntu"
        assert detect_os("rocky") == "fedora"

    def test_proxmox(self):
        assert detect_os("proxmox") == "proxmox"

    def test_unknown_falls_back_to_ubuntu(self):
        assert detect_os("gentoo") == "ubuntu"
        assert detect_os("") == "ubuntu"


class TestKernel:
    def test_parse_kernel_version(self):
        assert parse_kernel_version("6.12.9-2-cachyos") == (6, 12)
        assert parse_kernel_version("garbage") == (0, 0)

    def test_kernel_at_least(self):
        assert kernel_at_least("6.8.0-45-generic", 6, 8)
        assert kernel_at_least("6.10.1", 6, 8)
        assert not kernel_at_least("6.5.0-1-generic", 6, 8)
        assert not kernel_at_least("5.19.0", 6, 8)


class TestParsing:
    def test_cpu_generation(self):
        assert cpu_generation("12th Gen Intel(R) Core(TM) i7-12700H").startswith("12th gen")
        assert cpu_generation("Intel(R) Core(TM) i5-13500").startswith("13th gen")
        assert cpu_generation("AMD Ryzen 7 5800U") == ""

    def test_display_devices(self):
        igpu, dgpu = display_devices(LSPCI)
        assert igpu.startswith("Intel Corporation Alder Lake-P")
        assert dgpu.startswith("Advanced Micro Devices")

    def test_display_devices_empty(self):
        assert display_devices("") == ("", "")

    def test_dkms_sriov_kernel(self):
        status = ("nvidia/550.90, 6.12.9-2-cachyos, x86_64: installed\n"
                  "i915-sriov-dkms/2025.01.22, 6.12.9-2-cachyos-lts, x86_64: installed\n")
        assert dkms_sriov_kernel(status) == "6.12.9-2-cachyos-lts"
        assert dkms_sriov_kernel("") == ""


class TestSystemInfo:
    def test_derived_values(self):
        info = _info(threads=16, ram_mb=16384)
        assert info.ram_gb == 16
        assert info.suggested_vcpus == 12
        assert info.max_vcpus == 14


class TestRequirements:
    def test_all_met(self, monkeypatch):
        monkeypatch.setattr("minipc.system.sriov_vfs_present", lambda: False)
        results = check_requirements(_info())
        counted = [r for r in results if r.counted]
        assert all(r.ok for r in counted)
        # dkms and VF rows are informational before the SR-IOV step
        assert [r.name for r in results if not r.counted] == ["i915-sriov-dkms", "SR-IOV VFs"]

    def test_old_kernel_and_legacy_boot(self, monkeypatch):
        monkeypatch.setattr("minipc.system.sriov_vfs_present", lambda: False)
        results = {r.name: r for r in check_requirements(_info(uefi=False, kernel="6.5.0-1-generic"))}
        assert not results["UEFI boot mode"].ok
        assert not results["Kernel ≥ 6.8"].ok
        assert "< 6.8" in results["Kernel ≥ 6.8"].detail

    def test_dkms_kernel_mismatch(self, monkeypatch):
        monkeypatch.setattr("minipc.system.sriov_vfs_present", lambda: True)
        results = {r.name: r for r in check_requirements(_info(sriov_dkms_kernel="6.12.9-2-cachyos-lts"))}
        assert not results["i915-sriov-dkms"].ok
        assert results["i915-sriov-dkms"].counted
        assert results["SR-IOV VFs"].ok
