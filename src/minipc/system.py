# Made by trex099
# https://github.com/Trex099/Glint
"""
Host detection: distribution family, target user, hardware summary and
the SR-IOV requirements check run at the start of phase 1.
"""

import os
import re
import glob
import platform
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import psutil
from rich.table import Table

from core_utils import (
    console, detect_distro, try_capture, safe_text_ask, user_home,
    print_header, print_info, print_success, print_warning, confirm,
)

logger = logging.getLogger(__name__)

OS_FAMILIES = {
    'arch': ('cachyos', 'arch', 'endeavouros', 'manjaro'),
    'ubuntu': ('ubuntu', 'debian', 'pop', 'linuxmint'),
    'fedora': ('fedora', 'rhel', 'centos', 'rocky', 'almalinux'),
}

SRIOV_PF_SYSFS = "/sys/bus/pci/devices/0000:00:02.0"


def detect_os(distro_id: Optional[str] = None) -> str:
    """Map /etc/os-release ID onto one of arch, ubuntu, fedora or proxmox."""
    distro_id = (distro_id if distro_id is not None else detect_distro()) or ""
    for family, ids in OS_FAMILIES.items():
        if distro_id in ids:
            return family
    if distro_id.startswith("proxmox"):
        return "proxmox"
    if distro_id:
        logger.warning("Unknown OS id %s, treating it as ubuntu", distro_id)
    return "ubuntu"


def os_pretty_name() -> str:
    try:
        with open("/etc/os-release", "r", encoding='utf-8') as f:
            for line in f:
                if line.startswith("PRETTY_NAME="):
                    return line.strip().split("=", 1)[1].strip('"')
    except FileNotFoundError:
        pass
    return "Unknown"


def detect_user() -> str:
    """The user being configured: SUDO_USER, else USER; root gets asked."""
    user = os.environ.get("SUDO_USER") or os.environ.get("USER") or ""
    if user in ("", "root"):
        user = safe_text_ask("Running as root. Enter the main username to configure:")
    return user


def cpu_generation(model: str) -> str:
    """Rough Intel generation label from the CPU model string."""
    if re.search(r'i[3579]-12\d{3}|i[3579]-1[23]\d{3}H', model, re.I):
        return "12th gen Alder Lake (Iris Xe)"
    if re.search(r'i[3579]-13\d{3}', model, re.I):
        return "13th gen Raptor Lake"
    if re.search(r'i[3579]-14\d{3}', model, re.I):
        return "14th gen Raptor Lake Refresh"
    if re.search(r'i[3579]-1[01]\d{3}', model, re.I):
        return "10th/11th gen (Ice/Tiger Lake)"
    return ""


def parse_kernel_version(release: str) -> Tuple[int, int]:
    m = re.match(r'(\d+)\.(\d+)', release)
    if not m:
        return (0, 0)
    return int(m.group(1)), int(m.group(2))


def kernel_at_least(release: str, major: int, minor: int) -> bool:
    return parse_kernel_version(release) >= (major, minor)


def qemu_version() -> Tuple[int, int]:
    """(major, minor) of the host qemu-system-x86_64, (0, 0) if unknown."""
    out = try_capture(["qemu-system-x86_64", "--version"])
    m = re.search(r'version (\d+)\.(\d+)', out)
    return (int(m.group(1)), int(m.group(2))) if m else (0, 0)


def display_devices(lspci_output: str) -> Tuple[str, str]:
    """Split lspci VGA/Display lines into (intel iGPU, other dGPU) descriptions."""
    igpu = dgpu = ""
    for line in lspci_output.splitlines():
        if not re.search(r'VGA|Display', line, re.I):
            continue
        desc = line.split(": ", 1)[-1]
        if "intel" in line.lower():
            igpu = igpu or desc
        else:
            dgpu = dgpu or desc
    return igpu, dgpu


def dkms_sriov_kernel(dkms_status: str) -> str:
    """Kernel the i915-sriov dkms module was built for, from `dkms status`."""
    for line in dkms_status.splitlines():
        if "i915-sriov" in line:
            fields = [f for f in re.split(r'[, ]+', line) if f]
            if len(fields) > 1:
                return fields[1]
    return ""


@dataclass
class SystemInfo:
    """Snapshot of the host hardware relevant to provisioning"""
    os_family: str
    os_name: str
    cpu_model: str
    cpu_gen: str
    threads: int
    ram_mb: int
    kernel: str
    igpu: str
    dgpu: str
    disks: List[str] = field(default_factory=list)
    uefi: bool = False
    iommu_active: bool = False
    sriov_dkms_kernel: str = ""

    @property
    def ram_gb(self) -> int:
        return round(self.ram_mb / 1024)

    @property
    def suggested_vm_ram_mb(self) -> int:
        return self.ram_mb * 60 // 100

    @property
    def suggested_vcpus(self) -> int:
        return max(2, self.threads * 75 // 100)

    @property
    def max_vcpus(self) -> int:
        return max(2, self.threads - 2)


def _cpu_model() -> str:
    try:
        with open("/proc/cpuinfo", "r", encoding='utf-8') as f:
            for line in f:
                if line.startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except FileNotFoundError:
        pass
    return platform.processor() or "unknown"


def _disks() -> List[str]:
    out = try_capture(["lsblk", "-d", "-o", "NAME,SIZE,MODEL", "--noheadings"])
    disks = []
    for line in out.splitlines():
        parts = line.split()
        if len(parts) >= 2 and not parts[0].startswith("loop"):
            disks.append(f"{parts[0]}({parts[1]})")
    return disks


def iommu_active() -> bool:
    return bool(glob.glob("/sys/class/iommu/*"))


def detect_system() -> SystemInfo:
    igpu, dgpu = display_devices(try_capture(["lspci"]))
    model = _cpu_model()
    info = SystemInfo(
        os_family=detect_os(),
        os_name=os_pretty_name(),
        cpu_model=model,
        cpu_gen=cpu_generation(model),
        threads=psutil.cpu_count(logical=True) or os.cpu_count() or 2,
        ram_mb=psutil.virtual_memory().total // (1024 * 1024),
        kernel=platform.release(),
        igpu=igpu,
        dgpu=dgpu,
        disks=_disks(),
        uefi=os.path.isdir("/sys/firmware/efi"),
        iommu_active=iommu_active(),
        sriov_dkms_kernel=dkms_sriov_kernel(try_capture(["dkms", "status"])),
    )
    logger.info("Detected %s", info)
    return info


def display_system(info: SystemInfo):
    table = Table(show_header=False, box=None)
    table.add_column("Item", style="cyan")
    table.add_column("Value")
    table.add_row("OS", f"{info.os_name} ({info.os_family})")
    table.add_row("CPU", f"{info.cpu_model} {f'({info.cpu_gen})' if info.cpu_gen else ''}")
    table.add_row("Threads", str(info.threads))
    table.add_row("RAM", f"{info.ram_gb} GB")
    table.add_row("iGPU", info.igpu or "not detected")
    if info.dgpu:
        table.add_row("dGPU", info.dgpu)
    table.add_row("Storage", " ".join(info.disks))
    table.add_row("Kernel", info.kernel)
    table.add_row("Boot", "UEFI ✓" if info.uefi else "Legacy/CSM ✗ (set UEFI-only in BIOS!)")
    table.add_row("IOMMU", "VT-d active ✓" if info.iommu_active
                  else "VT-d not yet visible (enable in BIOS, set IOMMU kernel args)")
    if info.sriov_dkms_kernel == info.kernel:
        sriov = f"i915-sriov-dkms built for running kernel ✓ ({info.kernel})"
    elif info.sriov_dkms_kernel:
        sriov = f"dkms built for {info.sriov_dkms_kernel}, running {info.kernel}"
    else:
        sriov = "i915-sriov-dkms not installed (SR-IOV step will install)"
    table.add_row("SR-IOV", sriov)
    print_header("System Information")
    console.print(table)


@dataclass
class RequirementResult:
    name: str
    ok: bool
    detail: str
    # informational rows are never counted as warnings
    counted: bool = True


def sriov_vfs_present() -> bool:
    return bool(glob.glob(os.path.join(SRIOV_PF_SYSFS, "virtfn*")))


def check_requirements(info: SystemInfo) -> List[RequirementResult]:
    results = [
        RequirementResult("UEFI boot mode", info.uefi,
                          "UEFI boot mode" if info.uefi else
                          "Legacy/CSM boot detected: BIOS, enable UEFI-only and disable Legacy/CSM"),
        RequirementResult("Kernel ≥ 6.8", kernel_at_least(info.kernel, 6, 8),
                          f"Kernel {info.kernel}" + ("" if kernel_at_least(info.kernel, 6, 8)
                                                    else " < 6.8, SR-IOV requires kernel 6.8+")),
        RequirementResult("Intel iGPU", bool(info.igpu),
                          info.igpu or "No Intel iGPU detected: set 'Primary Display = iGPU' in BIOS"),
        RequirementResult("VT-d / IOMMU", info.iommu_active,
                          "VT-d/IOMMU active" if info.iommu_active else
                          "VT-d not confirmed: enable 'Intel VT-d' in BIOS"),
    ]
    if not info.sriov_dkms_kernel:
        results.append(RequirementResult("i915-sriov-dkms", True,
                                         "not yet installed (SR-IOV step)", counted=False))
    elif info.sriov_dkms_kernel == info.kernel:
        results.append(RequirementResult("i915-sriov-dkms", True,
                                         f"built for running kernel ({info.kernel})"))
    else:
        results.append(RequirementResult(
            "i915-sriov-dkms", False,
            f"built for {info.sriov_dkms_kernel}, running {info.kernel}: "
            f"{info.sriov_dkms_kernel} will be set as default boot"))
    vfs = sriov_vfs_present()
    results.append(RequirementResult("SR-IOV VFs", vfs,
                                     "virtual functions present" if vfs else
                                     "no VFs yet (created after the SR-IOV step and a reboot)",
                                     counted=False))
    return results


def run_requirements_check(info: SystemInfo) -> bool:
    """Print the requirement table. Returns False when the user aborts."""
    results = check_requirements(info)
    table = Table(title="Requirements Check", show_header=False)
    table.add_column("", width=2)
    table.add_column("Requirement", style="bold")
    table.add_column("Detail")
    for r in results:
        mark = "[green]✓[/]" if r.ok and r.counted else ("[cyan]i[/]" if not r.counted else "[yellow]✗[/]")
        table.add_row(mark, r.name, r.detail)
    console.print(table)
    console.print("  Required BIOS/UEFI settings: UEFI-only boot, VGA OpROM = UEFI, "
                  "Intel VT-d enabled, primary display = iGPU")

    warn_count = sum(1 for r in results if r.counted and not r.ok)
    if warn_count:
        print_warning(f"{warn_count} requirement(s) not met: review BIOS settings before running phase2.")
        if not confirm("Continue anyway?", default=True):
            print_info("Aborted. Fix BIOS settings and re-run.")
            return False
    else:
        print_success("All requirements met.")
    return True


def describe_user(user: str) -> str:
    return f"{user} (home: {user_home(user)})"
