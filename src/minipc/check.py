# Made by trex099
# https://github.com/Trex099/Glint
"""
Health check: verify what the phases have set up

Read-only. Every check lands in one of three buckets (passed, warning,
failed); informational rows are not counted. The command exits non-zero
when anything failed.
"""

import os
import re
import glob
import logging
import platform
from dataclasses import dataclass, field
from typing import List, Tuple

from rich.table import Table

from config import CONFIG
from core_utils import console, print_header, read_file, try_capture, command_ok, command_exists, user_home
from .error_handling import TunnelError
from .host import SLEEP_TARGETS, unit_state, user_in_group, parse_inet
from .sriov import LIMINE_DEFAULTS, LIMINE_CONF, TMPFILES_CONF, VFIO_MODULES_LOAD, UDEV_RULE
from .state import VmConf, read_kv, read_state
from .system import (
    detect_system, kernel_at_least, sriov_vfs_present, SRIOV_PF_SYSFS,
)
from . import cloudflare

logger = logging.getLogger(__name__)

PROC_CMDLINE = "/proc/cmdline"
SYSFS_CONF = "/etc/sysfs.conf"
VF_SYSFS = "/sys/bus/pci/devices/0000:00:02.1"

PASS = "pass"
WARN = "warn"
FAIL = "fail"
INFO = "info"

_MARKS = {PASS: "[green]✓[/]", WARN: "[yellow]![/]", FAIL: "[red]✗[/]", INFO: "[cyan]i[/]"}


@dataclass
class CheckResult:
    section: str
    status: str
    message: str


@dataclass
class HealthReport:
    """Accumulates check results and the pass/warn/fail counters"""
    results: List[CheckResult] = field(default_factory=list)
    section: str = ""

    def _add(self, status: str, message: str):
        self.results.append(CheckResult(self.section, status, message))

    def ok(self, message: str):
        self._add(PASS, message)

    def flag(self, message: str):
        self._add(WARN, message)

    def bad(self, message: str):
        self._add(FAIL, message)

    def info(self, message: str):
        self._add(INFO, message)

    def check(self, condition: bool, passed: str, otherwise: str, hard: bool = False):
        if condition:
            self.ok(passed)
        elif hard:
            self.bad(otherwise)
        else:
            self.flag(otherwise)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def passed(self) -> int:
        return self.count(PASS)

    @property
    def warnings(self) -> int:
        return self.count(WARN)

    @property
    def failed(self) -> int:
        return self.count(FAIL)

    @property
    def total(self) -> int:
        return self.passed + self.warnings + self.failed


def _active(*units: str) -> bool:
    return any(command_ok(["systemctl", "is-active", "--quiet", u]) for u in units)


def _enabled(*units: str) -> bool:
    return any(command_ok(["systemctl", "is-enabled", "--quiet", u]) for u in units)


def cmdline_value(cmdline: str, key: str) -> str:
    m = re.search(rf'(?:^|\s){re.escape(key)}=(\S+)', cmdline)
    return m.group(1) if m else ""


def tmpfiles_vf_count(text: str) -> str:
    for line in text.splitlines():
        if not line.startswith("#") and "sriov_numvfs" in line:
            return line.split()[-1]
    return ""


def pci_driver(device_sysfs: str) -> str:
    link = os.path.join(device_sysfs, "driver")
    return os.path.basename(os.path.realpath(link)) if os.path.exists(link) else ""


# --- sections ---

def check_system(report: HealthReport):
    report.section = "System"
    info = detect_system()
    report.info(f"CPU: {info.cpu_model}")
    report.info(f"Kernel: {info.kernel}")
    report.info(f"RAM: {info.ram_gb} GB")
    report.info(f"iGPU: {info.igpu or 'not detected'}")
    report.info(f"Storage: {' '.join(info.disks)}")
    return info


def check_phase1(report: HealthReport, info, user: str):
    report.section = "Phase 1"
    report.check(info.uefi, "UEFI boot mode", "Legacy/CSM boot: set UEFI-only in BIOS", hard=True)
    report.check(kernel_at_least(info.kernel, 6, 8), f"Kernel {info.kernel} ≥ 6.8",
                 f"Kernel {info.kernel} < 6.8: SR-IOV requires 6.8+", hard=True)
    report.check(bool(info.igpu), f"Intel iGPU detected: {info.igpu}",
                 "No Intel iGPU detected: check BIOS Primary Display = iGPU", hard=True)
    iommu = sorted(os.listdir("/sys/class/iommu")) if os.path.isdir("/sys/class/iommu") else []
    report.check(bool(iommu), f"VT-d / IOMMU active ({' '.join(iommu)})",
                 "VT-d not active: enable Intel VT-d in BIOS and add intel_iommu=on", hard=True)

    cmdline = read_file(PROC_CMDLINE)
    report.check("intel_iommu=on" in cmdline.split(), "intel_iommu=on in cmdline",
                 "intel_iommu=on missing from /proc/cmdline", hard=True)
    report.check("iommu=pt" in cmdline.split(), "iommu=pt in cmdline",
                 "iommu=pt missing from /proc/cmdline (recommended)")

    report.check(all(unit_state(["is-enabled", t]) == "masked" for t in SLEEP_TARGETS),
                 "System sleep masked", "Sleep not fully masked: the server may suspend")

    iface_line = try_capture(["ip", "route", "show", "default"]).split()
    iface = iface_line[iface_line.index("dev") + 1] if "dev" in iface_line else ""
    ip = parse_inet(try_capture(["ip", "-4", "addr", "show", iface])) if iface else ""
    report.check(bool(ip), f"Network IP: {ip}", "Could not detect network IP")

    report.check(_active("sshd", "ssh"), "sshd active", "sshd not running", hard=True)
    report.check(_enabled("sshd", "ssh"), "sshd enabled (starts on boot)",
                 "sshd not enabled: it will not start on reboot")

    if _active("cloudflared"):
        config = os.path.join(cloudflare.cloudflared_dir(user), "config.yml")
        try:
            hosts = cloudflare.config_hostnames(read_file(config))
        except TunnelError as e:
            logger.warning("unreadable %s: %s", config, e)
            hosts = []
        report.ok(f"cloudflared active: tunnel {hosts[0] if hosts else 'unknown'}")
    else:
        report.bad("cloudflared not running")
    report.check(_enabled("cloudflared"), "cloudflared enabled (auto-starts after reboot)",
                 "cloudflared not enabled on boot")

    report.check(_active("docker"), "docker active", "docker not running")
    report.check(bool(user_in_group(user, "docker")), f"User {user} in docker group",
                 f"User {user} NOT in docker group (active after re-login)")
    report.check(_active("libvirtd", "libvirtd.socket"), "libvirtd active", "libvirtd not running")
    report.check(bool(user_in_group(user, "libvirt")), f"User {user} in libvirt group",
                 f"User {user} NOT in libvirt group")


def check_sriov(report: HealthReport, info):
    report.section = "SR-IOV"
    dkms_kernel = info.sriov_dkms_kernel
    if not dkms_kernel:
        report.bad("i915-sriov-dkms not installed: run phase1 SR-IOV step")
    else:
        report.ok(f"i915-sriov-dkms installed (built for {dkms_kernel})")
        if dkms_kernel == info.kernel:
            report.ok(f"Running on dkms-compatible kernel ({info.kernel})")
        else:
            default = read_kv(LIMINE_DEFAULTS).get("DEFAULT_ENTRY", "")
            remember = re.search(r'^remember_last_entry:\s*yes', read_file(LIMINE_CONF), re.M)
            if default and not remember:
                report.flag(f"Boot default set ({default}): reboot to switch to {dkms_kernel}")
            else:
                report.flag(f"Boot default should be set to {dkms_kernel} "
                            f"(check {LIMINE_DEFAULTS} DEFAULT_ENTRY)")
                if remember:
                    report.flag(f"remember_last_entry: yes in {LIMINE_CONF} overrides the default entry")

    cmdline = read_file(PROC_CMDLINE)
    report.check(cmdline_value(cmdline, "i915.enable_guc") == "3", "i915.enable_guc=3 in cmdline",
                 "i915.enable_guc=3 missing from cmdline")
    max_vfs = cmdline_value(cmdline, "i915.max_vfs")
    report.check(bool(max_vfs), f"i915.max_vfs={max_vfs} in cmdline", "i915.max_vfs not in cmdline")
    report.check(cmdline_value(cmdline, "module_blacklist") == "xe", "module_blacklist=xe in cmdline",
                 "module_blacklist=xe missing: the xe driver may claim the iGPU")

    vf_count = tmpfiles_vf_count(read_file(TMPFILES_CONF))
    if vf_count:
        report.ok(f"tmpfiles VF count = {vf_count}")
    elif "sriov_numvfs" in read_file(SYSFS_CONF):
        report.ok("sysfs.conf sriov_numvfs configured")
    else:
        report.flag("VF count at boot not configured (no tmpfiles or sysfs.conf entry)")

    live = read_file(os.path.join(SRIOV_PF_SYSFS, "sriov_numvfs"), "0").strip() or "0"
    live_vfs = int(live) if live.isdigit() else 0
    report.check(live_vfs > 0, f"SR-IOV VFs active: {live_vfs} VF(s) on 0000:00:02.0",
                 "SR-IOV VFs not yet active (0): reboot required")
    report.check("vfio-pci" in read_file(VFIO_MODULES_LOAD), "vfio-pci in modules-load.d",
                 "vfio-pci not in /etc/modules-load.d/")
    report.check(os.path.isfile(UDEV_RULE), "VF→vfio-pci udev rule present", f"VF udev rule missing ({UDEV_RULE})")

    if live_vfs > 0 or sriov_vfs_present():
        pf = pci_driver(SRIOV_PF_SYSFS)
        vf = pci_driver(VF_SYSFS)
        report.check(pf == "i915", "PF (00:02.0) driver: i915", f"PF driver: {pf or 'unknown'}")
        report.check(vf == "vfio-pci", "VF (00:02.1) driver: vfio-pci",
                     f"VF driver: {vf or 'unknown (reboot or VF not bound)'}")

    dri = sorted(os.path.basename(p) for p in glob.glob("/dev/dri/card*") + glob.glob("/dev/dri/renderD*"))
    report.check(bool(dri), f"/dev/dri present: {' '.join(dri)}", "/dev/dri not present")


def _current_conf() -> Tuple[str, dict]:
    path = read_state().get("LAST_VM_CONF") or CONFIG['HOST_GPU_CONF']
    return path, read_kv(path) if os.path.isfile(path) else {}


def check_phase2(report: HealthReport) -> dict:
    report.section = "Phase 2"
    path, values = _current_conf()
    if values:
        report.ok(f"VM conf present: {path}")
        for key in ("VM_NAME", "VM_RAM_MB", "GPU_DRIVER", "GPU_VF_COUNT", "VM_TUNNEL_HOST"):
            if values.get(key):
                report.info(f"{key} = {values[key]}")
    else:
        report.flag("VM conf not found: run phase2 to create it")

    rom = values.get("GPU_ROM_PATH") or CONFIG['GPU_ROM_PATH']
    report.check(os.path.isfile(rom), f"ROM file present: {rom}", f"ROM file missing: {rom} (phase2 downloads it)")

    name = values.get("VM_NAME") or CONFIG['DEFAULT_VM_NAME']
    if not command_exists("virsh"):
        report.flag("virsh not available")
        return values
    state = try_capture(["virsh", "domstate", name], as_root=True, default="not found")
    if state == "running":
        report.ok(f"VM '{name}' running")
    elif state == "not found":
        report.flag(f"VM '{name}' not created yet")
    else:
        report.flag(f"VM '{name}' state: {state}")
    return values


def check_phase3(report: HealthReport, values: dict):
    report.section = "Phase 3"
    tunnel_host = values.get("VM_TUNNEL_HOST")
    if not tunnel_host:
        report.flag("VM_TUNNEL_HOST not configured: run phase2 + phase3")
        return
    report.info(f"VM tunnel host: {tunnel_host}")
    conf = VmConf(values=values)
    host = read_state().get("VM_SSH_IP") or conf.ssh_host or CONFIG['VM_STATIC_IP'].split("/")[0]
    reachable = command_ok(["ssh", "-o", "ConnectTimeout=5", "-o", "StrictHostKeyChecking=no",
                            "-o", "BatchMode=yes", f"{conf.user or 'ubuntu'}@{host}", "true"])
    report.check(reachable, f"VM SSH reachable at {host}",
                 "VM SSH not reachable (VM may not be running or phase3 not done)")


def print_report(report: HealthReport):
    table = None
    section = None
    for result in report.results:
        if result.section != section:
            if table is not None:
                console.print(table)
            section = result.section
            table = Table(title=section, show_header=False, title_justify="left")
            table.add_column("", width=2)
            table.add_column("Check")
        table.add_row(_MARKS[result.status], result.message)
    if table is not None:
        console.print(table)

    console.print(f"\n  [green]✓ {report.passed} passed[/]   [yellow]! {report.warnings} warnings[/]   "
                  f"[red]✗ {report.failed} failed[/]   ({report.total} checks)\n")
    if report.failed:
        console.print("  [red]Action required: review ✗ items above.[/]")
    elif report.warnings:
        console.print("  [yellow]System mostly ready: review ! warnings above.[/]")
    else:
        console.print("  [green]All checks passed.[/]")


def run_check(user: str = None) -> HealthReport:
    print_header(f"minipc System Verification ({platform.node()})")
    user = user or os.environ.get("SUDO_USER") or os.environ.get("USER") or "root"
    logger.debug("health check for %s (home %s)", user, user_home(user))
    report = HealthReport()
    info = check_system(report)
    check_phase1(report, info, user)
    check_sriov(report, info)
    values = check_phase2(report)
    check_phase3(report, values)
    print_report(report)
    logger.info("health check: %d passed, %d warnings, %d failed",
                report.passed, report.warnings, report.failed)
    return report
