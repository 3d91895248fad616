# Made by trex099
# https://github.com/Trex099/Glint
"""
Intel iGPU SR-IOV host setup

This module prepares a host for passing i915 virtual functions to a VM:
- GPU generation table (OpROM file, x-igd-lpc requirement)
- i915-sriov-dkms installation per distribution
- vfio / udev / modprobe.d / tmpfiles.d configuration
- kernel command line patching for limine and GRUB
- making sure the default boot entry runs a kernel the dkms module was built for
"""

import os
import re
import glob
import logging
import platform
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional

import questionary
import requests

from config import CONFIG, DISTRO_INFO
from core_utils import (
    print_header, print_info, print_success, print_warning,
    run_command_live, try_capture, command_ok, command_exists,
    run_as_user, read_file, write_root_file, download_file, confirm,
    safe_ask, safe_int_ask,
)
from .error_handling import HardwareError, DependencyError, ErrorCategory, ErrorSeverity
from .state import read_kv, update_kv, update_kv_text
from .system import qemu_version

logger = logging.getLogger(__name__)

LIMINE_DEFAULTS = "/etc/default/limine"
LIMINE_CONF = "/boot/limine.conf"
GRUB_DEFAULTS = "/etc/default/grub"
SYSTEMD_BOOT_ENTRIES = "/boot/loader/entries"
SYSTEMD_BOOT_LOADER = "/boot/loader/loader.conf"

VFIO_MODULES_LOAD = "/etc/modules-load.d/vfio.conf"
UDEV_RULE = "/etc/udev/rules.d/99-i915-vf-vfio.rules"
MODPROBE_CONF = "/etc/modprobe.d/i915.conf"
TMPFILES_CONF = "/etc/tmpfiles.d/i915-sriov-numvfs.conf"
PF_DEVICE_ID_PATH = "/sys/devices/pci0000:00/0000:00:02.0/device"
DEFAULT_DEVICE_ID = "a7a0"

IOMMU_ARGS = "intel_iommu=on iommu=pt"


class SriovError(HardwareError):
    """SR-IOV configuration failure"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.HARDWARE)
        kwargs.setdefault('code', 'MPC-E410')
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class GpuProfile:
    """One row of the Intel iGPU generation table"""
    gen: int
    name: str
    cpus: str
    rom_file: str
    igd_lpc: bool
    driver: str = "i915"

    @property
    def rom_url(self) -> str:
        return f"{CONFIG['IGPU_ROM_BASE_URL']}/{self.rom_file}"

    def as_vars(self) -> Dict[str, str]:
        return {
            "GPU_GEN": str(self.gen),
            "GPU_DRIVER": self.driver,
            "GPU_ROM_FILE": self.rom_file,
            "GPU_ROM_URL": self.rom_url,
            "GPU_IGD_LPC": "yes" if self.igd_lpc else "no",
        }


GPU_GENERATIONS: Dict[int, GpuProfile] = {p.gen: p for p in (
    GpuProfile(1, "Sandy Bridge (2nd)", "Core i3/5/7 2xxx", "SNB_GOPv2_igd.rom", False),
    GpuProfile(2, "Ivy Bridge (3rd)", "Core i3/5/7 3xxx", "IVB_GOPv3_igd.rom", False),
    GpuProfile(3, "Haswell/BDW (4th/5th)", "Core i3/5/7/9 4xxx-5xxx", "HSW_BDW_GOPv5_igd.rom", False),
    GpuProfile(4, "Skylake->CML (6-10th)", "Core i3/5/7/9 6xxx-10xxx", "SKL_CML_GOPv9_igd.rom", False),
    GpuProfile(5, "Coffee/Comet (8-10th)", "Core i3/5/7/9 8xxx-10xxx", "CFL_CML_GOPv9.1_igd.rom", False),
    GpuProfile(6, "Gemini Lake", "Pentium/Celeron J/N 4xxx/5xxx", "GLK_GOPv13_igd.rom", False),
    GpuProfile(7, "Ice Lake mobile (10th)", "Core i3/5/7 10xxG1/G4/G7", "ICL_GOPv14_igd.rom", True),
    GpuProfile(8, "Rocket/Tiger/Alder/Raptor", "Core i3/5/7/9 11xxx-14xxx (desktop/mainstream)",
               "RKL_TGL_ADL_RPL_GOPv17_igd.rom", True),
    GpuProfile(9, "Alder/Raptor Lake H/P/U mobile", "Core i3/5/7/9 12xxx-14xxx H/P/U (Iris Xe)",
               "ADL-H_RPL-H_GOPv21_igd.rom", True),
    GpuProfile(10, "Jasper Lake", "Pentium/Celeron N 4xxx/5xxx/6xxx", "JSL_GOPv18_igd.rom", False),
    GpuProfile(11, "Alder Lake-N / Twin Lake", "N-series", "ADL-N_TWL_GOPv21_igd.rom", True),
    GpuProfile(12, "Arrow/Meteor Lake", "Core Ultra", "ARL_MTL_GOPv22_igd.rom", True),
    GpuProfile(13, "Lunar Lake", "Core Ultra 2xx", "LNL_GOPv2X_igd.rom", True),
)}


def gpu_profile(gen) -> GpuProfile:
    """Profile for a generation number; unknown values fall back to the default (9)."""
    try:
        return GPU_GENERATIONS[int(gen)]
    except (KeyError, TypeError, ValueError):
        logger.warning("Unknown GPU generation %r, using %s", gen, CONFIG['GPU_DEFAULT_GEN'])
        return GPU_GENERATIONS[CONFIG['GPU_DEFAULT_GEN']]


def kernel_gpu_args(vf_count: int, quiet_boot: bool = True) -> str:
    args = f"i915.enable_guc=3 i915.max_vfs={vf_count} module_blacklist=xe"
    return f"{args} plymouth.enable=0" if quiet_boot else args


def prompt_gpu_generation(default: int = None) -> GpuProfile:
    default = default or CONFIG['GPU_DEFAULT_GEN']
    choices = [
        questionary.Choice(f"{p.gen:>2}  {p.name:<32} {p.cpus}", value=p.gen)
        for p in GPU_GENERATIONS.values()
    ]
    if CONFIG.get('ASSUME_YES'):
        return gpu_profile(default)
    gen = safe_ask(questionary.select(
        "Select Intel CPU generation:", choices=choices,
        default=choices[default - 1], use_indicator=True
    ).ask())
    return gpu_profile(gen)


def warn_qemu_legacy_mode(profile: GpuProfile, version=None):
    """QEMU 10.1+ limits legacy IGD mode to Sandy Bridge through Comet Lake."""
    version = version or qemu_version()
    if profile.igd_lpc and version >= (10, 1):
        print_warning(f"QEMU {version[0]}.{version[1]} detected. QEMU 10.1+ restricts legacy IGD mode "
                      "to Sandy Bridge → Comet Lake.")
        print_warning("Alder Lake / Raptor Lake may require UPT mode instead of legacy mode.")
        print_warning("See: https://github.com/LongQT-sea/intel-igpu-passthru (footnote 4)")
        print_warning("If passthrough fails, try removing --machine pc and switching to UPT mode.")
        return True
    return False


# --- Config file rendering ---

def render_udev_rule(device_id: str) -> str:
    return (
        'ACTION=="add", SUBSYSTEM=="pci", KERNEL=="0000:00:02.[1-7]", ATTR{vendor}=="0x8086", '
        f'ATTR{{device}}=="0x{device_id}", DRIVER!="vfio-pci", '
        "RUN+=\"/bin/sh -c 'echo $kernel > /sys/bus/pci/devices/$kernel/driver/unbind; "
        "echo vfio-pci > /sys/bus/pci/devices/$kernel/driver_override; modprobe vfio-pci; "
        "echo $kernel > /sys/bus/pci/drivers/vfio-pci/bind'\"\n"
    )


def render_modprobe_conf(vf_count: int) -> str:
    return (
        "# i915 SR-IOV options (also set in kernel cmdline for early init)\n"
        "blacklist xe\n"
        f"options i915 enable_guc=3 max_vfs={vf_count}\n"
    )


def render_tmpfiles_conf(vf_count: int) -> str:
    return (
        "# Activate i915 SR-IOV VFs after i915 driver is loaded\n"
        f"w /sys/devices/pci0000:00/0000:00:02.0/sriov_numvfs - - - - {vf_count}\n"
    )


def pf_device_id() -> str:
    device = read_file(PF_DEVICE_ID_PATH).strip()
    return re.sub(r'^0x', '', device) or DEFAULT_DEVICE_ID


# --- Kernel command line ---

_LIMINE_CMDLINE_RE = re.compile(r'(KERNEL_CMDLINE\[[^\]]*\]\+="[^"]*)"')
_GRUB_CMDLINE_RE = re.compile(r'(GRUB_CMDLINE_LINUX_DEFAULT="[^"]*)"')


def patch_limine_text(text: str, args: str, marker: str = "i915.enable_guc=") -> str:
    """Drop ' splash' and append args to every KERNEL_CMDLINE[...]+= line."""
    text = text.replace(" splash", "")
    if marker in text:
        return text
    return _LIMINE_CMDLINE_RE.sub(lambda m: f'{m.group(1)} {args}"', text)


def patch_grub_text(text: str, args: str, marker: str = "i915.enable_guc=") -> str:
    """Drop ' splash' and append args to GRUB_CMDLINE_LINUX_DEFAULT."""
    text = text.replace(" splash", "")
    if marker in text:
        return text
    return _GRUB_CMDLINE_RE.sub(lambda m: f'{m.group(1)} {args}"', text, count=1)


def grub_cfg_path(os_family: str) -> str:
    return "/boot/grub2/grub.cfg" if os_family == "fedora" else "/boot/grub/grub.cfg"


def grub_regenerate_command(os_family: str) -> List[str]:
    if os_family in ("ubuntu", "proxmox"):
        return ["update-grub"]
    if os_family == "fedora":
        return ["grub2-mkconfig", "-o", grub_cfg_path(os_family)]
    return ["grub-mkconfig", "-o", grub_cfg_path(os_family)]


def kernel_args_present(marker: str = "i915.enable_guc=") -> bool:
    return any(marker in read_file(path) for path in (LIMINE_DEFAULTS, GRUB_DEFAULTS))


# --- Boot entry selection ---

def limine_default_entry(kernel: str) -> str:
    """DEFAULT_ENTRY glob for a kernel release such as 6.12.9-2-cachyos-lts."""
    if "lts" in kernel.lower():
        return "*lts"
    return "*" + re.sub(r'^[0-9.-]*-[0-9]*-', '', kernel)


def set_limine_default_text(text: str, entry: str) -> str:
    line = f'DEFAULT_ENTRY="{entry}"'
    if re.search(r'^DEFAULT_ENTRY=', text, re.M):
        return re.sub(r'^DEFAULT_ENTRY=.*$', line, text, flags=re.M)
    return text + ("" if not text or text.endswith("\n") else "\n") + line + "\n"


def limine_lts_entry_number(limine_conf: str) -> Optional[int]:
    """
    1-based entry number of the first linux*lts entry in a generated limine.conf.

    Every line starting with '/' is an entry, group headers ('/+') included.
    """
    count = 0
    for line in limine_conf.splitlines():
        if re.match(r'^\s*/', line):
            count += 1
        if re.match(r'^  //linux[^/]*lts', line):
            return count
    return None


def patch_limine_conf_text(text: str, entry_number: int) -> str:
    text = re.sub(r'^remember_last_entry: yes', 'remember_last_entry: no', text, flags=re.M)
    return re.sub(r'^default_entry: .*$', f'default_entry: {entry_number}', text, flags=re.M)


_QUOTED_RE = re.compile(r"""['"]([^'"]*)""")


def grub_entry_for_kernel(grub_cfg: str, kernel: str) -> Optional[str]:
    """
    GRUB_DEFAULT value ("title" or "submenu>title") for the first non-recovery
    menuentry mentioning the kernel release.
    """
    submenu = ""
    for line in grub_cfg.splitlines():
        if line.startswith("submenu "):
            m = _QUOTED_RE.search(line)
            submenu = m.group(1) if m else ""
        elif line.startswith("}") and submenu:
            submenu = ""
        elif "menuentry " in line and kernel in line and not re.search(r'recovery|rescue', line):
            m = _QUOTED_RE.search(line)
            if not m:
                continue
            return f"{submenu}>{m.group(1)}" if submenu else m.group(1)
    return None


# --- Package state ---

def dkms_package_installed() -> bool:
    if (command_ok(["pacman", "-Q", "i915-sriov-dkms"])
            or command_ok(["dpkg", "-s", "i915-sriov-dkms"])
            or command_ok(["rpm", "-q", "akmod-i915-sriov"])):
        return True
    return bool(re.search(r'i915.sriov', try_capture(["dkms", "status"])))


def latest_dkms_deb_url(session=None) -> Optional[str]:
    """browser_download_url of the *_amd64.deb asset of the latest release."""
    http = session or requests
    try:
        response = http.get(CONFIG['SRIOV_DKMS_RELEASES_API'], timeout=CONFIG['DOWNLOAD_TIMEOUT'])
        response.raise_for_status()
        assets = response.json().get("assets", [])
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning("GitHub release lookup failed: %s", e)
        return None
    for asset in assets:
        if asset.get("name", "").endswith("_amd64.deb"):
            return asset.get("browser_download_url")
    return None


class SriovManager:
    """
    Host-side SR-IOV configuration for the Intel iGPU

    Used by phase1 (full setup with generation prompt) and phase2 (reusing
    the generation and VF count chosen for the VM).
    """

    def __init__(self, os_family: str, user: str, gpu_conf_path: str = None):
        self.logger = logging.getLogger('minipc.sriov')
        self.os_family = os_family
        self.user = user
        self.gpu_conf_path = gpu_conf_path or CONFIG['HOST_GPU_CONF']
        self.kernel = platform.release()

    # --- persisted GPU variables ---

    def load_gpu_vars(self) -> Dict[str, str]:
        return read_kv(self.gpu_conf_path)

    def save_gpu_vars(self, profile: GpuProfile, vf_count: int, args: str) -> str:
        updates = dict(profile.as_vars(), GPU_VF_COUNT=str(vf_count), KERNEL_GPU_ARGS=args)
        if os.path.exists(self.gpu_conf_path):
            update_kv(self.gpu_conf_path, updates)
        else:
            header = "# vm.conf: GPU section written by phase1, phase2 fills the rest\n"
            updates.update(GPU_ROM_PATH=CONFIG['GPU_ROM_PATH'], GPU_PASSTHROUGH="yes")
            os.makedirs(os.path.dirname(self.gpu_conf_path) or ".", exist_ok=True)
            with open(self.gpu_conf_path, 'w', encoding='utf-8') as f:
                f.write(update_kv_text(header, updates))
        self.logger.info("GPU variables saved to %s", self.gpu_conf_path)
        print_success(f"GPU config saved to {self.gpu_conf_path}")
        return self.gpu_conf_path

    # --- phase 1 step ---

    def setup_host(self, interactive: bool = True) -> bool:
        """
        Full host setup. Returns False when skipped.

        When both the kernel arguments and the dkms package are already in
        place only the kernel-boot check runs.
        """
        print_header("Intel iGPU SR-IOV + IOMMU")
        args_set = kernel_args_present()
        dkms_set = dkms_package_installed()
        if args_set and dkms_set:
            print_success("SR-IOV kernel args + i915-sriov-dkms already in place.")
            self.ensure_kernel_boot()
            return False
        if args_set:
            print_warning("Kernel args already set but i915-sriov-dkms is NOT installed: continuing to install dkms.")

        if not confirm("Set up Intel iGPU SR-IOV (needed for GPU passthrough to VM)?"):
            print_info("Skipped.")
            return False

        saved = self.load_gpu_vars()
        if interactive:
            profile = prompt_gpu_generation(int(saved.get("GPU_GEN") or CONFIG['GPU_DEFAULT_GEN']))
            vf_count = safe_int_ask("How many VFs?", CONFIG['HOST_DEFAULT_VF_COUNT'], minimum=1, maximum=7)
        else:
            profile = gpu_profile(saved.get("GPU_GEN") or CONFIG['GPU_DEFAULT_GEN'])
            vf_count = int(saved.get("GPU_VF_COUNT") or CONFIG['HOST_DEFAULT_VF_COUNT'])
        args = kernel_gpu_args(vf_count)
        self.save_gpu_vars(profile, vf_count, args)

        self.install_dkms()
        self.ensure_kernel_boot()
        self.write_host_config(vf_count)
        self.rebuild_initramfs()
        self.patch_kernel_cmdline(args)
        print_success("SR-IOV host setup done. VFs will be active after reboot.")
        return True

    # --- phase 2 variant ---

    def setup_for_vm(self, vf_count: int, gpu_args: str) -> bool:
        """Host SR-IOV install driven by a VM configuration."""
        print_header("Host SR-IOV Setup (i915)")
        args_set = kernel_args_present("i915.max_vfs=")
        dkms_set = dkms_package_installed()
        if args_set and dkms_set:
            print_success("SR-IOV kernel args + i915-sriov-dkms already present (set by phase1). Skipping.")
            return False
        if args_set:
            print_warning("Kernel args already set but i915-sriov-dkms not installed: continuing to install dkms.")

        self.remove_disable_vga()
        self.install_dkms()
        self.patch_kernel_cmdline(f"{IOMMU_ARGS} {gpu_args}", marker=f"i915.max_vfs={vf_count}")
        self.write_host_config(vf_count)
        self.rebuild_initramfs()
        print_warning("Kernel args/SR-IOV host config updated. Reboot host before VF attach if VFs are not visible yet.")
        return True

    def remove_disable_vga(self):
        """disable_vga=1 breaks IGD passthrough."""
        targets = glob.glob("/etc/modprobe.d/*") + [GRUB_DEFAULTS, LIMINE_DEFAULTS]
        found = [path for path in targets if "disable_vga=1" in read_file(path)]
        if not found:
            return
        print_warning("Found 'disable_vga=1' in your config: this BREAKS iGPU passthrough! Removing it now...")
        for path in found:
            write_root_file(path, read_file(path).replace("disable_vga=1", ""))

    # --- dkms ---

    def install_dkms(self):
        print_info("Installing i915-sriov-dkms on host...")
        if self.os_family == "arch":
            if not command_exists("paru"):
                print_warning("paru not found. Install i915-sriov-dkms from AUR manually.")
                return
            cmd = run_as_user(self.user, ["paru", "-S", "--noconfirm", "--needed", "i915-sriov-dkms"])
            if run_command_live(cmd) is None:
                print_warning("AUR install failed; install i915-sriov-dkms manually.")
        elif self.os_family == "fedora":
            if run_command_live(["dnf", "-y", "copr", "enable", "matte23/akmods"], as_root=True) is None:
                print_warning("Could not enable COPR matte23/akmods")
            if run_command_live(["dnf", "install", "-y", "akmod-i915-sriov"], as_root=True) is None:
                print_warning("Could not install akmod-i915-sriov")
            run_command_live(["akmods", "--force"], as_root=True, check=False)
            run_command_live(["depmod", "-a"], as_root=True, check=False)
        elif self.os_family in ("ubuntu", "proxmox"):
            if command_ok(["dpkg", "-s", "i915-sriov-dkms"]):
                print_success("i915-sriov-dkms already installed")
                return
            url = latest_dkms_deb_url()
            if not url:
                print_warning("Could not resolve i915-sriov-dkms .deb URL; install manually.")
                return
            deb = os.path.join(tempfile.gettempdir(), "i915-sriov-dkms_latest_amd64.deb")
            if not download_file(url, deb):
                raise DependencyError("Could not download i915-sriov-dkms",
                                      suggestions=[f"Download {url} and install it with dpkg -i"])
            if run_command_live(["dpkg", "-i", deb], as_root=True) is None:
                run_command_live(["apt-get", "install", "-f", "-y"], as_root=True)

    # --- default kernel ---

    def ensure_kernel_boot(self) -> Optional[str]:
        """
        Make the default boot entry run a kernel i915-sriov-dkms was built for.

        Returns the kernel configured as default, or None when nothing changed.
        """
        status = try_capture(["dkms", "status"])
        if re.search(rf'i915-sriov.*{re.escape(self.kernel)}', status):
            print_success(f"i915-sriov-dkms built for running kernel ({self.kernel}) ✓")
            return None
        compat = ""
        for line in status.splitlines():
            if "i915-sriov" in line:
                fields = [f for f in re.split(r'[, ]+', line) if f]
                compat = fields[1] if len(fields) > 1 else ""
                break
        if not compat:
            print_warning("i915-sriov-dkms not built for any kernel yet: check 'dkms status' after reboot.")
            return None

        print_warning(f"i915-sriov-dkms NOT built for running kernel ({self.kernel}).")
        print_warning(f"Built for: {compat}, configuring system to boot {compat} by default.")
        if os.path.isfile(LIMINE_DEFAULTS):
            self._set_limine_default(compat)
        elif os.path.isfile(GRUB_DEFAULTS):
            self._set_grub_default(compat)
        elif os.path.isdir(SYSTEMD_BOOT_ENTRIES):
            self._set_systemd_boot_default(compat)
        else:
            print_warning(f"Unknown bootloader: manually set default kernel to: {compat}")
        print_warning(f"Reboot will run {compat}: SR-IOV active on that kernel.")
        self.logger.info("default boot kernel set to %s", compat)
        return compat

    def _set_limine_default(self, kernel: str):
        entry = limine_default_entry(kernel)
        write_root_file(LIMINE_DEFAULTS, set_limine_default_text(read_file(LIMINE_DEFAULTS), entry))
        run_command_live(["limine-update"], as_root=True)
        # limine-update regenerates limine.conf, so it is patched afterwards
        if not os.path.isfile(LIMINE_CONF):
            return
        conf = try_capture(["cat", LIMINE_CONF], as_root=True)
        number = limine_lts_entry_number(conf)
        if number is None:
            print_warning(f"Could not find LTS entry in {LIMINE_CONF}: set default_entry manually")
            return
        write_root_file(LIMINE_CONF, patch_limine_conf_text(conf, number) + "\n")
        print_success(f"Limine default boot → entry {number} = {kernel}")

    def _set_grub_default(self, kernel: str):
        cfg = grub_cfg_path(self.os_family)
        regenerate = grub_regenerate_command(self.os_family)
        run_command_live(regenerate, as_root=True)
        entry = grub_entry_for_kernel(try_capture(["cat", cfg], as_root=True), kernel)
        if not entry:
            print_warning(f"Could not find GRUB entry for {kernel}: set GRUB_DEFAULT manually in {GRUB_DEFAULTS}")
            return
        text = re.sub(r'^GRUB_DEFAULT=.*$', f'GRUB_DEFAULT="{entry}"', read_file(GRUB_DEFAULTS), flags=re.M)
        write_root_file(GRUB_DEFAULTS, text)
        run_command_live(regenerate, as_root=True)
        print_success(f'GRUB default boot → "{entry}"')

    def _set_systemd_boot_default(self, kernel: str):
        entry = None
        for path in sorted(glob.glob(os.path.join(SYSTEMD_BOOT_ENTRIES, "*"))):
            if kernel in read_file(path):
                entry = os.path.basename(path)
                break
        if not entry:
            print_warning(f"Could not auto-set systemd-boot default: set 'default {kernel}' in {SYSTEMD_BOOT_LOADER}")
            return
        loader = read_file(SYSTEMD_BOOT_LOADER)
        if re.search(r'^default ', loader, re.M):
            loader = re.sub(r'^default .*$', f'default {entry}', loader, flags=re.M)
        else:
            loader = f"default {entry}\n"
        write_root_file(SYSTEMD_BOOT_LOADER, loader)
        print_success(f"systemd-boot default → {entry}")

    # --- host files ---

    def write_host_config(self, vf_count: int):
        write_root_file(VFIO_MODULES_LOAD, "vfio-pci\n")
        write_root_file(UDEV_RULE, render_udev_rule(pf_device_id()))
        write_root_file(MODPROBE_CONF, render_modprobe_conf(vf_count))
        print_success("i915 modprobe.d options written.")
        write_root_file(TMPFILES_CONF, render_tmpfiles_conf(vf_count))
        print_success(f"tmpfiles.d VF creation written ({TMPFILES_CONF}).")

    def rebuild_initramfs(self):
        cmd = DISTRO_INFO.get(self.os_family, {}).get('initramfs')
        if not cmd:
            return
        if run_command_live(cmd, as_root=True) is None:
            print_warning("Initramfs rebuild reported errors; continuing.")

    def patch_kernel_cmdline(self, args: str, marker: str = "i915.enable_guc="):
        if os.path.isfile(LIMINE_DEFAULTS):
            write_root_file(LIMINE_DEFAULTS, patch_limine_text(read_file(LIMINE_DEFAULTS), args, marker))
            run_command_live(["limine-update"], as_root=True)
            print_success("Limine updated with SR-IOV args (enable_guc + max_vfs).")
        elif os.path.isfile(GRUB_DEFAULTS):
            write_root_file(GRUB_DEFAULTS, patch_grub_text(read_file(GRUB_DEFAULTS), args, marker))
            run_command_live(grub_regenerate_command(self.os_family), as_root=True)
            print_success("GRUB updated with SR-IOV args.")
        else:
            raise SriovError(
                "No limine or GRUB defaults found, kernel command line not patched",
                severity=ErrorSeverity.WARNING,
                suggestions=[f"Add to the kernel command line manually: {args}"]
            )
