# Made by trex099
# https://github.com/Trex099/Glint
"""
Phase 2: define and create the server VM

Collects the VM settings (resources, disk, ISO, network, shared folder,
GPU passthrough, tunnel names), writes generated-vm/<name>.conf, prepares
host SR-IOV for the chosen VF count and creates the libvirt domain with
virt-install. Attached devices (virtiofs share, iGPU VF) are added to the
persistent definition only.
"""

import os
import re
import logging
import tempfile
from typing import List, Tuple
from xml.sax.saxutils import quoteattr

import psutil
from rich.table import Table

from config import CONFIG
from core_utils import (
    console, print_header, print_info, print_success, print_warning,
    safe_text_ask, safe_int_ask, confirm, select_from_list,
    run_command_live, run_capture, try_capture, command_ok,
    download_file, chown_to_user, user_home,
)
from . import cloudflare
from .error_handling import (
    get_error_handler, ConfigurationError, NetworkError, ProcessError, ResourceError, StorageError,
)
from .snapshots import SnapperPair
from .sriov import SriovManager, kernel_gpu_args, prompt_gpu_generation, warn_qemu_legacy_mode
from .state import VmConf, conf_path, mark_phase, phase_done, remember_vm
from .system import SystemInfo, detect_os, detect_user, detect_system, display_system, run_requirements_check

logger = logging.getLogger(__name__)

ISO_DOWNLOAD = "download"
ISO_EXISTING = "existing"
ISO_CUSTOM = "custom"

ROM_DOWNLOAD = "download"
ROM_COPY = "copy"


# --- pure helpers ---

def vcpu_limits(info: SystemInfo) -> Tuple[int, int]:
    """(default, maximum) vCPU count for the host."""
    return min(info.suggested_vcpus, info.max_vcpus), info.max_vcpus


def default_ram_gb(info: SystemInfo) -> int:
    return max(CONFIG['DEFAULT_MIN_RAM_GB'], info.suggested_vm_ram_mb // 1024)


def disk_path_for(directory: str, vm_name: str) -> str:
    return f"{directory.rstrip('/')}/{vm_name}.qcow2"


def free_gb(path: str) -> int:
    """Free space of the filesystem holding path, which may not exist yet."""
    while path and not os.path.exists(path):
        path = os.path.dirname(path.rstrip("/"))
    return psutil.disk_usage(path or "/").free // (1024 ** 3)


def iso_default_path(home: str, url: str = None) -> str:
    url = url or CONFIG['VM_ISO_URL']
    return os.path.join(home, "iso", url.rsplit("/", 1)[-1])


def detect_pf_pci_id(lspci_output: str) -> str:
    """PCI address of the Intel iGPU from `lspci -Dnn`."""
    for line in lspci_output.splitlines():
        if re.search(r'VGA compatible controller|Display controller', line) and "Intel" in line:
            return line.split()[0]
    return CONFIG['GPU_DEFAULT_PCI_ID']


def split_pci_address(pci_id: str) -> Tuple[str, str, str, str]:
    """'0000:00:02.0' -> ('0000', '00', '02', '0')."""
    m = re.match(r'^(?:([0-9a-fA-F]{4}):)?([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-7])$', pci_id.strip())
    if not m:
        raise ConfigurationError(f"Invalid PCI address: {pci_id}", code="MPC-E202")
    return m.group(1) or "0000", m.group(2), m.group(3), m.group(4)


def render_virtiofs_xml(source_dir: str, tag: str) -> str:
    return (
        '<filesystem type="mount" accessmode="passthrough">\n'
        '  <driver type="virtiofs"/>\n'
        f'  <source dir={quoteattr(source_dir)}/>\n'
        f'  <target dir={quoteattr(tag)}/>\n'
        '</filesystem>\n'
    )


def render_hostdev_xml(pf_pci_id: str, rom_path: str) -> str:
    """VF 1 of the PF, presented to the guest at 00:02.0 like a real iGPU."""
    domain, bus, slot, _ = split_pci_address(pf_pci_id)
    return (
        '<hostdev mode="subsystem" type="pci" managed="yes">\n'
        '  <source>\n'
        f'    <address domain="0x{domain}" bus="0x{bus}" slot="0x{slot}" function="0x1"/>\n'
        '  </source>\n'
        f'  <rom file={quoteattr(rom_path)}/>\n'
        '  <alias name="hostpci0"/>\n'
        '  <address type="pci" domain="0x0000" bus="0x00" slot="0x02" function="0x0"/>\n'
        '</hostdev>\n'
    )


def virt_install_command(conf: VmConf) -> List[str]:
    return [
        "virt-install",
        "--name", conf.name,
        "--memory", str(conf.ram_mb),
        "--vcpus", str(conf.vcpus),
        "--cpu", "host-passthrough",
        "--machine", "pc",
        "--boot", "uefi",
        "--memorybacking", "source.type=memfd,access.mode=shared",
        "--disk", f"path={conf.get('VM_DISK_PATH')},size={conf.disk_gb},format=qcow2,bus=virtio",
        "--os-variant", conf.get("VM_OS_VARIANT"),
        "--network", "network=default,model=virtio",
        "--graphics", "none",
        "--video", "none",
        "--console", "pty,target_type=serial",
        "--cdrom", conf.get("VM_ISO_PATH"),
        "--noautoconsole",
    ]


def random_tunnel_host(domain: str) -> str:
    return f"vm-{cloudflare.random_subdomain(8)}.{domain}"


# --- prompts ---

def prompt_resources(conf: VmConf, info: SystemInfo, user: str):
    print_header("VM Basics")
    conf["VM_NAME"] = safe_text_ask("VM name", default=CONFIG['DEFAULT_VM_NAME'])
    conf["VM_USER"] = safe_text_ask("VM user (login inside the guest)", default=user)
    conf["VM_HOSTNAME"] = safe_text_ask("VM hostname", default=CONFIG['DEFAULT_VM_HOSTNAME'])

    vcpu_default, vcpu_max = vcpu_limits(info)
    print_info(f"Host: {info.threads} threads, {info.ram_gb} GB RAM")
    conf["VM_VCPUS"] = safe_int_ask(f"vCPUs (max {vcpu_max})", vcpu_default, minimum=1, maximum=vcpu_max)
    ram_gb = safe_int_ask("RAM (GB)", default_ram_gb(info), minimum=1, maximum=max(1, info.ram_gb))
    conf["VM_RAM_MB"] = ram_gb * 1024
    conf["VM_DISK_GB"] = safe_int_ask("Disk size (GB)", CONFIG['DEFAULT_DISK_GB'], minimum=8)


def prompt_disk_path(conf: VmConf):
    custom = "Custom path..."
    choice = select_from_list(CONFIG['DISK_DIR_CHOICES'] + [custom], "Disk image location:",
                              default=CONFIG['DISK_DIR_CHOICES'][0])
    directory = safe_text_ask("Directory for the disk image") if choice == custom else choice
    conf["VM_DISK_PATH"] = disk_path_for(directory, conf.name)
    print_success(f"Disk: {conf.get('VM_DISK_PATH')}")
    free = free_gb(directory)
    if free < conf.disk_gb and not confirm(
            f"Only {free} GB free in {directory} for a {conf.disk_gb} GB disk. Continue anyway?", default=False):
        raise ResourceError(f"Not enough free space in {directory}", code="MPC-E301",
                            suggestions=["Pick another location or a smaller disk size"])


def _fetch_iso(url: str, path: str):
    if os.path.isfile(path):
        print_success(f"ISO already present: {path}")
        return
    print_info(f"Downloading {url} -> {path}")
    if not download_file(url, path, resume=True):
        raise NetworkError(f"ISO download failed: {url}",
                           suggestions=["Re-run phase2: the download resumes where it stopped"])


def prompt_iso(conf: VmConf, user: str):
    print_header("Installer ISO")
    url = CONFIG['VM_ISO_URL']
    conf["VM_OS_VARIANT"] = CONFIG['VM_OS_VARIANT']
    conf["VM_ISO_URL"] = url
    default_path = iso_default_path(user_home(user), url)
    os.makedirs(os.path.dirname(default_path), exist_ok=True)
    chown_to_user(os.path.dirname(default_path), user)

    mode = select_from_list([ISO_DOWNLOAD, ISO_EXISTING, ISO_CUSTOM], "ISO source:", display_key={
        ISO_DOWNLOAD: f"Download to {default_path} (skipped if present)",
        ISO_EXISTING: "Use an existing ISO file",
        ISO_CUSTOM: "Download to a custom path",
    }.get, default=ISO_DOWNLOAD)

    if mode == ISO_EXISTING:
        path = os.path.expanduser(safe_text_ask("Path to ISO"))
        if not os.path.isfile(path):
            raise StorageError(f"ISO not found: {path}", code="MPC-E601")
    else:
        path = default_path if mode == ISO_DOWNLOAD else os.path.expanduser(
            safe_text_ask("Download destination", default=default_path))
        _fetch_iso(url, path)
    conf["VM_ISO_PATH"] = path


def prompt_network_and_share(conf: VmConf, user: str):
    print_header("Network & Shared Folder")
    conf["VM_STATIC_IP"] = safe_text_ask("VM static IP (CIDR)", default=CONFIG['VM_STATIC_IP'])
    conf["VM_GATEWAY"] = safe_text_ask("Gateway", default=CONFIG['VM_GATEWAY'])
    conf["VM_DNS"] = safe_text_ask("DNS servers (comma-separated)", default=CONFIG['VM_DNS'])
    conf["SHARED_DIR"] = os.path.expanduser(safe_text_ask(
        "Host directory shared with the VM", default=os.path.join(user_home(user), CONFIG['SHARED_DIR_NAME'])))
    conf["SHARED_TAG"] = safe_text_ask("virtiofs mount tag", default=CONFIG['SHARED_TAG'])


def prompt_gpu(conf: VmConf):
    print_header("GPU Passthrough (SR-IOV)")
    profile = prompt_gpu_generation(CONFIG['GPU_DEFAULT_GEN'])
    passthrough = confirm("Pass an iGPU virtual function to the VM?", default=True)
    vf_count = safe_int_ask("Number of VFs to create", CONFIG['VM_DEFAULT_VF_COUNT'], minimum=1, maximum=7)
    for key, value in profile.as_vars().items():
        conf[key] = value
    conf["GPU_PASSTHROUGH"] = "yes" if passthrough else "no"
    conf["GPU_VF_COUNT"] = vf_count
    conf["KERNEL_GPU_ARGS"] = kernel_gpu_args(vf_count, quiet_boot=False)
    if passthrough:
        warn_qemu_legacy_mode(profile)

    detected = detect_pf_pci_id(try_capture(["lspci", "-Dnn"]))
    if confirm(f"Use iGPU at {detected}?", default=True):
        conf["GPU_PCI_ID"] = detected
    else:
        conf["GPU_PCI_ID"] = safe_text_ask("iGPU PCI address", default=CONFIG['GPU_DEFAULT_PCI_ID'])
    split_pci_address(conf.get("GPU_PCI_ID"))


def prompt_rom(conf: VmConf):
    rom_path = CONFIG['GPU_ROM_PATH']
    conf["GPU_ROM_PATH"] = rom_path
    if not conf.gpu_passthrough:
        return
    print_header("iGPU Option ROM")
    mode = select_from_list([ROM_DOWNLOAD, ROM_COPY], "Option ROM source:", display_key={
        ROM_DOWNLOAD: f"Download {conf.get('GPU_ROM_FILE')} (skipped if {rom_path} exists)",
        ROM_COPY: "Copy from a local file",
    }.get, default=ROM_DOWNLOAD)
    if mode == ROM_COPY:
        source = os.path.expanduser(safe_text_ask("Path to ROM file"))
        if not os.path.isfile(source):
            raise StorageError(f"ROM file not found: {source}", code="MPC-E602")
        run_capture(["install", "-D", "-m", "644", source, rom_path], as_root=True)
        print_success(f"ROM copied to {rom_path}")
    elif os.path.isfile(rom_path):
        print_success(f"ROM already present: {rom_path}")
    elif not download_file(conf.get("GPU_ROM_URL"), rom_path):
        raise NetworkError(f"ROM download failed: {conf.get('GPU_ROM_URL')}",
                           suggestions=[f"Download it manually to {rom_path}"])


def prompt_tunnel(conf: VmConf, user: str):
    print_header("Cloudflare Tunnel Names")
    host, domain = cloudflare.detect_host_tunnel(user)
    if host and confirm(f"Use detected domain {domain} (host tunnel {host})?", default=True):
        print_success(f"Host tunnel: {host}")
    else:
        domain = safe_text_ask("Cloudflare domain (e.g. example.com)", default=cloudflare.load_domain(user))
        host = safe_text_ask("Host tunnel SSH hostname", default=f"{user}.{domain}")
    conf["HOST_TUNNEL_DOMAIN"] = domain
    conf["HOST_TUNNEL_HOST"] = host
    conf["VM_TUNNEL_NAME"] = safe_text_ask("VM tunnel name", default=f"{conf.name}-ssh")
    conf["VM_TUNNEL_HOST"] = safe_text_ask("VM tunnel hostname", default=random_tunnel_host(domain))


def collect_vm_settings(info: SystemInfo, user: str) -> VmConf:
    """Run every phase 2 prompt and return the unsaved VM configuration."""
    conf = VmConf()
    prompt_resources(conf, info, user)
    prompt_disk_path(conf)
    prompt_iso(conf, user)
    prompt_network_and_share(conf, user)
    prompt_gpu(conf)
    prompt_rom(conf)
    prompt_tunnel(conf, user)
    return conf


def write_conf(conf: VmConf, owner: str) -> str:
    path = conf.save(conf_path(conf.name), owner=owner)
    remember_vm(conf)
    mark_phase(2)
    print_success(f"VM configuration written: {path}")
    return path


# --- host + libvirt ---

def install_host_sriov(conf: VmConf, os_family: str) -> bool:
    if not conf.gpu_passthrough:
        print_info("GPU passthrough disabled: skipping host SR-IOV setup.")
        return False
    vf_count = int(conf.get("GPU_VF_COUNT") or CONFIG['VM_DEFAULT_VF_COUNT'])
    return SriovManager(os_family, conf.user).setup_for_vm(vf_count, conf.get("KERNEL_GPU_ARGS"))


def _attach_config(vm_name: str, xml: str) -> bool:
    """virsh attach-device --config on the persistent definition."""
    with tempfile.NamedTemporaryFile("w", suffix=".xml", delete=False, encoding="utf-8") as tmp:
        tmp.write(xml)
        xml_path = tmp.name
    try:
        return run_command_live(["virsh", "attach-device", vm_name, xml_path, "--config"],
                                as_root=True) is not None
    finally:
        os.unlink(xml_path)


def _attach_gpu(conf: VmConf):
    rom_path = conf.get("GPU_ROM_PATH")
    if not os.path.isfile(rom_path):
        print_warning(f"ROM {rom_path} missing: GPU passthrough not attached. Re-run phase2 after fetching it.")
        return
    if _attach_config(conf.name, render_hostdev_xml(conf.get("GPU_PCI_ID"), rom_path)):
        print_success("iGPU VF attached (hostpci0)")
    else:
        print_warning("VF attach failed: reboot the host first so the VFs exist, then re-run phase2.")
        return
    if not conf.igd_lpc:
        return
    if "qemu:commandline" in try_capture(["virsh", "dumpxml", conf.name], as_root=True):
        print_success("x-igd-lpc already set")
        return
    if run_command_live(["virt-xml", conf.name, "--edit",
                         "--qemu-commandline=-set device.hostpci0.x-igd-lpc=on"], as_root=True) is None:
        print_warning(f"Could not add x-igd-lpc. Add it manually: virsh edit {conf.name}, then "
                      "<qemu:commandline><qemu:arg value='-set'/>"
                      "<qemu:arg value='device.hostpci0.x-igd-lpc=on'/></qemu:commandline>")
    else:
        print_success("x-igd-lpc=on added")


def create_vm(conf: VmConf) -> bool:
    """Create the domain. Returns False when it already exists."""
    print_header("Create VM")
    os.makedirs(os.path.dirname(conf.get("VM_DISK_PATH")), exist_ok=True)
    os.makedirs(conf.get("SHARED_DIR"), exist_ok=True)
    chown_to_user(conf.get("SHARED_DIR"), conf.user)
    run_command_live(["virsh", "net-autostart", "default"], as_root=True, check=False, quiet=True)
    run_command_live(["virsh", "net-start", "default"], as_root=True, check=False, quiet=True)

    if command_ok(["virsh", "dominfo", conf.name], as_root=True):
        print_success(f"VM '{conf.name}' already exists. Skipping creation.")
        return False

    if run_command_live(virt_install_command(conf), as_root=True) is None:
        raise ProcessError(f"virt-install failed for '{conf.name}'",
                           suggestions=["Check `virsh net-list --all` and the disk directory permissions"])
    print_success(f"VM '{conf.name}' defined")

    if not _attach_config(conf.name, render_virtiofs_xml(conf.get("SHARED_DIR"), conf.get("SHARED_TAG"))):
        logger.warning("virtiofs attach failed for %s", conf.name)
    if conf.gpu_passthrough:
        _attach_gpu(conf)
    run_command_live(["virsh", "autostart", conf.name], as_root=True, check=False, quiet=True)
    return True


def print_summary(conf: VmConf):
    table = Table(title=f"VM '{conf.name}'", show_header=False)
    table.add_column("", style="cyan")
    table.add_column("")
    table.add_row("Disk", f"{conf.get('VM_DISK_PATH')} ({conf.disk_gb} GB)")
    table.add_row("vCPU / RAM", f"{conf.vcpus} / {conf.ram_mb} MB")
    table.add_row("Static IP", conf.get("VM_STATIC_IP"))
    table.add_row("Shared dir", f"{conf.get('SHARED_DIR')} → {conf.get('SHARED_TAG')}")
    gpu = (f"SR-IOV VF of {conf.get('GPU_PCI_ID')} (gen {conf.get('GPU_GEN')})"
           if conf.gpu_passthrough else "none")
    table.add_row("GPU", gpu)
    table.add_row("Host tunnel", conf.get("HOST_TUNNEL_HOST"))
    table.add_row("VM tunnel", conf.get("VM_TUNNEL_HOST"))
    console.print(table)
    print_info(f"Next: finish the Ubuntu install on the console (virsh console {conf.name}), "
               "then run: minipc phase3")


def run_phase2() -> bool:
    print_header("minipc Phase 2: VM Setup")
    os_family = detect_os()
    user = detect_user()
    info = detect_system()
    display_system(info)
    if not run_requirements_check(info):
        return False
    if not phase_done(1):
        print_warning("Phase 1 is not recorded as complete: libvirt and host SR-IOV may be missing.")
    if not confirm("Proceed with Phase 2 VM setup?"):
        print_info("Aborted.")
        return False

    handler = get_error_handler()
    with SnapperPair("phase2 VM setup") as snapshots:
        conf = handler.run_step("VM settings", collect_vm_settings, info, user, hard_stop=True)
        handler.run_step("Write configuration", write_conf, conf, user, hard_stop=True)
        handler.run_step("Host SR-IOV", install_host_sriov, conf, os_family)
        handler.run_step("Create VM", create_vm, conf, hard_stop=True)
    print_summary(conf)
    snapshots.summary()
    return True
