# Made by trex099
# https://github.com/Trex099/Glint
"""
Phase 1: host preparation

Packages and services, sleep masking, a static IP, SSH password login,
the Cloudflare tunnel for SSH and Cockpit, and Intel iGPU SR-IOV. Every
step can be re-run: finished work is detected and skipped.
"""

import os
import re
import grp
import pwd
import logging
from typing import Dict, List, Optional, Tuple

from rich.panel import Panel
from rich.table import Table
import yaml

from core_utils import (
    console, print_header, print_info, print_success, print_warning,
    confirm, safe_text_ask, run_command_live, try_capture, command_ok,
    command_exists, read_file, write_root_file, append_line_once,
    chown_to_user, user_home,
)
from . import cloudflare
from .error_handling import get_error_handler, NetworkError, ProcessError, DependencyError, ErrorSeverity, TunnelError
from .packages import get_packages, pkg_install, pkg_update, install_cloudflared, install_websocat
from .snapshots import SnapperPair
from .sriov import SriovManager
from .state import init_state, mark_phase, state_path
from .system import (
    detect_os, detect_user, describe_user, detect_system, display_system, run_requirements_check,
)

logger = logging.getLogger(__name__)

DOCKER_DROPIN = "/etc/systemd/system/docker.service.d/min-api-version.conf"
SLEEP_TARGETS = ["sleep.target", "suspend.target", "hibernate.target", "hybrid-sleep.target"]
NETPLAN_DIR = "/etc/netplan"
NETPLAN_STATIC = "/etc/netplan/99-static.yaml"
SSHD_CONFIG = "/etc/ssh/sshd_config"
USER_GROUPS = ("docker", "libvirt", "kvm")
LIBVIRT_URI = "qemu:///system"
DEFAULT_DNS = "1.1.1.1,8.8.8.8"
DEFAULT_NM_CONNECTION = "Wired connection 1"

DONE = "done"
SKIPPED = "skipped"
INCOMPLETE = "incomplete"


def render_docker_dropin() -> str:
    # Docker 29 raised its minimum API version, older clients need 1.24
    return '[Service]\nEnvironment="DOCKER_MIN_API_VERSION=1.24"\n'


# --- network parsing ---

def parse_route_iface(route_output: str) -> str:
    """Interface name from `ip route get` output."""
    m = re.search(r'\bdev\s+(\S+)', route_output)
    return m.group(1) if m else ""


def parse_inet(addr_output: str) -> str:
    """First IPv4 address with prefix from `ip addr show`."""
    m = re.search(r'^\s*inet\s+(\S+)', addr_output, re.M)
    return m.group(1) if m else ""


def parse_default_gateway(route_output: str) -> str:
    for line in route_output.splitlines():
        fields = line.split()
        if fields and fields[0] == "default" and len(fields) > 2:
            return fields[2]
    return ""


def with_prefix(ip: str, current: str) -> str:
    """Add the prefix length of the current address (or /24) to a bare IP."""
    if "/" in ip:
        return ip
    prefix = current.split("/", 1)[1] if "/" in current else "24"
    return f"{ip}/{prefix}"


def split_dns(dns: str) -> List[str]:
    return [d for d in re.split(r'[,\s]+', dns) if d]


def nm_connection_for(iface: str, active_output: str) -> str:
    """Active NetworkManager connection bound to iface, from `nmcli -t`."""
    for line in active_output.splitlines():
        name, _, device = line.rpartition(":")
        if device == iface and name:
            return name.replace("\\:", ":")
    return ""


def netplan_is_static(texts: List[str]) -> bool:
    """True when any netplan document turns DHCPv4 off for an ethernet."""
    for text in texts:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            logger.warning("unreadable netplan file: %s", e)
            continue
        network = data.get("network") if isinstance(data, dict) else None
        ethernets = network.get("ethernets") if isinstance(network, dict) else None
        if isinstance(ethernets, dict) and any(
                isinstance(eth, dict) and eth.get("dhcp4") is False for eth in ethernets.values()):
            return True
    return False


def render_netplan(iface: str, address: str, gateway: str, dns: str) -> str:
    ethernet = {
        "dhcp4": False,
        "addresses": [address],
        "routes": [{"to": "default", "via": gateway}],
        "nameservers": {"addresses": split_dns(dns)},
    }
    return yaml.safe_dump({"network": {"ethernets": {iface: ethernet}, "version": 2}},
                          sort_keys=False, default_flow_style=False)


def patch_sshd_config(text: str) -> str:
    text = re.sub(r'^#?PasswordAuthentication.*$', 'PasswordAuthentication yes', text, flags=re.M)
    return re.sub(r'^#?ChallengeResponseAuthentication.*$', 'ChallengeResponseAuthentication yes',
                  text, flags=re.M)


def user_in_group(user: str, group: str) -> Optional[bool]:
    """None when the group does not exist."""
    try:
        entry = grp.getgrnam(group)
    except KeyError:
        return None
    if user in entry.gr_mem:
        return True
    try:
        return pwd.getpwnam(user).pw_gid == entry.gr_gid
    except KeyError:
        return False


def tunnel_hosts_from_config(config_text: str) -> Tuple[str, str]:
    """(ssh host, cockpit host) of a cloudflared ingress config."""
    ssh_host = cockpit_host = ""
    for hostname, service in cloudflare.ingress_map(config_text).items():
        if service.startswith("ssh://") and not ssh_host:
            ssh_host = hostname
        elif cloudflare.service_port(service) == 9090 and not cockpit_host:
            cockpit_host = hostname
    return ssh_host, cockpit_host


def unit_state(args: List[str]) -> str:
    # is-active/is-enabled exit non-zero for the states we look for
    return (run_command_live(["systemctl"] + args, check=False, quiet=True) or "").strip()


class HostSetup:
    """Runs the phase 1 steps for one host and user."""

    STEPS = [
        ("Packages & services", "step_packages"),
        ("Disable sleep", "step_sleep"),
        ("Static IP", "step_static_ip"),
        ("SSH", "step_ssh"),
        ("Cloudflare tunnel", "step_cloudflare_tunnel"),
        ("iGPU SR-IOV + IOMMU", "step_sriov"),
    ]

    def __init__(self, os_family: str, user: str):
        self.logger = logging.getLogger('minipc.host')
        self.os_family = os_family
        self.user = user
        self.home = user_home(user)
        self.tunnel: Optional[cloudflare.HostTunnel] = None
        self.results: Dict[str, str] = {}

    def run(self) -> Dict[str, str]:
        handler = get_error_handler()
        for name, method in self.STEPS:
            self.logger.info("step: %s", name)
            outcome = handler.run_step(name, getattr(self, method))
            self.results[name] = outcome or INCOMPLETE
        return self.results

    # --- 1. packages ---

    def step_packages(self) -> str:
        print_header("Packages & Services")
        if not confirm("Update system and install required packages?"):
            print_info("Skipped.")
            return SKIPPED
        pkg_update(self.os_family)
        pkg_install(self.os_family, get_packages(self.os_family))
        for installer in (install_cloudflared, install_websocat):
            try:
                installer(self.os_family)
            except (DependencyError, ProcessError) as e:
                self.logger.warning("%s: %s", installer.__name__, e)
                print_warning(str(e))

        self._enable_services()
        self._docker_dropin()
        self._libvirt_uri()
        self._user_groups()
        if command_exists("virsh"):
            run_command_live(["virsh", "net-autostart", "default"], as_root=True, check=False, quiet=True)
            run_command_live(["virsh", "net-start", "default"], as_root=True, check=False, quiet=True)
        if command_exists("sensors-detect"):
            run_command_live(["sensors-detect", "--auto"], as_root=True, check=False, quiet=True)
        print_success("Packages and services ready")
        return DONE

    def _enable_services(self):
        if not (command_ok(["systemctl", "enable", "--now", "sshd"], as_root=True)
                or command_ok(["systemctl", "enable", "--now", "ssh"], as_root=True)):
            print_warning("Could not enable the SSH service")
        for unit in ("docker", "fail2ban"):
            if not command_ok(["systemctl", "enable", "--now", unit], as_root=True):
                print_warning(f"Could not enable {unit}")
        for unit in ("libvirtd", "libvirtd.socket", "cockpit.socket"):
            if not command_ok(["systemctl", "enable", "--now", unit], as_root=True):
                self.logger.debug("%s not enabled", unit)

    def _docker_dropin(self):
        if "DOCKER_MIN_API_VERSION" in read_file(DOCKER_DROPIN):
            print_success("Docker min API version already set")
            return
        write_root_file(DOCKER_DROPIN, render_docker_dropin())
        run_command_live(["systemctl", "daemon-reload"], as_root=True, quiet=True)
        run_command_live(["systemctl", "restart", "docker"], as_root=True, check=False, quiet=True)
        print_success("Docker min API version set to 1.24")

    def _libvirt_uri(self):
        targets = [(os.path.join(self.home, ".bashrc"), f'export LIBVIRT_DEFAULT_URI="{LIBVIRT_URI}"', True),
                   (os.path.join(self.home, ".config", "fish", "config.fish"),
                    f"set -x LIBVIRT_DEFAULT_URI {LIBVIRT_URI}", False)]
        for path, line, create in targets:
            if not create and not os.path.exists(path):
                continue
            if "LIBVIRT_DEFAULT_URI" in read_file(path):
                continue
            append_line_once(path, line)
            chown_to_user(path, self.user)
            print_success(f"LIBVIRT_DEFAULT_URI added to {path}")

    def _user_groups(self):
        for group in USER_GROUPS:
            member = user_in_group(self.user, group)
            if member is None or member:
                continue
            if run_command_live(["usermod", "-aG", group, self.user], as_root=True, quiet=True) is not None:
                print_success(f"Added {self.user} to group {group} (re-login required)")

    # --- 2. sleep ---

    def step_sleep(self) -> str:
        print_header("Disable Sleep")
        if all(unit_state(["is-enabled", t]) == "masked" for t in SLEEP_TARGETS):
            print_success("Sleep already disabled.")
            return SKIPPED
        if not confirm("Disable sleep/suspend/hibernate?"):
            print_info("Skipped.")
            return SKIPPED
        if run_command_live(["systemctl", "mask"] + SLEEP_TARGETS, as_root=True) is None:
            raise ProcessError("Masking the sleep targets failed", severity=ErrorSeverity.WARNING)
        print_success("Sleep disabled")
        return DONE

    # --- 3. static IP ---

    def step_static_ip(self) -> str:
        print_header("Static IP")
        iface = parse_route_iface(try_capture(["ip", "route", "get", "1.1.1.1"]))
        if not iface:
            raise NetworkError("Could not detect the primary network interface",
                               severity=ErrorSeverity.WARNING,
                               suggestions=["Check `ip route` and configure the address manually"])
        current = parse_inet(try_capture(["ip", "addr", "show", iface]))
        gateway = parse_default_gateway(try_capture(["ip", "route"]))

        connection = ""
        if command_exists("nmcli"):
            connection = nm_connection_for(
                iface, try_capture(["nmcli", "-t", "-f", "NAME,DEVICE", "con", "show", "--active"]))
            if connection and try_capture(["nmcli", "-g", "ipv4.method", "con", "show", connection]) == "manual":
                print_success(f"Static IP already configured ({current} on {iface})")
                return SKIPPED
        if os.path.isdir(NETPLAN_DIR):
            texts = [read_file(os.path.join(NETPLAN_DIR, f)) for f in sorted(os.listdir(NETPLAN_DIR))]
            if netplan_is_static(texts):
                print_success(f"Static IP already configured in netplan ({current} on {iface})")
                return SKIPPED

        if not confirm(f"Configure static IP? (Current: {current or 'unknown'})"):
            print_info("Skipped.")
            return SKIPPED
        ip = safe_text_ask("Static IP (e.g. 192.168.1.100 or 192.168.1.100/24)",
                           default=current.split("/", 1)[0])
        gateway = safe_text_ask("Gateway", default=gateway)
        dns = safe_text_ask("DNS servers (comma-separated)", default=DEFAULT_DNS)
        address = with_prefix(ip, current)

        if command_exists("nmcli"):
            connection = connection or DEFAULT_NM_CONNECTION
            cmd = ["nmcli", "con", "mod", connection, "ipv4.method", "manual",
                   "ipv4.addresses", address, "ipv4.gateway", gateway,
                   "ipv4.dns", " ".join(split_dns(dns))]
            if run_command_live(cmd, as_root=True) is None:
                raise NetworkError(f"nmcli could not update '{connection}'", severity=ErrorSeverity.WARNING)
            run_command_live(["nmcli", "con", "up", connection], as_root=True, check=False)
        elif command_exists("netplan"):
            write_root_file(NETPLAN_STATIC, render_netplan(iface, address, gateway, dns), mode=0o600)
            if run_command_live(["netplan", "apply"], as_root=True) is None:
                raise NetworkError("netplan apply failed", severity=ErrorSeverity.WARNING,
                                   suggestions=[f"Check {NETPLAN_STATIC}"])
        else:
            print_warning("Neither nmcli nor netplan found: configure the static IP manually.")
            return SKIPPED
        print_success(f"Static IP {address} set on {iface}")
        return DONE

    # --- 4. SSH ---

    def step_ssh(self) -> str:
        print_header("SSH")
        unit = next((u for u in ("sshd", "ssh") if command_ok(["systemctl", "is-active", "--quiet", u])), None)
        if not unit:
            print_warning("SSH service is not running. Skipping SSH config.")
            return SKIPPED
        text = read_file(SSHD_CONFIG)
        if not text:
            print_warning(f"{SSHD_CONFIG} not readable. Skipping SSH config.")
            return SKIPPED
        if write_root_file(SSHD_CONFIG, patch_sshd_config(text)):
            run_command_live(["systemctl", "reload", unit], as_root=True, quiet=True)
            print_success("SSH password authentication enabled")
        else:
            print_success("SSH password authentication already enabled")
        return DONE

    # --- 5. Cloudflare ---

    def step_cloudflare_tunnel(self) -> str:
        print_header("Cloudflare Tunnel")
        self.tunnel = cloudflare.setup_ssh_tunnel(self.user)
        return DONE if self.tunnel else SKIPPED

    # --- 6. SR-IOV ---

    def step_sriov(self) -> str:
        return DONE if SriovManager(self.os_family, self.user).setup_host() else SKIPPED

    # --- summary ---

    def tunnel_hosts(self) -> Tuple[str, str]:
        if self.tunnel:
            return self.tunnel.ssh_host, self.tunnel.cockpit_host
        config = os.path.join(cloudflare.cloudflared_dir(self.user), "config.yml")
        try:
            return tunnel_hosts_from_config(read_file(config))
        except TunnelError as e:
            print_warning(f"Could not read {config}: {e}")
            return "", ""

    def print_summary(self):
        host_ip = (try_capture(["hostname", "-I"]).split() or ["<host-ip>"])[0]
        ssh_host, cockpit_host = self.tunnel_hosts()

        steps = Table(title="Phase 1 Steps", show_header=False)
        steps.add_column("Step", style="bold")
        steps.add_column("Result")
        colors = {DONE: "green", SKIPPED: "cyan", INCOMPLETE: "yellow"}
        for name, outcome in self.results.items():
            steps.add_row(name, f"[{colors.get(outcome, 'white')}]{outcome}[/]")
        console.print(steps)

        access = Table(title="Access", show_header=False)
        access.add_column("", style="cyan")
        access.add_column("")
        access.add_row("SSH (LAN)", f"ssh {self.user}@{host_ip}")
        access.add_row("SSH (tunnel)", f"ssh {self.user}@{ssh_host or 'YOUR_TUNNEL_HOST'}")
        access.add_row("Cockpit (LAN)", f"http://{host_ip}:9090")
        access.add_row("Cockpit (tunnel)", f"https://{cockpit_host}" if cockpit_host
                       else "(run the Cloudflare tunnel step to set up)")
        access.add_row("cockpit.socket", unit_state(["is-active", "cockpit.socket"]) or "unknown")
        access.add_row("cloudflared", unit_state(["is-active", "cloudflared"]) or "unknown")
        console.print(access)

        console.print(Panel(
            "[bold]Client setup:[/] run `minipc client phase1` on each device, then `ssh minipc`\n\n"
            "[bold yellow]REBOOT REQUIRED[/] (IOMMU + SR-IOV + docker/libvirt groups)\n"
            "After reboot run: [bold]minipc phase2[/]\n\n"
            "Verify after reboot:\n"
            "  uname -r && dkms status\n"
            "  cat /proc/cmdline | grep iommu\n"
            "  cat /sys/devices/pci0000:00/0000:00:02.0/sriov_numvfs\n"
            "  systemctl status cloudflared cockpit.socket",
            title="Next Steps", border_style="green", expand=False))

    def record_state(self):
        if init_state(PHASE1_DONE="yes"):
            chown_to_user(state_path(), self.user)
        else:
            mark_phase(1)
        self.logger.info("phase 1 recorded in %s", state_path())


def run_phase1() -> bool:
    """Interactive phase 1. Returns False when aborted before any change."""
    print_header("minipc Phase 1: Host Setup")
    os_family = detect_os()
    user = detect_user()
    info = detect_system()
    display_system(info)
    print_info(f"Target user: {describe_user(user)}")
    if not run_requirements_check(info):
        return False

    print_info("Steps: packages → sleep → static IP → SSH → Cloudflare tunnel → iGPU SR-IOV+IOMMU")
    if not confirm("Proceed with Phase 1 setup?"):
        print_info("Aborted.")
        return False

    setup = HostSetup(os_family, user)
    with SnapperPair("phase1 host setup") as snapshots:
        setup.run()
    setup.print_summary()
    setup.record_state()
    snapshots.summary()
    return True
