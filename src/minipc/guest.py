# Made by trex099
# https://github.com/Trex099/Glint
"""
Phase 3: configure the VM from the inside

Picks a VM, makes sure it runs, waits for the guest's SSH server and then
pushes a bash script into the guest that installs packages, enables SSH
and fail2ban, sets the static IP, mounts the virtiofs share, installs
i915-sriov-dkms and sets up the VM's own Cloudflare tunnel.
"""

import shlex
import time
import logging
import subprocess
from dataclasses import dataclass
from typing import List, Tuple

from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from config import CONFIG
from core_utils import (
    console, print_header, print_info, print_success, print_warning, print_error,
    confirm, safe_text_ask, select_from_list, run_command_live, run_capture,
    try_capture, command_ok, command_exists, run_as_user,
)
from .error_handling import get_error_handler, ConfigurationError, NetworkError, ProcessError, DependencyError
from .packages import install_websocat
from .snapshots import SnapperPair
from .sriov import latest_dkms_deb_url
from .state import (
    VmConf, conf_path, list_confs, read_state, set_state, mark_phase, phase_done, remember_vm, state_path,
)
from .system import detect_os, detect_user

logger = logging.getLogger(__name__)

GUEST_SCRIPT_PATH = "/tmp/minipc-guest-setup.sh"
REMOTE_ENV_KEYS = ["VM_NAME", "VM_TUNNEL_HOST", "VM_TUNNEL_NAME", "VM_STATIC_IP",
                   "VM_GATEWAY", "VM_DNS", "SHARED_TAG"]

TUNNEL_TOKEN = "token"
TUNNEL_LOGIN = "login"
TUNNEL_SKIP = "skip"

_GUEST_SCRIPT_HEAD = r'''#!/usr/bin/env bash
set -euo pipefail
ok()   { echo -e "\033[0;32m  [OK]\033[0m  $*"; }
warn() { echo -e "\033[1;33m  [!!]\033[0m  $*"; }
step() { echo -e "\n\033[1m  -- $* --\033[0m"; }

step "Base packages"
if command -v apt-get >/dev/null 2>&1; then
  apt-get update -qq
  DEBIAN_FRONTEND=noninteractive apt-get install -y curl wget openssh-server fail2ban \
    net-tools dkms "linux-headers-$(uname -r)" build-essential
elif command -v dnf >/dev/null 2>&1; then
  dnf install -y curl wget openssh-server fail2ban net-tools dkms "kernel-devel-$(uname -r)"
elif command -v pacman >/dev/null 2>&1; then
  pacman -Syu --noconfirm --needed curl wget openssh fail2ban net-tools dkms linux-headers
fi
ok "Packages installed"

step "SSH + fail2ban"
systemctl enable --now sshd 2>/dev/null || systemctl enable --now ssh 2>/dev/null || true
systemctl enable --now fail2ban 2>/dev/null || true
sed -i 's/^#\?PasswordAuthentication.*/PasswordAuthentication yes/' /etc/ssh/sshd_config
sed -i 's/^#\?ChallengeResponseAuthentication.*/ChallengeResponseAuthentication yes/' /etc/ssh/sshd_config
systemctl reload sshd 2>/dev/null || systemctl reload ssh 2>/dev/null || true
ok "SSH and fail2ban enabled"

step "Static IP ${VM_STATIC_IP}"
IFACE="$(ip route get 1.1.1.1 2>/dev/null | awk '{for(i=1;i<=NF;i++) if($i=="dev") print $(i+1)}' | head -1)"
if [ -d /etc/netplan ] && ! grep -rqE "dhcp4: (no|false)" /etc/netplan/ 2>/dev/null; then
  cat > /etc/netplan/99-static.yaml <<EOF
network:
  version: 2
  ethernets:
    ${IFACE}:
      dhcp4: no
      addresses: [${VM_STATIC_IP}]
      routes:
        - to: default
          via: ${VM_GATEWAY}
      nameservers:
        addresses: [${VM_DNS//,/, }]
EOF
  chmod 600 /etc/netplan/99-static.yaml
  netplan apply || true
  ok "Static IP ${VM_STATIC_IP} via ${VM_GATEWAY}"
else
  ok "Static IP already configured"
fi

step "Shared folder ${SHARED_TAG}"
mkdir -p "/mnt/${SHARED_TAG}"
if ! grep -q "^${SHARED_TAG} " /etc/fstab; then
  echo "${SHARED_TAG} /mnt/${SHARED_TAG} virtiofs defaults,_netdev 0 0" >> /etc/fstab
  ok "Added ${SHARED_TAG} to /etc/fstab"
fi
mount -a 2>/dev/null || warn "virtiofs mount failed: it mounts after the next host reboot"

step "i915-sriov-dkms"
if command -v apt-get >/dev/null 2>&1 && [ -n "${SRIOV_DEB_URL:-}" ]; then
  curl -fL "$SRIOV_DEB_URL" -o /tmp/i915-sriov-dkms.deb
  dpkg -i /tmp/i915-sriov-dkms.deb || DEBIAN_FRONTEND=noninteractive apt-get install -f -y
  ok "i915-sriov-dkms installed"
elif command -v pacman >/dev/null 2>&1 && command -v paru >/dev/null 2>&1; then
  paru -S --noconfirm --needed i915-sriov-dkms
  ok "i915-sriov-dkms installed"
else
  warn "Install i915-sriov-dkms manually: https://github.com/strongtz/i915-sriov-dkms/releases"
fi

step "cloudflared"
if ! command -v cloudflared >/dev/null 2>&1; then
  if command -v apt-get >/dev/null 2>&1; then
    curl -fsSL https://pkg.cloudflare.com/cloudflare-main.gpg -o /usr/share/keyrings/cloudflare-main.gpg
    echo "deb [signed-by=/usr/share/keyrings/cloudflare-main.gpg] https://pkg.cloudflare.com/cloudflared $(. /etc/os-release; echo "${VERSION_CODENAME:-noble}") main" \
      > /etc/apt/sources.list.d/cloudflared.list
    apt-get update -qq && apt-get install -y cloudflared
  elif command -v dnf >/dev/null 2>&1; then
    curl -fL https://github.com/cloudflare/cloudflared/releases/latest/download/cloudflared-linux-x86_64.rpm \
      -o /tmp/cloudflared.rpm && rpm -i /tmp/cloudflared.rpm || true
  elif command -v pacman >/dev/null 2>&1; then
    pacman -S --noconfirm --needed cloudflared
  fi
fi
ok "cloudflared: $(cloudflared --version 2>/dev/null | head -1)"

step "Cloudflare tunnel ${VM_TUNNEL_NAME} -> ${VM_TUNNEL_HOST}"
'''

_TUNNEL_TOKEN_SECTION = r'''cloudflared service install "$CF_TUNNEL_TOKEN"
ok "Tunnel installed via token"
'''

_TUNNEL_LOGIN_SECTION = r'''cloudflared login
cloudflared tunnel create "${VM_TUNNEL_NAME}" 2>/dev/null || true
cloudflared tunnel route dns "${VM_TUNNEL_NAME}" "${VM_TUNNEL_HOST}" 2>/dev/null || true
mkdir -p /root/.cloudflared
TUNNEL_ID="$(cloudflared tunnel list 2>/dev/null | awk -v n="${VM_TUNNEL_NAME}" '$2==n{print $1; exit}')"
if [ -n "${TUNNEL_ID:-}" ]; then
  cat > /root/.cloudflared/config.yml <<EOF
tunnel: ${TUNNEL_ID}
credentials-file: /root/.cloudflared/${TUNNEL_ID}.json
ingress:
  - hostname: ${VM_TUNNEL_HOST}
    service: ssh://localhost:22
  - service: http_status:404
EOF
  cloudflared service install
  ok "Tunnel configured: ${VM_TUNNEL_HOST}"
else
  warn "No tunnel id found for ${VM_TUNNEL_NAME}: configure it manually"
fi
'''

_TUNNEL_SKIP_SECTION = r'''warn "Tunnel install skipped"
'''

_GUEST_SCRIPT_TAIL = r'''systemctl enable --now cloudflared 2>/dev/null || true
ok "VM internal configuration complete"
'''


@dataclass
class GuestOptions:
    """Choices made on the host before the guest script runs"""
    tunnel_mode: str = TUNNEL_TOKEN
    tunnel_token: str = ""
    sriov_deb_url: str = ""


@dataclass
class VmChoice:
    name: str
    state: str
    conf_path: str = ""

    @property
    def installed(self) -> bool:
        return bool(self.state)


# --- parsing and rendering ---

def parse_virsh_list(output: str) -> List[Tuple[str, str]]:
    """(name, state) pairs from `virsh list --all`."""
    domains = []
    for line in output.splitlines()[2:]:
        fields = line.split()
        if len(fields) >= 3 and fields[1] != "Name":
            domains.append((fields[1], " ".join(fields[2:])))
    return domains


def parse_domifaddr(output: str) -> str:
    for line in output.splitlines():
        fields = line.split()
        if "ipv4" in fields and len(fields) >= 4:
            return fields[3].split("/", 1)[0]
    return ""


def vm_choices(domains: List[Tuple[str, str]], confs: List[str]) -> List[VmChoice]:
    """Defined domains first, then conf files without a domain."""
    by_name = {p.rsplit("/", 1)[-1][:-len(".conf")]: p for p in confs}
    choices = [VmChoice(name, state, by_name.get(name, "")) for name, state in domains]
    defined = {name for name, _ in domains}
    choices += [VmChoice(name, "", path) for name, path in by_name.items() if name not in defined]
    return choices


def ssh_alive_command(user: str, host: str) -> List[str]:
    return ["ssh", "-o", "StrictHostKeyChecking=accept-new", "-o", "ConnectTimeout=3",
            "-o", "BatchMode=yes", f"{user}@{host}", "true"]


def tunnel_test_command(user: str, host: str) -> List[str]:
    return ["ssh", "-o", "StrictHostKeyChecking=accept-new", "-o", "ConnectTimeout=8",
            "-o", "BatchMode=yes", "-o", "ProxyCommand=websocat -E --binary - wss://%h",
            f"{user}@{host}", "true"]


def build_remote_script(conf: VmConf, options: GuestOptions) -> str:
    """The bash script run inside the guest as root."""
    lines = [_GUEST_SCRIPT_HEAD.replace("\n", f"\n# minipc guest setup: {conf.name}\n", 1)]
    if options.tunnel_mode == TUNNEL_TOKEN and options.tunnel_token:
        lines.append(f"CF_TUNNEL_TOKEN={shlex.quote(options.tunnel_token)}\n")
        lines.append(_TUNNEL_TOKEN_SECTION)
    elif options.tunnel_mode == TUNNEL_LOGIN:
        lines.append(_TUNNEL_LOGIN_SECTION)
    else:
        lines.append(_TUNNEL_SKIP_SECTION)
    lines.append(_GUEST_SCRIPT_TAIL)
    return "".join(lines)


def remote_command(conf: VmConf, options: GuestOptions, script_path: str = GUEST_SCRIPT_PATH) -> str:
    """Remote shell command: environment, sudo, then remove the script."""
    env = {key: conf.get(key) for key in REMOTE_ENV_KEYS}
    env["VM_AUTOINSTALL"] = "yes" if conf.autoinstall else "no"
    env["SRIOV_DEB_URL"] = options.sriov_deb_url
    assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
    path = shlex.quote(script_path)
    return f"{assignments} sudo -E bash {path}; status=$?; rm -f {path}; exit $status"


# --- selection ---

def select_conf() -> VmConf:
    """Pick a VM among defined domains and generated confs."""
    print_header("Select VM to Configure")
    last = read_state().get("LAST_VM_NAME", "")
    domains = parse_virsh_list(try_capture(["virsh", "list", "--all"], as_root=True))
    choices = vm_choices(domains, list_confs())
    if not choices:
        raise ConfigurationError("No VMs found in virsh and no generated VM configurations",
                                 code="MPC-E203", suggestions=["Run minipc phase2 first"])

    def label(choice: VmChoice) -> str:
        text = f"{choice.name}  ({choice.state})" if choice.installed else \
            f"{choice.name}  (conf only: not yet installed)"
        if choice.installed and choice.conf_path:
            text += f"  [conf: {choice.conf_path.rsplit('/', 1)[-1]}]"
        return text + ("  ← last used" if choice.name == last else "")

    default = next((c for c in choices if c.name == last), choices[0])
    choice = select_from_list(choices, "Select VM to configure:", display_key=label, default=default)
    conf = VmConf.load(choice.conf_path or conf_path(choice.name))
    remember_vm(conf)
    print_success(f"Selected VM: {conf.name}  (conf: {conf.path})")
    print_info(f"{conf.vcpus} vCPU • {conf.ram_mb // 1024} GB RAM • {conf.ssh_host} • "
               f"tunnel: {conf.get('VM_TUNNEL_HOST') or 'not set'}")
    return conf


class GuestSetup:
    """Phase 3 operations for one VM"""

    def __init__(self, conf: VmConf, host_user: str, sleep=time.sleep):
        self.logger = logging.getLogger('minipc.guest')
        self.conf = conf
        self.host_user = host_user
        self.ssh_user = conf.user or host_user
        self.host = conf.ssh_host
        self.tunnel_result = "not tested"
        self._sleep = sleep

    @property
    def target(self) -> str:
        return f"{self.ssh_user}@{self.host}"

    def domstate(self) -> str:
        return try_capture(["virsh", "domstate", self.conf.name], as_root=True, default="unknown")

    def ssh_alive(self, host: str) -> bool:
        return command_ok(run_as_user(self.host_user, ssh_alive_command(self.ssh_user, host)))

    def resolve_vm_ip(self) -> str:
        """Static IP when it answers ping, else the DHCP lease libvirt knows about."""
        static = self.conf.ssh_host
        if command_ok(["ping", "-c", "1", "-W", "1", static]):
            return static
        return parse_domifaddr(try_capture(["virsh", "domifaddr", self.conf.name], as_root=True)) or static

    def ensure_vm_running(self) -> bool:
        """False when the user stops to finish a manual install."""
        print_header("Start VM")
        name = self.conf.name
        if not command_ok(["virsh", "dominfo", name], as_root=True):
            raise ConfigurationError(f"VM '{name}' is not defined yet", code="MPC-E204",
                                     suggestions=["Run minipc phase2 first"])
        state = self.domstate()
        print_info(f"VM '{name}' state: {state}")
        if state != "running":
            if confirm(f"Start VM '{name}' now?"):
                run_command_live(["virsh", "start", name], as_root=True)
            self._sleep(2)
            if self.domstate() != "running":
                raise ProcessError(f"Failed to start VM '{name}'",
                                   suggestions=[f"Check: sudo virsh start {name}"])
            print_success("VM started.")
        else:
            print_success("VM is running.")

        if self.conf.autoinstall:
            print_info("Ubuntu autoinstall runs inside the VM (about 10-15 min).")
            print_info(f"Watch progress: sudo virsh console {name}  (exit: Ctrl+])")
            return True
        ip = self.resolve_vm_ip()
        if self.ssh_alive(ip):
            print_success("VM SSH already reachable: Ubuntu installation complete.")
            self.host = ip
            return True
        print_warning(f"Complete the Ubuntu installer on the console: sudo virsh console {name}  (exit: Ctrl+])")
        print_info(f"language → network (DHCP) → disk (default) → user={self.ssh_user} → OpenSSH=YES → Done")
        return confirm("Is the Ubuntu installation complete and the VM rebooted?")

    def _remember(self, host: str) -> str:
        self.host = host
        set_state(VM_SSH_IP=host)
        print_success(f"VM SSH reachable at {host}")
        return host

    def wait_for_ssh(self) -> str:
        """Poll until the guest answers on SSH. Returns the reachable address."""
        print_header("Wait for VM SSH")
        saved = read_state().get("VM_SSH_IP")
        if saved and self.ssh_alive(saved):
            return self._remember(saved)

        interval = CONFIG['SSH_POLL_INTERVAL']
        max_attempts = (CONFIG['SSH_POLL_ATTEMPTS_AUTOINSTALL'] if self.conf.autoinstall
                        else CONFIG['SSH_POLL_ATTEMPTS'])
        while True:
            host = self.resolve_vm_ip()
            print_info(f"Polling SSH at {self.ssh_user}@{host} (up to {max_attempts * interval // 60} min)...")
            with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                          console=console) as progress:
                task = progress.add_task("Waiting for SSH...", total=max_attempts)
                for attempt in range(1, max_attempts + 1):
                    if self.ssh_alive(host):
                        progress.stop()
                        return self._remember(host)
                    if attempt % CONFIG['SSH_POLL_REPORT_EVERY'] == 0:
                        progress.update(task, description=f"[{attempt * interval // 60} min] "
                                                          f"VM state: {self.domstate()}, waiting for SSH...")
                    progress.update(task, advance=1)
                    self._sleep(interval)
            print_error(f"VM SSH not reachable after {max_attempts * interval // 60} minutes.")
            manual = safe_text_ask("Enter VM IP/hostname manually (or press Enter to keep polling)",
                                   allow_empty=True)
            if manual:
                if not self.ssh_alive(manual):
                    raise NetworkError(f"Still not reachable at {manual}", code="MPC-E501")
                return self._remember(manual)

    def collect_options(self) -> GuestOptions:
        print_info(f"VM tunnel: {self.conf.get('VM_TUNNEL_NAME')} → {self.conf.get('VM_TUNNEL_HOST')}")
        mode = select_from_list([TUNNEL_TOKEN, TUNNEL_LOGIN, TUNNEL_SKIP], "Tunnel install method:",
                                display_key={
                                    TUNNEL_TOKEN: "Token-based (paste token from the Cloudflare dashboard)",
                                    TUNNEL_LOGIN: "Browser login (cloudflared login inside the VM)",
                                    TUNNEL_SKIP: "Skip the VM tunnel",
                                }.get, default=TUNNEL_TOKEN)
        options = GuestOptions(tunnel_mode=mode, sriov_deb_url=latest_dkms_deb_url() or "")
        if mode == TUNNEL_TOKEN:
            options.tunnel_token = safe_text_ask("Paste tunnel token", password=True, allow_empty=True)
            if not options.tunnel_token:
                print_warning("No token provided: skipping tunnel install.")
                options.tunnel_mode = TUNNEL_SKIP
        return options

    def run_remote_setup(self, options: GuestOptions):
        print_header(f"Remote VM Configuration ({self.target})")
        print_info("packages → SSH → static IP → shared folder → i915-sriov-dkms → cloudflared tunnel")
        script = build_remote_script(self.conf, options)
        upload = run_as_user(self.host_user, ["ssh", "-o", "StrictHostKeyChecking=accept-new",
                                              self.target, f"cat > {GUEST_SCRIPT_PATH}"])
        try:
            run_capture(upload, input_text=script)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise ProcessError(f"Could not copy the setup script to {self.target}", details=str(e)) from e

        cmd = run_as_user(self.host_user, ["ssh", "-tt", "-o", "StrictHostKeyChecking=accept-new",
                                           self.target, remote_command(self.conf, options)])
        self.logger.info("remote setup on %s", self.target)
        # inherits the terminal so sudo and cloudflared login can prompt
        status = subprocess.run(cmd).returncode
        if status != 0:
            raise ProcessError(f"Remote configuration exited with status {status}",
                               suggestions=[f"Log in with ssh {self.target} and re-run minipc phase3"])

    def update_vm_conf(self):
        if not self.conf.path:
            return
        self.conf.update(VM_TUNNEL_HOST=self.conf.get("VM_TUNNEL_HOST"),
                         VM_TUNNEL_NAME=self.conf.get("VM_TUNNEL_NAME"))
        print_success(f"VM conf updated: VM_TUNNEL_HOST={self.conf.get('VM_TUNNEL_HOST')}")

    def test_cf_tunnel(self, os_family: str) -> str:
        host = self.conf.get("VM_TUNNEL_HOST")
        if not host:
            self.tunnel_result = "no VM_TUNNEL_HOST configured"
            return self.tunnel_result
        print_info(f"Testing cloudflared WebSocket SSH tunnel → {host}...")
        if not command_exists("websocat"):
            try:
                install_websocat(os_family)
            except DependencyError as e:
                self.logger.warning("websocat install failed: %s", e)
            if not command_exists("websocat"):
                self.tunnel_result = "websocat not available: install it manually"
                return self.tunnel_result

        for _ in range(CONFIG['TUNNEL_TEST_ATTEMPTS']):
            if command_ok(run_as_user(self.host_user, tunnel_test_command(self.ssh_user, host))):
                self.tunnel_result = "✓ working"
                print_success(f"Cloudflared SSH tunnel test passed: ssh {self.ssh_user}@{host}")
                return self.tunnel_result
            self._sleep(CONFIG['TUNNEL_TEST_INTERVAL'])
        self.tunnel_result = "not reachable yet (DNS may need a minute to propagate)"
        print_warning("Cloudflared SSH tunnel not reachable yet, try again in 1-2 min:")
        print_warning(f"  ssh -o ProxyCommand='websocat -E --binary - wss://%h' {self.ssh_user}@{host}")
        return self.tunnel_result

    def print_summary(self):
        c = self.conf
        host_ip = (try_capture(["hostname", "-I"]).split() or ["<host-ip>"])[0]
        table = Table(title="Phase 3 Complete", show_header=False)
        table.add_column("", style="cyan")
        table.add_column("")
        table.add_row("Name", c.name)
        table.add_row("Hostname", c.get("VM_HOSTNAME"))
        table.add_row("User", self.ssh_user)
        table.add_row("Resources", f"{c.vcpus} vCPU / {c.ram_mb} MB RAM")
        table.add_row("Disk", f"{c.get('VM_DISK_PATH')} ({c.disk_gb} GB)")
        table.add_row("Host IP", f"{host_ip} (physical LAN)")
        table.add_row("VM IP", f"{self.host} (libvirt NAT)")
        table.add_row("Shared", f"{c.get('SHARED_DIR')} → /mnt/{c.get('SHARED_TAG')}")
        if c.gpu_passthrough:
            table.add_row("GPU", f"{c.get('GPU_PCI_ID')} (gen {c.get('GPU_GEN')}, "
                                 f"{c.get('GPU_VF_COUNT')} VFs, x-igd-lpc={c.get('GPU_IGD_LPC')})")
        table.add_row("Direct (LAN)", f"ssh {self.target}")
        table.add_row("Via host tunnel", f"ssh {self.ssh_user}@{c.get('HOST_TUNNEL_HOST')}")
        table.add_row("Via VM tunnel", f"ssh {self.ssh_user}@{c.get('VM_TUNNEL_HOST')}")
        table.add_row("VM tunnel status", self.tunnel_result)
        table.add_row("VM conf", c.path or "")
        table.add_row("State", state_path())
        console.print(table)
        print_info(f"Client setup: run `minipc client phase3` on each device to get `ssh {c.name}`.")
        print_info("Verify: minipc check")


def run_phase3() -> bool:
    print_header("minipc Phase 3: VM Internal Setup")
    os_family = detect_os()
    host_user = detect_user()
    if not phase_done(2):
        print_warning("Phase 2 is not recorded as complete on this host.")
    handler = get_error_handler()
    conf = handler.run_step("Select VM", select_conf, hard_stop=True)
    guest = GuestSetup(conf, host_user)

    with SnapperPair("phase3 vm internal setup") as snapshots:
        if not handler.run_step("Start VM", guest.ensure_vm_running, hard_stop=True):
            print_info("Finish the installation, then re-run: minipc phase3")
            return False
        handler.run_step("Wait for SSH", guest.wait_for_ssh, hard_stop=True)
        options = guest.collect_options()
        handler.run_step("Remote configuration", guest.run_remote_setup, options, hard_stop=True)
        handler.run_step("Update VM conf", guest.update_vm_conf)
        handler.run_step("Tunnel test", guest.test_cf_tunnel, os_family)
        mark_phase(3)
    guest.print_summary()
    snapshots.summary()
    return True
