# Made by trex099
# https://github.com/Trex099/Glint
"""
Client-side setup for devices that SSH into the host or the VM through
Cloudflare tunnels (laptops, desktops, Termux on Android, macOS).

Runs as the normal user: it only touches ~/.ssh/config and installs
openssh and websocat when they are missing.
"""

import os
import re
import platform
import logging

from core_utils import (
    print_header, print_info, print_success, print_warning,
    safe_text_ask, select_from_list, run_command_live, command_ok, command_exists,
    read_file, user_home,
)
from .error_handling import DependencyError, ProcessError, ValidationError
from .packages import install_websocat
from .system import detect_os

logger = logging.getLogger(__name__)

TERMUX_DIR = "/data/data/com.termux"
PROXY_COMMAND = "websocat -E --binary - wss://%h"

HOST_ALIAS = "minipc"
VM_ALIAS = "server-vm"

_SSH_INSTALL = {
    'termux': ["pkg", "install", "-y", "openssh"],
    'ubuntu': ["apt-get", "install", "-y", "openssh-client"],
    'fedora': ["dnf", "install", "-y", "openssh-clients"],
}


def detect_client_env() -> str:
    """termux, macos, arch, ubuntu, fedora or generic."""
    if os.path.isdir(TERMUX_DIR):
        return "termux"
    if platform.system() == "Darwin":
        return "macos"
    if os.path.isfile("/etc/os-release"):
        family = detect_os()
        return "ubuntu" if family == "proxmox" else family
    return "generic"


def install_client_tools(env: str):
    if command_exists("ssh"):
        print_success("ssh already installed")
    elif env in _SSH_INSTALL:
        run_command_live(_SSH_INSTALL[env], as_root=env != "termux")
    else:
        print_warning("ssh not found: install openssh manually")

    if command_exists("websocat"):
        print_success("websocat already installed")
        return
    if env == "macos":
        run_command_live(["brew", "install", "websocat"])
    elif env == "termux":
        run_command_live(["pkg", "install", "-y", "websocat"])
    else:
        try:
            install_websocat(env)
        except (DependencyError, ProcessError) as e:
            print_warning(f"websocat install failed: {e}")
            return
    if command_exists("websocat"):
        print_success("websocat installed")


# --- ~/.ssh/config ---

def has_ssh_host(config_text: str, alias: str) -> bool:
    return re.search(rf'^\s*Host\s+{re.escape(alias)}\s*$', config_text, re.M) is not None


def render_host_block(alias: str, hostname: str, user: str, comment: str = "") -> str:
    lines = [""]
    if comment:
        lines.append(f"# {comment}")
    lines += [
        f"Host {alias}",
        f"  HostName {hostname}",
        f"  ProxyCommand {PROXY_COMMAND}",
        f"  User {user}",
    ]
    return "\n".join(lines) + "\n"


def add_ssh_host(alias: str, hostname: str, user: str, comment: str = "", ssh_dir: str = None) -> bool:
    """Append a tunnel Host entry to ~/.ssh/config. False when the alias exists."""
    ssh_dir = ssh_dir or os.path.join(user_home(), ".ssh")
    config_path = os.path.join(ssh_dir, "config")
    os.makedirs(ssh_dir, exist_ok=True)
    os.chmod(ssh_dir, 0o700)
    if has_ssh_host(read_file(config_path), alias):
        print_success(f"~/.ssh/config already has 'Host {alias}'. Skipping.")
        return False
    with open(config_path, 'a', encoding='utf-8') as f:
        f.write(render_host_block(alias, hostname, user, comment))
    os.chmod(config_path, 0o600)
    logger.info("added ssh host %s -> %s", alias, hostname)
    print_success(f"Written to ~/.ssh/config: alias {alias}")
    return True


def _ask_target(host_prompt: str, user_prompt: str):
    hostname = safe_text_ask(host_prompt)
    if not hostname:
        raise ValidationError("A tunnel hostname is required", code="MPC-E801")
    user = safe_text_ask(user_prompt, default=os.environ.get("USER", ""))
    if not user:
        raise ValidationError("A username is required", code="MPC-E802")
    return hostname, user


def test_connection(alias: str) -> bool:
    print_info(f"Testing SSH via Cloudflare tunnel ({alias})...")
    if command_ok(["ssh", "-o", "StrictHostKeyChecking=accept-new", "-o", "ConnectTimeout=10",
                   "-o", "BatchMode=yes", alias, "true"]):
        print_success("Connection test passed!")
        return True
    print_warning("Connection test failed: the tunnel may still be propagating DNS (try again in 1-2 min)")
    return False


# --- client phases ---

def client_phase1() -> str:
    """Host SSH entry."""
    hostname, user = _ask_target("Tunnel hostname (e.g. abc123.yourdomain.com)",
                                 "Server username")
    add_ssh_host(HOST_ALIAS, hostname, user, comment="MiniPC via Cloudflare Tunnel")
    return HOST_ALIAS


def client_phase2() -> str:
    hostname, user = _ask_target("VM tunnel hostname (e.g. vm-abc123.example.com)", "VM username")
    add_ssh_host(VM_ALIAS, hostname, user, comment="Server VM via Cloudflare Tunnel")
    return VM_ALIAS


def client_phase3() -> str:
    """VM entry named after the tunnel hostname, then a connection test."""
    print_info("You need the VM tunnel hostname from the phase3 summary.")
    hostname, user = _ask_target("VM tunnel hostname (e.g. vm-abc123.yourdomain.com)", "VM SSH username")
    alias = safe_text_ask("SSH alias", default=hostname.split(".", 1)[0])
    add_ssh_host(alias, hostname, user, comment="KVM VM via Cloudflare Tunnel")
    test_connection(alias)
    print_info(f"Without ~/.ssh/config: ssh -o ProxyCommand='{PROXY_COMMAND}' {user}@{hostname}")
    return alias


CLIENT_PHASES = {
    "phase1": client_phase1,
    "phase2": client_phase2,
    "phase3": client_phase3,
}


def run_client(phase: str = None) -> str:
    print_header("minipc Client Setup")
    if phase is None:
        phase = select_from_list(list(CLIENT_PHASES), "Which client setup?", display_key={
            "phase1": "phase1: SSH to the host (ssh minipc)",
            "phase2": "phase2: SSH to the VM tunnel (ssh server-vm)",
            "phase3": "phase3: SSH to the VM with a custom alias",
        }.get, default="phase1")
    if phase not in CLIENT_PHASES:
        raise ValidationError(f"Unknown client phase: {phase}", code="MPC-E803",
                              suggestions=["Use phase1, phase2 or phase3"])
    env = detect_client_env()
    print_info(f"Detected environment: {env}")
    install_client_tools(env)
    alias = CLIENT_PHASES[phase]()
    print_success(f"Done! Connect with: ssh {alias}")
    return alias
