# Made by trex099
# https://github.com/Trex099/Glint
"""
Dokploy inside the VM, with a wildcard Cloudflare tunnel for app traffic

The tunnel (`dokploy-<vm>`) is created on the host, its credentials are
shipped to the VM base64-encoded and a `cloudflare/cloudflared` container
joins `dokploy-network` so that `*.<domain>` reaches dokploy-traefik.
"""

import os
import base64
import shlex
import socket
import time
import logging
import subprocess
from typing import Optional

from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn

from core_utils import (
    console, print_header, print_step, print_info, print_success, print_warning,
    safe_text_ask, run_as_user, try_capture,
)
from .error_handling import get_error_handler, NetworkError, ProcessError, TunnelError
from . import cloudflare
from .guest import select_conf
from .state import VmConf
from .system import detect_user

logger = logging.getLogger(__name__)

SSH_PORT = 22
SSH_POLL_ATTEMPTS = 24
SSH_POLL_INTERVAL = 5
NETWORK_WAIT_ATTEMPTS = 18
TRAEFIK_SERVICE = "http://dokploy-traefik:80"
REMOTE_CONF_DIR = "/etc/cloudflared-dokploy"

_REMOTE_SCRIPT = r'''set -euo pipefail
ok()   { echo -e "\033[0;32m  [OK]\033[0m  $*"; }
info() { echo -e "\033[0;36m  [>>]\033[0m  $*"; }
warn() { echo -e "\033[1;33m  [!!]\033[0m  $*"; }

if docker ps 2>/dev/null | grep -q dokploy; then
  ok "Dokploy already running: skipping install"
else
  info "Running Dokploy installer (~2 min)..."
  curl -sSL https://dokploy.com/install.sh | sh
  ok "Dokploy installed"
fi

mkdir -p "$CONF_DIR"
echo "$DOKPLOY_CREDS_B64" | base64 -d > "$CONF_DIR/creds.json"
cat > "$CONF_DIR/config.yml" <<CFCONFIG
$DOKPLOY_CONFIG
CFCONFIG

tries=0
info "Waiting for dokploy-network..."
while [ $tries -lt $NETWORK_WAIT ] && ! docker network ls 2>/dev/null | grep -q dokploy-network; do
  sleep 5; tries=$((tries+1))
done
docker network ls | grep -q dokploy-network || warn "dokploy-network not found: Dokploy may not have started yet"

docker rm -f cloudflared-dokploy 2>/dev/null || true
docker run -d \
  --name cloudflared-dokploy \
  --restart unless-stopped \
  --network dokploy-network \
  -v "$CONF_DIR/creds.json:/etc/cloudflared/creds.json:ro" \
  -v "$CONF_DIR/config.yml:/etc/cloudflared/config.yml:ro" \
  cloudflare/cloudflared:latest tunnel --config /etc/cloudflared/config.yml run
ok "cloudflared-dokploy running on dokploy-network"
'''


def tunnel_name_for(vm_name: str) -> str:
    return f"dokploy-{vm_name or 'server'}"


def render_dokploy_config(tid: str, domain: str) -> str:
    """cloudflared config as seen from inside the container."""
    return cloudflare.render_config(tid, "/etc/cloudflared/creds.json",
                                    [cloudflare.IngressRule(f"*.{domain}", TRAEFIK_SERVICE)])


def encode_credentials(path: str) -> str:
    with open(path, 'rb') as f:
        return base64.b64encode(f.read()).decode('ascii')


def remote_command(tid: str, domain: str, creds_b64: str) -> str:
    env = {
        "CONF_DIR": REMOTE_CONF_DIR,
        "NETWORK_WAIT": str(NETWORK_WAIT_ATTEMPTS),
        "DOKPLOY_CREDS_B64": creds_b64,
        "DOKPLOY_CONFIG": render_dokploy_config(tid, domain),
    }
    assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
    return f"{assignments} sudo -E bash -s"


def tcp_alive(host: str, port: int = SSH_PORT, timeout: float = 3) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class DokploySetup:
    """Installs Dokploy in one VM and wires its app tunnel"""

    def __init__(self, conf: VmConf, host_user: str, sleep=time.sleep, probe=tcp_alive):
        self.logger = logging.getLogger('minipc.dokploy')
        self.conf = conf
        self.user = host_user
        self.ssh_user = conf.user or host_user
        self.host = conf.ssh_host
        self.domain = ""
        self.tunnel_name = tunnel_name_for(conf.name)
        self.tunnel_id: Optional[str] = None
        self._sleep = sleep
        self._probe = probe

    def wait_for_vm_ssh(self) -> str:
        print_step(f"Check VM SSH ({self.ssh_user}@{self.host})")
        try_capture(run_as_user(self.user, ["ssh-keygen", "-R", self.host]))
        if self._probe(self.host):
            print_success(f"VM SSH reachable at {self.host}")
            return self.host

        print_warning(f"VM SSH not reachable at {self.host}. Is the VM running? sudo virsh start {self.conf.name}")
        alternative = safe_text_ask("Alternative IP/hostname (Enter to keep polling)", allow_empty=True)
        if alternative:
            if not self._probe(alternative):
                raise NetworkError(f"Still not reachable at {alternative}", code="MPC-E502")
            self.host = alternative
            print_success(f"VM SSH reachable at {self.host}")
            return self.host

        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      console=console) as progress:
            task = progress.add_task(f"Polling SSH at {self.host}...", total=SSH_POLL_ATTEMPTS)
            for _ in range(SSH_POLL_ATTEMPTS):
                if self._probe(self.host):
                    progress.stop()
                    print_success(f"VM SSH reachable at {self.host}")
                    return self.host
                progress.update(task, advance=1)
                self._sleep(SSH_POLL_INTERVAL)
        raise NetworkError(f"VM not reachable after {SSH_POLL_ATTEMPTS * SSH_POLL_INTERVAL // 60} min",
                           code="MPC-E503", suggestions=[f"sudo virsh start {self.conf.name}"])

    def prepare_cloudflare(self):
        print_step("Host cloudflared")
        cloudflare.ensure_cloudflared()
        print_step("Cloudflare auth")
        token = cloudflare.ensure_auth(self.user, need_api_token=False)
        print_step("Select domain")
        self.domain = cloudflare.select_domain(self.user, token)

    def setup_tunnel(self) -> str:
        print_step(f"CF tunnel: {self.tunnel_name}")
        self.tunnel_id = cloudflare.create_or_reuse_tunnel(self.user, self.tunnel_name)
        print_step(f"Wildcard DNS: *.{self.domain} → tunnel")
        cloudflare.route_dns(self.user, self.tunnel_name, f"*.{self.domain}")
        return self.tunnel_id

    def credentials_path(self) -> str:
        return os.path.join(cloudflare.cloudflared_dir(self.user), f"{self.tunnel_id}.json")

    def run_vm_setup(self):
        print_header(f"VM Setup ({self.ssh_user}@{self.host})")
        creds = self.credentials_path()
        if not os.path.isfile(creds):
            raise TunnelError(f"Credentials not found: {creds}", code="MPC-E1011")
        command = remote_command(self.tunnel_id, self.domain, encode_credentials(creds))
        cmd = run_as_user(self.user, ["ssh", "-T", "-o", "StrictHostKeyChecking=no",
                                      "-o", "UserKnownHostsFile=/dev/null",
                                      f"{self.ssh_user}@{self.host}", command])
        print_info("Installing Dokploy and the cloudflared container: this takes a few minutes")
        self.logger.info("dokploy remote setup on %s", self.host)
        status = subprocess.run(cmd, input=_REMOTE_SCRIPT, text=True).returncode
        if status != 0:
            raise ProcessError(f"Dokploy setup in the VM exited with status {status}")
        print_success(f"App traffic: *.{self.domain} → dokploy-traefik:80")

    def print_summary(self):
        console.print(Panel(
            f"Tunnel        {self.tunnel_name} ({self.tunnel_id})\n"
            f"Wildcard DNS  *.{self.domain} → tunnel\n"
            f"Dashboard     http://{self.host}:3000\n\n"
            "In Dokploy → Settings → Traefik: disable Let's Encrypt (Cloudflare handles SSL)\n"
            "and use the 'web' entrypoint (HTTP) for app domains.\n"
            f"Add an app: Domains tab → app.{self.domain} (port 80, no HTTPS toggle).\n"
            "Cloudflare dashboard → SSL/TLS: set to Full (not Flexible).",
            title="Dokploy + Cloudflare complete", border_style="green",
        ))


def run_dokploy() -> bool:
    print_header("minipc Dokploy + Cloudflare App Tunnel")
    handler = get_error_handler()
    conf = handler.run_step("Select VM", select_conf, hard_stop=True)
    setup = DokploySetup(conf, detect_user())
    handler.run_step("VM SSH", setup.wait_for_vm_ssh, hard_stop=True)
    handler.run_step("Cloudflare", setup.prepare_cloudflare, hard_stop=True)
    handler.run_step("Tunnel", setup.setup_tunnel, hard_stop=True)
    handler.run_step("VM setup", setup.run_vm_setup, hard_stop=True)
    setup.print_summary()
    return True
