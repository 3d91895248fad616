# Made by trex099
# https://github.com/Trex099/Glint
"""
Cloudflare tunnels and DNS

Tunnels themselves are driven through the cloudflared CLI (run as the
configured user so credentials land in ~/.cloudflared). DNS records are
created through the Cloudflare API when a token is available, since
`cloudflared tunnel route dns` cannot override a wildcard CNAME.
"""

import os
import re
import random
import string
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import keyring
import keyring.errors
import pexpect
import questionary
import requests
from rich.panel import Panel
from rich.table import Table
import yaml

from config import CONFIG
from core_utils import (
    console, print_header, print_step, print_info, print_success, print_warning,
    run_capture, run_command_live, try_capture, command_ok, command_exists,
    run_as_user, read_file, write_root_file, chown_to_user, user_home,
    safe_ask, safe_text_ask, confirm, select_from_list,
)
from .error_handling import TunnelError, DependencyError, ErrorSeverity

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}')
CATCH_ALL = "http_status:404"
KEYRING_USERNAME = "api-token"
COCKPIT_CONF = "/etc/cockpit/cockpit.conf"

# port -> label
LOCAL_SERVICES: Dict[int, str] = {
    9090: "cockpit",
    19999: "netdata",
    3000: "dev-3000",
    3001: "dev-3001",
    3002: "dev-3002",
    5174: "dev-5174",
}

# Dev servers reject requests whose Host header is not localhost
DEV_PORTS = (3000, 3001, 3002, 4141, 5173, 5174, 8080, 8081, 8082)


# --- Token and domain storage ---

def cloudflared_dir(user: str = None) -> str:
    return os.path.join(user_home(user), ".cloudflared")


def token_file(user: str = None) -> str:
    return os.path.join(cloudflared_dir(user), "api-token")


def domain_file(user: str = None) -> str:
    return os.path.join(cloudflared_dir(user), "minipc-domain")


def _write_user_file(path: str, content: str, user: str, mode: int = 0o644):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    chown_to_user(os.path.dirname(path), user)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    os.chmod(path, mode)
    chown_to_user(path, user)


def load_api_token(user: str = None) -> str:
    """Token from the keyring, else from ~/.cloudflared/api-token."""
    try:
        token = keyring.get_password(CONFIG['CF_KEYRING_SERVICE'], KEYRING_USERNAME)
        if token:
            return token
    except keyring.errors.KeyringError as e:
        logger.debug("keyring lookup failed: %s", e)
    return read_file(token_file(user)).strip()


def store_api_token(token: str, user: str = None):
    try:
        keyring.set_password(CONFIG['CF_KEYRING_SERVICE'], KEYRING_USERNAME, token)
        logger.info("Cloudflare API token stored in system keyring")
    except keyring.errors.KeyringError as e:
        logger.warning("keyring unavailable, token kept in file only: %s", e)
    _write_user_file(token_file(user), token + "\n", user, mode=0o600)


def load_domain(user: str = None) -> str:
    return read_file(domain_file(user)).strip()


def store_domain(domain: str, user: str = None):
    _write_user_file(domain_file(user), domain + "\n", user)


# --- API ---

class CloudflareAPI:
    """Minimal Cloudflare v4 API client for zones and CNAME records"""

    def __init__(self, token: str, session: requests.Session = None):
        self.token = token
        self.base = CONFIG['CF_API_BASE']
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base}{path}"
        try:
            response = self.session.request(method, url, timeout=CONFIG['CF_API_TIMEOUT'], **kwargs)
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise TunnelError(f"Cloudflare API request failed: {method} {path}",
                              code="MPC-E1001", details=str(e), original_exception=e) from e
        if not response.ok or not data.get("success", False):
            errors = "; ".join(err.get("message", "") for err in data.get("errors", []))
            raise TunnelError(f"Cloudflare API error on {method} {path}: {errors or response.status_code}",
                              code="MPC-E1002",
                              suggestions=["Check that the API token has Zone:Read and DNS:Edit permissions"])
        return data

    def list_zones(self) -> List[str]:
        data = self._request("GET", "/zones", params={"per_page": 50, "status": "active"})
        return [zone["name"] for zone in data.get("result", [])]

    def zone_id(self, domain: str) -> Optional[str]:
        data = self._request("GET", "/zones", params={"name": domain, "status": "active"})
        result = data.get("result", [])
        return result[0]["id"] if result else None

    def upsert_cname(self, zone_id: str, name: str, target: str) -> str:
        """
        Point a proxied CNAME at target.

        Returns "unchanged", "updated" or "created".
        """
        data = self._request("GET", f"/zones/{zone_id}/dns_records", params={"name": name, "type": "CNAME"})
        record = {"type": "CNAME", "name": name, "content": target, "proxied": True}
        existing = data.get("result", [])
        if existing:
            if existing[0].get("content") == target:
                return "unchanged"
            self._request("PUT", f"/zones/{zone_id}/dns_records/{existing[0]['id']}", json=record)
            return "updated"
        self._request("POST", f"/zones/{zone_id}/dns_records", json=record)
        return "created"


# --- cloudflared CLI ---

def cloudflared_cmd(user: str, *args, env: Dict[str, str] = None) -> List[str]:
    return run_as_user(user, ["cloudflared"] + list(args), env=env)


def ensure_cloudflared():
    if not command_exists("cloudflared"):
        raise DependencyError("cloudflared not installed",
                              code="MPC-E902",
                              suggestions=["Run phase1 first or install cloudflared manually"])
    version = try_capture(["cloudflared", "--version"]).splitlines()
    print_success(f"cloudflared {version[0] if version else ''}".strip())


def parse_tunnel_list(output: str) -> List[Tuple[str, str]]:
    """(id, name) pairs from `cloudflared tunnel list` output."""
    tunnels = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and UUID_RE.fullmatch(fields[0]):
            tunnels.append((fields[0], fields[1]))
    return tunnels


def tunnel_list(user: str) -> List[Tuple[str, str]]:
    return parse_tunnel_list(try_capture(cloudflared_cmd(user, "tunnel", "list")))


def tunnel_id(user: str, name: str) -> Optional[str]:
    for tid, tname in tunnel_list(user):
        if tname == name:
            return tid
    return None


def parse_tunnel_id(output: str) -> Optional[str]:
    m = UUID_RE.search(output)
    return m.group(0) if m else None


def create_or_reuse_tunnel(user: str, name: str) -> str:
    existing = tunnel_id(user, name)
    if existing:
        print_success(f"Tunnel '{name}' already exists ({existing})")
        return existing
    try:
        output = run_capture(cloudflared_cmd(user, "tunnel", "create", name))
    except subprocess.CalledProcessError as e:
        output = (e.stdout or "") + (e.stderr or "")
        logger.error("cloudflared tunnel create %s failed: %s", name, output)
    console.print(output, markup=False, highlight=False)
    new_id = parse_tunnel_id(output)
    if not new_id:
        raise TunnelError(f"Could not parse tunnel ID for '{name}'",
                          code="MPC-E1003", details=output,
                          suggestions=["Check the cloudflared output above",
                                       "cloudflared tunnel list"])
    print_success(f"Created tunnel: {name} ({new_id})")
    return new_id


def route_dns(user: str, name: str, hostname: str) -> bool:
    if command_ok(cloudflared_cmd(user, "tunnel", "route", "dns", name, hostname)):
        print_success(f"CNAME: {hostname}")
        return True
    print_warning(f"Route DNS failed for {hostname}: may already exist, or create the CNAME in the dashboard")
    return False


@dataclass
class IngressRule:
    """One ingress entry of a cloudflared config"""
    hostname: Optional[str]
    service: str
    http_host_header: Optional[str] = None

    def to_dict(self) -> dict:
        entry = {"hostname": self.hostname} if self.hostname else {}
        entry["service"] = self.service
        if self.hostname and self.http_host_header:
            entry["originRequest"] = {"httpHostHeader": self.http_host_header}
        return entry

    @classmethod
    def from_dict(cls, entry: dict) -> "IngressRule":
        origin = entry.get("originRequest") or {}
        return cls(entry.get("hostname"), str(entry.get("service", "")),
                   origin.get("httpHostHeader") if isinstance(origin, dict) else None)


def load_config(config_text: str) -> dict:
    """Parsed cloudflared config; empty text is an empty config."""
    try:
        data = yaml.safe_load(config_text) if config_text.strip() else None
    except yaml.YAMLError as e:
        raise TunnelError(f"Invalid cloudflared config: {e}", code="MPC-E1012") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise TunnelError("Invalid cloudflared config: top level is not a mapping", code="MPC-E1012")
    return data


def dump_config(data: dict) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def render_config(tunnel: str, credentials_file: str, rules: List[IngressRule]) -> str:
    """cloudflared config.yml; the catch-all rule always comes last."""
    ingress = [rule.to_dict() for rule in rules if rule.hostname]
    ingress.append(IngressRule(None, CATCH_ALL).to_dict())
    return dump_config({"tunnel": tunnel, "credentials-file": credentials_file, "ingress": ingress})


def _is_catch_all(entry) -> bool:
    return isinstance(entry, dict) and not entry.get("hostname")


def insert_ingress_rule(config_text: str, rule: IngressRule) -> str:
    """Insert a rule right before the first entry without a hostname."""
    data = load_config(config_text)
    ingress = list(data.get("ingress") or [])
    position = next((i for i, entry in enumerate(ingress) if _is_catch_all(entry)), None)
    if position is None:
        ingress += [rule.to_dict(), IngressRule(None, CATCH_ALL).to_dict()]
    else:
        ingress.insert(position, rule.to_dict())
    data["ingress"] = ingress
    return dump_config(data)


def ingress_rules(config_text: str) -> List[IngressRule]:
    entries = load_config(config_text).get("ingress") or []
    return [IngressRule.from_dict(entry) for entry in entries if isinstance(entry, dict)]


def config_hostnames(config_text: str) -> List[str]:
    return [rule.hostname for rule in ingress_rules(config_text) if rule.hostname]


def ingress_map(config_text: str) -> Dict[str, str]:
    """hostname -> service pairs of a cloudflared config."""
    return {rule.hostname: rule.service for rule in ingress_rules(config_text) if rule.hostname}


def service_port(service: str) -> Optional[int]:
    """Port of a localhost service URL, None for anything else."""
    parts = urlsplit(service)
    if parts.hostname != "localhost":
        return None
    try:
        return parts.port
    except ValueError:
        return None


def render_service_unit(name: str, config_path: str, user: str, description: str = None) -> str:
    return f"""[Unit]
Description=Cloudflare Tunnel - {description or name}
After=network-online.target
Wants=network-online.target

[Service]
TimeoutStartSec=15
Type=notify
User={user}
ExecStart=/usr/bin/cloudflared --no-autoupdate --config {config_path} tunnel run
Restart=on-failure
RestartSec=5s

[Install]
WantedBy=multi-user.target
"""


def service_active(name: str) -> bool:
    return command_ok(["systemctl", "is-active", "--quiet", name])


def install_service(service_name: str, unit_text: str):
    path = f"/etc/systemd/system/{service_name}.service"
    write_root_file(path, unit_text)
    run_command_live(["systemctl", "daemon-reload"], as_root=True, quiet=True)
    if run_command_live(["systemctl", "enable", "--now", service_name], as_root=True) is None:
        raise TunnelError(f"Could not start {service_name}",
                          code="MPC-E1004", severity=ErrorSeverity.WARNING,
                          suggestions=[f"journalctl -u {service_name} -e"])
    print_success(f"{service_name} service installed and running.")


def restart_service(service_name: str):
    if service_active(service_name):
        run_command_live(["systemctl", "restart", service_name], as_root=True, quiet=True)
        print_success(f"{service_name} restarted")
    else:
        print_warning(f"Service {service_name} not running: start with: sudo systemctl start {service_name}")


# --- Authentication ---

def browser_login(user: str) -> bool:
    """
    Run `cloudflared tunnel login` and show the authorization URL.

    The command blocks until the browser flow completes and cert.pem exists.
    """
    cmd = cloudflared_cmd(user, "tunnel", "login")
    try:
        child = pexpect.spawn(cmd[0], cmd[1:], timeout=600, encoding='utf-8')
        while True:
            index = child.expect([
                r"(https://dash\.cloudflare\.com/argotunnel\S+)",  # 0: login URL
                r"existing certificate",                          # 1: already logged in
                pexpect.EOF,                                      # 2: done
                pexpect.TIMEOUT,                                  # 3: gave up
            ])
            if index == 0:
                console.print(Panel(child.match.group(1), title="Open this URL to authorize cloudflared",
                                    border_style="cyan"))
            elif index == 1:
                print_success("cloudflared already has a certificate.")
            elif index == 2:
                child.close()
                return child.exitstatus == 0 or os.path.exists(os.path.join(cloudflared_dir(user), "cert.pem"))
            else:
                print_warning("Timed out waiting for the Cloudflare browser login.")
                child.close(force=True)
                return False
    except pexpect.exceptions.ExceptionPexpect as e:
        logger.error("cloudflared login failed: %s", e)
        print_warning(f"cloudflared login failed: {e}")
        return False


def ask_api_token(user: str, required: bool = False) -> str:
    """Offer the saved token, else prompt for one and store it."""
    stored = load_api_token(user)
    if stored and confirm("Use saved API token?"):
        return stored
    print_info("Get one at: https://dash.cloudflare.com/profile/api-tokens (permissions: Zone:DNS:Edit)")
    token = safe_text_ask("Cloudflare API token:", password=True)
    if not token:
        if required:
            raise TunnelError("API token is required.", code="MPC-E1005")
        print_warning("No token provided: DNS record creation may fail.")
        return ""
    store_api_token(token, user)
    print_success("CF API token saved.")
    return token


def is_authenticated(user: str) -> bool:
    return (os.path.exists(os.path.join(cloudflared_dir(user), "cert.pem"))
            or command_ok(cloudflared_cmd(user, "tunnel", "list")))


def ensure_auth(user: str, need_api_token: bool = True) -> str:
    """
    Make sure cloudflared can manage tunnels for the user.

    Returns the API token (possibly empty) for DNS API calls.
    """
    token = load_api_token(user)
    if is_authenticated(user):
        print_success("cloudflared already authenticated.")
    else:
        method = select_from_list(
            ["browser", "token"], "Choose authentication method:",
            display_key=lambda m: ("Browser login (opens browser, recommended for first time)" if m == "browser"
                                   else "API token (headless, from dash.cloudflare.com/profile/api-tokens)"
                                   + ("  ✓ saved token detected" if token else "")),
        )
        if method == "token":
            token = ask_api_token(user)
            if not command_ok(cloudflared_cmd(user, "tunnel", "login", "--no-browser",
                                              env={"CLOUDFLARE_API_TOKEN": token})):
                print_info("Falling back to token-based route DNS")
        else:
            print_info("Opening Cloudflare browser login...")
            if not browser_login(user):
                raise TunnelError("Cloudflare login did not complete", code="MPC-E1006",
                                  suggestions=[f"Run manually: sudo -u {user} cloudflared tunnel login"])
    if need_api_token and not token:
        print_warning("Cloudflare API token is required for creating DNS records.")
        token = ask_api_token(user)
    elif token:
        print_success("CF API token: saved ✓")
    return token


def select_domain(user: str, token: str = "") -> str:
    """Pick a zone from the account (or type one) and remember it."""
    stored = load_domain(user)
    zones: List[str] = []
    if token:
        print_info("Fetching domains from your Cloudflare account...")
        try:
            zones = CloudflareAPI(token).list_zones()
        except TunnelError as e:
            logger.warning("zone listing failed: %s", e)
    if zones:
        other = "__other__"
        choice = select_from_list(
            zones + [other], "Select domain:",
            display_key=lambda z: "Enter a different domain" if z == other
            else z + ("  ← current" if z == stored else ""),
            default=stored if stored in zones else zones[0],
        )
        domain = safe_text_ask("Enter domain (e.g. example.com):") if choice == other else choice
    else:
        if token:
            print_warning("Could not list domains via API (token may lack Zone:Read).")
        domain = safe_text_ask("Your Cloudflare domain (e.g. example.com):", default=stored)
    if not domain:
        raise TunnelError("No domain selected.", code="MPC-E1007")
    store_domain(domain, user)
    print_success(f"Selected domain: {domain}")
    return domain


def create_cnames(user: str, token: str, domain: str, tunnel_name: str, tid: str, hostnames: List[str]):
    """CNAME each hostname to the tunnel via the API, else via cloudflared route dns."""
    target = f"{tid}.cfargotunnel.com"
    zone = None
    api = CloudflareAPI(token) if token else None
    if api:
        try:
            zone = api.zone_id(domain)
        except TunnelError as e:
            logger.warning("zone lookup failed: %s", e)
    if not zone:
        print_warning("No CF API token or zone ID: falling back to cloudflared route dns")
        print_warning(f"(This won't work if a wildcard *.{domain} exists)")
        for hostname in hostnames:
            route_dns(user, tunnel_name, hostname)
        return
    for hostname in hostnames:
        try:
            result = api.upsert_cname(zone, hostname, target)
        except TunnelError as e:
            print_warning(f"Failed to create CNAME {hostname}: {e}")
            continue
        if result == "unchanged":
            print_success(f"CNAME already correct: {hostname}")
        elif result == "updated":
            print_success(f"Updated CNAME (was pointing at another tunnel): {hostname} → {target}")
        else:
            print_success(f"Created CNAME: {hostname} → {target}")


# --- Host SSH + Cockpit tunnel (phase 1) ---

@dataclass
class HostTunnel:
    name: str
    tunnel_id: str
    ssh_host: str
    cockpit_host: str
    user: str


def setup_ssh_tunnel(user: str) -> Optional[HostTunnel]:
    """
    Tunnel exposing sshd and Cockpit: <user>.<domain> and cockpit.<domain>.

    Returns None when skipped.
    """
    if service_active("cloudflared"):
        print_success("cloudflared already active. Skipping.")
        return None
    if not confirm("Set up Cloudflare tunnel (SSH + Cockpit web UI)?"):
        print_info("Skipped.")
        return None
    ensure_cloudflared()
    token = ensure_auth(user, need_api_token=False)
    domain = select_domain(user, token)

    print_info("You need: a Cloudflare account with your domain already added.")
    ssh_host = safe_text_ask("SSH tunnel hostname", default=f"{user}.{domain}")
    cockpit_host = safe_text_ask("Cockpit UI hostname", default=f"cockpit.{domain}")
    name = safe_text_ask("Tunnel name", default=CONFIG['CF_HOST_TUNNEL_NAME'])

    print_info(f"Creating tunnel '{name}'...")
    tid = create_or_reuse_tunnel(user, name)
    cf_dir = cloudflared_dir(user)
    config_path = os.path.join(cf_dir, "config.yml")
    rules = [IngressRule(ssh_host, "ssh://localhost:22"), IngressRule(cockpit_host, "http://localhost:9090")]
    _write_user_file(config_path, render_config(tid, os.path.join(cf_dir, f"{tid}.json"), rules), user)

    print_info("Creating DNS CNAMEs...")
    for hostname in (ssh_host, cockpit_host):
        route_dns(user, name, hostname)

    install_service("cloudflared", render_service_unit("cloudflared", config_path, user, name))
    print_success(f"Cloudflare tunnel '{name}' live")
    print_success(f"  SSH:     ssh {user}@{ssh_host}")
    print_success(f"  Cockpit: https://{cockpit_host}")
    return HostTunnel(name=name, tunnel_id=tid, ssh_host=ssh_host, cockpit_host=cockpit_host, user=user)


def detect_host_tunnel(user: str, search: List[str] = None) -> Tuple[str, str]:
    """(hostname, domain) of the first hostname in the host tunnel config."""
    paths = search or [os.path.join(cloudflared_dir(user), "config.yml"),
                       os.path.join(CONFIG['REPO_DIR'], "configs", "cloudflared-config.yml")]
    for path in paths:
        try:
            hosts = config_hostnames(read_file(path))
        except TunnelError as e:
            print_warning(f"Skipping {path}: {e}")
            continue
        if hosts:
            return hosts[0], hosts[0].split(".", 1)[-1]
    return "", ""


# --- Local services tunnel ---

def local_hostname(port: int, prefix: str, domain: str) -> str:
    return f"{port}-{prefix}.{domain}"


def render_cockpit_conf(hostname: str) -> str:
    return (
        "[WebService]\n"
        f"Origins = https://{hostname} wss://{hostname}\n"
        "ProtocolHeader = X-Forwarded-Proto\n"
        "ForwardedForHeader = X-Forwarded-For\n"
    )


def configure_cockpit(hostname: str):
    """Cockpit behind a TLS-terminating proxy needs its origins declared."""
    if not command_exists("cockpit-bridge"):
        return
    print_step("Configuring Cockpit for reverse proxy")
    write_root_file(COCKPIT_CONF, render_cockpit_conf(hostname))
    run_command_live(["systemctl", "restart", "cockpit.socket"], as_root=True, quiet=True, check=False)
    print_success(f"Cockpit configured: Origins = https://{hostname}")


def setup_local_tunnel(user: str) -> Optional[Dict[str, str]]:
    """Full local services tunnel setup. Returns {hostname: service} or None if aborted."""
    print_header("Local Services Tunnel Setup")
    ensure_cloudflared()
    token = ensure_auth(user)
    domain = select_domain(user, token)

    name = safe_text_ask("Tunnel name", default=CONFIG['CF_LOCAL_TUNNEL_NAME'])
    prefix = safe_text_ask("Hostname prefix", default=CONFIG['CF_LOCAL_PREFIX'])
    routes = {local_hostname(port, prefix, domain): f"http://localhost:{port}" for port in LOCAL_SERVICES}

    table = Table(title=f"Routing plan for tunnel '{name}'")
    table.add_column("Hostname", style="cyan")
    table.add_column("Service")
    for port, label in LOCAL_SERVICES.items():
        table.add_row(local_hostname(port, prefix, domain), f"http://localhost:{port} ({label})")
    console.print(table)
    print_info("Dev-port tunnels show a connection error when no server is running.")
    if not confirm("Create tunnel and DNS routes?"):
        print_info("Aborted.")
        return None

    service = f"cloudflared-{name}"
    if service_active(service):
        print_success(f"{service} already active.")
        if not confirm("Re-configure and restart?"):
            print_info("Skipped.")
            return None

    print_step(f"Creating tunnel '{name}'")
    tid = create_or_reuse_tunnel(user, name)

    print_step("Writing tunnel config")
    cf_dir = cloudflared_dir(user)
    config_path = os.path.join(cf_dir, f"config-{name}.yml")
    rules = [IngressRule(host, svc) for host, svc in routes.items()]
    _write_user_file(config_path, render_config(tid, os.path.join(cf_dir, f"{tid}.json"), rules), user)
    print_success(f"Config: {config_path}")

    print_step("Creating DNS CNAME records")
    create_cnames(user, token, domain, name, tid, list(routes))

    print_step("Installing systemd service")
    install_service(service, render_service_unit(name, config_path, user, f"{name} (local services)"))

    configure_cockpit(local_hostname(9090, prefix, domain))

    print_header("Local Services Tunnel: Summary")
    for port, label in LOCAL_SERVICES.items():
        console.print(f"  [green]https://{local_hostname(port, prefix, domain)}[/]  → localhost:{port} ({label})")
    console.print(f"\n  Config: {config_path}\n  Logs:   journalctl -u {service} -f")
    console.print("  Add more ports later: minipc cloudflared add-port 8080")
    return routes


# --- add-port ---

def parse_ports(values: List[str]) -> List[int]:
    """Ports from arguments separated by commas and/or spaces; junk is ignored."""
    ports = []
    for value in values:
        for token in re.split(r'[,\s]+', value):
            if token.isdigit() and int(token) not in ports:
                ports.append(int(token))
    return ports


def detect_prefix(config_text: str) -> str:
    for hostname in config_hostnames(config_text):
        m = re.match(r'\d+-([^.]+)', hostname)
        if m:
            return m.group(1)
    return CONFIG['CF_LOCAL_PREFIX']


def find_local_config(user: str) -> Tuple[str, str]:
    """(tunnel name, config path) of the first ~/.cloudflared/config-*.yml."""
    cf_dir = cloudflared_dir(user)
    if os.path.isdir(cf_dir):
        for entry in sorted(os.listdir(cf_dir)):
            if entry.startswith("config-") and entry.endswith(".yml"):
                return entry[len("config-"):-len(".yml")], os.path.join(cf_dir, entry)
    return "", ""


def random_subdomain(length: int = 8) -> str:
    return "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(length))


def port_rule(port: int, hostname: str, host_header: bool = False) -> IngressRule:
    header = f"localhost:{port}" if host_header and port in DEV_PORTS else None
    return IngressRule(hostname, f"http://localhost:{port}", header)


def add_port_to_config(config_text: str, port: int, hostname: str, host_header: bool = False) -> Tuple[str, bool]:
    """Returns (new text, added). Ports already routed are left alone."""
    if any(service_port(rule.service) == port for rule in ingress_rules(config_text)):
        return config_text, False
    return insert_ingress_rule(config_text, port_rule(port, hostname, host_header)), True


def _local_tunnel_context(user: str) -> Tuple[str, str, str, str, str]:
    name, config_path = find_local_config(user)
    if not name:
        raise TunnelError(f"No existing tunnel found in {cloudflared_dir(user)}/config-*.yml",
                          code="MPC-E1008", suggestions=["Run the full setup first: minipc cloudflared"])
    print_success(f"Tunnel: {name} ({config_path})")
    tid = tunnel_id(user, name)
    if not tid:
        raise TunnelError(f"Tunnel '{name}' not found in cloudflared tunnel list.", code="MPC-E1009")
    print_success(f"Tunnel ID: {tid}")
    domain = load_domain(user) or safe_text_ask("Your Cloudflare domain (e.g. example.com):")
    return name, config_path, tid, domain, detect_prefix(read_file(config_path))


def add_port(user: str, port: int, label: str = None) -> str:
    """Add one port to the local services tunnel. Returns the hostname."""
    label = label or f"port-{port}"
    name, config_path, tid, domain, prefix = _local_tunnel_context(user)
    hostname = local_hostname(port, prefix, domain)
    print_info(f"Adding: {hostname} → http://localhost:{port} ({label})")

    text, added = add_port_to_config(read_file(config_path), port, hostname)
    if added:
        _write_user_file(config_path, text, user)
        print_success(f"Added to config: {hostname}")
    else:
        print_success(f"Port {port} already in config: skipping.")

    create_cnames(user, load_api_token(user), domain, name, tid, [hostname])
    restart_service(f"cloudflared-{name}")
    return hostname


def add_ports(user: str, port_args: List[str], mode: str = None) -> Dict[int, str]:
    """
    Add several ports with a naming mode: default (<port>-<prefix>),
    custom (prompted per port) or random (8 characters).
    """
    print_header("Cloudflare API Token")
    token = ask_api_token(user, required=True)
    print_header("Domain Selection")
    select_domain(user, token)
    print_header("Tunnel Detection")
    name, config_path, tid, domain, prefix = _local_tunnel_context(user)

    ports = parse_ports(port_args)
    if not ports:
        ports = parse_ports([safe_text_ask("Enter port(s) to expose (comma or space separated, e.g. 8080,3000):")])
    if not ports:
        raise TunnelError("No valid ports provided.", code="MPC-E1010")
    print_success(f"Ports to add: {' '.join(map(str, ports))}")

    if mode is None:
        mode = safe_ask(questionary.select("Subdomain naming:", choices=[
            questionary.Choice(f"Default: <port>-{prefix}.{domain}", value="default"),
            questionary.Choice("Custom: choose a subdomain for each port", value="custom"),
            questionary.Choice("Random: auto-generated subdomains", value="random"),
        ]).ask()) if not CONFIG.get('ASSUME_YES') else "default"

    hostnames: Dict[int, str] = {}
    for port in ports:
        if mode == "custom":
            sub = safe_text_ask(f"Subdomain for port {port} (becomes <name>.{domain})",
                                default=f"{port}-{prefix}").replace(" ", "").lower()
            hostnames[port] = f"{sub}.{domain}"
        elif mode == "random":
            hostnames[port] = f"{random_subdomain()}.{domain}"
        else:
            hostnames[port] = local_hostname(port, prefix, domain)

    table = Table(title="Routing plan")
    table.add_column("Hostname", style="cyan")
    table.add_column("Service")
    for port, hostname in hostnames.items():
        table.add_row(hostname, f"http://localhost:{port}")
    console.print(table)
    if not confirm("Proceed?"):
        print_info("Aborted.")
        return {}

    print_header("Applying Changes")
    text = read_file(config_path)
    for port, hostname in hostnames.items():
        text, added = add_port_to_config(text, port, hostname, host_header=True)
        if added:
            print_success(f"Config: {hostname} → localhost:{port}")
        else:
            print_success(f"Port {port} already in config: skipping config update")
    _write_user_file(config_path, text, user)
    create_cnames(user, token, domain, name, tid, list(hostnames.values()))
    restart_service(f"cloudflared-{name}")

    console.print("\n[bold green]Done. Ports added:[/]")
    for port, hostname in hostnames.items():
        console.print(f"  [green]https://{hostname}[/]  →  localhost:{port}")
    return hostnames
