# Made by trex099
# https://github.com/Trex099/Glint
"""
VM configuration and phase state files

Both files use shell-style KEY="value" lines so that they stay readable
(and sourceable) from a terminal. Rewrites only touch the keys being
changed; comments and unknown keys survive.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import CONFIG
from core_utils import chown_to_user
from .error_handling import ConfigurationError

logger = logging.getLogger(__name__)

_LINE_RE = re.compile(r'^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$')

VM_CONF_KEYS = [
    "VM_NAME", "VM_HOSTNAME", "VM_USER", "VM_RAM_MB", "VM_VCPUS", "VM_DISK_GB",
    "VM_DISK_PATH", "VM_OS_VARIANT", "VM_ISO_PATH", "VM_ISO_URL",
    "VM_STATIC_IP", "VM_GATEWAY", "VM_DNS", "SHARED_DIR", "SHARED_TAG",
    "GPU_PASSTHROUGH", "GPU_GEN", "GPU_PCI_ID", "GPU_VF_COUNT", "GPU_DRIVER",
    "GPU_ROM_FILE", "GPU_ROM_URL", "GPU_ROM_PATH", "GPU_IGD_LPC",
    "KERNEL_GPU_ARGS", "HOST_TUNNEL_DOMAIN", "HOST_TUNNEL_HOST",
    "VM_TUNNEL_NAME", "VM_TUNNEL_HOST",
]

# Section comments written above the first key of each group
_SECTIONS = {
    "VM_NAME": "VM",
    "VM_STATIC_IP": "Network",
    "SHARED_DIR": "Shared folder (virtiofs)",
    "GPU_PASSTHROUGH": "GPU (SR-IOV)",
    "HOST_TUNNEL_DOMAIN": "Cloudflare tunnel",
}


def _unquote(raw: str) -> str:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        inner = raw[1:-1]
        if raw[0] == '"':
            inner = re.sub(r'\\(["\\$`])', r'\1', inner)
        return inner
    # Unquoted values end at an inline comment
    return raw.split(" #", 1)[0].strip()


def _quote(value) -> str:
    text = str(value)
    text = text.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
    return f'"{text}"'


def parse_kv(text: str) -> Dict[str, str]:
    """Parse KEY="value" lines into a dict. Later keys win."""
    values = {}
    for line in text.splitlines():
        if line.lstrip().startswith("#"):
            continue
        m = _LINE_RE.match(line)
        if m:
            values[m.group(1)] = _unquote(m.group(2))
    return values


def read_kv(path: str) -> Dict[str, str]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return parse_kv(f.read())
    except FileNotFoundError:
        return {}


def update_kv_text(text: str, updates: Dict[str, object]) -> str:
    """Rewrite the given keys in place and append the ones that are missing."""
    pending = dict(updates)
    out: List[str] = []
    for line in text.splitlines():
        m = _LINE_RE.match(line)
        if m and not line.lstrip().startswith("#") and m.group(1) in pending:
            key = m.group(1)
            out.append(f"{key}={_quote(pending.pop(key))}")
        else:
            out.append(line)
    for key, value in pending.items():
        out.append(f"{key}={_quote(value)}")
    return "\n".join(out) + "\n"


def update_kv(path: str, updates: Dict[str, object]) -> None:
    """Patch keys in a KEY="value" file, creating it when needed."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except FileNotFoundError:
        text = ""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(update_kv_text(text, updates))
    logger.debug("updated %s: %s", path, ", ".join(updates))


@dataclass
class VmConf:
    """One generated-vm/<name>.conf file"""
    values: Dict[str, str] = field(default_factory=dict)
    path: Optional[str] = None

    @classmethod
    def load(cls, path: str) -> "VmConf":
        if not os.path.isfile(path):
            raise ConfigurationError(
                f"VM configuration not found: {path}",
                code="MPC-E201",
                suggestions=["Run phase2 to generate a VM configuration"]
            )
        return cls(values=read_kv(path), path=path)

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key, default)

    def __getitem__(self, key: str) -> str:
        return self.values[key]

    def __setitem__(self, key: str, value) -> None:
        self.values[key] = str(value)

    def __contains__(self, key: str) -> bool:
        return key in self.values

    @property
    def name(self) -> str:
        return self.get("VM_NAME")

    @property
    def user(self) -> str:
        return self.get("VM_USER")

    @property
    def ram_mb(self) -> int:
        return int(self.get("VM_RAM_MB", "0") or 0)

    @property
    def vcpus(self) -> int:
        return int(self.get("VM_VCPUS", "0") or 0)

    @property
    def disk_gb(self) -> int:
        return int(self.get("VM_DISK_GB", "0") or 0)

    @property
    def ssh_host(self) -> str:
        """Static IP without the prefix length."""
        return self.get("VM_STATIC_IP").split("/", 1)[0]

    @property
    def gpu_passthrough(self) -> bool:
        return self.get("GPU_PASSTHROUGH").lower() in ("yes", "true", "1")

    @property
    def igd_lpc(self) -> bool:
        return self.get("GPU_IGD_LPC").lower() in ("yes", "true", "1")

    @property
    def autoinstall(self) -> bool:
        return self.get("VM_AUTOINSTALL", "yes").lower() not in ("no", "false", "0")

    def render(self) -> str:
        lines = [f"# minipc VM configuration: {self.name}", ""]
        for key in VM_CONF_KEYS:
            if key in _SECTIONS:
                lines.append(f"# --- {_SECTIONS[key]} ---")
            lines.append(f"{key}={_quote(self.get(key))}")
        extras = [k for k in self.values if k not in VM_CONF_KEYS]
        if extras:
            lines.append("# --- Extra ---")
            lines.extend(f"{k}={_quote(self.values[k])}" for k in extras)
        return "\n".join(lines) + "\n"

    def save(self, path: str = None, owner: str = None) -> str:
        path = path or self.path or conf_path(self.name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(self.render())
        chown_to_user(path, owner)
        self.path = path
        logger.info("saved VM configuration %s", path)
        return path

    def update(self, **updates) -> None:
        """Patch keys on disk and in memory."""
        if not self.path:
            raise ConfigurationError("VM configuration has no file path", code="MPC-E201")
        update_kv(self.path, updates)
        for key, value in updates.items():
            self.values[key] = str(value)


def conf_dir() -> str:
    return CONFIG['VM_CONF_DIR']


def conf_path(vm_name: str) -> str:
    return os.path.join(conf_dir(), f"{vm_name}.conf")


def list_confs() -> List[str]:
    """Sorted list of generated-vm/*.conf paths."""
    directory = conf_dir()
    if not os.path.isdir(directory):
        return []
    return sorted(
        os.path.join(directory, name) for name in os.listdir(directory)
        if name.endswith(".conf")
    )


# --- Phase state ---

def state_path() -> str:
    return os.path.join(conf_dir(), ".state")


def read_state() -> Dict[str, str]:
    return read_kv(state_path())


def set_state(**updates) -> None:
    update_kv(state_path(), updates)


STATE_HEADER = "# Auto-generated by minipc phases, do not edit manually\n"


def init_state(**overrides) -> bool:
    """Create the state file with all phases pending unless it exists."""
    path = state_path()
    if os.path.exists(path):
        return False
    values = dict(LAST_VM_CONF="", LAST_VM_NAME="", PHASE1_DONE="no",
                  PHASE2_DONE="no", PHASE3_DONE="no")
    values.update(overrides)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(update_kv_text(STATE_HEADER, values))
    return True


def mark_phase(number: int, done: bool = True) -> None:
    set_state(**{f"PHASE{number}_DONE": "yes" if done else "no"})


def phase_done(number: int) -> bool:
    return read_state().get(f"PHASE{number}_DONE") == "yes"


def remember_vm(conf: VmConf) -> None:
    set_state(LAST_VM_CONF=conf.path or conf_path(conf.name), LAST_VM_NAME=conf.name)
