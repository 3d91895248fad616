# Made by trex099
# https://github.com/Trex099/Glint
"""
Host memory tuning: ZRAM swap, reclaim sysctls, earlyoom and OOM protection
for user sessions. Safe to re-run; files are only rewritten when they differ.
"""

import logging
from typing import List

from rich.table import Table

from core_utils import (
    console, print_header, print_step, print_info, print_success, print_warning,
    run_command_live, try_capture, command_exists, write_root_file,
)
from .error_handling import get_error_handler
from .packages import pkg_install
from .snapshots import SnapperPair
from .system import detect_os

logger = logging.getLogger(__name__)

ZRAM_CONF = "/etc/systemd/zram-generator.conf"
SYSCTL_CONF = "/etc/sysctl.d/99-minipc-memory.conf"
EARLYOOM_DEFAULTS = "/etc/default/earlyoom"
OOM_PROTECT_CONF = "/etc/systemd/system/user@.service.d/oom-protect.conf"

SYSCTL_SETTINGS = [
    ("vm.swappiness", "150"),
    ("vm.page-cluster", "0"),
    ("vm.watermark_scale_factor", "125"),
    ("vm.vfs_cache_pressure", "50"),
    ("vm.dirty_ratio", "20"),
    ("vm.dirty_background_ratio", "5"),
]

EARLYOOM_PREFER = ["node", "bun"]
EARLYOOM_AVOID = [
    "qemu-system", "cloudflared", "claude", "copilot", "codex", "opencode", "antigravity",
    "zellij", "code-insiders", "ghostty", "kitty", "alacritty", "konsole", "plasmashell",
]

USER_OOM_SCORE_ADJUST = -200


def render_zram_conf(multiplier: int = 4) -> str:
    return (
        "[zram0]\n"
        f"zram-size = ram * {multiplier}\n"
        "compression-algorithm = zstd\n"
        "swap-priority = 100\n"
        "fs-type = swap\n"
    )


def render_sysctl_conf() -> str:
    lines = ["# ZRAM-optimised memory tuning for minipc"]
    lines += [f"{key} = {value}" for key, value in SYSCTL_SETTINGS]
    return "\n".join(lines) + "\n"


def _process_regex(names: List[str], exact: bool = False) -> str:
    suffix = "$" if exact else ""
    return "|".join(f"(^|/){name}{suffix}" for name in names)


def earlyoom_args() -> str:
    """Kill below 4% free RAM and 10% free swap, reporting every 60 s."""
    return (f"-r 60 -m 4 -s 10 --prefer '{_process_regex(EARLYOOM_PREFER, exact=True)}' "
            f"--avoid '{_process_regex(EARLYOOM_AVOID)}'")


def render_earlyoom_defaults() -> str:
    return (
        "# earlyoom configuration for minipc\n"
        "# prefer: recoverable background processes; avoid: VMs, tunnels, terminals, desktop\n"
        f'EARLYOOM_ARGS="{earlyoom_args()}"\n'
    )


def render_oom_protect() -> str:
    return f"[Service]\nOOMScoreAdjust={USER_OOM_SCORE_ADJUST}\n"


class MemoryTuning:
    """Applies the four memory tuning steps"""

    def __init__(self, os_family: str):
        self.os_family = os_family
        self.logger = logging.getLogger('minipc.memory')
        self.written: List[str] = []

    def _write(self, path: str, content: str):
        if write_root_file(path, content):
            print_success(f"Written {path}")
        else:
            print_success(f"{path} already up to date")
        self.logger.debug("memory tuning file %s", path)
        self.written.append(path)

    def step_zram(self):
        print_step("ZRAM (4x RAM)")
        self._write(ZRAM_CONF, render_zram_conf())
        print_info("ZRAM size change takes effect after reboot "
                   "(or: systemctl restart systemd-zram-setup@zram0)")

    def step_sysctl(self):
        print_step("sysctl memory tuning")
        self._write(SYSCTL_CONF, render_sysctl_conf())
        run_command_live(["sysctl", "--system"], as_root=True, quiet=True)
        active = try_capture(["sysctl", "-n", "vm.dirty_ratio", "vm.page-cluster", "vm.watermark_scale_factor"])
        if active:
            print_info("Active: dirty_ratio={} page-cluster={} watermark_scale={}".format(*(active.split() + ["?"] * 3)[:3]))

    def step_earlyoom(self):
        print_step("earlyoom install + configure")
        if command_exists("earlyoom"):
            print_success("earlyoom already installed")
        else:
            pkg_install(self.os_family, ["earlyoom"])
        if not command_exists("earlyoom"):
            print_warning("earlyoom not found after install attempt: skipping its configuration")
            return
        self._write(EARLYOOM_DEFAULTS, render_earlyoom_defaults())
        run_command_live(["systemctl", "enable", "--now", "earlyoom"], as_root=True)
        run_command_live(["systemctl", "restart", "earlyoom"], as_root=True, check=False, quiet=True)
        print_success("earlyoom enabled and running")

    def step_oom_protect(self):
        print_step("OOMScoreAdjust for user sessions")
        self._write(OOM_PROTECT_CONF, render_oom_protect())
        run_command_live(["systemctl", "daemon-reload"], as_root=True)
        print_info("Active for new user sessions (existing sessions need re-login)")

    def run(self):
        handler = get_error_handler()
        for name, step in (("ZRAM", self.step_zram), ("sysctl", self.step_sysctl),
                           ("earlyoom", self.step_earlyoom), ("OOM protection", self.step_oom_protect)):
            handler.run_step(name, step)

    def print_summary(self):
        table = Table(title="Memory tuning complete", show_header=False)
        table.add_column("File", style="cyan")
        for path in self.written:
            table.add_row(path)
        console.print(table)
        print_info("Verify after reboot: zramctl; free -h; systemctl status earlyoom")


def run_memory() -> bool:
    print_header("minipc Memory Tuning")
    tuning = MemoryTuning(detect_os())
    with SnapperPair("memory tuning") as snapshots:
        tuning.run()
    logger.info("memory tuning applied: %s", ", ".join(tuning.written))
    tuning.print_summary()
    snapshots.summary()
    return True
