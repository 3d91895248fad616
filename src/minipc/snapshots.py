# Made by trex099
# https://github.com/Trex099/Glint
"""
Snapper pre/post snapshot pairs around a provisioning phase

On btrfs hosts with a snapper "root" config every phase is bracketed by a
pre and a post snapshot, so that the whole phase can be rolled back with a
single `snapper undochange`. Hosts without snapper are left alone.
"""

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from rich.table import Table

from core_utils import console, command_exists, run_capture, print_success, print_warning

logger = logging.getLogger(__name__)


class SnapshotType(Enum):
    """Snapper snapshot types used by the phases"""
    PRE = "pre"
    POST = "post"


@dataclass
class SnapperPair:
    """A snapper pre/post pair for one phase run"""
    description: str
    config: str = "root"
    pre_number: Optional[str] = None
    post_number: Optional[str] = None
    enabled: bool = False

    @staticmethod
    def available(config: str = "root") -> bool:
        """True when snapper exists and knows the given config."""
        if not command_exists("snapper"):
            return False
        try:
            configs = run_capture(["snapper", "list-configs"])
        except (subprocess.CalledProcessError, FileNotFoundError):
            return False
        return any(line.startswith(config) for line in configs.splitlines())

    def _create(self, snap_type: SnapshotType, description: str) -> Optional[str]:
        cmd = ["snapper", "-c", self.config, "create", "--type", snap_type.value]
        if snap_type == SnapshotType.POST:
            cmd += ["--pre-number", self.pre_number]
        cmd += ["--cleanup-algorithm", "number", "--print-number", "--description", description]
        try:
            number = run_capture(cmd, as_root=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.warning("snapper %s snapshot failed: %s", snap_type.value, e)
            return None
        return number.strip() or None

    def pre(self, description: str = None) -> Optional[str]:
        """Create the pre snapshot, if snapper is set up for this config."""
        self.enabled = self.available(self.config)
        if not self.enabled:
            logger.debug("snapper not available, skipping pre snapshot")
            return None
        desc = description or f"{self.description} start"
        self.pre_number = self._create(SnapshotType.PRE, desc)
        if self.pre_number:
            print_success(f"Snapper pre-snapshot #{self.pre_number}: {desc}")
        else:
            print_warning("Snapper available but snapshot failed")
        return self.pre_number

    def post(self, description: str = None) -> Optional[str]:
        """Create the post snapshot paired with the pre snapshot."""
        if not self.pre_number:
            return None
        self.post_number = self._create(SnapshotType.POST, description or f"{self.description} complete")
        if self.post_number:
            print_success(f"Snapper post-snapshot #{self.post_number} (paired with #{self.pre_number})")
        else:
            print_warning("Snapper post-snapshot failed")
        return self.post_number

    def undo_command(self) -> str:
        return f"snapper undochange {self.pre_number}..{self.post_number or self.pre_number}"

    def summary(self):
        if not self.pre_number:
            return
        table = Table(title="Snapshots", show_header=False)
        table.add_column("", style="cyan")
        table.add_column("")
        table.add_row("Pre", f"#{self.pre_number}")
        if self.post_number:
            table.add_row("Post", f"#{self.post_number}")
        table.add_row("View", "snapper list")
        table.add_row("Undo", self.undo_command())
        console.print(table)

    def __enter__(self) -> 'SnapperPair':
        self.pre()
        return self

    def __exit__(self, exc_type, exc, tb):
        # The post snapshot is taken even when the phase failed
        self.post()
        return False
