# Made by trex099
# https://github.com/Trex099/Glint
"""
Pre-reinstall backup and post-install restore

Backup stages the selected sections in a temporary directory under the
user's home, records where every staged item came from in MANIFEST.json
and packs everything into ~/minipc-backup-YYYYMMDD-HHMMSS.tar.gz.
Restore reads the manifest back and puts the selected sections where
they came from. Both run as the normal user and call sudo only for
root-owned files.
"""

import os
import glob
import json
import getpass
import shutil
import socket
import logging
import tarfile
import tempfile
import subprocess
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from rich.table import Table

from core_utils import (
    console, print_header, print_step, print_info, print_success, print_warning,
    confirm, is_root, run_capture, try_capture, command_ok, command_exists, user_home,
)
from .error_handling import PermissionError, StorageError, ValidationError, get_error_handler

logger = logging.getLogger(__name__)

MANIFEST_NAME = "MANIFEST.json"
MANIFEST_VERSION = 1
ARCHIVE_PREFIX = "minipc-backup-"

# staged item kinds
PATH = "path"
GPG = "gpg"
GPG_TRUST = "gpg-ownertrust"
DOMAIN_XML = "libvirt-xml"
REFERENCE = "reference"

SHELL_CONFIGS = ["fish", "ghostty", "zellij", "starship.toml"]
MEMORY_FILES = [
    "/etc/systemd/zram-generator.conf",
    "/etc/default/earlyoom",
    "/etc/earlyoom.conf",
    "/etc/systemd/system/user@.service.d/oom-protect.conf",
]
NM_CONNECTIONS = "/etc/NetworkManager/system-connections"
USER_AT_DROPIN = "/etc/systemd/system/user@.service.d"


@dataclass
class StagedItem:
    """One file or directory in the archive and where it belongs"""
    staged: str
    origin: str = ""
    root: bool = False
    kind: str = PATH


@dataclass
class SectionRecord:
    title: str
    items: List[StagedItem] = field(default_factory=list)


def archive_name(now: datetime = None) -> str:
    return f"{ARCHIVE_PREFIX}{(now or datetime.now()).strftime('%Y%m%d-%H%M%S')}.tar.gz"


def render_manifest(user: str, home: str, sections: Dict[str, SectionRecord], created: datetime = None) -> str:
    return json.dumps({
        "version": MANIFEST_VERSION,
        "created": (created or datetime.now()).isoformat(timespec='seconds'),
        "user": user,
        "home": home,
        "hostname": socket.gethostname(),
        "sections": {key: asdict(record) for key, record in sections.items()},
    }, indent=2) + "\n"


def parse_manifest(text: str) -> Dict[str, SectionRecord]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StorageError("MANIFEST.json is not valid JSON", code="MPC-E611", details=str(e)) from e
    if data.get("version") != MANIFEST_VERSION:
        raise StorageError(f"Unsupported backup manifest version: {data.get('version')}", code="MPC-E612")
    return {
        key: SectionRecord(record["title"], [StagedItem(**item) for item in record.get("items", [])])
        for key, record in data.get("sections", {}).items()
    }


def relocate(origin: str, old_home: str, new_home: str) -> str:
    """Map a path under the backed-up home onto the restoring user's home."""
    base = old_home.rstrip("/")
    if base and (origin == base or origin.startswith(base + "/")):
        return new_home.rstrip("/") + origin[len(base):]
    return origin


class Stager:
    """Copies sources into the staging directory and records them"""

    def __init__(self, stage_dir: str, user: str):
        self.stage_dir = stage_dir
        self.user = user
        self.logger = logging.getLogger('minipc.backup')

    def _target(self, section: str, name: str) -> str:
        dest_dir = os.path.join(self.stage_dir, section)
        os.makedirs(dest_dir, exist_ok=True)
        return os.path.join(dest_dir, name)

    def copy(self, section: str, src: str, root: bool = False) -> Optional[StagedItem]:
        exists = command_ok(["test", "-e", src], as_root=True) if root else os.path.exists(src)
        if not exists:
            print_warning(f"  Not found, skipping: {src}")
            return None
        name = os.path.basename(src.rstrip("/"))
        dest = self._target(section, name)
        if root:
            run_capture(["cp", "-a", src, dest], as_root=True)
            run_capture(["chown", "-R", f"{self.user}:", dest], as_root=True)
        elif os.path.isdir(src):
            shutil.copytree(src, dest, symlinks=True)
        else:
            shutil.copy2(src, dest)
        print_success(f"  Staged: {src}")
        return StagedItem(staged=f"{section}/{name}", origin=src, root=root)

    def write(self, section: str, name: str, content: str, kind: str = REFERENCE, origin: str = "") -> StagedItem:
        with open(self._target(section, name), 'w', encoding='utf-8') as f:
            f.write(content)
        print_success(f"  Staged: {section}/{name}")
        return StagedItem(staged=f"{section}/{name}", origin=origin, kind=kind)


# --- section collectors ---

def _home_dir(stager: Stager, section: str, rel: str) -> List[StagedItem]:
    item = stager.copy(section, os.path.join(user_home(stager.user), rel))
    return [item] if item else []


def collect_cloudflared(stager: Stager) -> List[StagedItem]:
    return _home_dir(stager, "cloudflared", ".cloudflared")


def collect_ssh(stager: Stager) -> List[StagedItem]:
    return _home_dir(stager, "ssh", ".ssh")


def collect_gpg(stager: Stager) -> List[StagedItem]:
    if not command_exists("gpg"):
        print_warning("  gpg not installed, skipping")
        return []
    secret_ids = [line.split(":")[4] for line in
                  try_capture(["gpg", "--list-secret-keys", "--with-colons"]).splitlines()
                  if line.startswith("sec")]
    if not secret_ids:
        print_warning("  No GPG secret keys found, skipping")
        return []
    items = [
        stager.write("gpg", "secret-keys.asc", run_capture(["gpg", "--armor", "--export-secret-keys"]) + "\n", GPG),
        stager.write("gpg", "public-keys.asc", run_capture(["gpg", "--armor", "--export"]) + "\n", GPG),
        stager.write("gpg", "ownertrust.txt", run_capture(["gpg", "--export-ownertrust"]) + "\n", GPG_TRUST),
    ]
    print_info(f"  {len(secret_ids)} secret key(s) exported")
    return items


def collect_shell(stager: Stager) -> List[StagedItem]:
    config_dir = os.path.join(user_home(stager.user), ".config")
    items = [stager.copy("config", os.path.join(config_dir, name)) for name in SHELL_CONFIGS]
    return [i for i in items if i]


def collect_autostart(stager: Stager) -> List[StagedItem]:
    return _home_dir(stager, "autostart", ".config/autostart")


def collect_systemd(stager: Stager) -> List[StagedItem]:
    units = try_capture(["find", "/etc/systemd/system", "-maxdepth", "1", "-name", "cloudflared*.service"],
                        as_root=True).splitlines()
    items = [stager.copy("systemd", unit, root=True) for unit in sorted(units)]
    items.append(stager.copy("systemd", USER_AT_DROPIN, root=True))
    user_units = os.path.join(user_home(stager.user), ".config/systemd/user")
    if os.path.isdir(user_units):
        items.append(stager.copy("systemd-user", user_units))
    return [i for i in items if i]


def collect_memory(stager: Stager) -> List[StagedItem]:
    sysctl = sorted(glob.glob("/etc/sysctl.d/*minipc*.conf"))
    items = [stager.copy("memory", path, root=True) for path in MEMORY_FILES + sysctl
             if os.path.exists(path)]
    return [i for i in items if i]


def collect_network(stager: Stager) -> List[StagedItem]:
    print_warning("  Contains plaintext Wi-Fi/VPN secrets: the archive is protected by file permissions only")
    item = stager.copy("network", NM_CONNECTIONS, root=True)
    return [item] if item else []


def collect_filesystem(stager: Stager) -> List[StagedItem]:
    items = [stager.write("filesystem", "fstab", try_capture(["cat", "/etc/fstab"], as_root=True) + "\n",
                          origin="/etc/fstab")]
    subvolumes = try_capture(["btrfs", "subvolume", "list", "/"], as_root=True)
    if subvolumes:
        items.append(stager.write("filesystem", "btrfs-subvolumes.txt", subvolumes + "\n"))
    else:
        print_warning("  Could not list btrfs subvolumes (not a btrfs root?)")
    items.append(stager.write("filesystem", "lsblk.txt", try_capture(["lsblk", "-f"]) + "\n"))
    return items


def collect_libvirt(stager: Stager) -> List[StagedItem]:
    names = [n for n in try_capture(["virsh", "list", "--all", "--name"], as_root=True).splitlines() if n.strip()]
    if not names:
        print_warning("  No libvirt domains found")
    items = []
    for name in names:
        xml = try_capture(["virsh", "dumpxml", name], as_root=True)
        if xml:
            items.append(stager.write("libvirt", f"{name}.xml", xml + "\n", DOMAIN_XML))
    return items


@dataclass
class Section:
    key: str
    title: str
    collect: Callable[[Stager], List[StagedItem]]


SECTIONS = [
    Section("cloudflared", "Cloudflare tunnel credentials (~/.cloudflared)", collect_cloudflared),
    Section("ssh", "SSH keys (~/.ssh)", collect_ssh),
    Section("gpg", "GPG keys (armored export)", collect_gpg),
    Section("shell", "Shell/terminal config (fish, ghostty, zellij, starship)", collect_shell),
    Section("autostart", "XDG autostart (~/.config/autostart)", collect_autostart),
    Section("systemd", "Custom systemd units (cloudflared-*, user@.service.d, user units)", collect_systemd),
    Section("memory", "Memory tuning (zram, sysctl, earlyoom)", collect_memory),
    Section("network", "NetworkManager connections", collect_network),
    Section("filesystem", "fstab + btrfs subvolumes + lsblk (reference)", collect_filesystem),
    Section("libvirt", "libvirt domain XML definitions", collect_libvirt),
]


def _require_normal_user():
    if is_root():
        raise PermissionError("Do not run backup/restore as root",
                              code="MPC-E102",
                              suggestions=["Run as your normal user: sudo is called where needed"])


def pack(stage_dir: str, archive_path: str):
    with tarfile.open(archive_path, "w:gz") as tar:
        for name in sorted(os.listdir(stage_dir)):
            tar.add(os.path.join(stage_dir, name), arcname=name)
    os.chmod(archive_path, 0o600)


def run_backup(output_dir: str = None) -> str:
    """Back up the selected sections. Returns the archive path."""
    _require_normal_user()
    user = getpass.getuser()
    home = user_home(user)
    archive_path = os.path.join(output_dir or home, archive_name())
    print_header("minipc OS Reinstall Pre-Flight Backup")
    print_info(f"User: {user}  Home: {home}")
    print_info(f"Output: {archive_path}")

    stage_dir = tempfile.mkdtemp(prefix=".minipc-backup-stage-", dir=home)
    handler = get_error_handler()
    records: Dict[str, SectionRecord] = {}
    try:
        stager = Stager(stage_dir, user)
        for section in SECTIONS:
            print_step(section.title)
            if not confirm(f"Back up {section.title}?"):
                print_info("Skipped.")
                continue
            items = handler.run_step(section.title, section.collect, stager)
            if items:
                records[section.key] = SectionRecord(section.title, items)

        with open(os.path.join(stage_dir, MANIFEST_NAME), 'w', encoding='utf-8') as f:
            f.write(render_manifest(user, home, records))
        print_step("Compressing archive")
        pack(stage_dir, archive_path)
    finally:
        # root-owned copies may need sudo to remove
        if not command_ok(["rm", "-rf", stage_dir], as_root=True):
            shutil.rmtree(stage_dir, ignore_errors=True)

    size_mb = os.path.getsize(archive_path) / (1024 * 1024)
    logger.info("backup written to %s (%d sections)", archive_path, len(records))
    print_success(f"Archive: {archive_path} ({size_mb:.1f} MB, {len(records)} sections)")
    print_info("Move this file to external storage before reinstalling.")
    print_info(f"Restore with: minipc restore {archive_path}")
    return archive_path


# --- restore ---

def _fix_permissions(key: str, dest: str):
    if key not in ("ssh", "cloudflared") or not os.path.isdir(dest):
        return
    os.chmod(dest, 0o700)
    for name in os.listdir(dest):
        path = os.path.join(dest, name)
        if not os.path.isfile(path):
            continue
        if key == "ssh":
            mode = 0o644 if name.endswith(".pub") or name in ("known_hosts", "config") else 0o600
        else:
            mode = 0o600 if name.endswith(".json") or name.endswith(".pem") else 0o644
        os.chmod(path, mode)


def restore_item(extract_dir: str, key: str, item: StagedItem, old_home: str, new_home: str):
    src = os.path.join(extract_dir, item.staged)
    if not os.path.exists(src):
        print_warning(f"  Not in archive: {item.staged}")
        return
    if item.kind == GPG:
        run_capture(["gpg", "--batch", "--import", src])
        print_success(f"  Imported {os.path.basename(src)}")
    elif item.kind == GPG_TRUST:
        run_capture(["gpg", "--import-ownertrust", src])
        print_success("  Owner trust restored")
    elif item.kind == DOMAIN_XML:
        run_capture(["virsh", "define", src], as_root=True)
        print_success(f"  Defined domain from {os.path.basename(src)}")
    elif item.kind == REFERENCE:
        print_info(f"  Reference only: {item.staged}")
    elif item.root:
        run_capture(["mkdir", "-p", os.path.dirname(item.origin)], as_root=True)
        if os.path.isdir(src):
            run_capture(["cp", "-a", src + "/.", item.origin + "/"] if os.path.isdir(item.origin)
                        else ["cp", "-a", src, item.origin], as_root=True)
        else:
            run_capture(["cp", src, item.origin], as_root=True)
        run_capture(["chown", "-R", "root:root", item.origin], as_root=True)
        print_success(f"  Restored: {item.origin}")
    else:
        dest = relocate(item.origin, old_home, new_home)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        if os.path.isdir(src):
            if os.path.isdir(dest):
                shutil.rmtree(dest)
            shutil.copytree(src, dest, symlinks=True)
        else:
            shutil.copy2(src, dest)
        _fix_permissions(key, dest)
        print_success(f"  Restored: {dest}")


def extract(archive_path: str, dest: str):
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise StorageError(f"Could not extract {archive_path}", code="MPC-E613", details=str(e)) from e


def load_manifest(extract_dir: str) -> Tuple[Dict[str, SectionRecord], str]:
    """Section records and the home directory the backup was taken from."""
    path = os.path.join(extract_dir, MANIFEST_NAME)
    if not os.path.isfile(path):
        raise StorageError("Archive has no MANIFEST.json", code="MPC-E614",
                           suggestions=["Only archives created by `minipc backup` can be restored"])
    with open(path, 'r', encoding='utf-8') as f:
        text = f.read()
    records = parse_manifest(text)
    return records, json.loads(text).get("home") or ""


def print_manifest(records: Dict[str, SectionRecord]):
    table = Table(title="Backup contents")
    table.add_column("Section", style="cyan")
    table.add_column("Items", justify="right")
    table.add_column("Contents")
    for key, record in records.items():
        table.add_row(key, str(len(record.items)), record.title)
    console.print(table)


def run_restore(archive_path: str) -> List[str]:
    """Restore selected sections of a backup archive. Returns the restored section keys."""
    _require_normal_user()
    if not os.path.isfile(archive_path):
        raise ValidationError(f"Archive not found: {archive_path}", code="MPC-E804")
    print_header("minipc Post-Install Restore")
    user = getpass.getuser()
    new_home = user_home(user)
    handler = get_error_handler()
    restored = []
    with tempfile.TemporaryDirectory(prefix="minipc-restore-") as extract_dir:
        extract(archive_path, extract_dir)
        records, old_home = load_manifest(extract_dir)
        old_home = old_home or new_home
        print_manifest(records)
        for key, record in records.items():
            print_step(record.title)
            if not confirm(f"Restore {record.title}?"):
                print_info("Skipped.")
                continue
            for item in record.items:
                handler.run_step(f"{key}: {item.staged}", restore_item,
                                 extract_dir, key, item, old_home, new_home)
            restored.append(key)
    if {"systemd", "memory"} & set(restored):
        try:
            run_capture(["systemctl", "daemon-reload"], as_root=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.warning("daemon-reload failed: %s", e)
    logger.info("restored sections: %s", ", ".join(restored) or "none")
    print_success(f"Restore complete: {', '.join(restored) or 'nothing selected'}")
    return restored
