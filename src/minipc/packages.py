# Made by trex099
# https://github.com/Trex099/Glint
"""
Package manager front-end for the supported host families, plus the
installers for tools that are not in every distribution's repositories
(cloudflared, websocat).
"""

import os
import logging
import tempfile
from typing import List

from config import CONFIG, DISTRO_INFO
from core_utils import (
    run_command_live, run_capture, try_capture, command_exists, download_file,
    print_info, print_success,
)
from .error_handling import DependencyError, ProcessError

logger = logging.getLogger(__name__)

WEBSOCAT_PATH = "/usr/local/bin/websocat"
CLOUDFLARE_KEYRING = "/usr/share/keyrings/cloudflare-main.gpg"
CLOUDFLARED_APT_LIST = "/etc/apt/sources.list.d/cloudflared.list"


def distro_info(os_family: str) -> dict:
    try:
        return DISTRO_INFO[os_family]
    except KeyError:
        raise DependencyError(f"Unsupported OS family: {os_family}") from None


def get_packages(os_family: str) -> List[str]:
    return list(distro_info(os_family)['pkgs'])


def install_command(os_family: str, packages: List[str]) -> List[str]:
    return list(distro_info(os_family)['install']) + list(packages)


def pkg_install(os_family: str, packages: List[str]) -> None:
    """Install packages, raising ProcessError if the package manager fails."""
    if not packages:
        return
    if run_command_live(install_command(os_family, packages), as_root=True) is None:
        raise ProcessError(
            f"Package installation failed: {' '.join(packages)}",
            suggestions=[f"Install manually: {' '.join(install_command(os_family, packages))}"]
        )


def pkg_update(os_family: str) -> None:
    for cmd in distro_info(os_family)['update']:
        if run_command_live(cmd, as_root=True) is None:
            raise ProcessError(f"System update failed: {' '.join(cmd)}")


def apt_codename() -> str:
    codename = try_capture(["lsb_release", "-cs"])
    if codename:
        return codename
    try:
        with open("/etc/os-release", "r", encoding='utf-8') as f:
            for line in f:
                if line.startswith("VERSION_CODENAME="):
                    return line.strip().split("=", 1)[1].strip('"')
    except FileNotFoundError:
        pass
    return "noble"


def install_cloudflared(os_family: str) -> None:
    if command_exists("cloudflared"):
        print_success("cloudflared already installed")
        return
    print_info("Installing cloudflared...")
    if os_family == "arch":
        pkg_install(os_family, ["cloudflared"])
    elif os_family in ("ubuntu", "proxmox"):
        with tempfile.TemporaryDirectory() as tmp:
            key_path = os.path.join(tmp, "cloudflare-main.gpg")
            if not download_file(CONFIG['CLOUDFLARE_GPG_URL'], key_path):
                raise DependencyError("Could not fetch the Cloudflare package signing key")
            run_capture(["install", "-D", "-m", "644", key_path, CLOUDFLARE_KEYRING], as_root=True)
        source = (f"deb [signed-by={CLOUDFLARE_KEYRING}] "
                  f"https://pkg.cloudflare.com/cloudflared {apt_codename()} main\n")
        run_capture(["tee", CLOUDFLARED_APT_LIST], as_root=True, input_text=source)
        run_command_live(["apt-get", "update"], as_root=True)
        pkg_install(os_family, ["cloudflared"])
    elif os_family == "fedora":
        rpm_path = os.path.join(tempfile.gettempdir(), "cloudflared.rpm")
        if not download_file(CONFIG['CLOUDFLARED_RPM_URL'], rpm_path):
            raise DependencyError("Could not download the cloudflared RPM")
        if run_command_live(["rpm", "-i", rpm_path], as_root=True) is None:
            raise ProcessError("rpm -i cloudflared failed")
    else:
        raise DependencyError("Cannot install cloudflared on this system, install it manually.")
    logger.info("cloudflared installed: %s", try_capture(["cloudflared", "--version"]))


def install_websocat(os_family: str) -> None:
    if command_exists("websocat"):
        print_success("websocat already installed")
        return
    print_info("Installing websocat...")
    if os_family == "arch":
        pkg_install(os_family, ["websocat"])
        return
    tmp_path = os.path.join(tempfile.gettempdir(), "websocat")
    if not download_file(CONFIG['WEBSOCAT_URL'], tmp_path):
        raise DependencyError("Could not download websocat",
                              suggestions=[f"Download {CONFIG['WEBSOCAT_URL']} to {WEBSOCAT_PATH}"])
    run_capture(["install", "-m", "755", tmp_path, WEBSOCAT_PATH], as_root=True)
    os.remove(tmp_path)
    print_success(f"websocat installed to {WEBSOCAT_PATH}")
