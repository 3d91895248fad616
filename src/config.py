#!/usr/bin/env python3
# Made by trex099
# https://github.com/Trex099/Glint
"""
Configuration module for minipc

This module provides configuration settings for the provisioning phases.
"""

import os
import json
import logging
from typing import Dict, Any

logger = logging.getLogger(__name__)

REPO_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Default configuration
CONFIG = {
    'REPO_DIR': REPO_DIR,
    'VM_CONF_DIR': os.path.join(REPO_DIR, 'generated-vm'),
    'HOST_GPU_CONF': os.path.join(REPO_DIR, 'vm.conf'),
    'LOG_DIR': os.path.join(REPO_DIR, 'logs'),
    'LOG_LEVEL': 'INFO',
    'DEBUG': False,
    'ASSUME_YES': False,

    # Phase 2 defaults
    'DEFAULT_VM_NAME': 'server-vm',
    'DEFAULT_VM_HOSTNAME': 'ubuntu-server',
    'DEFAULT_DISK_GB': 32,
    'DEFAULT_MIN_RAM_GB': 4,
    'DISK_DIR_CHOICES': ['/var/lib/libvirt/images', '/var/lib/qemu'],
    'VM_OS_VARIANT': 'ubuntu24.04',
    'VM_ISO_URL': 'https://releases.ubuntu.com/24.04.3/ubuntu-24.04.3-live-server-amd64.iso',
    'VM_STATIC_IP': '192.168.122.50/24',
    'VM_GATEWAY': '192.168.122.1',
    'VM_DNS': '1.1.1.1,8.8.8.8',
    'SHARED_DIR_NAME': 'server-data',
    'SHARED_TAG': 'hostshare',
    'GPU_ROM_PATH': '/usr/share/kvm/igd.rom',
    'GPU_DEFAULT_PCI_ID': '0000:00:02.0',
    'GPU_DEFAULT_GEN': 9,
    'HOST_DEFAULT_VF_COUNT': 2,
    'VM_DEFAULT_VF_COUNT': 7,

    # Phase 3 polling
    'SSH_POLL_INTERVAL': 5,
    'SSH_POLL_ATTEMPTS_AUTOINSTALL': 180,
    'SSH_POLL_ATTEMPTS': 60,
    'SSH_POLL_REPORT_EVERY': 12,
    'TUNNEL_TEST_ATTEMPTS': 6,
    'TUNNEL_TEST_INTERVAL': 5,

    # Cloudflare
    'CF_API_BASE': 'https://api.cloudflare.com/client/v4',
    'CF_API_TIMEOUT': 15,
    'CF_KEYRING_SERVICE': 'minipc-cloudflare',
    'CF_HOST_TUNNEL_NAME': 'minipc-ssh',
    'CF_LOCAL_TUNNEL_NAME': 'minipc-local',
    'CF_LOCAL_PREFIX': 'minipc-local',

    # Downloads
    'WEBSOCAT_URL': 'https://github.com/vi/websocat/releases/latest/download/websocat.x86_64-unknown-linux-musl',
    'CLOUDFLARED_RPM_URL': 'https://github.com/cloudflare/cloudflared/releases/latest/download/cloudflared-linux-x86_64.rpm',
    'CLOUDFLARE_GPG_URL': 'https://pkg.cloudflare.com/cloudflare-main.gpg',
    'IGPU_ROM_BASE_URL': 'https://github.com/LongQT-sea/intel-igpu-passthru/releases/download/v0.1',
    'SRIOV_DKMS_RELEASES_API': 'https://api.github.com/repos/strongtz/i915-sriov-dkms/releases/latest',
    'DOWNLOAD_TIMEOUT': 30,
}

# Package sets for each supported host family
DISTRO_INFO = {
    'arch': {
        'name': 'Arch Linux',
        'install': ['pacman', '-S', '--noconfirm', '--needed'],
        'update': [['pacman', '-Syu', '--noconfirm']],
        'initramfs': ['mkinitcpio', '-P'],
        'pkgs': ('git base-devel curl wget htop net-tools openssh docker docker-compose '
                 'cloudflared sysfsutils fail2ban lm_sensors websocat micro qemu-full '
                 'libvirt virt-manager cockpit cockpit-machines dnsmasq').split(),
    },
    'ubuntu': {
        'name': 'Ubuntu / Debian',
        'install': ['apt-get', 'install', '-y'],
        'update': [['apt-get', 'update'], ['apt-get', 'upgrade', '-y']],
        'initramfs': ['update-initramfs', '-u'],
        'pkgs': ('git build-essential curl wget htop net-tools openssh-server docker.io '
                 'docker-compose fail2ban lm-sensors qemu-kvm libvirt-daemon-system '
                 'libvirt-clients virt-manager cockpit cockpit-machines dnsmasq-base '
                 'bridge-utils').split(),
    },
    'fedora': {
        'name': 'Fedora / RHEL',
        'install': ['dnf', 'install', '-y'],
        'update': [['dnf', 'upgrade', '-y']],
        'initramfs': ['dracut', '--force'],
        'pkgs': ('git curl wget htop net-tools openssh-server docker docker-compose '
                 'fail2ban lm_sensors qemu-kvm libvirt virt-install virt-manager cockpit '
                 'cockpit-machines dnsmasq bridge-utils').split(),
    },
}
# Proxmox is Debian underneath
DISTRO_INFO['proxmox'] = dict(DISTRO_INFO['ubuntu'], name='Proxmox VE')

# Try to load configuration from file
CONFIG_FILE = os.path.join(REPO_DIR, 'config.json')

_ENV_OVERRIDES = {
    'MINIPC_VM_CONF_DIR': 'VM_CONF_DIR',
    'MINIPC_LOG_DIR': 'LOG_DIR',
    'MINIPC_LOG_LEVEL': 'LOG_LEVEL',
}


def load_config() -> Dict[str, Any]:
    """
    Load configuration from file

    Values from config.json override the defaults above, and MINIPC_*
    environment variables override both.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    try:
        if os.path.exists(CONFIG_FILE):
            with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
                user_config = json.load(f)
            CONFIG.update(user_config)
            logger.info(f"Loaded configuration from {CONFIG_FILE}")
        else:
            logger.debug(f"Configuration file {CONFIG_FILE} not found, using defaults")
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load configuration: {e}")

    for env_key, config_key in _ENV_OVERRIDES.items():
        if os.environ.get(env_key):
            CONFIG[config_key] = os.environ[env_key]

    return CONFIG


_logging_ready = False


def setup_logging(level: str = None) -> logging.Logger:
    """Attach the file handler for logs/minipc.log (once per process)."""
    global _logging_ready
    root = logging.getLogger('minipc')
    level_name = (level or CONFIG.get('LOG_LEVEL') or 'INFO').upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    if _logging_ready:
        return root

    try:
        os.makedirs(CONFIG['LOG_DIR'], exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(CONFIG['LOG_DIR'], 'minipc.log'),
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root.addHandler(file_handler)
    except OSError as e:
        # Read-only checkout; keep going without a log file
        logger.warning(f"Could not open log file in {CONFIG['LOG_DIR']}: {e}")
    _logging_ready = True
    return root


# Load configuration on module import
load_config()
