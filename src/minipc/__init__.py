# Made by trex099
# https://github.com/Trex099/Glint
"""
minipc: provisioning for a mini PC home server.

Phase 1 prepares the host, phase 2 defines a KVM guest with an SR-IOV
iGPU virtual function, phase 3 bootstraps the guest over SSH. Cloudflare
tunnels make the host, the guest and local web services reachable from
anywhere.
"""

__version__ = "5.7.2"
