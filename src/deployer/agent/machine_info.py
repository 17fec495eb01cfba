"""Stable identity and descriptive facts about the machine the agent runs on."""

import getpass
import hashlib
import platform
import socket
import uuid
from typing import Optional

from deployer.api.models import MachineRegistration


def mac_address() -> str:
    node = uuid.getnode()
    return ":".join(f"{(node >> shift) & 0xFF:02X}" for shift in range(40, -1, -8))


def compute_machine_id(host: str, user: str, mac: str) -> str:
    """First 32 upper-case hex chars of SHA-256("{host}-{user}-{mac}")."""
    digest = hashlib.sha256(f"{host}-{user}-{mac}".encode("utf-8")).hexdigest()
    return digest.upper()[:32]


def local_ip() -> Optional[str]:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return None


def collect_registration(
    client_version: str,
    installed_applications: dict[str, str],
    location: Optional[str] = None,
) -> MachineRegistration:
    """Registration payload describing this machine."""
    host = socket.gethostname()
    user = getpass.getuser()
    mac = mac_address()
    return MachineRegistration(
        machine_id=compute_machine_id(host, user, mac),
        machine_name=host,
        user_name=user,
        ip_address=local_ip(),
        mac_address=mac,
        os_version=platform.platform(),
        client_version=client_version,
        location=location,
        installed_applications=installed_applications,
    )
