# provisioning_engine/pipeline/steps.py
"""Detect-or-install steps run over a remote session."""

import json
import logging
import re
from typing import Any, Dict, Iterable, Optional, Tuple

from provisioning_engine.core.errors import RemoteExecutionError, UnsupportedOperatingSystem
from provisioning_engine.core.models import SystemInfo
from provisioning_engine.distribution import nginx
from provisioning_engine.pipeline.engine_tls import EngineTLSBundle
from provisioning_engine.remote.session import OsInfo, RemoteSession

logger = logging.getLogger(__name__)


ENGINE_TLS_DIR = "/etc/ssl/docker"
ENGINE_OVERRIDE_PATH = "/etc/systemd/system/docker.service.d/override.conf"
DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
APT_ENV = "DEBIAN_FRONTEND=noninteractive"


# ============================================
# OPERATING SYSTEM
# ============================================

def check_os(session: RemoteSession) -> OsInfo:
    os_info = session.read_os_info()
    if not os_info.is_debian_family():
        raise UnsupportedOperatingSystem(
            f"Unsupported operating system on host {session.host_id}: {os_info.pretty_name or os_info.id or 'unknown'}",
            host_id=session.host_id,
        )
    return os_info


# ============================================
# INVENTORY
# ============================================

def _flatten_lscpu(entries: Iterable[Dict[str, Any]]) -> Dict[str, str]:
    fields = {}
    for entry in entries or []:
        name = (entry.get("field") or "").strip().rstrip(":")
        if name:
            fields[name] = entry.get("data")
        fields.update(_flatten_lscpu(entry.get("children") or []))
    return fields


def parse_lscpu(output: str) -> Dict[str, Any]:
    fields = _flatten_lscpu(json.loads(output).get("lscpu") or [])
    cores = fields.get("CPU(s)")
    return {
        "architecture": fields.get("Architecture"),
        "cpu_core_count": int(cores) if cores and str(cores).isdigit() else None,
        "cpu_model": fields.get("Model name"),
    }


def parse_lsblk(output: str) -> Tuple[int, Dict[str, Any]]:
    """Total bytes over physical disks plus a per-disk layout."""
    devices = json.loads(output).get("blockdevices") or []
    total = 0
    disks = {}
    for device in devices:
        if device.get("type") != "disk":
            continue
        size = int(device.get("size") or 0)
        total += size
        disks[device["name"]] = {
            "size": size,
            "ro": device.get("ro"),
            "rm": device.get("rm"),
            "mountpoints": device.get("mountpoints") or [device.get("mountpoint")],
            "children": [
                {
                    "name": child.get("name"),
                    "size": int(child.get("size") or 0),
                    "ro": child.get("ro"),
                    "rm": child.get("rm"),
                    "mountpoints": child.get("mountpoints") or [child.get("mountpoint")],
                }
                for child in device.get("children") or []
            ],
        }
    return total, disks


def collect_inventory(session: RemoteSession, os_info: OsInfo) -> SystemInfo:
    cpu = parse_lscpu(session.run("sudo lscpu --json").stdout)
    total_storage, disks = parse_lsblk(session.run("sudo lsblk --bytes --json").stdout)
    return SystemInfo(
        os=os_info.pretty_name,
        architecture=cpu["architecture"],
        cpu_core_count=cpu["cpu_core_count"],
        cpu_model=cpu["cpu_model"],
        total_storage=total_storage,
        disks=disks,
    )


# ============================================
# CONTAINER ENGINE
# ============================================

def docker_info(session: RemoteSession) -> Optional[Dict[str, Any]]:
    """Engine id and version, or None when the engine is not installed."""
    result = session.exec("sudo docker info --format '{{json .}}'")
    if not result.ok:
        return None
    try:
        info = json.loads(result.stdout)
    except json.JSONDecodeError:
        return None
    if not info.get("ID") or not info.get("ServerVersion"):
        return None
    return {"id": info["ID"], "version": info["ServerVersion"]}


def install_docker(session: RemoteSession) -> None:
    logger.info(f"[pipeline] Installing docker on host {session.host_id}")
    session.run(f"curl -fsSL {DOCKER_INSTALL_SCRIPT_URL} -o /tmp/get-docker.sh")
    session.run("sudo sh /tmp/get-docker.sh")
    session.run("sudo systemctl enable --now docker")


def ensure_docker(session: RemoteSession) -> Dict[str, Any]:
    info = docker_info(session)
    if info is None:
        install_docker(session)
        info = docker_info(session)
    if info is None:
        raise RemoteExecutionError(
            f"Docker is not available on host {session.host_id} after install",
            host_id=session.host_id,
            command="docker info",
        )
    return info


def render_engine_override(tls_port: int) -> str:
    return (
        "[Service]\n"
        "ExecStart=\n"
        "ExecStart=/usr/bin/dockerd -H fd:// "
        f"-H tcp://0.0.0.0:{tls_port} --tlsverify "
        f"--tlscacert={ENGINE_TLS_DIR}/ca.pem "
        f"--tlscert={ENGINE_TLS_DIR}/server-cert.pem "
        f"--tlskey={ENGINE_TLS_DIR}/server-key.pem "
        "--containerd=/run/containerd/containerd.sock\n"
    )


def enable_engine_api(session: RemoteSession, bundle: EngineTLSBundle, tls_port: int) -> None:
    """Install the TLS material and expose the engine API with client verification."""
    session.write_file(f"{ENGINE_TLS_DIR}/ca.pem", bundle.ca_cert, mode="644")
    session.write_file(f"{ENGINE_TLS_DIR}/server-cert.pem", bundle.server_cert, mode="644")
    session.write_file(f"{ENGINE_TLS_DIR}/server-key.pem", bundle.server_key, mode="600")
    session.write_file(ENGINE_OVERRIDE_PATH, render_engine_override(tls_port))
    session.run("sudo systemctl daemon-reload")
    session.run("sudo systemctl restart docker")


# ============================================
# REVERSE PROXY
# ============================================

NGINX_VERSION_PATTERN = re.compile(r"nginx version:\s*(\S+)")


def nginx_version(session: RemoteSession) -> Optional[str]:
    result = session.exec("sudo nginx -v 2>&1")
    if not result.ok:
        return None
    match = NGINX_VERSION_PATTERN.search(result.stdout + result.stderr)
    return match.group(1) if match else None


def install_nginx(session: RemoteSession) -> None:
    logger.info(f"[pipeline] Installing nginx on host {session.host_id}")
    session.run(f"sudo {APT_ENV} apt-get update && sudo {APT_ENV} apt-get install -y nginx")


def ensure_nginx(session: RemoteSession) -> str:
    version = nginx_version(session)
    if version is None:
        install_nginx(session)
        version = nginx_version(session)
    if version is None:
        raise RemoteExecutionError(
            f"nginx is not available on host {session.host_id} after install",
            host_id=session.host_id,
            command="nginx -v",
        )
    return version


def deploy_landing_page(session: RemoteSession) -> None:
    session.run(f"sudo mkdir -p {nginx.INCLUDE_ROOT}")
    session.write_file(nginx.DEFAULT_INDEX, nginx.render_default_landing_page())
    nginx.check_config(session)
    nginx.reload(session)


# ============================================
# CRYPTOGRAPHIC TOOLKIT
# ============================================

def openssl_version(session: RemoteSession) -> Optional[str]:
    result = session.exec("openssl version")
    if not result.ok or not result.stdout.strip():
        return None
    return result.stdout.strip()


def ensure_openssl(session: RemoteSession) -> str:
    """Install openssl when missing; a host still without it fails the run."""
    version = openssl_version(session)
    if version is None:
        logger.info(f"[pipeline] Installing openssl on host {session.host_id}")
        session.run(f"sudo {APT_ENV} apt-get install -y openssl")
        version = openssl_version(session)
    if version is None:
        raise RemoteExecutionError(
            f"openssl is not available on host {session.host_id}",
            host_id=session.host_id,
            command="openssl version",
        )
    return version
