# provisioning_engine/certificates/issuer.py
"""
Certificate issuance through certbot.

certbot runs locally in manual mode with HTTP-01 challenges. Its auth and
cleanup hooks call back into this package (``certificates.auth_hook``),
which publishes the challenge response on every eligible host.
"""

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional
from uuid import UUID

from provisioning_engine.core.errors import CertificateIssueError

logger = logging.getLogger(__name__)


# Passed through certbot's environment to the hooks.
DOMAIN_ID_ENV = "PROVISIONING_DOMAIN_ID"


@dataclass
class IssuedCertificate:
    cert_pem: str
    key_pem: str


def hook_command(action: str) -> str:
    return f"{sys.executable} -m provisioning_engine.certificates.auth_hook {action}"


class CertbotIssuer:

    def __init__(
        self,
        *,
        base_dir: str,
        email: Optional[str] = None,
        staging: bool = False,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.base_dir = Path(base_dir)
        self.email = email
        self.staging = staging
        self._runner = runner

    @property
    def config_dir(self) -> Path:
        return self.base_dir / "config"

    def live_dir(self, domain_name: str) -> Path:
        return self.config_dir / "live" / domain_name

    def build_command(self, domain_name: str) -> List[str]:
        cmd = [
            "certbot", "certonly",
            "--non-interactive", "--agree-tos",
            "--manual", "--preferred-challenges", "http",
            "--manual-auth-hook", hook_command("auth"),
            "--manual-cleanup-hook", hook_command("cleanup"),
            "--config-dir", str(self.config_dir),
            "--work-dir", str(self.base_dir / "work"),
            "--logs-dir", str(self.base_dir / "logs"),
            "--cert-name", domain_name,
            "--keep-until-expiring",
            "-d", domain_name,
        ]
        if self.email:
            cmd.extend(["--email", self.email])
        else:
            cmd.append("--register-unsafely-without-email")
        if self.staging:
            cmd.append("--staging")
        return cmd

    def issue(self, domain_id: UUID, domain_name: str) -> IssuedCertificate:
        logger.info(f"[certificates] Requesting certificate for {domain_name}")

        env = dict(os.environ)
        env[DOMAIN_ID_ENV] = str(domain_id)

        try:
            self._runner(
                self.build_command(domain_name),
                capture_output=True,
                text=True,
                check=True,
                env=env,
            )
        except FileNotFoundError:
            raise CertificateIssueError("certbot is not installed")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            logger.error(f"[certificates] ❌ certbot failed for {domain_name}: {stderr}")
            raise CertificateIssueError(f"certbot failed for {domain_name}: {stderr or e.returncode}")

        return self.read_issued(domain_name)

    def read_issued(self, domain_name: str) -> IssuedCertificate:
        live = self.live_dir(domain_name)
        try:
            cert_pem = (live / "fullchain.pem").read_text()
            key_pem = (live / "privkey.pem").read_text()
        except OSError as e:
            raise CertificateIssueError(f"Issued certificate for {domain_name} not found in {live}: {e}")

        logger.info(f"[certificates] ✅ Certificate for {domain_name} issued")
        return IssuedCertificate(cert_pem=cert_pem, key_pem=key_pem)
