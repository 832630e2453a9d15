# provisioning_engine/certificates/auth_hook.py
"""
certbot manual hook.

    python -m provisioning_engine.certificates.auth_hook auth|cleanup

certbot exports CERTBOT_DOMAIN, CERTBOT_TOKEN and CERTBOT_VALIDATION; the
domain id comes from the issuer through PROVISIONING_DOMAIN_ID.
"""

import logging
import os
import sys
from typing import List, Mapping, Optional
from uuid import UUID

from provisioning_engine.certificates.issuer import DOMAIN_ID_ENV
from provisioning_engine.core.errors import ValidationError
from provisioning_engine.distribution.engine import DistributionEngine

logger = logging.getLogger(__name__)


def run_hook(distribution: DistributionEngine, action: str, environ: Mapping[str, str]) -> int:
    domain_id = environ.get(DOMAIN_ID_ENV)
    token = environ.get("CERTBOT_TOKEN")
    if not domain_id or not token:
        raise ValidationError(f"{DOMAIN_ID_ENV} and CERTBOT_TOKEN must be set")

    if action == "auth":
        applied = distribution.add_domain_auth_file(UUID(domain_id), token, environ.get("CERTBOT_VALIDATION", ""))
        if not applied:
            logger.error(f"[auth_hook] ❌ Challenge for {environ.get('CERTBOT_DOMAIN')} was not published on any host")
            return 1
        return 0

    if action == "cleanup":
        distribution.remove_domain_auth_file(UUID(domain_id), token)
        return 0

    raise ValidationError(f"Unknown hook action: {action}")


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = argv if argv is not None else sys.argv[1:]
    if len(args) != 1:
        print("usage: auth_hook auth|cleanup", file=sys.stderr)
        return 2

    from provisioning_engine.container import get_container

    return run_hook(get_container().distribution, args[0], os.environ)


if __name__ == "__main__":
    sys.exit(main())
