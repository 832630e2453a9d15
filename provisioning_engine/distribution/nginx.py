# provisioning_engine/distribution/nginx.py
"""nginx file layout, rendering and guarded config updates."""

import html
import logging
from typing import Optional

from provisioning_engine.core.errors import RemoteExecutionError
from provisioning_engine.remote.session import RemoteSession

logger = logging.getLogger(__name__)


SITES_ENABLED = "/etc/nginx/sites-enabled"
INCLUDE_ROOT = "/etc/nginx/provisioning"
WEB_ROOT = "/var/www"
DEFAULT_INDEX = "/var/www/html/index.html"


def vhost_path(domain_name: str) -> str:
    return f"{SITES_ENABLED}/{domain_name}"


def include_dir(domain_name: str) -> str:
    return f"{INCLUDE_ROOT}/{domain_name}"


def application_conf_path(domain_name: str) -> str:
    return f"{include_dir(domain_name)}/application.conf"


def index_path(domain_name: str) -> str:
    return f"{WEB_ROOT}/{domain_name}/index.html"


def challenge_path(domain_name: str, token: str) -> str:
    return f"{WEB_ROOT}/{domain_name}/.well-known/acme-challenge/{token}"


def certificate_paths(remote_root: str, domain_name: str):
    base = f"{remote_root}/certificates/domains/{domain_name}"
    return f"{base}.crt", f"{base}.key"


def render_vhost(domain_name: str, *, remote_root: str, tls: bool = False) -> str:
    """
    Server block for one domain.

    Per-application directives are pulled in through the domain's include
    directory, so they can change without re-rendering this file.
    """
    root = f"{WEB_ROOT}/{domain_name}"
    includes = f"{include_dir(domain_name)}/*.conf"

    acme = (
        "    location ^~ /.well-known/acme-challenge/ {\n"
        f"        root {root};\n"
        "        default_type text/plain;\n"
        "    }\n"
    )

    if not tls:
        return (
            "server {\n"
            "    listen 80;\n"
            "    listen [::]:80;\n"
            f"    server_name {domain_name};\n"
            f"    root {root};\n"
            "    index index.html;\n"
            "\n"
            f"{acme}"
            "\n"
            f"    include {includes};\n"
            "}\n"
        )

    cert, key = certificate_paths(remote_root, domain_name)
    return (
        "server {\n"
        "    listen 80;\n"
        "    listen [::]:80;\n"
        f"    server_name {domain_name};\n"
        "\n"
        f"{acme}"
        "\n"
        "    location / {\n"
        "        return 301 https://$host$request_uri;\n"
        "    }\n"
        "}\n"
        "\n"
        "server {\n"
        "    listen 443 ssl;\n"
        "    listen [::]:443 ssl;\n"
        f"    server_name {domain_name};\n"
        f"    root {root};\n"
        "    index index.html;\n"
        "\n"
        f"    ssl_certificate {cert};\n"
        f"    ssl_certificate_key {key};\n"
        "    ssl_protocols TLSv1.2 TLSv1.3;\n"
        "\n"
        f"    include {includes};\n"
        "}\n"
    )


def render_index(domain_name: str) -> str:
    name = html.escape(domain_name)
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        f"  <title>{name}</title>\n"
        "  <meta charset=\"utf-8\">\n"
        "</head>\n"
        "<body>\n"
        f"  <h1>{name}</h1>\n"
        "  <p>This domain is served by the platform. No application is deployed here yet.</p>\n"
        "</body>\n"
        "</html>\n"
    )


def render_default_landing_page() -> str:
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head><title>Welcome</title><meta charset=\"utf-8\"></head>\n"
        "<body><h1>Host provisioned</h1></body>\n"
        "</html>\n"
    )


def render_application_directives(directives: Optional[str]) -> str:
    if not directives or not directives.strip():
        return ""
    return directives.rstrip() + "\n"


def check_config(session: RemoteSession) -> None:
    session.run("sudo nginx -t")


def reload(session: RemoteSession) -> None:
    session.run("sudo nginx -s reload")


def update_config_file(session: RemoteSession, path: str, content: str) -> None:
    """
    Write ``content`` to ``path`` and reload only if ``nginx -t`` accepts it.

    On a failed test the previous content is restored (or the file removed
    if it did not exist) and the test failure is raised.
    """
    previous = session.read_file(path)
    session.write_file(path, content)

    result = session.exec("sudo nginx -t")
    if not result.ok:
        logger.warning(f"[nginx] Config test failed for {path} on host {session.host_id}, restoring")
        if previous is None:
            session.remove_file(path)
        else:
            session.write_file(path, previous)
        raise RemoteExecutionError(
            f"nginx rejected {path} on host {session.host_id}: {result.stderr.strip()[:500]}",
            host_id=session.host_id,
            command="sudo nginx -t",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )

    reload(session)
