"""Certificate authority client backed by certbot.

Certificates are obtained in standalone mode (certbot binds port 80 itself),
read from the Let's Encrypt live directory and copied into the proxy's SSL
directory.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path

from .shell import CommandResult, run_command

LETSENCRYPT_LIVE = Path("/etc/letsencrypt/live")
CERT_FILES = ("fullchain.pem", "privkey.pem")


def parse_openssl_enddate(output: str) -> datetime | None:
    """Parse `notAfter=Jan  1 00:00:00 2027 GMT` into an aware datetime."""
    line = output.strip()
    if "=" not in line:
        return None
    value = " ".join(line.split("=", 1)[1].split())
    try:
        parsed = datetime.strptime(value, "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


class CertbotClient:
    """Obtain, renew and inspect certificates with certbot."""

    def __init__(self, live_dir: Path = LETSENCRYPT_LIVE):
        self.live_dir = live_dir

    def certificate_path(self, domain: str) -> Path:
        return self.live_dir / domain / "fullchain.pem"

    def obtain(self, domain: str, email: str, timeout: float | None = None) -> CommandResult:
        return run_command(
            [
                "certbot",
                "certonly",
                "--standalone",
                "-d",
                domain,
                "--email",
                email,
                "--agree-tos",
                "--non-interactive",
            ],
            timeout=timeout,
        )

    def renew(self, domain: str, timeout: float | None = None) -> CommandResult:
        """Renew the certificate for `domain` now.

        Only called once the renewal threshold is reached, which may be earlier
        than certbot's own renewal window, so renewal is forced.
        """
        return run_command(
            ["certbot", "renew", "--cert-name", domain, "--force-renewal", "--quiet"],
            timeout=timeout,
        )

    def current_expiry(self, domain: str) -> datetime | None:
        """notAfter of the live certificate for `domain`, or None if absent."""
        path = self.certificate_path(domain)
        if not path.exists():
            return None
        result = run_command(
            ["openssl", "x509", "-enddate", "-noout", "-in", str(path)],
            timeout=30,
        )
        if not result.ok:
            return None
        return parse_openssl_enddate(result.stdout)

    def install(self, domain: str, ssl_dir: Path) -> CommandResult:
        """Copy the live certificate files into the proxy SSL directory."""
        ssl_dir.mkdir(parents=True, exist_ok=True)
        source_dir = self.live_dir / domain
        copied: list[str] = []
        for name in CERT_FILES:
            source = source_dir / name
            if not source.exists():
                return CommandResult(["install", str(source)], 1, stderr=f"{source} not found")
            target = ssl_dir / name
            shutil.copyfile(source, target)
            target.chmod(0o644)
            copied.append(str(target))
        return CommandResult(["install", domain, str(ssl_dir)], 0, stdout="\n".join(copied))
