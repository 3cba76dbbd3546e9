"""Environment file handling.

The environment file holds secrets and connection strings as KEY=VALUE
lines. It is only read here to learn which values must never be written
into reports or logs.
"""

from __future__ import annotations

from pathlib import Path

REDACTED = "***"

# Values shorter than this are too generic to redact safely ("1", "true")
MIN_SECRET_LENGTH = 4


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a KEY=VALUE environment file.

    Blank lines and comments are skipped, an optional leading ``export`` is
    ignored and matching surrounding quotes are stripped from values.

    Args:
        path: Path to the environment file

    Returns:
        Mapping of keys to values (empty if the file does not exist)
    """
    values: dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :]
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        values[key.strip()] = value
    return values


class Redactor:
    """Replace known secret values in free text."""

    def __init__(self, secrets: list[str] | None = None):
        # Longest first so a secret containing another is masked whole
        self._secrets = sorted(
            {s for s in (secrets or []) if len(s) >= MIN_SECRET_LENGTH},
            key=len,
            reverse=True,
        )

    @classmethod
    def from_env_files(cls, *paths: Path) -> Redactor:
        secrets: list[str] = []
        for path in paths:
            secrets.extend(parse_env_file(path).values())
        return cls(secrets)

    def __call__(self, text: str | None) -> str | None:
        if not text:
            return text
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text
