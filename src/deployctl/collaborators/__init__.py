"""External collaborators invoked by the deployment engine.

Each class wraps one host tool behind a narrow interface:
- ComposeRuntime / ProxyController: docker compose stack and reverse proxy
- DockerEngine: networks, pruning, disk usage
- GitClient: component checkouts
- CertbotClient: certificate authority
- AptPackageManager, UfwFirewall, Crontab: host subsystems
"""

from .certbot import CertbotClient, parse_openssl_enddate
from .compose import (
    ComposeRuntime,
    ContainerStatus,
    ProxyController,
    StackState,
    StackStatus,
    parse_ps_output,
)
from .docker import DockerEngine
from .git import GitClient, PullResult
from .shell import CommandResult, run_command
from .system import AptPackageManager, Crontab, UfwFirewall

__all__ = [
    # Shell
    "CommandResult",
    "run_command",
    # Containers
    "ComposeRuntime",
    "ContainerStatus",
    "ProxyController",
    "StackState",
    "StackStatus",
    "parse_ps_output",
    "DockerEngine",
    # Version control
    "GitClient",
    "PullResult",
    # Certificates
    "CertbotClient",
    "parse_openssl_enddate",
    # Host
    "AptPackageManager",
    "UfwFirewall",
    "Crontab",
]
