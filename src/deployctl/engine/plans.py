"""Deployment plans.

Each operator command maps to a plan: an ordered list of steps whose
`requires` entries name the idempotency keys of earlier steps they depend on.
"""

from __future__ import annotations

from pathlib import Path

from ..collaborators import (
    AptPackageManager,
    ComposeRuntime,
    Crontab,
    DockerEngine,
    GitClient,
    UfwFirewall,
)
from ..config import DeployConfig, DeploymentProfile
from ..errors import ConfigError
from ..shared.paths import compose_stamp_file, renew_log_file
from .actions import (
    CloneRepository,
    EnsureBinary,
    EnsureCronEntry,
    EnsureDirectory,
    EnsureEnvFile,
    EnsureFirewallEnabled,
    EnsureFirewallRule,
    EnsureNetwork,
    EnsurePackage,
    PruneImages,
    StartContainers,
    StopContainers,
    SyncRepository,
    ValidateComposeConfig,
)
from .certificates import RENEWAL_CRON_MARKER, renewal_cron_line
from .history import RevisionHistory
from .models import DeploymentPlan, Step, StepKind
from .preflight import (
    BinaryRequirement,
    CommandRequirement,
    FileRequirement,
    PrivilegeRequirement,
    Requirement,
)

DOCKER_INSTALL_COMMAND = "curl -fsSL https://get.docker.com | sh"

PREFLIGHT_KEY = "preflight"


def _preflight_step() -> Step:
    return Step("preflight", StepKind.PREFLIGHT, PREFLIGHT_KEY)


def deploy_requirements(config: DeployConfig, profile: DeploymentProfile) -> tuple[Requirement, ...]:
    """Capabilities a deploy needs before it may touch the host."""
    compose_file = config.compose_file_for(profile)
    template = next((t for target, t in config.env_templates if target == config.env_file), None)
    env_remediation = (
        f"cp {template} {config.env_file} and fill in the values"
        if template
        else f"Create {config.env_file} with the application settings"
    )
    return (
        PrivilegeRequirement(),
        BinaryRequirement("docker", f"{DOCKER_INSTALL_COMMAND} (or deployctl provision)"),
        CommandRequirement(
            ["docker", "compose", "version"],
            remediation="apt-get install -y docker-compose-plugin",
        ),
        BinaryRequirement("git", "apt-get install -y git"),
        FileRequirement(compose_file, remediation="deployctl provision (clones the devops repository)"),
        FileRequirement(config.env_file, remediation=env_remediation),
    )


def _compose_inputs(config: DeployConfig, profile: DeploymentProfile) -> tuple[Path, ...]:
    """Files whose edits need a fresh `up` even when no code was synced."""
    paths = [config.compose_file_for(profile), config.env_file]
    paths.extend(target for target, _ in config.env_templates)
    return tuple(dict.fromkeys(paths))


def build_deploy_plan(
    config: DeployConfig,
    profile: DeploymentProfile,
    git: GitClient,
    runtime: ComposeRuntime,
    engine: DockerEngine,
    history: RevisionHistory,
) -> DeploymentPlan:
    """Sync code, validate configuration, start containers and verify them."""
    steps = [_preflight_step()]

    sync_keys = []
    for component in config.components:
        key = f"sync:{component.name}"
        steps.append(
            Step(
                f"sync-{component.name}",
                StepKind.SYNC,
                key,
                action=SyncRepository(git, component, history),
                requires=(PREFLIGHT_KEY,),
            )
        )
        sync_keys.append(key)

    steps.append(
        Step(
            "validate-compose",
            StepKind.CONFIG_CHECK,
            "config:compose",
            action=ValidateComposeConfig(runtime),
            requires=tuple(sync_keys),
        )
    )
    steps.append(
        Step(
            "ensure-network",
            StepKind.CONFIG_CHECK,
            f"network:{config.network}",
            action=EnsureNetwork(engine, config.network),
            requires=(PREFLIGHT_KEY,),
        )
    )
    steps.append(
        Step(
            "container-up",
            StepKind.CONTAINER_UP,
            "containers:up",
            action=StartContainers(
                runtime,
                profile,
                config.expected_containers,
                inputs=_compose_inputs(config, profile),
                stamp_file=compose_stamp_file(config.state_dir),
            ),
            rollback_action=StopContainers(runtime),
            requires=("config:compose", f"network:{config.network}"),
        )
    )
    steps.append(Step("health-check", StepKind.HEALTH_CHECK, "containers:health", requires=("containers:up",)))
    steps.append(
        Step("cert-reconcile", StepKind.CERT_RECONCILE, "certificate", requires=("containers:health",))
    )
    steps.append(
        Step(
            "cleanup",
            StepKind.CLEANUP,
            "cleanup:images",
            action=PruneImages(engine),
            requires=("containers:health",),
            optional=True,
        )
    )
    return DeploymentPlan(
        name=f"deploy:{profile.name}",
        steps=tuple(steps),
        requirements=deploy_requirements(config, profile),
    )


def build_provision_plan(
    config: DeployConfig,
    packages: AptPackageManager,
    firewall: UfwFirewall,
    git: GitClient,
    engine: DockerEngine,
) -> DeploymentPlan:
    """Prepare a fresh host: packages, Docker, firewall, checkouts, env files."""
    steps = [_preflight_step()]

    for name in config.packages:
        steps.append(
            Step(
                f"package-{name}",
                StepKind.PROVISION,
                f"package:{name}",
                action=EnsurePackage(packages, name),
                requires=(PREFLIGHT_KEY,),
            )
        )
    steps.append(
        Step(
            "install-docker",
            StepKind.PROVISION,
            "binary:docker",
            action=EnsureBinary("docker", DOCKER_INSTALL_COMMAND),
            requires=(PREFLIGHT_KEY,),
        )
    )

    firewall_keys = []
    for rule in config.firewall_rules:
        key = f"firewall:{rule}"
        steps.append(
            Step(
                f"firewall-allow-{rule}",
                StepKind.PROVISION,
                key,
                action=EnsureFirewallRule(firewall, rule),
                requires=(PREFLIGHT_KEY,),
            )
        )
        firewall_keys.append(key)
    # Enabling before the SSH rule exists would lock the operator out
    steps.append(
        Step(
            "firewall-enable",
            StepKind.PROVISION,
            "firewall:enabled",
            action=EnsureFirewallEnabled(firewall),
            requires=tuple(firewall_keys),
        )
    )

    for directory in (config.base_dir, config.state_dir):
        steps.append(
            Step(
                f"directory-{directory}",
                StepKind.PROVISION,
                f"directory:{directory}",
                action=EnsureDirectory(directory),
                requires=(PREFLIGHT_KEY,),
            )
        )

    clone_keys = []
    for component in config.components:
        key = f"clone:{component.name}"
        steps.append(
            Step(
                f"clone-{component.name}",
                StepKind.SYNC,
                key,
                action=CloneRepository(git, component),
                requires=(f"directory:{config.base_dir}",),
            )
        )
        clone_keys.append(key)

    for target, template in config.env_templates:
        steps.append(
            Step(
                f"env-file-{target}",
                StepKind.CONFIG_CHECK,
                f"envfile:{target}",
                action=EnsureEnvFile(target, template),
                requires=tuple(clone_keys),
            )
        )
    steps.append(
        Step(
            "ensure-network",
            StepKind.CONFIG_CHECK,
            f"network:{config.network}",
            action=EnsureNetwork(engine, config.network),
            requires=("binary:docker",),
        )
    )

    requirements = (
        PrivilegeRequirement(),
        BinaryRequirement("apt-get", "Provisioning supports Debian/Ubuntu hosts only"),
    )
    return DeploymentPlan(name="provision", steps=tuple(steps), requirements=requirements)


def build_certificate_plan(
    config: DeployConfig,
    crontab: Crontab | None = None,
    config_path: str | None = None,
) -> DeploymentPlan:
    """Reconcile the certificate and, when a crontab is given, schedule renewal.

    `ssl-setup` passes a crontab; the scheduled `renew` does not.
    """
    steps = [
        _preflight_step(),
        Step("cert-reconcile", StepKind.CERT_RECONCILE, "certificate", requires=(PREFLIGHT_KEY,)),
    ]
    if crontab is not None:
        if not config.domain:
            raise ConfigError(
                message="Scheduling certificate renewal needs a domain",
                remediation="deployctl ssl-setup DOMAIN EMAIL",
            )
        line = renewal_cron_line(
            config.renewal_schedule,
            config.domain,
            email=config.email,
            config_path=config_path,
            log_file=str(renew_log_file(config.state_dir)),
        )
        steps.append(
            Step(
                "schedule-renewal",
                StepKind.CERT_RECONCILE,
                "certificate:schedule",
                action=EnsureCronEntry(crontab, RENEWAL_CRON_MARKER, line),
                requires=("certificate",),
            )
        )

    requirements = (
        PrivilegeRequirement(),
        BinaryRequirement("certbot", "apt-get install -y certbot"),
        BinaryRequirement("openssl", "apt-get install -y openssl"),
        BinaryRequirement("docker", f"{DOCKER_INSTALL_COMMAND} (or deployctl provision)"),
    )
    return DeploymentPlan(
        name="ssl-setup" if crontab is not None else "renew",
        steps=tuple(steps),
        requirements=requirements,
    )
