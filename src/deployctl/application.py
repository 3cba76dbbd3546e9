"""deployctl application - wires configuration to collaborators and engine."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from .collaborators import (
    AptPackageManager,
    CertbotClient,
    ComposeRuntime,
    Crontab,
    DockerEngine,
    GitClient,
    ProxyController,
    UfwFirewall,
)
from .config import DeployConfig, DeploymentProfile, find_config_file, load_config, with_overrides
from .engine import (
    ActionRunner,
    CertificateManager,
    DeploymentPlan,
    Orchestrator,
    OrchestratorState,
    ReportLog,
    RevisionHistory,
    RollbackController,
    RunLock,
    StepOutcome,
    build_certificate_plan,
    build_deploy_plan,
    build_provision_plan,
)
from .shared import Redactor, ensure_state_dir, history_file, lock_file, report_log_file


class DeployApplication:
    """
    deployctl application.

    Loads configuration once and builds every collaborator from it, so each
    command works against the same immutable DeployConfig.
    """

    def __init__(
        self,
        config_path: str | None = None,
        profile: str | None = None,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        """Initialize application.

        Args:
            config_path: Path to config file (optional)
            profile: Deployment profile name (default: "default")
            overrides: Config values set on the command line
            environ: Environment mapping (default: os.environ)
        """
        self._config_path = config_path
        self._profile_name = profile
        self._overrides = dict(overrides or {})
        self._environ = environ
        self._initialized = False

        # Components (initialized in initialize())
        self.config: DeployConfig | None = None
        self.config_source: Path | None = None
        self.profile: DeploymentProfile | None = None
        self.runtime: ComposeRuntime | None = None
        self.proxy: ProxyController | None = None
        self.engine: DockerEngine | None = None
        self.git: GitClient | None = None
        self.certbot: CertbotClient | None = None
        self.packages: AptPackageManager | None = None
        self.firewall: UfwFirewall | None = None
        self.crontab: Crontab | None = None
        self.history: RevisionHistory | None = None
        self.report_log: ReportLog | None = None
        self.lock: RunLock | None = None
        self.runner: ActionRunner | None = None
        self.certificates: CertificateManager | None = None

    def initialize(self) -> DeployApplication:
        """Load configuration and build collaborators.

        Raises:
            ConfigError: If the configuration or profile is invalid
        """
        if self._initialized:
            return self

        # 1. Configuration
        self.config_source = find_config_file(self._config_path)
        config = load_config(self.config_source, environ=self._environ)
        if self._overrides:
            config = with_overrides(config, **self._overrides)
        self.config = config
        self.profile = config.profile(self._profile_name)

        # 2. Host collaborators
        self.runtime = ComposeRuntime(
            config.compose_file_for(self.profile),
            profile=self.profile.compose_profile,
        )
        self.proxy = ProxyController(self.runtime, config.proxy_service)
        self.engine = DockerEngine()
        self.git = GitClient()
        self.certbot = CertbotClient()
        self.packages = AptPackageManager()
        self.firewall = UfwFirewall()
        self.crontab = Crontab()

        # 3. Persisted state, with env file values redacted from reports
        redactor = Redactor.from_env_files(config.env_file, *(target for target, _ in config.env_templates))
        self.history = RevisionHistory(history_file(config.state_dir))
        self.report_log = ReportLog(report_log_file(config.state_dir), redactor)
        self.lock = RunLock(lock_file(config.state_dir))

        # 4. Engine
        self.runner = ActionRunner()
        self.certificates = CertificateManager(
            self.certbot,
            self.proxy,
            config.ssl_dir,
            renewal_threshold_days=config.renewal_threshold_days,
            timeout_seconds=config.cert_timeout,
        )

        self._initialized = True
        return self

    def rollback_controller(self, operator: bool = False) -> RollbackController:
        """Rollback controller; operator rollbacks take the lock and are logged."""
        if operator:
            ensure_state_dir(self.config.state_dir)
        return RollbackController(
            self.config,
            self.git,
            self.runtime,
            self.history,
            runner=self.runner,
            report_log=self.report_log if operator else None,
            lock=self.lock if operator else None,
            profile=self.profile,
        )

    def orchestrator(
        self,
        on_transition: Callable[[OrchestratorState, OrchestratorState], None] | None = None,
        on_outcome: Callable[[StepOutcome], None] | None = None,
    ) -> Orchestrator:
        ensure_state_dir(self.config.state_dir)
        return Orchestrator(
            self.config,
            self.runtime,
            self.engine,
            self.lock,
            certificates=self.certificates,
            rollback=self.rollback_controller(),
            report_log=self.report_log,
            runner=self.runner,
            on_transition=on_transition,
            on_outcome=on_outcome,
        )

    def deploy_plan(self) -> DeploymentPlan:
        return build_deploy_plan(self.config, self.profile, self.git, self.runtime, self.engine, self.history)

    def provision_plan(self) -> DeploymentPlan:
        return build_provision_plan(self.config, self.packages, self.firewall, self.git, self.engine)

    def certificate_plan(self, schedule_renewal: bool = False) -> DeploymentPlan:
        config_path = str(self.config_source.resolve()) if self.config_source else None
        return build_certificate_plan(
            self.config,
            crontab=self.crontab if schedule_renewal else None,
            config_path=config_path,
        )
