"""
EnvOps Orchestrator Configuration
Centralized settings for the environment agent, its collaborators and the app.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class RunMode(Enum):
    MOCK = "mock"
    LIVE = "live"


# Naming (RFC 1123 label: namespaces, services)
MAX_ENVIRONMENT_ID_LENGTH = 63
HASH_SUFFIX_LENGTH = 8

# Labels and annotations stamped on every rendered resource
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "envops"
ENVIRONMENT_LABEL = "envops.io/environment"
BRANCH_ANNOTATION = "envops.io/branch"
ROLE_ANNOTATION = "envops.io/role"
ENVIRONMENT_ID_TOKEN = "${ENVIRONMENT_ID}"
FIELD_MANAGER = "envops"

# Template roles
ROLE_DATABASE = "database"
ROLE_SERVICE = "service"
ROLE_EXPOSURE = "exposure"
ROLE_CREDENTIALS = "credentials"
REQUIRED_ROLES = (ROLE_DATABASE, ROLE_SERVICE, ROLE_EXPOSURE)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
DEFAULT_BASE_TEMPLATE = TEMPLATE_DIR / "base_environment.yaml"

# Database operator custom resource (CloudNativePG by default)
DATABASE_RESOURCE = {
    "group": "postgresql.cnpg.io",
    "version": "v1",
    "plural": "clusters",
}

# Container states that mean the database will never become ready on its own
PERMANENT_FAILURE_REASONS = (
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "InvalidImageName",
    "CreateContainerConfigError",
)

# System/admin changelogs must run before service-schema changelogs
DEFAULT_CHANGESETS = (
    "changelogs/admin/controller.yaml",
    "changelogs/admin/users.yaml",
    "changelogs/service/schema.yaml",
)

LIQUIBASE_BINARY = "liquibase"
JDBC_URL_TEMPLATE = "jdbc:postgresql://{endpoint}/{database}"
DEFAULT_DATABASE_NAME = "app"


@dataclass
class PollPolicy:
    """Bounded wait for one polling phase."""
    interval_seconds: float
    max_wait_seconds: float
    backoff: float = 1.0
    max_interval_seconds: Optional[float] = None


@dataclass
class RetryPolicy:
    """Per-call timeout plus bounded exponential backoff for transient errors."""
    max_attempts: int = 4
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_fraction: float = 0.2
    call_timeout_seconds: float = 30.0


# Polling budgets
READY_POLL = PollPolicy(interval_seconds=15, max_wait_seconds=720)       # 12 minutes
ENDPOINT_POLL = PollPolicy(interval_seconds=10, max_wait_seconds=180)    # 3 minutes
GONE_GRACE_POLL = PollPolicy(interval_seconds=10, max_wait_seconds=300)  # 5 minutes before recovery
GONE_FINAL_POLL = PollPolicy(interval_seconds=10, max_wait_seconds=600)  # after recovery

MIGRATION_CALL_TIMEOUT_SECONDS = 900


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


@dataclass
class OrchestratorSettings:
    """Runtime configuration for the environment agent and its clients."""
    mode: RunMode = RunMode.MOCK
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None
    base_template_path: Path = DEFAULT_BASE_TEMPLATE
    state_file: Optional[Path] = None
    max_id_length: int = MAX_ENVIRONMENT_ID_LENGTH
    ready_poll: PollPolicy = field(default_factory=lambda: PollPolicy(**vars(READY_POLL)))
    endpoint_poll: PollPolicy = field(default_factory=lambda: PollPolicy(**vars(ENDPOINT_POLL)))
    gone_grace_poll: PollPolicy = field(default_factory=lambda: PollPolicy(**vars(GONE_GRACE_POLL)))
    gone_final_poll: PollPolicy = field(default_factory=lambda: PollPolicy(**vars(GONE_FINAL_POLL)))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    readiness_retry_once: bool = True
    changesets: tuple[str, ...] = DEFAULT_CHANGESETS
    changelog_dir: Path = Path("db")
    database_name: str = DEFAULT_DATABASE_NAME
    liquibase_binary: str = LIQUIBASE_BINARY
    jdbc_url_template: str = JDBC_URL_TEMPLATE
    slack_webhook_url: str = ""
    report_webhook_url: str = ""
    github_webhook_secret: str = ""

    @property
    def mock_mode(self) -> bool:
        return self.mode == RunMode.MOCK

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """Build settings from ENVOPS_* environment variables."""
        settings = cls()
        settings.mode = RunMode.MOCK if _env_bool("ENVOPS_MOCK_MODE", True) else RunMode.LIVE
        settings.kubeconfig = os.getenv("ENVOPS_KUBECONFIG") or None
        settings.kube_context = os.getenv("ENVOPS_KUBE_CONTEXT") or None
        if os.getenv("ENVOPS_BASE_TEMPLATE"):
            settings.base_template_path = Path(os.environ["ENVOPS_BASE_TEMPLATE"])
        if os.getenv("ENVOPS_STATE_FILE"):
            settings.state_file = Path(os.environ["ENVOPS_STATE_FILE"])
        settings.ready_poll.max_wait_seconds = _env_float(
            "ENVOPS_READY_TIMEOUT_SECONDS", settings.ready_poll.max_wait_seconds)
        settings.endpoint_poll.max_wait_seconds = _env_float(
            "ENVOPS_ENDPOINT_TIMEOUT_SECONDS", settings.endpoint_poll.max_wait_seconds)
        settings.gone_grace_poll.max_wait_seconds = _env_float(
            "ENVOPS_STUCK_GRACE_SECONDS", settings.gone_grace_poll.max_wait_seconds)
        settings.readiness_retry_once = _env_bool(
            "ENVOPS_READINESS_RETRY_ONCE", settings.readiness_retry_once)
        changesets = os.getenv("ENVOPS_CHANGESETS", "")
        if changesets:
            settings.changesets = tuple(c.strip() for c in changesets.split(",") if c.strip())
        if os.getenv("ENVOPS_CHANGELOG_DIR"):
            settings.changelog_dir = Path(os.environ["ENVOPS_CHANGELOG_DIR"])
        settings.database_name = os.getenv("ENVOPS_DATABASE_NAME", settings.database_name)
        settings.liquibase_binary = os.getenv("ENVOPS_LIQUIBASE_BINARY", settings.liquibase_binary)
        settings.jdbc_url_template = os.getenv("ENVOPS_JDBC_URL_TEMPLATE", settings.jdbc_url_template)
        settings.slack_webhook_url = os.getenv("ENVOPS_SLACK_WEBHOOK_URL", "")
        settings.report_webhook_url = os.getenv("ENVOPS_REPORT_WEBHOOK_URL", "")
        settings.github_webhook_secret = os.getenv("ENVOPS_GITHUB_WEBHOOK_SECRET", "")
        return settings
