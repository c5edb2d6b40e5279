"""Configuration management for deploy-autofix.

Environment variables:
    GITHUB_TOKEN: Token used for source-hosting API calls
    GITHUB_API_URL: GitHub REST base URL (default: https://api.github.com)
    TARGET_REPO: Repository remediated by default ("owner/name")
    DEFAULT_BRANCH: Branch that fix branches are cut from (default: main)
    AUTO_MERGE_FIXES: Merge remediation PRs automatically (default: false)
    MERGE_GRACE_SECONDS: Wait before the single merge attempt (default: 30)
    LEASE_TTL_SECONDS: Repository lease TTL (default: 900)
    LEASE_BACKEND: "memory" (default) or "supabase"
    RAILWAY_TOKEN: Deployment platform API token
    RAILWAY_API_URL: Railway GraphQL endpoint
    RAILWAY_PROJECT_ID: Railway project identifier
    RAILWAY_SERVICE_ID: Railway service redeployed on emergency restart
    RAILWAY_HEALTH_URL: Health endpoint probed on demand
    RAILWAY_WEBHOOK_SECRET: HMAC secret for platform webhooks
    HEALTH_TIMEOUT_SECONDS: Health probe timeout (default: 10)
    RESTART_DELAY_SECONDS: Wait between emergency restart and re-probe (default: 30)
    DATABASE_HOST: Data store host used for reachability checks
    DATABASE_PORT: Data store port (default: 27017)
    ALERT_RETENTION_SECONDS: Auto-resolve window for low-severity alerts (default: 3600)
    HISTORY_CAPACITY: Ring buffer size for fix history and alerts (default: 1000)
    STORE_BACKEND: "memory" (default) or "supabase"
    SUPABASE_URL: PostgREST/Supabase URL (STORE_BACKEND=supabase)
    SUPABASE_SERVICE_KEY: Service key (STORE_BACKEND=supabase)
    KNOWN_PLATFORMS: Comma-separated platforms with recognized history (default: railway)
    API_HOST: HTTP API host (default: 0.0.0.0)
    API_PORT: HTTP API port (default: 8090)
    AUTOFIX_API_KEYS: Comma-separated API keys for write endpoints
    LOG_LEVEL: Root log level for the CLI (default: INFO)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class GitHubConfig:
    """Source-hosting platform configuration."""

    token: str = ""
    api_url: str = "https://api.github.com"
    target_repo: str | None = None
    default_branch: str = "main"

    @classmethod
    def from_env(cls) -> GitHubConfig:
        return cls(
            token=os.environ.get("GITHUB_TOKEN", ""),
            api_url=os.environ.get("GITHUB_API_URL", "https://api.github.com"),
            target_repo=os.environ.get("TARGET_REPO"),
            default_branch=os.environ.get("DEFAULT_BRANCH", "main"),
        )


@dataclass
class RemediationConfig:
    """Remediation executor behaviour."""

    auto_merge: bool = False
    merge_grace_seconds: float = 30.0
    lease_ttl_seconds: int = 900
    lease_backend: str = "memory"  # "memory" or "supabase"
    branch_prefix: str = "autofix"

    @classmethod
    def from_env(cls) -> RemediationConfig:
        return cls(
            auto_merge=_env_bool("AUTO_MERGE_FIXES"),
            merge_grace_seconds=float(os.environ.get("MERGE_GRACE_SECONDS", "30")),
            lease_ttl_seconds=int(os.environ.get("LEASE_TTL_SECONDS", "900")),
            lease_backend=os.environ.get("LEASE_BACKEND", "memory"),
        )


@dataclass
class PlatformConfig:
    """Deployment platform (Railway) configuration."""

    token: str = ""
    api_url: str = "https://backboard.railway.app/graphql/v2"
    project_id: str | None = None
    service_id: str | None = None
    health_url: str | None = None
    webhook_secret: str | None = None
    health_timeout_seconds: float = 10.0
    restart_delay_seconds: float = 30.0
    database_host: str | None = None
    database_port: int = 27017

    @classmethod
    def from_env(cls) -> PlatformConfig:
        return cls(
            token=os.environ.get("RAILWAY_TOKEN", ""),
            api_url=os.environ.get(
                "RAILWAY_API_URL", "https://backboard.railway.app/graphql/v2"
            ),
            project_id=os.environ.get("RAILWAY_PROJECT_ID"),
            service_id=os.environ.get("RAILWAY_SERVICE_ID"),
            health_url=os.environ.get("RAILWAY_HEALTH_URL"),
            webhook_secret=os.environ.get("RAILWAY_WEBHOOK_SECRET"),
            health_timeout_seconds=float(
                os.environ.get("HEALTH_TIMEOUT_SECONDS", "10")
            ),
            restart_delay_seconds=float(
                os.environ.get("RESTART_DELAY_SECONDS", "30")
            ),
            database_host=os.environ.get("DATABASE_HOST"),
            database_port=int(os.environ.get("DATABASE_PORT", "27017")),
        )


@dataclass
class ClassifierTuning:
    """Heuristic constants used by the error classifier.

    Kept together so the accuracy-feedback hook and operators can adjust
    them without touching classifier code.
    """

    match_threshold: float = 0.70
    deep_analysis_bonus: float = 0.10
    deep_analysis_cap: float = 0.95
    deployment_window_seconds: int = 900
    recent_window_seconds: int = 300
    deployment_confidence_floor: float = 0.75
    pattern_match_bonus: float = 0.10
    deep_stack_penalty: float = 0.05
    deep_stack_frames: int = 10
    platform_history_bonus: float = 0.05
    recurrence_threshold: int = 3
    recurrence_window_seconds: int = 3600
    known_platforms: list[str] = field(default_factory=lambda: ["railway"])

    @classmethod
    def from_env(cls) -> ClassifierTuning:
        return cls(known_platforms=_env_list("KNOWN_PLATFORMS", "railway"))


@dataclass
class PolicyConfig:
    """Confidence thresholds for the decision policy."""

    auto_fix_threshold: float = 0.85
    supervised_fix_threshold: float = 0.70
    human_analysis_threshold: float = 0.50
    placeholder_accuracy: float = 0.85
    learning_capacity: int = 200


@dataclass
class AlertConfig:
    """Alerting sink configuration."""

    retention_seconds: int = 3600
    low_success_rate: float = 0.8

    @classmethod
    def from_env(cls) -> AlertConfig:
        return cls(
            retention_seconds=int(os.environ.get("ALERT_RETENTION_SECONDS", "3600")),
        )


@dataclass
class SupabaseConfig:
    """Supabase/PostgREST connection configuration."""

    url: str
    service_key: str
    rest_prefix: str = "/rest/v1"

    @classmethod
    def from_env(cls) -> SupabaseConfig:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables required"
            )

        return cls(
            url=url,
            service_key=key,
            rest_prefix=os.environ.get("SUPABASE_REST_PREFIX", "/rest/v1"),
        )


@dataclass
class StoreConfig:
    """History/alert store selection."""

    backend: str = "memory"  # "memory" or "supabase"
    capacity: int = 1000

    @classmethod
    def from_env(cls) -> StoreConfig:
        return cls(
            backend=os.environ.get("STORE_BACKEND", "memory"),
            capacity=int(os.environ.get("HISTORY_CAPACITY", "1000")),
        )


@dataclass
class ApiConfig:
    """HTTP API configuration."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8090
    api_keys: list[str] = field(default_factory=list)
    access_log: bool = False

    @classmethod
    def from_env(cls) -> ApiConfig:
        return cls(
            host=os.environ.get("API_HOST", "0.0.0.0"),
            port=int(os.environ.get("API_PORT", "8090")),
            api_keys=_env_list("AUTOFIX_API_KEYS"),
            access_log=_env_bool("API_ACCESS_LOG"),
        )


@dataclass
class Config:
    """Complete configuration for deploy-autofix."""

    github: GitHubConfig = field(default_factory=GitHubConfig.from_env)
    remediation: RemediationConfig = field(default_factory=RemediationConfig.from_env)
    platform: PlatformConfig = field(default_factory=PlatformConfig.from_env)
    tuning: ClassifierTuning = field(default_factory=ClassifierTuning.from_env)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig.from_env)
    store: StoreConfig = field(default_factory=StoreConfig.from_env)
    api: ApiConfig = field(default_factory=ApiConfig.from_env)
    supabase: SupabaseConfig | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Config:
        """Load complete configuration from environment variables."""
        store = StoreConfig.from_env()
        remediation = RemediationConfig.from_env()

        supabase: SupabaseConfig | None
        try:
            supabase = SupabaseConfig.from_env()
        except ValueError:
            if "supabase" in (store.backend, remediation.lease_backend):
                raise
            supabase = None

        return cls(
            github=GitHubConfig.from_env(),
            remediation=remediation,
            platform=PlatformConfig.from_env(),
            tuning=ClassifierTuning.from_env(),
            policy=PolicyConfig(),
            alerts=AlertConfig.from_env(),
            store=store,
            api=ApiConfig.from_env(),
            supabase=supabase,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


# Global config instance (lazy-loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
