"""
Configuration settings for the rollout operator.
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_ENV_FILE = "operator.env"


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="rollout-operator", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")

    # HTTP Configuration
    HTTP_PORT: int = Field(default=8002, description="Service port")

    # Kubernetes Configuration
    K8S_NAMESPACE: Optional[str] = Field(default=None, description="Namespace to watch (all namespaces when unset)")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")

    # Application custom resource
    CRD_GROUP: str = Field(default="rollout.example.com", description="Application resource API group")
    CRD_VERSION: str = Field(default="v1alpha1", description="Application resource API version")
    CRD_PLURAL: str = Field(default="applications", description="Application resource plural name")

    # Reconciliation
    POLL_INTERVAL_SECS: float = Field(default=5.0, description="Requeue interval while a component is mid-update")
    MIN_REQUEUE_SECS: float = Field(default=1.0, description="Lower bound for any requeue interval")
    RETRY_BASE_SECS: float = Field(default=10.0, description="Initial backoff after a component failure")
    RETRY_MAX_SECS: float = Field(default=300.0, description="Backoff cap after repeated component failures")
    RETRY_JITTER: float = Field(default=0.2, description="Fraction of each backoff removed at random")
    JOB_DEADLINE_SECS: float = Field(default=1800.0, description="Pre/post update jobs running longer than this fail")
    PROGRESS_DEADLINE_SECS: float = Field(default=600.0, description="Rollouts not completed within this long fail")
    STATUS_CONFLICT_RETRIES: int = Field(default=3, description="Status write attempts per reconciliation")

    # Work queue
    MAX_CONCURRENT_RECONCILES: int = Field(default=4, description="Applications reconciled in parallel")
    RESYNC_PERIOD_SECS: float = Field(default=300.0, description="Interval between full re-lists of applications")
    ERROR_BACKOFF_BASE_SECS: float = Field(default=1.0, description="Initial requeue delay after a reconcile error")
    ERROR_BACKOFF_MAX_SECS: float = Field(default=120.0, description="Requeue delay cap after reconcile errors")

    # Application watch
    WATCH_ENABLED: bool = Field(default=True, description="Reconcile as soon as an application spec changes")
    WATCH_TIMEOUT_SECS: int = Field(default=300, description="Server-side timeout of each watch request")

    # Gate jobs
    JOB_TTL_SECS: int = Field(default=86400, description="Finished pre/post update jobs are deleted after this long (0 keeps them)")

    # Service Configuration
    ENV_FILE: str = Field(
        default=DEFAULT_ENV_FILE,
        description="Extra environment file, loaded into the process environment before settings are read",
    )
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Load the extra environment file, then read settings.

    Values already present in the environment win over the file.
    """
    load_dotenv(env_file or os.getenv("ENV_FILE", DEFAULT_ENV_FILE))
    return Settings()


# Global settings instance
settings = load_settings()
