#delivery_engine\config.py

from pydantic_settings import BaseSettings, SettingsConfigDict


class ControlPlaneSettings(BaseSettings):
    """Control plane configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Kubernetes
    pod_namespace: str = "default"
    velero_namespace: str = "velero"

    # Loop intervals (seconds)
    deploy_loop_interval_seconds: float = 1.0
    support_bundle_loop_interval_seconds: float = 1.0
    restore_loop_interval_seconds: float = 1.0
    snapshot_scheduler_interval_seconds: float = 60.0

    # Deploy
    annotate_slug: bool = False
    kustomize_binary_prefix: str = "kustomize"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    log_level: str = "INFO"


settings = ControlPlaneSettings()
