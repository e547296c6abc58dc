"""
CompanyOS configuration management.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class ApprovalConfig:
    """Change classifier configuration."""

    # Changes above this many lines always need review
    max_auto_approve_lines: int = 50


@dataclass
class RealtimeConfig:
    """Real-time fan-out configuration (sockets and subscription iterators)."""

    max_connections: int = 1000
    max_connections_per_ip: int = 50
    heartbeat_interval: int = 30  # seconds
    subscription_queue_size: int = 1000


@dataclass
class AuthConfig:
    """Token verification configuration."""

    secret_key: str = ""
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    issuer: str = "companyos"
    audience: str = "companyos-realtime"
    leeway_seconds: int = 30


@dataclass
class CompanyOSConfig:
    """
    Complete CompanyOS configuration.

    Loaded from .companyos/config.yaml, then overridden by environment
    variables where they are set.
    """

    version: str = "1.2026.10"
    log_level: str = "INFO"

    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)

    @classmethod
    def from_file(cls, path: Path) -> "CompanyOSConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data.get("companyos", data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompanyOSConfig":
        """Create config from dictionary."""
        config = cls()

        if "version" in data:
            config.version = data["version"]

        if "log_level" in data:
            config.log_level = str(data["log_level"]).upper()

        if "approval" in data:
            a = data["approval"]
            config.approval = ApprovalConfig(
                max_auto_approve_lines=a.get("max_auto_approve_lines", 50),
            )

        if "realtime" in data:
            r = data["realtime"]
            config.realtime = RealtimeConfig(
                max_connections=r.get("max_connections", 1000),
                max_connections_per_ip=r.get("max_connections_per_ip", 50),
                heartbeat_interval=r.get("heartbeat_interval", 30),
                subscription_queue_size=r.get("subscription_queue_size", 1000),
            )

        if "auth" in data:
            # Secrets never come from the YAML file
            a = data["auth"]
            config.auth = AuthConfig(
                algorithm=a.get("algorithm", "HS256"),
                access_token_expire_minutes=a.get("access_token_expire_minutes", 60),
                issuer=a.get("issuer", "companyos"),
                audience=a.get("audience", "companyos-realtime"),
                leeway_seconds=a.get("leeway_seconds", 30),
            )

        return config

    def apply_env(self) -> "CompanyOSConfig":
        """Override file values with environment variables that are set."""
        if os.getenv("COMPANYOS_LOG_LEVEL"):
            self.log_level = os.environ["COMPANYOS_LOG_LEVEL"].upper()
        if os.getenv("COMPANYOS_MAX_AUTO_APPROVE_LINES"):
            self.approval.max_auto_approve_lines = int(os.environ["COMPANYOS_MAX_AUTO_APPROVE_LINES"])
        if os.getenv("WS_MAX_CONNECTIONS"):
            self.realtime.max_connections = int(os.environ["WS_MAX_CONNECTIONS"])
        if os.getenv("WS_MAX_CONNECTIONS_PER_IP"):
            self.realtime.max_connections_per_ip = int(os.environ["WS_MAX_CONNECTIONS_PER_IP"])
        if os.getenv("WS_HEARTBEAT_INTERVAL"):
            self.realtime.heartbeat_interval = int(os.environ["WS_HEARTBEAT_INTERVAL"])
        if os.getenv("COMPANYOS_SUBSCRIPTION_QUEUE_SIZE"):
            self.realtime.subscription_queue_size = int(os.environ["COMPANYOS_SUBSCRIPTION_QUEUE_SIZE"])

        self.auth.secret_key = os.getenv("JWT_SECRET_KEY", self.auth.secret_key)
        if os.getenv("JWT_ISSUER"):
            self.auth.issuer = os.environ["JWT_ISSUER"]
        if os.getenv("JWT_AUDIENCE"):
            self.auth.audience = os.environ["JWT_AUDIENCE"]
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (secrets excluded)."""
        return {
            "companyos": {
                "version": self.version,
                "log_level": self.log_level,
                "approval": {
                    "max_auto_approve_lines": self.approval.max_auto_approve_lines,
                },
                "realtime": {
                    "max_connections": self.realtime.max_connections,
                    "max_connections_per_ip": self.realtime.max_connections_per_ip,
                    "heartbeat_interval": self.realtime.heartbeat_interval,
                    "subscription_queue_size": self.realtime.subscription_queue_size,
                },
                "auth": {
                    "algorithm": self.auth.algorithm,
                    "access_token_expire_minutes": self.auth.access_token_expire_minutes,
                    "issuer": self.auth.issuer,
                    "audience": self.auth.audience,
                    "leeway_seconds": self.auth.leeway_seconds,
                },
            }
        }

    def save(self, path: Path) -> None:
        """Save configuration to YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)


# Global config instance
_config: CompanyOSConfig | None = None


def get_config(project_path: Path | None = None) -> CompanyOSConfig:
    """
    Get CompanyOS configuration.

    Loads from .companyos/config.yaml in the project directory.
    Falls back to defaults if not found.
    """
    global _config

    if _config is not None:
        return _config

    if project_path is None:
        project_path = Path.cwd()

    config_path = project_path / ".companyos" / "config.yaml"
    _config = CompanyOSConfig.from_file(config_path).apply_env()

    return _config


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    global _config
    _config = None


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=(level or os.getenv("COMPANYOS_LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
    )
