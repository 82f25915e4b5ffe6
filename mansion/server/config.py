"""Configuration management for the Mansion provisioner.

Supports YAML-based configuration: broker accounts, provisioning tunables,
templates and the operator API listener.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..data.models import Template
from ..provisioning.allocation import ProvisioningSettings


@dataclass
class BrokerConfig:
    """Where the broker is and how to authenticate against it."""

    url: str = "https://mansion.example.com/"
    default_account: Optional[str] = None
    accounts: Dict[str, str] = field(default_factory=dict)  # account -> token
    timeout: int = 30
    verify: bool = True


@dataclass
class ProvisioningConfig:
    """Provisioning tunables, in seconds unless noted."""

    first_backoff: float = 2
    max_backoff: float = 600
    failure_cap: int = 8  # Failed allocations kept for operators
    problem_retention: float = 4 * 60 * 60
    connect_attempts: int = 10
    connect_retry_delay: float = 5
    idle_timeout: float = 5
    connect_grace: float = 120
    recheck_delay: float = 2
    renewal_interval: int = 30
    renewal_ceiling: float = 30 * 60
    retention_interval: int = 60
    quota_cleanup_interval: int = 300
    pool_size: int = 16

    def to_settings(self) -> ProvisioningSettings:
        return ProvisioningSettings(
            connect_attempts=self.connect_attempts,
            connect_retry_delay=self.connect_retry_delay,
            problem_retention=self.problem_retention,
            renewal_ceiling=self.renewal_ceiling,
            first_backoff=self.first_backoff,
            max_backoff=self.max_backoff,
            failure_cap=self.failure_cap,
            idle_timeout=self.idle_timeout,
            connect_grace=self.connect_grace,
            recheck_delay=self.recheck_delay,
        )


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    """Main configuration container."""

    broker: BrokerConfig = field(default_factory=BrokerConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    templates: List[Template] = field(default_factory=list)

    # Data directory override
    data_dir: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        broker_data = data.get("broker", {}) or {}
        broker = BrokerConfig(
            url=broker_data.get("url", BrokerConfig.url),
            default_account=broker_data.get("default_account"),
            accounts=dict(broker_data.get("accounts", {}) or {}),
            timeout=broker_data.get("timeout", 30),
            verify=broker_data.get("verify", True),
        )

        # Unknown keys are ignored so older files keep loading
        prov_data = data.get("provisioning", {}) or {}
        known = ProvisioningConfig.__dataclass_fields__
        provisioning = ProvisioningConfig(**{k: v for k, v in prov_data.items() if k in known})

        server_data = data.get("server", {}) or {}
        server = ServerConfig(
            host=server_data.get("host", "127.0.0.1"),
            port=server_data.get("port", 8080),
        )

        templates = [Template.from_dict(t) for t in data.get("templates", []) or []]

        return cls(
            broker=broker,
            provisioning=provisioning,
            server=server,
            templates=templates,
            data_dir=data.get("data_dir"),
            log_level=(data.get("logging", {}) or {}).get("level", "INFO"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load config from YAML file."""
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """Load config from path or defaults.

        Checks in order:
        1. Provided path
        2. MANSION_CONFIG env var
        3. ./configs/config.yaml
        4. ./config.yaml
        5. ~/.mansion/config.yaml
        6. Default config
        """
        paths_to_try = []

        if config_path:
            paths_to_try.append(Path(config_path))

        if env_path := os.environ.get("MANSION_CONFIG"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./configs/config.yaml"),
            Path("./config.yaml"),
            Path.home() / ".mansion" / "config.yaml",
        ])

        for path in paths_to_try:
            if path.exists():
                return cls.from_yaml(path)

        return cls()

    def token_for(self, account: Optional[str]) -> Optional[str]:
        """Credential of an account, falling back to the default account's."""
        if account and account in self.broker.accounts:
            return self.broker.accounts[account]
        if self.broker.default_account:
            return self.broker.accounts.get(self.broker.default_account)
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "broker": {
                "url": self.broker.url,
                "default_account": self.broker.default_account,
                "accounts": dict(self.broker.accounts),
                "timeout": self.broker.timeout,
                "verify": self.broker.verify,
            },
            "provisioning": dict(vars(self.provisioning)),
            "server": {
                "host": self.server.host,
                "port": self.server.port,
            },
            "templates": [t.to_dict() for t in self.templates],
            "data_dir": self.data_dir,
            "logging": {"level": self.log_level},
        }
