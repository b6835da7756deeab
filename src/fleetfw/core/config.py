"""Configuration management using Pydantic.

Provides:
- Typed configuration models for hosts, virtual networks and VPN gateways
- YAML file loading with defaults
- Environment variable overrides for paths
- Configuration initialization and display
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleetfw.core.exceptions import ConfigurationError
from fleetfw.core.validation import validate_cidr, validate_identifier, validate_port


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/fleetfw/config.yaml")
DEFAULT_STATE_DIR = Path("/var/lib/fleetfw")
DEFAULT_AUDIT_LOG = Path("/var/log/fleetfw/audit.log")

# NIC naming conventions of the network resources we create on hosts
VNET_BRIDGE_PREFIX = "fw-vbr"
VPN_TUNNEL_PREFIX = "fw-tun"


class HostConfig(BaseModel):
    """A managed host.

    ``address`` is the SSH target; ``None`` means the controller runs on
    the host itself and commands are executed locally.
    """

    id: str
    address: Optional[str] = None
    ssh_user: str = "root"
    ssh_port: int = 22
    use_sudo: bool = False

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_identifier(v, "host id")

    @field_validator("ssh_port")
    @classmethod
    def validate_ssh_port(cls, v: int) -> int:
        return validate_port(v)

    @property
    def is_local(self) -> bool:
        return self.address is None


class VNetConfig(BaseModel):
    """A virtual network bridged on one host."""

    id: int
    host: str
    address_space: str
    enable_dhcp: bool = True

    @field_validator("address_space")
    @classmethod
    def validate_address_space(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("address_space must be in CIDR notation")
        return validate_cidr(v)

    @property
    def zone_name(self) -> str:
        return f"vnet-{self.id}"


class VPNGatewayConfig(BaseModel):
    """A VPN gateway whose tunnel interface terminates on one host."""

    id: int
    host: str
    address_space: str

    @field_validator("address_space")
    @classmethod
    def validate_address_space(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("address_space must be in CIDR notation")
        return validate_cidr(v)

    @property
    def zone_name(self) -> str:
        return f"vpn-{self.id}"


class NetfilterConfig(BaseModel):
    """Where and how compiled rulesets are persisted on hosts."""

    config_path: Path = Path("/etc/nftables.conf")
    table_prefix: str = "fleetfw_"
    service: str = "nftables"


class TracingConfig(BaseModel):
    """Bounds for captured packet trace data per host."""

    max_entries: int = 10000
    max_pending_bytes: int = 1024 * 1024

    @field_validator("max_entries", "max_pending_bytes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class FleetConfig(BaseModel):
    """Root configuration model for the controller.

    Loaded from /etc/fleetfw/config.yaml. Firewall rules themselves are
    not stored here; they live in the state store and change at runtime.
    """

    hosts: list[HostConfig] = Field(default_factory=list)
    vnets: list[VNetConfig] = Field(default_factory=list)
    vpn_gateways: list[VPNGatewayConfig] = Field(default_factory=list)
    netfilter: NetfilterConfig = Field(default_factory=NetfilterConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)

    @model_validator(mode="after")
    def validate_references(self) -> "FleetConfig":
        host_ids = [h.id for h in self.hosts]
        if len(host_ids) != len(set(host_ids)):
            raise ValueError("host ids must be unique")

        for vnet in self.vnets:
            if vnet.host not in host_ids:
                raise ValueError(f"vnet {vnet.id} references unknown host '{vnet.host}'")
        for gateway in self.vpn_gateways:
            if gateway.host not in host_ids:
                raise ValueError(f"vpn gateway {gateway.id} references unknown host '{gateway.host}'")

        vnet_ids = [v.id for v in self.vnets]
        if len(vnet_ids) != len(set(vnet_ids)):
            raise ValueError("vnet ids must be unique")
        gateway_ids = [g.id for g in self.vpn_gateways]
        if len(gateway_ids) != len(set(gateway_ids)):
            raise ValueError("vpn gateway ids must be unique")
        return self

    def host(self, host_id: str) -> HostConfig:
        """Look up a host by id.

        Raises:
            ConfigurationError: If the host is not configured
        """
        for host in self.hosts:
            if host.id == host_id:
                return host
        raise ConfigurationError(
            f"Unknown host: {host_id}",
            hint="Add the host to the 'hosts' section of the configuration",
        )

    def vnet(self, vnet_id: int) -> VNetConfig:
        for vnet in self.vnets:
            if vnet.id == vnet_id:
                return vnet
        raise ConfigurationError(f"Unknown virtual network: {vnet_id}")

    def vpn_gateway(self, gateway_id: int) -> VPNGatewayConfig:
        for gateway in self.vpn_gateways:
            if gateway.id == gateway_id:
                return gateway
        raise ConfigurationError(f"Unknown VPN gateway: {gateway_id}")

    @classmethod
    def load(cls, path: Path) -> "FleetConfig":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: fleetfw config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "FleetConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class PathSettings(BaseSettings):
    """Filesystem locations, overridable from the environment."""

    model_config = SettingsConfigDict(env_prefix="FLEETFW_", extra="ignore")

    state_dir: Path = DEFAULT_STATE_DIR
    audit_log: Path = DEFAULT_AUDIT_LOG


class AppConfig:
    """Application configuration combining config file and path settings.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[FleetConfig] = None,
        paths: Optional[PathSettings] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses default if None)
            config: Pre-loaded config (skips file loading if provided)
            paths: Pre-built path settings (reads environment if None)
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = config or FleetConfig.load_or_default(self.config_path)
        self._paths = paths or PathSettings()

    @property
    def config(self) -> FleetConfig:
        return self._config

    @property
    def netfilter(self) -> NetfilterConfig:
        return self._config.netfilter

    @property
    def tracing(self) -> TracingConfig:
        return self._config.tracing

    @property
    def state_dir(self) -> Path:
        return self._paths.state_dir

    @property
    def audit_log(self) -> Path:
        return self._paths.audit_log


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# Fleet firewall controller configuration
# Firewall rules are managed at runtime and stored under FLEETFW_STATE_DIR

hosts:
  - id: node1
    address: 203.0.113.10   # SSH target; omit to manage the local machine
    ssh_user: root
  - id: node2
    address: 203.0.113.11
    ssh_user: admin
    use_sudo: true

# Virtual networks (bridge fw-vbr<id>, zone vnet-<id>)
vnets:
  - id: 1
    host: node1
    address_space: 10.1.0.0/24
    enable_dhcp: true

# VPN gateways (tunnel fw-tun<id>, zone vpn-<id>)
vpn_gateways: []

netfilter:
  config_path: /etc/nftables.conf
  table_prefix: fleetfw_
  service: nftables

# Captured trace data is kept in a ring buffer per host
tracing:
  max_entries: 10000
  max_pending_bytes: 1048576
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o600)
