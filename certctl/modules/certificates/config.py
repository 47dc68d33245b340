"""Renewal configuration loading and validation.

Configuration is read from a YAML file shaped like::

    clusterName: mgmt
    os: ubuntu
    controlPlane:
      nodes: [10.0.0.10, 10.0.0.11]
      ssh:
        sshUser: ec2-user
        sshKey: ~/.ssh/id_rsa
    etcd:
      nodes: [10.0.0.20]
      ssh:
        sshUser: ec2-user
        sshKey: ~/.ssh/id_rsa

SSH key passphrases are never expected in the file; they are read from the
environment when the configuration is loaded.
"""
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import (
    COMPONENT_CONTROL_PLANE,
    COMPONENT_ETCD,
    SSH_PASSPHRASE_ENV,
    SSH_PASSPHRASE_ENV_CP,
    SSH_PASSPHRASE_ENV_ETCD,
    SUPPORTED_OS,
    VALID_COMPONENTS,
)
from .errors import ConfigValidationError

logger = logging.getLogger("certctl.config")


def _check_os(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    value = value.lower()
    if value not in SUPPORTED_OS:
        raise ValueError(f"unsupported os {value!r}, must be one of: {', '.join(SUPPORTED_OS)}")
    return value


class SSHConfig(BaseModel):
    """SSH credentials for a group of nodes."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user: str = Field(default="", alias="sshUser", description="SSH username")
    key_path: str = Field(default="", alias="sshKey", description="Path to SSH private key")
    passphrase: str = Field(default="", alias="sshPasswd", repr=False,
                            description="Private key passphrase")

    @field_validator("key_path")
    @classmethod
    def expand_key_path(cls, v: str) -> str:
        """Expand the user home directory in the key path."""
        return os.path.expanduser(v) if v else v


class NodeConfig(BaseModel):
    """Nodes of one component and how to reach them."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    nodes: List[str] = Field(default_factory=list)
    os: str = ""
    ssh: SSHConfig = Field(default_factory=SSHConfig)

    @field_validator("os")
    @classmethod
    def check_os(cls, v: str) -> str:
        return _check_os(v)

    @field_validator("nodes", mode="before")
    @classmethod
    def nodes_default(cls, v):
        return v or []


class RenewalConfig(BaseModel):
    """Everything needed to renew certificates for one cluster."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cluster_name: str = Field(default="", alias="clusterName")
    os: Optional[str] = Field(default=None, description="Overrides the per-component os")
    control_plane: NodeConfig = Field(default_factory=NodeConfig, alias="controlPlane")
    etcd: NodeConfig = Field(default_factory=NodeConfig)

    @field_validator("os")
    @classmethod
    def check_os(cls, v: Optional[str]) -> Optional[str]:
        return _check_os(v)

    @property
    def effective_os(self) -> str:
        """Top-level os, else the control plane's, else etcd's."""
        return self.os or self.control_plane.os or self.etcd.os or ""

    @property
    def has_external_etcd(self) -> bool:
        return len(self.etcd.nodes) > 0


def validate_component(component: str) -> None:
    """Reject anything other than '', 'etcd' or 'control-plane'."""
    if component not in VALID_COMPONENTS:
        raise ConfigValidationError(
            f"invalid component {component!r}, must be one of: "
            f"{COMPONENT_ETCD}, {COMPONENT_CONTROL_PLANE}"
        )


def validate_node_config(node_cfg: NodeConfig) -> None:
    """Nodes need a user and a key to be reachable."""
    if not node_cfg.nodes:
        return
    if not node_cfg.ssh.user:
        raise ConfigValidationError("sshUser is required")
    if not node_cfg.ssh.key_path:
        raise ConfigValidationError("sshKey is required")


def validate_config(cfg: RenewalConfig, component: str = "") -> None:
    """Validate a renewal config for the selected component.

    Args:
        cfg: Parsed renewal configuration
        component: Component selector

    Raises:
        ConfigValidationError: If the selector or the configuration is invalid
    """
    validate_component(component)
    if not cfg.cluster_name:
        raise ConfigValidationError("clusterName is required")
    if not cfg.effective_os:
        raise ConfigValidationError("os is required")

    if component != COMPONENT_ETCD:
        try:
            validate_node_config(cfg.control_plane)
        except ConfigValidationError as e:
            raise ConfigValidationError(f"validating control plane config: {e}") from e
    if component != COMPONENT_CONTROL_PLANE:
        try:
            validate_node_config(cfg.etcd)
        except ConfigValidationError as e:
            raise ConfigValidationError(f"validating etcd config: {e}") from e


def apply_passphrase_env(cfg: RenewalConfig) -> RenewalConfig:
    """Fill empty passphrases from the environment.

    Component specific variables win over the shared one.
    """
    shared = os.getenv(SSH_PASSPHRASE_ENV, "")
    if not cfg.control_plane.ssh.passphrase:
        cfg.control_plane.ssh.passphrase = os.getenv(SSH_PASSPHRASE_ENV_CP, "") or shared
    if not cfg.etcd.ssh.passphrase:
        cfg.etcd.ssh.passphrase = os.getenv(SSH_PASSPHRASE_ENV_ETCD, "") or shared
    return cfg


def config_from_dict(data: dict) -> RenewalConfig:
    try:
        return RenewalConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"invalid renewal config: {e}") from e


def parse_config(path: Union[str, Path], component: str = "") -> RenewalConfig:
    """Load, validate and complete a renewal configuration file.

    Args:
        path: YAML file to read
        component: Component selector the config will be used with

    Returns:
        The validated configuration

    Raises:
        ConfigValidationError: If the file cannot be read or is invalid
    """
    path = Path(path).expanduser()
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigValidationError(f"reading config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"parsing config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigValidationError(f"parsing config file {path}: expected a mapping")

    cfg = config_from_dict(data)
    validate_config(cfg, component)
    apply_passphrase_env(cfg)
    logger.debug(f"Loaded renewal config for cluster {cfg.cluster_name} from {path}")
    return cfg
