"""Configuration loading and merging for rollcall."""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml


@dataclass
class RollcallConfig:
    # Plain HTTP listener
    host: str = "0.0.0.0"
    port: int = 8001

    # TLS listener, only started when the key and cert are readable
    secure_port: int = 3443
    secure_key_path: str = "server.key"
    secure_cert_path: str = "server.pem"

    log_level: str = "INFO"


# Environment variable -> config field
ENV_VARS = {
    "PORT": "port",
    "SECURE_PORT": "secure_port",
    "SECURE_KEY_PATH": "secure_key_path",
    "SECURE_CERT_PATH": "secure_cert_path",
    "LOG_LEVEL": "log_level",
}

_INT_FIELDS = {"port", "secure_port"}


def load_config(path: str | Path) -> RollcallConfig:
    """Load a RollcallConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(RollcallConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    for name in _INT_FIELDS & filtered.keys():
        filtered[name] = int(filtered[name])
    return RollcallConfig(**filtered)


def apply_env(config: RollcallConfig,
              environ: Optional[Mapping[str, str]] = None) -> RollcallConfig:
    """Overlay environment variables onto *config*. Ports must be integers."""
    if environ is None:
        environ = os.environ
    for var, name in ENV_VARS.items():
        value = environ.get(var)
        if not value:
            continue
        if name in _INT_FIELDS:
            try:
                value = int(value)
            except ValueError:
                raise ValueError(f"{var} must be an integer, got {value!r}") from None
        setattr(config, name, value)
    return config


def merge_cli_args(config: RollcallConfig, args) -> RollcallConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(RollcallConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: RollcallConfig) -> str:
    """Serialize a RollcallConfig to YAML."""
    return yaml.dump(asdict(config), default_flow_style=False, sort_keys=False)
