"""
Process-wide configuration and remote LRS connection loading.

Connections live in a YAML file keyed by environment:

    development:
      endpoints:
        - name: main
          url: https://lrs.example.com/
          username: ${LRS_USERNAME}
          password: ${LRS_PASSWORD}
          more_attribute: more
"""

import locale
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-US"
DEFAULT_PROFILE_SERVER_URL = "https://profiles.adlnet.gov/"
DEFAULT_XAPI_VERSION = "2.0.0"
DEFAULT_CONFIG_PATH = Path("config") / "remote_lrs.yml"
ENV_VAR = "XAPI_QUERY_ENV"


def system_locale() -> Optional[str]:
    """Current process locale as a BCP 47 tag ("en_US" -> "en-US")."""
    try:
        tag = locale.getlocale()[0]
    except ValueError:
        return None
    if not tag or tag in ("C", "POSIX"):
        return None
    return tag.replace("_", "-")


@dataclass(frozen=True)
class Connection:
    """One remote Learning Record Store endpoint."""

    url: str
    name: str = ""
    username: str = ""
    password: str = ""
    version: str = DEFAULT_XAPI_VERSION
    more_attribute: str = "more"

    @classmethod
    def parse(cls, raw: Dict) -> "Connection":
        if not raw or not raw.get("url"):
            raise ConfigurationError(f"LRS connection is missing a url: {raw!r}")
        return cls(
            url=raw["url"],
            name=raw.get("name") or raw["url"],
            username=raw.get("username") or "",
            password=raw.get("password") or "",
            version=raw.get("version") or DEFAULT_XAPI_VERSION,
            more_attribute=raw.get("more_attribute") or "more",
        )


@dataclass
class Configuration:
    default_locale: Optional[str] = DEFAULT_LOCALE
    xapi_profile_server_url: str = DEFAULT_PROFILE_SERVER_URL
    remote_lrs_instances: List[Connection] = field(default_factory=list)
    i18n_locale: Callable[[], Optional[str]] = system_locale
    frozen: bool = False


_configuration = Configuration()


def configuration() -> Configuration:
    return _configuration


def configure(**changes) -> Configuration:
    """Update the process configuration, e.g. ``configure(default_locale="fr-FR")``."""
    global _configuration
    if _configuration.frozen:
        raise ConfigurationError("Configuration has been finalized and can no longer change")
    unknown = set(changes) - {"default_locale", "xapi_profile_server_url", "remote_lrs_instances", "i18n_locale"}
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
    if "remote_lrs_instances" in changes:
        changes["remote_lrs_instances"] = [
            conn if isinstance(conn, Connection) else Connection.parse(conn)
            for conn in changes["remote_lrs_instances"] or []
        ]
    _configuration = replace(_configuration, **changes)
    return _configuration


def finalize_configuration() -> None:
    """Freeze the configuration once startup is done."""
    global _configuration
    _configuration = replace(_configuration, frozen=True)


def reset_configuration() -> Configuration:
    global _configuration
    _configuration = Configuration()
    return _configuration


def load_connections(path: Union[str, Path, None] = None, env: Optional[str] = None) -> List[Connection]:
    """Read the endpoints of one environment from a remote LRS YAML file."""
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not path.exists():
        logger.debug(f"No LRS config at {path}")
        return []

    env = env or os.getenv(ENV_VAR, "development")
    with open(path, "r") as f:
        raw = os.path.expandvars(f.read())
    document = yaml.safe_load(raw) or {}
    if not isinstance(document, dict):
        raise ConfigurationError(f"{path} must contain a mapping of environments")

    endpoints = (document.get(env) or {}).get("endpoints") or []
    connections = [Connection.parse(entry) for entry in endpoints]
    logger.info(f"Loaded {len(connections)} LRS connection(s) for '{env}' from {path}")
    return connections
