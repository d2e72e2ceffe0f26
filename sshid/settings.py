"""
Settings from environment variables and command-line overrides.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .logging_utils import log_warn
from .platform_utils import expand_path, get_default_config_path, get_ssh_dir

REGISTRY_FILENAME = "sshid-identities.json"


@dataclass
class Settings:
    config_path: Path
    ssh_dir: Path
    registry_path: Path
    ssh_keygen: str = "ssh-keygen"
    ssh_add: str = "ssh-add"
    auth_sock: Optional[str] = None
    agent_pid: Optional[int] = None
    askpass: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config: Optional[str] = None,
        ssh_dir: Optional[str] = None,
        registry: Optional[str] = None,
    ) -> "Settings":
        """
        Build settings; explicit arguments win over SSHID_* variables, which win over defaults.

        Args:
            environ: Environment to read (default: os.environ)
            config: --config value
            ssh_dir: --ssh-dir value
            registry: --registry value
        """
        env = os.environ if environ is None else environ

        ssh_dir_value = ssh_dir or env.get("SSHID_SSH_DIR")
        resolved_ssh_dir = expand_path(ssh_dir_value) if ssh_dir_value else get_ssh_dir()

        config_value = config or env.get("SSHID_CONFIG")
        if config_value:
            config_path = expand_path(config_value)
        elif ssh_dir_value:
            config_path = resolved_ssh_dir / "config"
        else:
            config_path = get_default_config_path()

        registry_value = registry or env.get("SSHID_REGISTRY")
        registry_path = expand_path(registry_value) if registry_value else resolved_ssh_dir / REGISTRY_FILENAME

        return cls(
            config_path=config_path,
            ssh_dir=resolved_ssh_dir,
            registry_path=registry_path,
            ssh_keygen=env.get("SSHID_SSH_KEYGEN") or "ssh-keygen",
            ssh_add=env.get("SSHID_SSH_ADD") or "ssh-add",
            auth_sock=env.get("SSH_AUTH_SOCK") or None,
            agent_pid=cls._get_int(env, "SSH_AGENT_PID"),
            askpass=env.get("SSH_ASKPASS") or None,
        )

    @staticmethod
    def _get_int(env: Mapping[str, str], key: str) -> Optional[int]:
        value = env.get(key)
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            log_warn(f"Ignoring {key}={value!r}: not a number")
            return None
