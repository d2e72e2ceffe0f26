"""
Talking to the running ssh-agent: listing, adding and removing identities.
"""
import base64
import binascii
import os
import shutil
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from .agent_protocol import (
    SSH2_AGENTC_REMOVE_IDENTITY, SSH2_AGENTC_REQUEST_IDENTITIES, SSH_AGENT_SUCCESS,
    AgentConnection, ProtocolError, build_message, key_fingerprint, key_type,
    message_type, pack_string, parse_identities,
)
from .errors import (
    AgentError, AgentUnavailableError, FileSystemError, NotFoundError, PassphraseRequiredError,
    ValidationError,
)
from .identity import KeyGenerator, SshKeygen, public_key_path_for, read_public_key
from .logging_utils import log_debug, log_info
from .platform_utils import get_socket_type
from .process import agent_process_alive, run_tool

START_AGENT_HINT = 'start an agent with: eval "$(ssh-agent -s)"'

# One-shot SSH_ASKPASS helper; the passphrase itself only travels in the environment.
ASKPASS_VARIABLE = "SSHID_ASKPASS_PASSPHRASE"
ASKPASS_SCRIPT = f"#!/bin/sh\nprintf '%s\\n' \"${ASKPASS_VARIABLE}\"\n"


@dataclass(frozen=True)
class AgentKey:
    fingerprint: str
    comment: str
    key_type: str
    key_blob: bytes = field(repr=False)


def public_key_fingerprint(public_key_path: Path) -> str:
    """Fingerprint of the key in an OpenSSH .pub file."""
    _, blob_b64, _ = read_public_key(public_key_path)
    try:
        blob = base64.b64decode(blob_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Public key is not valid base64: {public_key_path}") from e
    return key_fingerprint(blob)


@contextmanager
def askpass_environment(passphrase: str) -> Iterator[Dict[str, str]]:
    """
    Environment that makes ssh-add read the passphrase from a throwaway SSH_ASKPASS helper.

    The helper script lives in a private temporary directory that is removed on exit.
    """
    try:
        workdir = Path(tempfile.mkdtemp(prefix="sshid-askpass-"))
        script = workdir / "askpass"
        script.write_text(ASKPASS_SCRIPT, encoding="utf-8")
        script.chmod(0o700)
    except OSError as e:
        raise FileSystemError(f"Cannot create askpass helper ({e.strerror or e})") from e
    try:
        yield {
            "SSH_ASKPASS": str(script),
            "SSH_ASKPASS_REQUIRE": "force",
            "DISPLAY": os.environ.get("DISPLAY") or ":0",
            ASKPASS_VARIABLE: passphrase,
        }
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


class AgentBackend:
    """Capability for the operations an ssh-agent offers."""

    def list_keys(self) -> List[AgentKey]:
        raise NotImplementedError

    def add(self, private_key_path: Path, passphrase: Optional[str] = None) -> None:
        raise NotImplementedError

    def remove(self, key: AgentKey) -> None:
        raise NotImplementedError


class OpenSshAgent(AgentBackend):
    """
    AgentBackend for the agent named by SSH_AUTH_SOCK.

    Listing and removal speak the agent protocol directly; adding goes through
    ssh-add so that encrypted keys can be unlocked.
    """

    def __init__(self, socket_path: Optional[str], ssh_add: str = "ssh-add",
                 agent_pid: Optional[int] = None):
        self.socket_path = socket_path
        self.ssh_add = ssh_add
        self.agent_pid = agent_pid

    def _hint(self) -> str:
        if self.agent_pid and not agent_process_alive(self.agent_pid):
            return f"SSH_AGENT_PID={self.agent_pid} is no longer running; {START_AGENT_HINT}"
        return START_AGENT_HINT

    def _connect(self) -> AgentConnection:
        if not self.socket_path:
            raise AgentUnavailableError("SSH_AUTH_SOCK is not set; no agent to talk to", hint=self._hint())
        socket_type = get_socket_type(self.socket_path)
        if socket_type == "named_pipe":
            raise AgentUnavailableError(f"Named pipe agents are not supported: {self.socket_path}",
                                        hint="use ssh-add directly on Windows")
        if socket_type == "missing":
            raise AgentUnavailableError(f"Agent socket does not exist: {self.socket_path}", hint=self._hint())
        if socket_type != "unix":
            raise AgentUnavailableError(f"Agent path is not a socket: {self.socket_path}", hint=self._hint())
        try:
            return AgentConnection(self.socket_path).connect()
        except OSError as e:
            raise AgentUnavailableError(f"Cannot connect to agent at {self.socket_path}: {e}",
                                        hint=self._hint()) from e

    def list_keys(self) -> List[AgentKey]:
        with self._connect() as conn:
            try:
                response = conn.request(build_message(SSH2_AGENTC_REQUEST_IDENTITIES))
                identities = list(parse_identities(response))
            except (OSError, ProtocolError) as e:
                raise AgentError(f"Agent did not answer the identity list request: {e}") from e
        return [
            AgentKey(
                fingerprint=key_fingerprint(blob),
                comment=comment.decode("utf-8", errors="replace"),
                key_type=key_type(blob),
                key_blob=blob,
            )
            for blob, comment in identities
        ]

    def add(self, private_key_path: Path, passphrase: Optional[str] = None) -> None:
        # Fail with a typed error before ssh-add prints its own.
        self._connect().close()
        env = dict(os.environ)
        env["SSH_AUTH_SOCK"] = self.socket_path
        cmd = [self.ssh_add, str(private_key_path)]
        if passphrase is None:
            result = run_tool(cmd, env=env)
        else:
            with askpass_environment(passphrase) as askpass_env:
                env.update(askpass_env)
                result = run_tool(cmd, env=env)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if "could not open a connection" in stderr.lower():
                raise AgentUnavailableError(f"ssh-add cannot reach the agent: {stderr}", hint=self._hint())
            raise AgentError(f"ssh-add failed for {private_key_path}: {stderr or 'exit status %d' % result.returncode}")
        log_debug((result.stderr or "").strip())

    def remove(self, key: AgentKey) -> None:
        with self._connect() as conn:
            try:
                response = conn.request(build_message(SSH2_AGENTC_REMOVE_IDENTITY, pack_string(key.key_blob)))
                r_type = message_type(response)
            except (OSError, ProtocolError) as e:
                raise AgentError(f"Agent did not answer the remove request: {e}") from e
        if r_type != SSH_AGENT_SUCCESS:
            raise AgentError(f"Agent refused to remove {key.fingerprint}")


class AgentController:
    """
    Agent operations with typed failures.

    Args:
        backend: Agent capability (OpenSshAgent in production)
        keygen: Used to tell whether a key is encrypted before adding it
        askpass: SSH_ASKPASS program, if any; counts as a passphrase channel
        interactive: Whether a terminal is available to prompt (default: stdin is a TTY)
    """

    def __init__(self, backend: AgentBackend, keygen: Optional[KeyGenerator] = None,
                 askpass: Optional[str] = None, interactive: Optional[bool] = None):
        self.backend = backend
        self.keygen = keygen or SshKeygen()
        self.askpass = askpass
        self.interactive = sys.stdin.isatty() if interactive is None else interactive

    def has_passphrase_channel(self) -> bool:
        return bool(self.interactive or self.askpass)

    def list_keys(self) -> List[AgentKey]:
        return self.backend.list_keys()

    def list_loaded(self) -> Set[str]:
        return {key.fingerprint for key in self.backend.list_keys()}

    def add(self, private_key_path: Path, passphrase: Optional[str] = None) -> Optional[str]:
        """
        Load a private key into the agent.

        Args:
            private_key_path: Key to load
            passphrase: Passphrase for an encrypted key; None to let ssh-add ask

        Returns:
            Fingerprint of the key, when it can be determined

        Raises:
            FileSystemError: If the key file does not exist
            AgentUnavailableError: If no agent is reachable
            PassphraseRequiredError: If the key is encrypted and nobody can type the passphrase
        """
        path = Path(private_key_path)
        if not path.is_file():
            raise FileSystemError("Private key not found", path)

        before = self.list_loaded()
        public = public_key_path_for(path)
        fingerprint = public_key_fingerprint(public) if public.is_file() else None
        if fingerprint and fingerprint in before:
            log_info(f"Key already loaded in the agent: {fingerprint}")
            return fingerprint

        if passphrase is None and not self.has_passphrase_channel() and self.keygen.is_encrypted(path):
            raise PassphraseRequiredError(
                f"{path} is protected by a passphrase and there is no terminal to ask for it",
                hint="run the command from an interactive shell, set SSH_ASKPASS or pass --passphrase-env VAR",
            )

        self.backend.add(path, passphrase)

        if fingerprint is None:
            added = self.list_loaded() - before
            if len(added) == 1:
                fingerprint = added.pop()
        return fingerprint

    def find(self, fingerprint: str) -> AgentKey:
        wanted = fingerprint if fingerprint.startswith("SHA256:") else f"SHA256:{fingerprint}"
        for key in self.backend.list_keys():
            if key.fingerprint == wanted:
                return key
        raise NotFoundError(f"No key with fingerprint {fingerprint} is loaded",
                            hint="run 'sshid agent-list' to see loaded keys")

    def remove(self, fingerprint: str) -> AgentKey:
        key = self.find(fingerprint)
        self.backend.remove(key)
        return key

    def fingerprint_names(self, identities) -> Dict[str, str]:
        """Map fingerprints of registered identities to their names, skipping unreadable keys."""
        names: Dict[str, str] = {}
        for identity in identities:
            if not identity.public_key_path.is_file():
                log_debug(f"No public key for {identity.name}: {identity.public_key_path}")
                continue
            try:
                names[public_key_fingerprint(identity.public_key_path)] = identity.name
            except (FileSystemError, ValidationError) as e:
                log_debug(f"Cannot fingerprint {identity.name}: {e}")
        return names
