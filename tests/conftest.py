"""Shared fixtures: fake keygen and agent capabilities, isolated environment."""
import base64
import hashlib
from pathlib import Path

import pytest

from sshid import cli
from sshid.agent import AgentBackend, AgentController, AgentKey
from sshid.agent_protocol import key_fingerprint, key_type, pack_string
from sshid.errors import AgentUnavailableError, KeygenError
from sshid.identity import KeyGenerator, public_key_path_for, read_public_key


def make_blob(kind: str, seed: bytes) -> bytes:
    """A well-formed public key blob: type string followed by 32 bytes of key material."""
    return pack_string(kind.encode("ascii")) + pack_string(hashlib.sha256(seed).digest())


def write_key_pair(private: Path, comment: str = "me@example.com", encrypted: bool = False,
                   kind: str = "ssh-ed25519") -> Path:
    private.parent.mkdir(parents=True, exist_ok=True)
    private.write_text(f"PRIVATE {kind} {'encrypted' if encrypted else 'plain'}\n")
    blob = make_blob(kind, private.name.encode())
    public_key_path_for(private).write_text(f"{kind} {base64.b64encode(blob).decode()} {comment}\n")
    return private


class FakeKeygen(KeyGenerator):
    """Writes recognisable fake key files instead of running ssh-keygen."""

    def __init__(self, returncode: int = 0, skip_public: bool = False):
        self.returncode = returncode
        self.skip_public = skip_public
        self.calls = []

    def generate(self, algorithm, comment, path, passphrase):
        self.calls.append(("generate", algorithm, comment, Path(path), passphrase))
        if self.returncode:
            raise KeygenError("ssh-keygen failed to generate the key", self.returncode)
        kind = "ssh-rsa" if algorithm == "rsa" else f"ssh-{algorithm}"
        write_key_pair(Path(path), comment=comment, encrypted=bool(passphrase), kind=kind)
        if self.skip_public:
            public_key_path_for(Path(path)).unlink()

    def is_encrypted(self, private_key_path):
        return "encrypted" in Path(private_key_path).read_text()

    def change_passphrase(self, private_key_path, old, new):
        self.calls.append(("change_passphrase", Path(private_key_path), old, new))
        text = Path(private_key_path).read_text()
        state = "encrypted" if new else "plain"
        text = text.replace("encrypted", state).replace("plain", state)
        Path(private_key_path).write_text(text)


class FakeAgent(AgentBackend):
    """In-memory agent."""

    def __init__(self, available: bool = True):
        self.available = available
        self.keys = []
        self.passphrases = []

    def _check(self):
        if not self.available:
            raise AgentUnavailableError("SSH_AUTH_SOCK is not set; no agent to talk to")

    def list_keys(self):
        self._check()
        return list(self.keys)

    def add(self, private_key_path, passphrase=None):
        self._check()
        self.passphrases.append(passphrase)
        _, blob_b64, comment = read_public_key(public_key_path_for(Path(private_key_path)))
        blob = base64.b64decode(blob_b64)
        self.keys.append(AgentKey(key_fingerprint(blob), comment, key_type(blob), blob))

    def remove(self, key):
        self._check()
        self.keys.remove(key)


@pytest.fixture
def ssh_dir(tmp_path):
    path = tmp_path / ".ssh"
    path.mkdir(mode=0o700)
    return path


@pytest.fixture
def fake_keygen():
    return FakeKeygen()


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def cli_env(monkeypatch, ssh_dir, fake_keygen, fake_agent):
    """Point the CLI at a temporary ~/.ssh and fake capabilities; no terminal."""
    monkeypatch.setenv("HOME", str(ssh_dir.parent))
    monkeypatch.setenv("SSHID_SSH_DIR", str(ssh_dir))
    monkeypatch.setenv("NO_COLOR", "1")
    for name in ("SSHID_CONFIG", "SSHID_REGISTRY", "SSH_AUTH_SOCK", "SSH_AGENT_PID", "SSH_ASKPASS", "DEBUG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "make_keygen", lambda settings: fake_keygen)
    monkeypatch.setattr(
        cli, "make_agent_controller",
        lambda settings: AgentController(fake_agent, keygen=fake_keygen, askpass=settings.askpass,
                                         interactive=False),
    )
    monkeypatch.setattr(cli, "_stdin_is_terminal", lambda: False)
    return ssh_dir
