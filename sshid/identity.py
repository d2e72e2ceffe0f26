"""
Key pairs known to sshid: generation through ssh-keygen and the on-disk registry.
"""
import json
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .config import atomic_write, file_lock
from .errors import (
    DuplicateNameError, FileSystemError, KeygenError, NotFoundError, ParseError, ValidationError,
)
from .logging_utils import log_debug, log_info, log_warn
from .platform_utils import expand_path
from .process import run_tool

# Extra ssh-keygen arguments per algorithm.
ALGORITHMS: Dict[str, List[str]] = {
    "ed25519": [],
    "rsa": ["-b", "4096"],
    "ecdsa": ["-b", "521"],
}
DEFAULT_ALGORITHM = "ed25519"

NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')
REGISTRY_VERSION = 1


@dataclass
class Identity:
    name: str
    private_key_path: Path
    public_key_path: Path
    comment: str = ""
    has_passphrase: bool = False
    algorithm: str = ""

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["private_key_path"] = str(self.private_key_path)
        data["public_key_path"] = str(self.public_key_path)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Identity":
        return cls(
            name=str(data["name"]),
            private_key_path=Path(str(data["private_key_path"])),
            public_key_path=Path(str(data["public_key_path"])),
            comment=str(data.get("comment", "")),
            has_passphrase=bool(data.get("has_passphrase", False)),
            algorithm=str(data.get("algorithm", "")),
        )


def public_key_path_for(private_key_path: Path) -> Path:
    return private_key_path.with_name(private_key_path.name + ".pub")


def read_public_key(path: Path) -> Tuple[str, str, str]:
    """
    Read an OpenSSH public key file.

    Returns:
        Tuple of (key_type, base64_blob, comment)

    Raises:
        FileSystemError: If the file is missing or unreadable
        ValidationError: If it does not look like a public key
    """
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError as e:
        raise FileSystemError("Public key not found", path,
                              hint=f"recreate it with: ssh-keygen -y -f {str(path)[:-4]} > {path}") from e
    except UnicodeDecodeError as e:
        raise ValidationError(f"Public key is not valid UTF-8 text: {path}") from e
    except OSError as e:
        raise FileSystemError(f"Cannot read public key ({e.strerror or e})", path) from e
    parts = text.split(None, 2)
    if len(parts) < 2:
        raise ValidationError(f"Not an OpenSSH public key: {path}")
    comment = parts[2].strip() if len(parts) == 3 else ""
    return parts[0], parts[1], comment


def algorithm_from_key_type(key_type: str) -> str:
    if key_type == "ssh-ed25519":
        return "ed25519"
    if key_type == "ssh-rsa":
        return "rsa"
    if key_type.startswith("ecdsa-sha2-"):
        return "ecdsa"
    return key_type


class KeyGenerator:
    """Capability for creating and inspecting private keys."""

    def generate(self, algorithm: str, comment: str, path: Path, passphrase: Optional[str]) -> None:
        """Write a key pair at path and path.pub; passphrase None means ask interactively."""
        raise NotImplementedError

    def is_encrypted(self, private_key_path: Path) -> bool:
        raise NotImplementedError

    def change_passphrase(self, private_key_path: Path, old: Optional[str], new: Optional[str]) -> None:
        raise NotImplementedError


class SshKeygen(KeyGenerator):
    """KeyGenerator backed by the ssh-keygen executable."""

    def __init__(self, executable: str = "ssh-keygen"):
        self.executable = executable

    def generate(self, algorithm: str, comment: str, path: Path, passphrase: Optional[str]) -> None:
        cmd = [self.executable, "-t", algorithm, *ALGORITHMS.get(algorithm, []),
               "-C", comment, "-f", str(path)]
        if passphrase is not None:
            cmd.extend(["-N", passphrase])
            result = run_tool(cmd)
        else:
            result = run_tool(cmd, capture=False)
        if result.returncode != 0:
            raise KeygenError("ssh-keygen failed to generate the key", result.returncode,
                              (result.stderr or "").strip() if passphrase is not None else "")

    def is_encrypted(self, private_key_path: Path) -> bool:
        # Deriving the public key with an empty passphrase only works for unencrypted keys.
        result = run_tool([self.executable, "-y", "-P", "", "-f", str(private_key_path)])
        if result.returncode == 0:
            return False
        if "passphrase" in (result.stderr or "").lower():
            return True
        raise KeygenError(f"ssh-keygen cannot read private key {private_key_path}",
                          result.returncode, (result.stderr or "").strip())

    def change_passphrase(self, private_key_path: Path, old: Optional[str], new: Optional[str]) -> None:
        cmd = [self.executable, "-p", "-f", str(private_key_path)]
        if old is not None:
            cmd.extend(["-P", old])
        if new is not None:
            cmd.extend(["-N", new])
        interactive = old is None or new is None
        result = run_tool(cmd, capture=not interactive)
        if result.returncode != 0:
            raise KeygenError("ssh-keygen failed to change the passphrase", result.returncode,
                              "" if interactive else (result.stderr or "").strip())


class IdentityRegistry:
    """
    Named key pairs, persisted as JSON next to the keys.

    Mutating methods only change memory; call save() (or use edit()) to persist.
    """

    def __init__(self, path: Path, keygen: Optional[KeyGenerator] = None, ssh_dir: Optional[Path] = None):
        self.path = Path(path)
        self.keygen = keygen or SshKeygen()
        self.ssh_dir = Path(ssh_dir) if ssh_dir else self.path.parent
        self._identities: Dict[str, Identity] = {}

    @classmethod
    def load(cls, path: Path, keygen: Optional[KeyGenerator] = None,
             ssh_dir: Optional[Path] = None) -> "IdentityRegistry":
        registry = cls(path, keygen=keygen, ssh_dir=ssh_dir)
        if not registry.path.exists():
            log_debug(f"Identity registry not found, starting empty: {registry.path}")
            return registry
        try:
            data = json.loads(registry.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise FileSystemError(f"Cannot read identity registry ({e.strerror or e})", registry.path) from e
        except UnicodeDecodeError as e:
            raise ParseError(f"{registry.path}: not valid UTF-8 text ({e.reason} at byte {e.start})") from e
        except json.JSONDecodeError as e:
            raise ParseError(f"{registry.path}: invalid JSON ({e.msg})", e.lineno) from e
        if not isinstance(data, dict) or not isinstance(data.get("identities"), list):
            raise ParseError(f"{registry.path}: expected an object with an 'identities' list")
        for item in data["identities"]:
            try:
                identity = Identity.from_dict(item)
            except (KeyError, TypeError, AttributeError) as e:
                raise ParseError(f"{registry.path}: malformed identity entry {item!r}") from e
            registry._identities[identity.name] = identity
        return registry

    @classmethod
    @contextmanager
    def edit(cls, path: Path, keygen: Optional[KeyGenerator] = None,
             ssh_dir: Optional[Path] = None) -> Iterator["IdentityRegistry"]:
        """Locked load/mutate/save cycle; nothing is saved if the body raises."""
        with file_lock(Path(path)):
            registry = cls.load(path, keygen=keygen, ssh_dir=ssh_dir)
            yield registry
            registry.save()

    def save(self) -> None:
        payload = {
            "version": REGISTRY_VERSION,
            "identities": [identity.to_dict() for identity in self._identities.values()],
        }
        atomic_write(self.path, json.dumps(payload, indent=2) + "\n")

    def identities(self) -> List[Identity]:
        return list(self._identities.values())

    def find(self, name: str) -> Optional[Identity]:
        return self._identities.get(name)

    def get(self, name: str) -> Identity:
        identity = self._identities.get(name)
        if identity is None:
            raise NotFoundError(f"No identity named {name}",
                                hint="run 'sshid list-keys' to see registered identities")
        return identity

    def find_by_path(self, private_key_path: Path) -> Optional[Identity]:
        wanted = expand_path(str(private_key_path)).absolute()
        for identity in self._identities.values():
            if expand_path(str(identity.private_key_path)).absolute() == wanted:
                return identity
        return None

    def register(self, identity: Identity) -> None:
        if identity.name in self._identities:
            raise DuplicateNameError(f"An identity named {identity.name} already exists",
                                     hint="choose another name or remove it with 'sshid delete-key'")
        self._identities[identity.name] = identity

    def default_key_path(self, name: str, algorithm: str) -> Path:
        return self.ssh_dir / f"id_{algorithm}_{name}"

    def _check_new_name(self, name: str) -> None:
        if not NAME_RE.match(name):
            raise ValidationError(f"Invalid identity name {name!r}",
                                  hint="use letters, digits, '.', '_' and '-'")
        if name in self._identities:
            raise DuplicateNameError(f"An identity named {name} already exists",
                                     hint="choose another name or remove it with 'sshid delete-key'")

    def generate(
        self,
        name: str,
        algorithm: str = DEFAULT_ALGORITHM,
        comment: Optional[str] = None,
        path: Optional[Path] = None,
        passphrase: Optional[str] = None,
        force: bool = False,
    ) -> Identity:
        """
        Create a new key pair and register it.

        The key is generated in a scratch directory beside the target and then
        moved into place, so an existing pair is only replaced once the new one
        is complete.

        Args:
            name: Registry name
            algorithm: One of ALGORITHMS
            comment: Key comment (default: the name)
            path: Private key path (default: <ssh_dir>/id_<algorithm>_<name>)
            passphrase: Passphrase, "" for none, None to let ssh-keygen prompt
            force: Replace existing key files at the target path

        Returns:
            The registered Identity

        Raises:
            KeygenError: If files exist without force, or ssh-keygen fails
        """
        self._check_new_name(name)
        if algorithm not in ALGORITHMS:
            raise ValidationError(f"Unsupported key type {algorithm!r}",
                                  hint=f"choose one of: {', '.join(ALGORITHMS)}")

        target = expand_path(str(path)) if path else self.default_key_path(name, algorithm)
        public = public_key_path_for(target)
        existing = [p for p in (target, public) if p.exists()]
        if existing and not force:
            raise KeygenError(f"Refusing to overwrite existing key file {existing[0]}",
                              hint="pass --force to replace it; the old key cannot be recovered")
        for p in existing:
            log_warn(f"Replacing existing key file {p}")

        comment = comment if comment is not None else name
        try:
            target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix=".sshid-keygen-", dir=str(target.parent)))
        except OSError as e:
            raise FileSystemError(f"Cannot prepare key directory ({e.strerror or e})", target.parent) from e

        try:
            staged = workdir / target.name
            staged_public = public_key_path_for(staged)
            self.keygen.generate(algorithm, comment, staged, passphrase)
            for produced in (staged, staged_public):
                if not produced.is_file():
                    raise KeygenError(f"ssh-keygen did not create {produced.name}")
            try:
                os.replace(staged, target)
                os.replace(staged_public, public)
            except OSError as e:
                raise FileSystemError(f"Cannot move generated key into place ({e.strerror or e})", target) from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        if passphrase is None:
            has_passphrase = self.keygen.is_encrypted(target)
        else:
            has_passphrase = bool(passphrase)

        identity = Identity(
            name=name,
            private_key_path=target,
            public_key_path=public,
            comment=comment,
            has_passphrase=has_passphrase,
            algorithm=algorithm,
        )
        self.register(identity)
        log_info(f"Generated {algorithm} key {target}")
        return identity

    def import_key(self, name: str, private_key_path: Path) -> Identity:
        """Register a key pair that already exists on disk."""
        self._check_new_name(name)
        private = expand_path(str(private_key_path))
        if not private.is_file():
            raise FileSystemError("Private key not found", private)
        other = self.find_by_path(private)
        if other is not None:
            raise ValidationError(f"{private} is already registered as {other.name}")
        public = public_key_path_for(private)
        key_type, _, comment = read_public_key(public)
        identity = Identity(
            name=name,
            private_key_path=private,
            public_key_path=public,
            comment=comment,
            has_passphrase=self.keygen.is_encrypted(private),
            algorithm=algorithm_from_key_type(key_type),
        )
        self.register(identity)
        return identity

    def rotate_passphrase(self, name: str, old: Optional[str] = None, new: Optional[str] = None) -> Identity:
        """Change the passphrase of a registered key; None means ssh-keygen prompts."""
        identity = self.get(name)
        if not identity.private_key_path.is_file():
            raise FileSystemError("Private key not found", identity.private_key_path)
        self.keygen.change_passphrase(identity.private_key_path, old, new)
        if new is None:
            identity.has_passphrase = self.keygen.is_encrypted(identity.private_key_path)
        else:
            identity.has_passphrase = bool(new)
        return identity

    def delete(self, name: str, delete_files: bool = False) -> Identity:
        """
        Forget an identity. Key files are only removed when delete_files is set.
        """
        identity = self.get(name)
        if delete_files:
            for key_file in (identity.private_key_path, identity.public_key_path):
                try:
                    key_file.unlink()
                    log_info(f"Deleted {key_file}")
                except FileNotFoundError:
                    log_debug(f"Already gone: {key_file}")
                except OSError as e:
                    raise FileSystemError(f"Cannot delete key file ({e.strerror or e})", key_file) from e
        del self._identities[name]
        return identity
