"""
Error taxonomy. Every failure the tool reports is one of these, each with its
own process exit code.
"""
from typing import Optional


class SshIdError(Exception):
    """Base class for all sshid errors."""

    exit_code = 1

    def __init__(self, message: str, hint: Optional[str] = None):
        self.message = message
        self.hint = hint
        super().__init__(message)


class ParseError(SshIdError):
    """Malformed SSH config file."""

    exit_code = 3

    def __init__(self, message: str, line: Optional[int] = None, hint: Optional[str] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message, hint)


class DuplicateNameError(SshIdError):
    """An identity with this name is already registered."""

    exit_code = 4


class DuplicateAliasError(SshIdError):
    """A host block with this alias already exists."""

    exit_code = 5


class KeygenError(SshIdError):
    """ssh-keygen failed or did not produce the expected files."""

    exit_code = 6

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = "",
                 hint: Optional[str] = None):
        self.returncode = returncode
        self.stderr = stderr
        if returncode is not None:
            message = f"{message} (exit status {returncode})"
        super().__init__(message, hint)


class AgentUnavailableError(SshIdError):
    """No SSH agent socket is reachable."""

    exit_code = 7


class PassphraseRequiredError(SshIdError):
    """Key is encrypted and there is no way to ask for its passphrase."""

    exit_code = 8


class FileSystemError(SshIdError):
    """Permission problem or missing path."""

    exit_code = 9

    def __init__(self, message: str, path=None, hint: Optional[str] = None):
        self.path = path
        if path is not None:
            message = f"{message}: {path}"
        super().__init__(message, hint)


class ValidationError(SshIdError):
    """In-memory state breaks an invariant; nothing was written."""

    exit_code = 10


class NotFoundError(SshIdError):
    """Unknown host alias, identity name or fingerprint."""

    exit_code = 11


class AgentError(SshIdError):
    """The agent answered but refused the request."""

    exit_code = 12
