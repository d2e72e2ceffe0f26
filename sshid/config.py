"""
SSH config parsing/serialization and safe on-disk updates.
"""
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import FileSystemError, ParseError
from .logging_utils import log_debug
from .model import (
    EXTRA_TOKEN, KNOWN_DIRECTIVES, REQUIRED_DIRECTIVES, DEFAULT_INDENT,
    HostEntry, RawBlock, SshConfig, is_concrete_pattern, is_trivia,
)
from .platform_utils import is_windows

HEADER_RE = re.compile(r'^\s*(Host|Match)(?:\s*=\s*|\s+|$)(.*)$', re.IGNORECASE)
DIRECTIVE_RE = re.compile(r'^(\s*)([A-Za-z][A-Za-z0-9]*)(?:\s*=\s*|\s+|$)(.*?)\s*$')

BOOLEAN_VALUES = {"yes": True, "true": True, "no": False, "false": False}


def _split_leading(lines: List[str]) -> Tuple[List[str], List[str]]:
    """Split off the unindented comment lines sitting directly above the next header."""
    cut = len(lines)
    while cut > 0 and lines[cut - 1].startswith("#"):
        cut -= 1
    return lines[:cut], lines[cut:]


class _PendingBlock:
    def __init__(self, keyword: str, patterns: List[str], header: str, line: int):
        self.keyword = keyword
        self.patterns = patterns
        self.header = header
        self.line = line
        self.body: List[Tuple[int, str]] = []
        self.leading: List[str] = []


def _parse_bool(value: str, directive: str, line: int) -> bool:
    try:
        return BOOLEAN_VALUES[value.lower()]
    except KeyError:
        raise ParseError(f"{directive} must be yes or no, got {value!r}", line)


def _build_host_entry(pending: _PendingBlock) -> HostEntry:
    alias = pending.patterns[0]
    fields = {}
    extra_options: List[Tuple[str, str]] = []
    layout: List[str] = []
    indent: Optional[str] = None

    for line_no, raw in pending.body:
        if is_trivia(raw):
            layout.append(raw)
            continue
        match = DIRECTIVE_RE.match(raw)
        if not match:
            raise ParseError(f"Cannot parse directive in Host {alias}: {raw.strip()!r}", line_no)
        leading_ws, key, value = match.groups()
        if not value:
            raise ParseError(f"{key} in Host {alias} has no value", line_no)
        if indent is None:
            indent = leading_ws
        lowered = key.lower()
        # Repeated known directives (e.g. several IdentityFile lines) pass through untouched.
        if lowered in KNOWN_DIRECTIVES and lowered not in fields:
            if lowered == "forwardagent" and value.lower() not in BOOLEAN_VALUES:
                # ForwardAgent may also name an agent socket or an environment variable.
                extra_options.append((key, value))
                layout.append(EXTRA_TOKEN)
                continue
            if lowered in ("identitiesonly", "forwardagent"):
                fields[lowered] = _parse_bool(value, KNOWN_DIRECTIVES[lowered], line_no)
            else:
                fields[lowered] = value
            layout.append(lowered)
        else:
            extra_options.append((key, value))
            layout.append(EXTRA_TOKEN)

    for key in REQUIRED_DIRECTIVES:
        if key not in fields:
            raise ParseError(
                f"Host {alias} is missing {KNOWN_DIRECTIVES[key]}", pending.line,
                hint="add the directive, or turn the block into a wildcard pattern",
            )

    return HostEntry(
        alias=alias,
        hostname=fields["hostname"],
        user=fields["user"],
        identity_file=fields["identityfile"],
        identities_only=fields.get("identitiesonly", False),
        forward_agent=fields.get("forwardagent", False),
        extra_options=extra_options,
        leading=pending.leading,
        layout=layout,
        indent=DEFAULT_INDENT if indent is None else indent,
    )


def parse(text: str) -> SshConfig:
    """
    Parse SSH config text into an SshConfig.

    Args:
        text: Contents of an ssh_config(5) file

    Returns:
        Parsed configuration

    Raises:
        ParseError: On a malformed or incomplete Host block, or a duplicate alias
    """
    preamble: List[str] = []
    pending_blocks: List[_PendingBlock] = []
    current: Optional[_PendingBlock] = None

    for line_no, raw in enumerate(text.splitlines(), start=1):
        header = HEADER_RE.match(raw)
        if header:
            keyword, rest = header.group(1), header.group(2).strip()
            if not rest:
                raise ParseError(f"{keyword} line without a pattern", line_no)
            current = _PendingBlock(keyword, rest.split(), raw, line_no)
            pending_blocks.append(current)
            continue
        if current is None:
            preamble.append(raw)
        else:
            current.body.append((line_no, raw))

    # Comments directly above a header belong to that header's block.
    for index, pending in enumerate(pending_blocks):
        if index == 0:
            kept, pending.leading = _split_leading(preamble)
            preamble[:] = kept
        else:
            prior = pending_blocks[index - 1]
            kept, pending.leading = _split_leading([raw for _, raw in prior.body])
            prior.body = prior.body[:len(kept)]

    config = SshConfig(preamble=preamble)
    seen = {}
    for pending in pending_blocks:
        single = len(pending.patterns) == 1 and is_concrete_pattern(pending.patterns[0])
        if pending.keyword.lower() == "host" and single:
            entry = _build_host_entry(pending)
            if entry.alias in seen:
                raise ParseError(
                    f"Duplicate Host alias {entry.alias} (first defined on line {seen[entry.alias]})",
                    pending.line,
                )
            seen[entry.alias] = pending.line
            config.blocks.append(entry)
        else:
            config.blocks.append(RawBlock(
                keyword=pending.keyword,
                patterns=pending.patterns,
                header=pending.header,
                lines=[raw for _, raw in pending.body],
                leading=pending.leading,
            ))
    return config


def serialize(config: SshConfig) -> str:
    """Render an SshConfig back to ssh_config(5) text."""
    lines = config.render_lines()
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def atomic_write(path: Path, text: str, mode: int = 0o600) -> None:
    """
    Replace path with text so that readers see either the old or the new file.

    The new content goes to a temporary file in the same directory, is fsynced,
    and is renamed over the target. If any step fails the original file is left
    untouched and the temporary file is removed.

    Raises:
        FileSystemError: If the directory is not writable or the write fails
    """
    path = Path(path)
    if path.is_symlink():
        path = path.resolve()
    if path.exists():
        mode = path.stat().st_mode & 0o777

    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise FileSystemError(f"Cannot create temporary file ({e.strerror or e})", path.parent) from e

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise FileSystemError(f"Cannot write file ({e.strerror or e})", path) from e
    log_debug(f"Wrote {len(text)} bytes to {path}")


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """
    Hold an exclusive advisory lock on ``<path>.lock`` for the duration.

    On Windows there is no flock; atomic replacement alone protects the file.
    """
    if is_windows():
        yield
        return

    import fcntl

    lock_path = Path(path).with_name(Path(path).name + ".lock")
    try:
        lock_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        handle = open(lock_path, "a")
    except OSError as e:
        raise FileSystemError(f"Cannot open lock file ({e.strerror or e})", lock_path) from e
    try:
        log_debug(f"Waiting for lock {lock_path}")
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class ConfigFile:
    """Handle on the SSH config file on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read_text(self) -> str:
        if not self.path.exists():
            log_debug(f"SSH config not found, starting empty: {self.path}")
            return ""
        try:
            return self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"not valid UTF-8 text ({e.reason} at byte {e.start})") from e
        except OSError as e:
            raise FileSystemError(f"Cannot read SSH config ({e.strerror or e})", self.path) from e

    def load(self) -> SshConfig:
        try:
            return parse(self.read_text())
        except ParseError as e:
            e.message = f"{self.path}: {e.message}"
            e.args = (e.message,)
            raise

    def save(self, config: SshConfig) -> None:
        atomic_write(self.path, serialize(config))

    @contextmanager
    def edit(self) -> Iterator[SshConfig]:
        """
        Load, let the caller mutate, validate, then write atomically.

        The file is locked for the whole cycle. If the caller raises or
        validation fails, nothing is written.
        """
        with file_lock(self.path):
            config = self.load()
            yield config
            config.validate()
            self.save(config)
