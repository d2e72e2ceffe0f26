"""
In-memory model of an OpenSSH client config file.

A config is a preamble (global lines before the first block) followed by an
ordered list of blocks. Concrete single-alias ``Host`` blocks become
``HostEntry`` objects with typed fields; wildcard, multi-pattern and ``Match``
blocks are kept verbatim as ``RawBlock``. Both remember the comments and blank
lines around their directives so that a hand-edited file survives a
load/save cycle.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple, Union

from .errors import DuplicateAliasError, NotFoundError, ValidationError
from .platform_utils import expand_path

# Canonical spelling of the directives HostEntry models as fields.
KNOWN_DIRECTIVES = {
    "hostname": "HostName",
    "user": "User",
    "identityfile": "IdentityFile",
    "identitiesonly": "IdentitiesOnly",
    "forwardagent": "ForwardAgent",
}
REQUIRED_DIRECTIVES = ("hostname", "user", "identityfile")

# Layout token standing for "the next entry of extra_options".
EXTRA_TOKEN = "\x00extra"

# Keywords that open a new block and so can never be a directive inside one.
BLOCK_KEYWORDS = ("host", "match")
OPTION_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")

DEFAULT_INDENT = "    "
PATTERN_CHARS = set("*?!")


def is_trivia(line: str) -> bool:
    """Blank lines and comments carry no directive."""
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def is_concrete_pattern(pattern: str) -> bool:
    return not (set(pattern) & PATTERN_CHARS)


def format_bool(value: bool) -> str:
    return "yes" if value else "no"


def unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def quote_if_needed(value: str) -> str:
    if any(c.isspace() for c in value) and not value.startswith('"'):
        return f'"{value}"'
    return value


@dataclass
class HostEntry:
    """A concrete ``Host <alias>`` block."""

    alias: str
    hostname: str
    user: str
    identity_file: str
    identities_only: bool = True
    forward_agent: bool = False
    extra_options: List[Tuple[str, str]] = field(default_factory=list)
    # Comment lines directly above the Host line; they move with the block.
    leading: List[str] = field(default_factory=list)
    # Directive keys (lowercase), EXTRA_TOKEN, or raw comment/blank lines, in file order.
    layout: List[str] = field(default_factory=list)
    indent: str = DEFAULT_INDENT

    def __post_init__(self) -> None:
        if not self.layout:
            self.layout = ["hostname", "user", "identityfile"]
            if self.identities_only:
                self.layout.append("identitiesonly")
            if self.forward_agent:
                self.layout.append("forwardagent")
            self.layout.extend([EXTRA_TOKEN] * len(self.extra_options))

    @property
    def aliases(self) -> List[str]:
        return [self.alias]

    @property
    def identity_path(self) -> Path:
        """IdentityFile as a filesystem path (quotes removed, ~ expanded)."""
        return expand_path(unquote(self.identity_file))

    def _value_of(self, key: str) -> str:
        if key == "hostname":
            return self.hostname
        if key == "user":
            return self.user
        if key == "identityfile":
            return self.identity_file
        if key == "identitiesonly":
            return format_bool(self.identities_only)
        return format_bool(self.forward_agent)

    def _insert_token(self, token: str) -> None:
        """Insert a directive token after the last directive, ahead of trailing comments."""
        position = len(self.layout)
        while position > 0 and self.layout[position - 1] not in KNOWN_DIRECTIVES \
                and self.layout[position - 1] != EXTRA_TOKEN:
            position -= 1
        self.layout.insert(position, token)

    def set_option(self, key: str, value: str) -> None:
        """Set a passthrough directive, replacing an existing one of the same name."""
        lowered = key.lower()
        if not OPTION_KEY_RE.match(key):
            raise ValidationError(f"Invalid option name {key!r}: use letters and digits only")
        if lowered in BLOCK_KEYWORDS:
            raise ValidationError(f"{key} starts a new block and cannot be set as an option")
        if lowered in KNOWN_DIRECTIVES:
            raise ValidationError(f"{KNOWN_DIRECTIVES[lowered]} is not a passthrough option")
        if not value.strip() or "\n" in value or "\r" in value:
            raise ValidationError(f"Option {key} needs a single-line value")
        for index, (existing, _) in enumerate(self.extra_options):
            if existing.lower() == lowered:
                self.extra_options[index] = (existing, value)
                return
        self.extra_options.append((key, value))
        self._insert_token(EXTRA_TOKEN)

    def render(self) -> List[str]:
        lines = list(self.leading)
        lines.append(f"Host {self.alias}")
        extras = iter(self.extra_options)
        emitted: Set[str] = set()
        for token in self.layout:
            if token in KNOWN_DIRECTIVES:
                lines.append(f"{self.indent}{KNOWN_DIRECTIVES[token]} {self._value_of(token)}")
                emitted.add(token)
            elif token == EXTRA_TOKEN:
                option = next(extras, None)
                if option is not None:
                    lines.append(f"{self.indent}{option[0]} {option[1]}")
            else:
                lines.append(token)
        for key in REQUIRED_DIRECTIVES:
            if key not in emitted:
                lines.append(f"{self.indent}{KNOWN_DIRECTIVES[key]} {self._value_of(key)}")
        if self.identities_only and "identitiesonly" not in emitted:
            lines.append(f"{self.indent}IdentitiesOnly yes")
        if self.forward_agent and "forwardagent" not in emitted:
            lines.append(f"{self.indent}ForwardAgent yes")
        for key, value in extras:
            lines.append(f"{self.indent}{key} {value}")
        return lines

    def append_trailing(self, line: str) -> None:
        self.layout.append(line)


@dataclass
class RawBlock:
    """A Host block with patterns, or a Match block, kept exactly as written."""

    keyword: str
    patterns: List[str]
    header: str
    lines: List[str] = field(default_factory=list)
    leading: List[str] = field(default_factory=list)

    @property
    def aliases(self) -> List[str]:
        """Concrete names this block answers to (none for Match blocks)."""
        if self.keyword.lower() != "host":
            return []
        return [p for p in self.patterns if is_concrete_pattern(p)]

    def render(self) -> List[str]:
        return list(self.leading) + [self.header] + list(self.lines)

    def append_trailing(self, line: str) -> None:
        self.lines.append(line)


Block = Union[HostEntry, RawBlock]


@dataclass
class SshConfig:
    preamble: List[str] = field(default_factory=list)
    blocks: List[Block] = field(default_factory=list)
    # Aliases added or changed since load; their identity files are checked on validate().
    touched: Set[str] = field(default_factory=set, compare=False, repr=False)

    def hosts(self) -> List[HostEntry]:
        return [block for block in self.blocks if isinstance(block, HostEntry)]

    def aliases(self) -> List[str]:
        return [entry.alias for entry in self.hosts()]

    def get(self, alias: str) -> Optional[HostEntry]:
        for entry in self.hosts():
            if entry.alias == alias:
                return entry
        return None

    def require(self, alias: str) -> HostEntry:
        entry = self.get(alias)
        if entry is None:
            raise NotFoundError(f"No host named {alias}",
                                hint="run 'sshid list-hosts' to see configured aliases")
        return entry

    def add(self, entry: HostEntry) -> None:
        """Append a host block after the last one, separated by a blank line."""
        for block in self.blocks:
            if entry.alias in block.aliases:
                raise DuplicateAliasError(f"Host alias {entry.alias} already exists",
                                          hint="pick another alias or remove the existing host first")
        existing = self.hosts()
        if existing and entry.indent == DEFAULT_INDENT:
            entry.indent = existing[0].indent or DEFAULT_INDENT
        last_line = self.render_lines()[-1:] or [""]
        if last_line[0].strip():
            if self.blocks:
                self.blocks[-1].append_trailing("")
            else:
                self.preamble.append("")
        self.blocks.append(entry)
        self.touched.add(entry.alias)

    def remove(self, alias: str) -> HostEntry:
        entry = self.require(alias)
        self.blocks.remove(entry)
        self.touched.discard(alias)
        return entry

    def validate(self, touched: Iterable[str] = None) -> None:
        """Check invariants before a write.

        Args:
            touched: Aliases whose identity files must exist (default: those added since load)

        Raises:
            ValidationError: If a required field is empty or an identity file is missing
            DuplicateAliasError: If an alias appears twice
        """
        seen: Set[str] = set()
        for entry in self.hosts():
            if entry.alias in seen:
                raise DuplicateAliasError(f"Host alias {entry.alias} appears more than once")
            seen.add(entry.alias)
            for key in REQUIRED_DIRECTIVES:
                if not entry._value_of(key).strip():
                    raise ValidationError(f"Host {entry.alias}: {KNOWN_DIRECTIVES[key]} must not be empty")

        check = set(self.touched if touched is None else touched)
        for entry in self.hosts():
            if entry.alias in check and not entry.identity_path.is_file():
                raise ValidationError(
                    f"Host {entry.alias}: identity file does not exist: {entry.identity_path}",
                    hint="generate it with 'sshid generate-key' or pass an existing key",
                )

    def render_lines(self) -> List[str]:
        lines = list(self.preamble)
        for block in self.blocks:
            lines.extend(block.render())
        return lines
