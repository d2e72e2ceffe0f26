"""
CLI interface using argparse (standard library).

Every command follows the same shape: load state, change it in memory,
validate, write atomically, report. Human-readable messages go to stderr;
listings meant for scripts go to stdout.
"""
import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .agent import AgentController, OpenSshAgent
from .config import ConfigFile
from .errors import (
    FileSystemError, ParseError, PassphraseRequiredError, SshIdError, ValidationError,
)
from .identity import ALGORITHMS, DEFAULT_ALGORITHM, IdentityRegistry, KeyGenerator, SshKeygen
from .logging_utils import highlight_line, log_debug, log_error, log_info, log_note, log_success, log_warn
from .model import PATTERN_CHARS, HostEntry, quote_if_needed
from .platform_utils import contract_home, expand_path
from .settings import Settings

EXIT_INTERRUPTED = 130

# ssh-keygen only takes passphrases as -N/-P arguments.
ARGV_PASSPHRASE_NOTE = "ssh-keygen receives it as a command-line argument, visible to other local users via ps"


def make_keygen(settings: Settings) -> KeyGenerator:
    return SshKeygen(settings.ssh_keygen)


def make_agent_controller(settings: Settings) -> AgentController:
    backend = OpenSshAgent(settings.auth_sock, ssh_add=settings.ssh_add, agent_pid=settings.agent_pid)
    return AgentController(backend, keygen=make_keygen(settings), askpass=settings.askpass)


def load_registry(settings: Settings) -> IdentityRegistry:
    return IdentityRegistry.load(settings.registry_path, keygen=make_keygen(settings), ssh_dir=settings.ssh_dir)


def edit_registry(settings: Settings):
    return IdentityRegistry.edit(settings.registry_path, keygen=make_keygen(settings), ssh_dir=settings.ssh_dir)


def _stdin_is_terminal() -> bool:
    return sys.stdin.isatty()


def _passphrase_from_env(variable: str) -> str:
    value = os.environ.get(variable)
    if value is None:
        raise ValidationError(f"Environment variable {variable} is not set")
    return value


def _resolve_key_path(settings: Settings, name_or_path: str) -> Path:
    """A registered identity name, or a path to a private key."""
    registry = load_registry(settings)
    identity = registry.find(name_or_path)
    if identity is not None:
        return identity.private_key_path
    path = expand_path(name_or_path)
    if not path.exists():
        raise FileSystemError(f"{name_or_path!r} is neither a registered identity nor an existing file", path,
                              hint="run 'sshid list-keys' to see registered identities")
    return path.absolute()


def _parse_options(pairs: List[str]) -> List[tuple]:
    options = []
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip() or not value.strip():
            raise ValidationError(f"Option must look like Key=Value: {pair!r}")
        options.append((key.strip(), value.strip()))
    return options


# --- config commands -------------------------------------------------------

def cmd_add_host(args: argparse.Namespace, settings: Settings) -> int:
    alias = args.alias
    if not alias or any(c.isspace() for c in alias) or set(alias) & PATTERN_CHARS:
        raise ValidationError(f"Invalid host alias {alias!r}", hint="aliases cannot contain spaces or * ? !")

    key_path = _resolve_key_path(settings, args.identity)
    entry = HostEntry(
        alias=alias,
        hostname=args.hostname,
        user=args.user,
        identity_file=quote_if_needed(contract_home(key_path)),
        identities_only=not args.no_identities_only,
        forward_agent=args.forward_agent,
    )
    for key, value in _parse_options(args.option):
        entry.set_option(key, value)

    config_file = ConfigFile(settings.config_path)
    with config_file.edit() as config:
        config.add(entry)

    log_success(f"Added host {alias} ({args.user}@{args.hostname}) to {settings.config_path}")
    log_note(f"Use it as: ssh {alias}  or  git clone {args.user}@{alias}:<group>/<repo>.git")
    return 0


def cmd_remove_host(args: argparse.Namespace, settings: Settings) -> int:
    config_file = ConfigFile(settings.config_path)
    with config_file.edit() as config:
        entry = config.remove(args.alias)
    log_success(f"Removed host {entry.alias} from {settings.config_path}")
    log_debug(f"Key file left in place: {entry.identity_path}")
    return 0


def cmd_list_hosts(args: argparse.Namespace, settings: Settings) -> int:
    config = ConfigFile(settings.config_path).load()
    hosts = config.hosts()
    if args.json:
        print(json.dumps([
            {
                "alias": entry.alias,
                "hostname": entry.hostname,
                "user": entry.user,
                "identity_file": entry.identity_file,
                "identities_only": entry.identities_only,
                "forward_agent": entry.forward_agent,
                "options": [list(option) for option in entry.extra_options],
            }
            for entry in hosts
        ], indent=2))
        return 0
    if not hosts:
        log_info(f"No host aliases in {settings.config_path}")
        return 0
    for entry in hosts:
        if args.long:
            print(f"{entry.alias}\t{entry.user}@{entry.hostname}\t{entry.identity_file}")
        else:
            print(entry.alias)
    return 0


def cmd_show_host(args: argparse.Namespace, settings: Settings) -> int:
    config = ConfigFile(settings.config_path).load()
    entry = config.require(args.alias)
    for line in entry.render():
        print(highlight_line(line))
    if not entry.identity_path.is_file():
        log_warn(f"Identity file does not exist: {entry.identity_path}")
    return 0


# --- key commands ----------------------------------------------------------

def _passphrase_choice(args: argparse.Namespace, env_attr: str = "passphrase_env") -> Optional[str]:
    """Passphrase from flags: a value, "" for none, or None to let ssh-keygen prompt."""
    if getattr(args, "no_passphrase", False):
        return ""
    variable = getattr(args, env_attr, None)
    if variable:
        return _passphrase_from_env(variable)
    if not _stdin_is_terminal():
        raise PassphraseRequiredError(
            "No terminal to ask for a passphrase",
            hint="pass --passphrase-env VAR or --no-passphrase",
        )
    return None


def cmd_generate_key(args: argparse.Namespace, settings: Settings) -> int:
    passphrase = _passphrase_choice(args)
    with edit_registry(settings) as registry:
        identity = registry.generate(
            args.name,
            algorithm=args.type,
            comment=args.comment,
            path=Path(args.output) if args.output else None,
            passphrase=passphrase,
            force=args.force,
        )
    log_success(f"Created identity {identity.name}: {identity.private_key_path}")
    if not identity.has_passphrase:
        log_warn("The private key has no passphrase")
    print(identity.public_key_path.read_text(encoding="utf-8").strip())
    log_note("Add the public key above to your Git hosting account, then run 'sshid add-host'")
    return 0


def cmd_import_key(args: argparse.Namespace, settings: Settings) -> int:
    with edit_registry(settings) as registry:
        identity = registry.import_key(args.name, Path(args.path))
    log_success(f"Registered {identity.private_key_path} as {identity.name}")
    return 0


def cmd_list_keys(args: argparse.Namespace, settings: Settings) -> int:
    identities = load_registry(settings).identities()
    if args.json:
        print(json.dumps([identity.to_dict() for identity in identities], indent=2))
        return 0
    if not identities:
        log_info(f"No identities registered in {settings.registry_path}")
        return 0
    for identity in identities:
        protection = "passphrase" if identity.has_passphrase else "no-passphrase"
        print(f"{identity.name}\t{identity.algorithm or '-'}\t{protection}\t"
              f"{identity.private_key_path}\t{identity.comment}")
    return 0


def _confirm(question: str) -> bool:
    answer = input(f"{question} [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _warn_about_references(settings: Settings, key_path: Path) -> None:
    try:
        config = ConfigFile(settings.config_path).load()
    except ParseError as e:
        log_warn(f"Could not check which hosts use this key: {e}")
        return
    users = [entry.alias for entry in config.hosts() if entry.identity_path == key_path]
    if users:
        log_warn(f"Still referenced by host(s): {', '.join(users)}")


def cmd_delete_key(args: argparse.Namespace, settings: Settings) -> int:
    with edit_registry(settings) as registry:
        identity = registry.get(args.name)
        _warn_about_references(settings, identity.private_key_path)
        if args.delete_files and not args.yes:
            if not _stdin_is_terminal():
                raise ValidationError("Refusing to delete key files without --yes")
            if not _confirm(f"Permanently delete {identity.private_key_path} and its .pub?"):
                raise ValidationError("Aborted; nothing was deleted")
        registry.delete(args.name, delete_files=args.delete_files)
    if args.delete_files:
        log_success(f"Deleted identity {identity.name} and its key files")
    else:
        log_success(f"Forgot identity {identity.name}; key files kept at {identity.private_key_path}")
    return 0


def cmd_rotate_passphrase(args: argparse.Namespace, settings: Settings) -> int:
    old = _passphrase_from_env(args.old_passphrase_env) if args.old_passphrase_env else None
    new = _passphrase_choice(args, env_attr="new_passphrase_env")
    if old is None and not _stdin_is_terminal():
        raise PassphraseRequiredError("No terminal to ask for the current passphrase",
                                      hint="pass --old-passphrase-env VAR")
    with edit_registry(settings) as registry:
        identity = registry.rotate_passphrase(args.name, old=old, new=new)
    state = "now protected by a passphrase" if identity.has_passphrase else "now has no passphrase"
    log_success(f"Identity {identity.name} is {state}")
    return 0


# --- agent commands --------------------------------------------------------

def cmd_agent_add(args: argparse.Namespace, settings: Settings) -> int:
    key_path = _resolve_key_path(settings, args.key)
    passphrase = _passphrase_from_env(args.passphrase_env) if args.passphrase_env else None
    controller = make_agent_controller(settings)
    fingerprint = controller.add(key_path, passphrase=passphrase)
    if fingerprint:
        print(fingerprint)
    log_success(f"Loaded {key_path} into the agent")
    return 0


def cmd_agent_list(args: argparse.Namespace, settings: Settings) -> int:
    controller = make_agent_controller(settings)
    keys = controller.list_keys()
    names = controller.fingerprint_names(load_registry(settings).identities())
    if args.json:
        print(json.dumps([
            {
                "fingerprint": key.fingerprint,
                "type": key.key_type,
                "comment": key.comment,
                "identity": names.get(key.fingerprint),
            }
            for key in keys
        ], indent=2))
        return 0
    if not keys:
        log_info("The agent has no identities loaded")
        return 0
    for key in keys:
        name = names.get(key.fingerprint, "-")
        print(f"{key.fingerprint}\t{key.key_type}\t{name}\t{key.comment}")
    return 0


def cmd_agent_remove(args: argparse.Namespace, settings: Settings) -> int:
    controller = make_agent_controller(settings)
    target = args.key
    identity = load_registry(settings).find(target)
    if identity is not None:
        names = controller.fingerprint_names([identity])
        if not names:
            raise FileSystemError("Cannot read the public key of identity " + identity.name,
                                  identity.public_key_path)
        target = next(iter(names))
    key = controller.remove(target)
    log_success(f"Removed {key.fingerprint} ({key.comment or key.key_type}) from the agent")
    return 0


# --- parser ----------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshid",
        description="sshid - manage SSH identities, host aliases and the SSH agent",
        allow_abbrev=False,
    )
    parser.add_argument("-v", "--version", action="store_true", help="Show version information and exit")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug mode (verbose output)")
    parser.add_argument("--config", help="SSH config file (default: ~/.ssh/config or $SSHID_CONFIG)")
    parser.add_argument("--ssh-dir", help="Directory for generated keys (default: ~/.ssh or $SSHID_SSH_DIR)")
    parser.add_argument("--registry", help="Identity registry file (default: <ssh-dir>/sshid-identities.json)")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("add-host", help="Add a Host alias block to the SSH config")
    p.add_argument("alias", help="Alias to use in ssh/git commands, e.g. gitlab-work")
    p.add_argument("--hostname", required=True, help="Real server name, e.g. gitlab.com")
    p.add_argument("--user", default="git", help="Remote user (default: git)")
    p.add_argument("--identity", required=True, help="Registered identity name or private key path")
    p.add_argument("--no-identities-only", action="store_true", help="Do not restrict auth to this key")
    p.add_argument("--forward-agent", action="store_true", help="Enable agent forwarding")
    p.add_argument("-o", "--option", action="append", metavar="KEY=VALUE", help="Extra ssh_config directive")
    p.set_defaults(handler=cmd_add_host)

    p = sub.add_parser("remove-host", help="Remove a Host alias block")
    p.add_argument("alias")
    p.set_defaults(handler=cmd_remove_host)

    p = sub.add_parser("list-hosts", help="List host aliases in file order")
    p.add_argument("-l", "--long", action="store_true", help="Show user, hostname and identity file")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.set_defaults(handler=cmd_list_hosts)

    p = sub.add_parser("show-host", help="Print one Host block")
    p.add_argument("alias")
    p.set_defaults(handler=cmd_show_host)

    p = sub.add_parser("generate-key", help="Generate and register a new key pair")
    p.add_argument("name", help="Identity name, e.g. gitlab-work")
    p.add_argument("-t", "--type", choices=sorted(ALGORITHMS), default=DEFAULT_ALGORITHM, help="Key type")
    p.add_argument("-C", "--comment", help="Key comment, usually your email (default: the name)")
    p.add_argument("--output", help="Private key path (default: <ssh-dir>/id_<type>_<name>)")
    p.add_argument("--force", action="store_true", help="Replace existing key files")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--passphrase-env", metavar="VAR", help=f"Read the passphrase from this variable ({ARGV_PASSPHRASE_NOTE})")
    group.add_argument("--no-passphrase", action="store_true", help="Create an unencrypted key")
    p.set_defaults(handler=cmd_generate_key)

    p = sub.add_parser("import-key", help="Register an existing key pair")
    p.add_argument("name")
    p.add_argument("path", help="Private key path; the .pub file must sit next to it")
    p.set_defaults(handler=cmd_import_key)

    p = sub.add_parser("list-keys", help="List registered identities")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.set_defaults(handler=cmd_list_keys)

    p = sub.add_parser("delete-key", help="Unregister an identity (optionally deleting its files)")
    p.add_argument("name")
    p.add_argument("--delete-files", action="store_true", help="Also delete the private and public key files")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(handler=cmd_delete_key)

    p = sub.add_parser("rotate-passphrase", help="Change the passphrase of a registered key")
    p.add_argument("name")
    p.add_argument("--old-passphrase-env", metavar="VAR", help=f"Read the current passphrase from this variable ({ARGV_PASSPHRASE_NOTE})")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--new-passphrase-env", metavar="VAR", help=f"Read the new passphrase from this variable ({ARGV_PASSPHRASE_NOTE})")
    group.add_argument("--no-passphrase", action="store_true", help="Remove the passphrase")
    p.set_defaults(handler=cmd_rotate_passphrase)

    p = sub.add_parser("agent-add", help="Load a key into the SSH agent")
    p.add_argument("key", help="Registered identity name or private key path")
    p.add_argument("--passphrase-env", metavar="VAR", help="Read the key passphrase from this variable")
    p.set_defaults(handler=cmd_agent_add)

    p = sub.add_parser("agent-list", help="List keys loaded in the SSH agent")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.set_defaults(handler=cmd_agent_list)

    p = sub.add_parser("agent-remove", help="Unload a key from the SSH agent")
    p.add_argument("key", help="Fingerprint (SHA256:...) or registered identity name")
    p.set_defaults(handler=cmd_agent_remove)

    return parser


def print_version(settings: Settings) -> None:
    print(f"sshid {__version__}", file=sys.stderr)
    print(f"Python version: {sys.version.split()[0]}", file=sys.stderr)
    print(f"SSH config: {settings.config_path}", file=sys.stderr)
    print(f"Identity registry: {settings.registry_path}", file=sys.stderr)
    print(f"Agent socket: {settings.auth_sock or '(not set)'}", file=sys.stderr)


def cli_main(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments and run one command.

    Returns:
        Process exit code: 0 on success, the error's exit_code on failure
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug:
        os.environ["DEBUG"] = "1"

    settings = Settings.from_env(config=args.config, ssh_dir=args.ssh_dir, registry=args.registry)

    if args.version:
        print_version(settings)
        return 0

    if not args.command:
        parser.print_help(file=sys.stderr)
        return 0

    log_debug(f"Command {args.command}, config {settings.config_path}, registry {settings.registry_path}")
    try:
        return args.handler(args, settings)
    except SshIdError as e:
        log_error(e.message)
        if e.hint:
            log_note(e.hint)
        return e.exit_code
    except (KeyboardInterrupt, EOFError):
        log_error("Interrupted")
        return EXIT_INTERRUPTED
