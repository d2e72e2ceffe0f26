"""End-to-end tests for the command line, run against a temporary ~/.ssh."""
import json

import pytest

from sshid import __version__, cli
from sshid.cli import build_parser, cli_main, make_agent_controller

from conftest import write_key_pair

TWO_HOSTS = """\
# personal
Host gitlab-personal
    HostName gitlab.com
    User git
    IdentityFile ~/.ssh/id_ed25519_personal

Host gitlab-work
    HostName gitlab.com
    User git
    IdentityFile ~/.ssh/id_ed25519_work
"""


@pytest.fixture
def config_path(cli_env):
    path = cli_env / "config"
    path.write_text(TWO_HOSTS)
    return path


def run(capsys, *argv):
    code = cli_main(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


def test_no_command_prints_help(cli_env, capsys):
    code, out, err = run(capsys)
    assert code == 0
    assert "usage: sshid" in err
    assert out == ""


def test_version(cli_env, capsys):
    code, _, err = run(capsys, "--version")
    assert code == 0
    assert f"sshid {__version__}" in err
    assert str(cli_env / "config") in err


def test_unknown_command_is_usage_error(cli_env, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli_main(["frobnicate"])
    assert excinfo.value.code == 2


def test_parser_requires_hostname_and_identity():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["add-host", "gitlab-work"])


def test_list_hosts_in_file_order(config_path, capsys):
    code, out, _ = run(capsys, "list-hosts")
    assert code == 0
    assert out == "gitlab-personal\ngitlab-work\n"


def test_list_hosts_long_and_json(config_path, capsys):
    code, out, _ = run(capsys, "list-hosts", "--long")
    assert code == 0
    assert out.splitlines()[1] == "gitlab-work\tgit@gitlab.com\t~/.ssh/id_ed25519_work"

    code, out, _ = run(capsys, "list-hosts", "--json")
    hosts = json.loads(out)
    assert [h["alias"] for h in hosts] == ["gitlab-personal", "gitlab-work"]
    assert hosts[0]["identities_only"] is False


def test_list_hosts_without_config(cli_env, capsys):
    code, out, err = run(capsys, "list-hosts")
    assert code == 0
    assert out == ""
    assert "No host aliases" in err


def test_add_host_with_key_path(config_path, cli_env, capsys):
    key = write_key_pair(cli_env / "id_ed25519_github")
    code, _, err = run(capsys, "add-host", "github-work", "--hostname", "github.com",
                       "--identity", str(key), "-o", "Port=22")
    assert code == 0
    assert "Added host github-work" in err
    text = config_path.read_text()
    assert text.startswith(TWO_HOSTS)
    assert text.endswith(
        "\nHost github-work\n"
        "    HostName github.com\n"
        "    User git\n"
        "    IdentityFile ~/.ssh/id_ed25519_github\n"
        "    IdentitiesOnly yes\n"
        "    Port 22\n"
    )


def test_add_host_with_identity_name(cli_env, capsys):
    assert run(capsys, "generate-key", "work", "--no-passphrase")[0] == 0
    code, _, _ = run(capsys, "add-host", "gitlab-work", "--hostname", "gitlab.com",
                     "--identity", "work", "--forward-agent")
    assert code == 0
    text = (cli_env / "config").read_text()
    assert "IdentityFile ~/.ssh/id_ed25519_work" in text
    assert "ForwardAgent yes" in text


def test_add_host_duplicate_leaves_file_untouched(config_path, cli_env, capsys):
    key = write_key_pair(cli_env / "id_other")
    code, _, err = run(capsys, "add-host", "gitlab-work", "--hostname", "gitlab.com",
                       "--identity", str(key))
    assert code == 5
    assert "gitlab-work" in err
    assert config_path.read_text() == TWO_HOSTS


def test_add_host_missing_key(config_path, capsys):
    code, _, _ = run(capsys, "add-host", "new", "--hostname", "h", "--identity", "/nonexistent/key")
    assert code == 9
    assert config_path.read_text() == TWO_HOSTS


@pytest.mark.parametrize("alias", ["bad*", "two words", "!neg"])
def test_add_host_rejects_pattern_alias(config_path, cli_env, capsys, alias):
    key = write_key_pair(cli_env / "id_x")
    code, _, _ = run(capsys, "add-host", alias, "--hostname", "h", "--identity", str(key))
    assert code == 10


def test_add_host_rejects_bad_option(config_path, cli_env, capsys):
    key = write_key_pair(cli_env / "id_x")
    code, _, _ = run(capsys, "add-host", "x", "--hostname", "h", "--identity", str(key), "-o", "Port")
    assert code == 10


@pytest.mark.parametrize("option", ["Host=evil", "match=all", "Proxy-Jump=bastion"])
def test_add_host_rejects_block_keywords_as_options(config_path, cli_env, capsys, option):
    key = write_key_pair(cli_env / "id_x")
    code, _, _ = run(capsys, "add-host", "x", "--hostname", "h", "--identity", str(key), "-o", option)
    assert code == 10
    assert config_path.read_text() == TWO_HOSTS
    assert run(capsys, "list-hosts")[0] == 0


def test_remove_host(config_path, capsys):
    code, _, _ = run(capsys, "remove-host", "gitlab-personal")
    assert code == 0
    text = config_path.read_text()
    assert "gitlab-personal" not in text
    assert "# personal" not in text
    assert text == TWO_HOSTS.split("# personal\n", 1)[0] + TWO_HOSTS.split("\n\n", 1)[1]


def test_remove_unknown_host(config_path, capsys):
    code, _, err = run(capsys, "remove-host", "nope")
    assert code == 11
    assert config_path.read_text() == TWO_HOSTS


def test_malformed_config_is_a_parse_error(cli_env, capsys):
    path = cli_env / "config"
    path.write_text("Host broken\n    User git\n")
    code, _, err = run(capsys, "list-hosts")
    assert code == 3
    assert "line 1" in err
    assert "broken" in err


def test_config_that_is_not_utf8_is_a_parse_error(cli_env, capsys):
    path = cli_env / "config"
    path.write_bytes(b"# caf\xe9\nHost a\n    HostName h\n    User u\n    IdentityFile k\n")
    code, _, err = run(capsys, "list-hosts")
    assert code == 3
    assert str(path) in err
    assert "UTF-8" in err


def test_registry_that_is_not_utf8_is_a_parse_error(cli_env, capsys):
    path = cli_env / "sshid-identities.json"
    path.write_bytes(b'{"identities": [], "note": "caf\xe9"}')
    code, _, err = run(capsys, "list-keys")
    assert code == 3
    assert str(path) in err


def test_forward_agent_socket_survives_add_host(cli_env, capsys):
    path = cli_env / "config"
    original = ("Host jump\n    HostName jump.example.com\n    User git\n"
                "    IdentityFile ~/.ssh/id_jump\n    ForwardAgent $SSH_AUTH_SOCK\n")
    path.write_text(original)
    key = write_key_pair(cli_env / "id_x")
    assert run(capsys, "add-host", "x", "--hostname", "h", "--identity", str(key))[0] == 0
    assert path.read_text().startswith(original)


def test_show_host(config_path, capsys):
    code, out, err = run(capsys, "show-host", "gitlab-work")
    assert code == 0
    assert out.splitlines()[0] == "Host gitlab-work"
    assert "    IdentityFile ~/.ssh/id_ed25519_work" in out.splitlines()
    assert "Identity file does not exist" in err


def test_generate_key_prints_public_key(cli_env, capsys, fake_keygen):
    code, out, err = run(capsys, "generate-key", "work", "-C", "me@work.example", "--no-passphrase")
    assert code == 0
    assert out.startswith("ssh-ed25519 ")
    assert out.strip().endswith("me@work.example")
    assert "no passphrase" in err
    assert (cli_env / "id_ed25519_work").is_file()
    registry = json.loads((cli_env / "sshid-identities.json").read_text())
    assert registry["identities"][0]["name"] == "work"
    assert fake_keygen.calls[0][4] == ""


def test_generate_key_refuses_overwrite(cli_env, capsys):
    existing = write_key_pair(cli_env / "id_ed25519_work", comment="old")
    before = existing.read_text()
    code, _, err = run(capsys, "generate-key", "work", "--no-passphrase")
    assert code == 6
    assert "--force" in err
    assert existing.read_text() == before
    assert not (cli_env / "sshid-identities.json").exists()

    code, _, _ = run(capsys, "generate-key", "work", "--no-passphrase", "--force")
    assert code == 0
    assert (cli_env / "id_ed25519_work.pub").read_text().split()[2] == "work"


def test_generate_key_duplicate_name(cli_env, capsys):
    assert run(capsys, "generate-key", "work", "--no-passphrase")[0] == 0
    code, _, _ = run(capsys, "generate-key", "work", "-t", "rsa", "--no-passphrase")
    assert code == 4


def test_generate_key_needs_passphrase_source(cli_env, capsys):
    code, _, err = run(capsys, "generate-key", "work")
    assert code == 8
    assert "--passphrase-env" in err


def test_generate_key_passphrase_from_environment(cli_env, capsys, monkeypatch, fake_keygen):
    monkeypatch.setenv("WORK_KEY_PASS", "correct horse")
    code, _, err = run(capsys, "generate-key", "work", "--passphrase-env", "WORK_KEY_PASS")
    assert code == 0
    assert fake_keygen.calls[0][4] == "correct horse"
    assert "correct horse" not in err

    code, _, _ = run(capsys, "generate-key", "other", "--passphrase-env", "UNSET_SSHID_VAR")
    assert code == 10


def test_import_and_list_keys(cli_env, capsys):
    key = write_key_pair(cli_env / "id_legacy", comment="legacy@example", encrypted=True)
    assert run(capsys, "import-key", "legacy", str(key))[0] == 0

    code, out, _ = run(capsys, "list-keys")
    assert code == 0
    assert out == f"legacy\ted25519\tpassphrase\t{key}\tlegacy@example\n"

    code, out, _ = run(capsys, "list-keys", "--json")
    data = json.loads(out)
    assert data[0]["has_passphrase"] is True
    assert data[0]["private_key_path"] == str(key)


def test_delete_key_needs_confirmation(cli_env, capsys):
    run(capsys, "generate-key", "work", "--no-passphrase")
    code, _, _ = run(capsys, "delete-key", "work", "--delete-files")
    assert code == 10
    assert (cli_env / "id_ed25519_work").exists()
    assert "work" in run(capsys, "list-keys")[1]


def test_delete_key_with_files(cli_env, capsys):
    run(capsys, "generate-key", "work", "--no-passphrase")
    code, _, _ = run(capsys, "delete-key", "work", "--delete-files", "--yes")
    assert code == 0
    assert not (cli_env / "id_ed25519_work").exists()
    assert not (cli_env / "id_ed25519_work.pub").exists()


def test_delete_key_warns_about_hosts(cli_env, capsys):
    run(capsys, "generate-key", "work", "--no-passphrase")
    run(capsys, "add-host", "gitlab-work", "--hostname", "gitlab.com", "--identity", "work")
    code, _, err = run(capsys, "delete-key", "work")
    assert code == 0
    assert "gitlab-work" in err
    assert (cli_env / "id_ed25519_work").exists()


def test_delete_unknown_key(cli_env, capsys):
    assert run(capsys, "delete-key", "ghost")[0] == 11


def test_rotate_passphrase(cli_env, capsys, monkeypatch, fake_keygen):
    run(capsys, "generate-key", "work", "--no-passphrase")
    monkeypatch.setenv("OLD", "")
    monkeypatch.setenv("NEW", "s3cret")
    code, _, err = run(capsys, "rotate-passphrase", "work", "--old-passphrase-env", "OLD",
                       "--new-passphrase-env", "NEW")
    assert code == 0
    assert "now protected by a passphrase" in err
    assert fake_keygen.calls[-1][2:] == ("", "s3cret")
    assert json.loads(run(capsys, "list-keys", "--json")[1])[0]["has_passphrase"] is True


def test_rotate_passphrase_without_terminal(cli_env, capsys):
    run(capsys, "generate-key", "work", "--no-passphrase")
    code, _, _ = run(capsys, "rotate-passphrase", "work", "--no-passphrase")
    assert code == 8


def test_agent_add_list_remove(cli_env, capsys, fake_agent):
    run(capsys, "generate-key", "work", "--no-passphrase")
    code, out, _ = run(capsys, "agent-add", "work")
    assert code == 0
    fingerprint = out.strip()
    assert fingerprint.startswith("SHA256:")
    assert len(fake_agent.keys) == 1

    code, out, _ = run(capsys, "agent-list")
    assert code == 0
    assert out.startswith(f"{fingerprint}\tssh-ed25519\twork\t")

    code, out, _ = run(capsys, "agent-list", "--json")
    assert json.loads(out)[0]["identity"] == "work"

    code, _, _ = run(capsys, "agent-remove", "work")
    assert code == 0
    assert fake_agent.keys == []

    assert run(capsys, "agent-remove", fingerprint)[0] == 11


def test_agent_add_without_agent(config_path, cli_env, capsys, fake_agent):
    fake_agent.available = False
    key = write_key_pair(cli_env / "id_work")
    code, _, err = run(capsys, "agent-add", str(key))
    assert code == 7
    assert "SSH_AUTH_SOCK" in err
    assert config_path.read_text() == TWO_HOSTS


def test_agent_add_without_agent_real_backend(cli_env, capsys, monkeypatch):
    """The production controller reports a missing SSH_AUTH_SOCK the same way."""
    monkeypatch.setattr(cli, "make_agent_controller", make_agent_controller)
    key = write_key_pair(cli_env / "id_work")
    code, _, err = run(capsys, "agent-add", str(key))
    assert code == 7
    assert "eval" in err


def test_agent_add_encrypted_key_without_terminal(cli_env, capsys, fake_agent):
    key = write_key_pair(cli_env / "id_locked", encrypted=True)
    code, _, err = run(capsys, "agent-add", str(key))
    assert code == 8
    assert "SSH_ASKPASS" in err
    assert fake_agent.keys == []


def test_agent_add_encrypted_key_with_askpass(cli_env, capsys, fake_agent, monkeypatch):
    monkeypatch.setenv("SSH_ASKPASS", "/usr/bin/ssh-askpass")
    key = write_key_pair(cli_env / "id_locked", encrypted=True)
    assert run(capsys, "agent-add", str(key))[0] == 0
    assert len(fake_agent.keys) == 1


def test_debug_flag(cli_env, capsys, monkeypatch):
    monkeypatch.setenv("DEBUG", "0")
    code, _, err = run(capsys, "--debug", "list-hosts")
    assert code == 0
    assert "DEBUG: Command list-hosts" in err


def test_agent_add_encrypted_key_with_passphrase_env(cli_env, capsys, fake_agent, monkeypatch):
    monkeypatch.setenv("LOCKED_PASS", "pw")
    key = write_key_pair(cli_env / "id_locked", encrypted=True)
    code, out, err = run(capsys, "agent-add", str(key), "--passphrase-env", "LOCKED_PASS")
    assert code == 0
    assert out.startswith("SHA256:")
    assert fake_agent.passphrases == ["pw"]
    assert "pw" not in err.split()


@pytest.mark.parametrize("command", ["generate-key", "rotate-passphrase"])
def test_keygen_passphrase_help_mentions_process_list(command, capsys):
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args([command, "--help"])
    assert excinfo.value.code == 0
    out = " ".join(capsys.readouterr().out.split())
    assert "visible to other local users" in out
