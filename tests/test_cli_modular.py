import argparse
import builtins
import sys
import types

import pytest

from harvester.cli import cli_modular


def _noop_setup_logging(_level: str) -> None:
    """Stub logging setup for CLI tests."""
    return None


def test_main_no_command_shows_help(capsys):
    exit_code = cli_modular.main([], setup_logging_func=_noop_setup_logging)
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "Available commands" in captured.err
    for command in cli_modular.COMMAND_HELP:
        assert command in captured.err


def test_main_unknown_command(capsys):
    exit_code = cli_modular.main(
        ["unknown"],
        setup_logging_func=_noop_setup_logging,
    )
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "Unknown command" in captured.err


def test_main_uses_handler_override():
    def custom_handler(args):
        assert args.command == "custom"
        return 42

    exit_code = cli_modular.main(
        ["custom"],
        setup_logging_func=_noop_setup_logging,
        handler_overrides={"custom": custom_handler},
    )

    assert exit_code == 42


def test_override_wins_over_known_command(monkeypatch):
    def fail_load(command):
        raise AssertionError("command module should not load")

    monkeypatch.setattr(cli_modular, "_load_command_parser", fail_load)

    exit_code = cli_modular.main(
        ["run", "--json"],
        setup_logging_func=_noop_setup_logging,
        handler_overrides={"run": lambda args: 7},
    )

    assert exit_code == 7


def test_log_level_flag_passed_to_setup():
    levels = []

    cli_modular.main(
        ["--log-level", "DEBUG", "custom"],
        setup_logging_func=levels.append,
        handler_overrides={"custom": lambda args: 0},
    )

    assert levels == ["DEBUG"]


def test_main_loads_command_module_dynamically(monkeypatch):
    module_name = "harvester.cli.commands.fetch"
    fake_module = types.ModuleType(module_name)

    def add_fetch_parser(subparsers):
        parser = subparsers.add_parser("fetch")
        parser.add_argument("url")

    def handle_fetch_command(args):
        assert args.command == "fetch"
        assert args.url == "https://news.example.com/"
        return 13

    fake_module.add_fetch_parser = add_fetch_parser
    fake_module.handle_fetch_command = handle_fetch_command

    original_import = builtins.__import__

    def fake_import(name, globals=None, locals=None, fromlist=(), level=0):
        if name == module_name:
            return fake_module
        return original_import(name, globals, locals, fromlist, level)

    monkeypatch.setitem(sys.modules, module_name, fake_module)
    monkeypatch.setattr(builtins, "__import__", fake_import)

    exit_code = cli_modular.main(
        ["fetch", "https://news.example.com/"],
        setup_logging_func=_noop_setup_logging,
    )

    assert exit_code == 13


def test_load_command_parser_import_error(monkeypatch):
    original_import = builtins.__import__

    def fake_import(name, globals=None, locals=None, fromlist=(), level=0):
        if name == "harvester.cli.commands.detect_structure":
            raise ImportError("openai missing")
        return original_import(name, globals, locals, fromlist, level)

    monkeypatch.setattr(builtins, "__import__", fake_import)

    assert cli_modular._load_command_parser("detect-structure") is None


@pytest.mark.parametrize("command", sorted(cli_modular.COMMAND_MODULES))
def test_every_command_module_exposes_parser_and_handler(command):
    loaded = cli_modular._load_command_parser(command)

    assert loaded is not None
    add_parser, handler = loaded
    parser = argparse.ArgumentParser()
    add_parser(parser.add_subparsers(dest="command"))
    assert callable(handler)


def test_init_db_and_add_source(tmp_path, capsys):
    database_url = f"sqlite:///{tmp_path / 'cli.db'}"

    assert cli_modular.main(
        ["init-db", "--database-url", database_url],
        setup_logging_func=_noop_setup_logging,
    ) == 0
    exit_code = cli_modular.main(
        [
            "add-source",
            "Example News",
            "https://news.example.com/latest",
            "--include",
            "/2024/",
            "--exclude",
            "/video/",
            "--database-url",
            database_url,
        ],
        setup_logging_func=_noop_setup_logging,
    )

    assert exit_code == 0
    out = capsys.readouterr().out
    assert "Database initialized" in out
    assert '"name": "Example News"' in out

    from harvester.models.repository import SQLAlchemyRepository

    repository = SQLAlchemyRepository(database_url=database_url)
    try:
        (source,) = repository.list_active_sources()
        assert source.link_rules == {
            "include_patterns": ["/2024/"],
            "exclude_patterns": ["/video/"],
        }
    finally:
        repository.engine.dispose()
