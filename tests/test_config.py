"""Tests for kestrel.config: TOML loading, merging, and CLI integration."""

import argparse
import tomllib

import pytest

from kestrel.cli import build_parser
from kestrel.config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
)
from kestrel.permission import DEFAULT_AUTO_APPROVE, DEFAULT_DENIED_COMMANDS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "context_window": _UNSET,
        "max_iterations": _UNSET,
        "tool_timeout": _UNSET,
        "system_prompt": _UNSET,
        "no_instructions": _UNSET,
        "mode": _UNSET,
        "auto_approve_tools": _UNSET,
        "allowed_commands": _UNSET,
        "denied_commands": _UNSET,
        "allowed_paths": _UNSET,
        "db_path": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    return tmp_path / "xdg"


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, isolated_config_home):
        _write_toml(isolated_config_home / "kestrel" / "config.toml", 'provider = "openai"\n')
        assert load_config(tmp_path / "project")["provider"] == "openai"

    def test_project_overrides_global(self, tmp_path, isolated_config_home):
        _write_toml(
            isolated_config_home / "kestrel" / "config.toml",
            'provider = "openai"\nmax_iterations = 10\n',
        )
        project = tmp_path / "project"
        _write_toml(project / "kestrel.toml", "max_iterations = 20\n")
        result = load_config(project)
        assert result["provider"] == "openai"
        assert result["max_iterations"] == 20

    def test_unknown_keys_warn(self, tmp_path, capsys):
        _write_toml(tmp_path / "kestrel.toml", "bogus = 1\n")
        assert load_config(tmp_path) == {}
        assert "unknown config key 'bogus'" in capsys.readouterr().err

    def test_wrong_type_raises(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", 'max_iterations = "lots"\n')
        with pytest.raises(ConfigError, match="max_iterations"):
            load_config(tmp_path)

    def test_bool_for_int_field_raises(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", "context_window = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_mixed_type_list(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", 'allowed_commands = ["git", 3]\n')
        with pytest.raises(ConfigError, match=r"allowed_commands\[1\]"):
            load_config(tmp_path)

    def test_invalid_mode(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", 'mode = "reckless"\n')
        with pytest.raises(ConfigError, match="mode"):
            load_config(tmp_path)

    def test_negative_rejected(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", "max_iterations = -1\n")
        with pytest.raises(ConfigError, match="negative"):
            load_config(tmp_path)

    def test_invalid_toml_raises(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", "provider = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_int_for_float_field(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", "tool_timeout = 30\n")
        assert load_config(tmp_path)["tool_timeout"] == 30

    def test_relative_db_path_resolves_to_project(self, tmp_path):
        _write_toml(tmp_path / "kestrel.toml", 'db_path = "state/sessions.db"\n')
        expected = str(tmp_path.resolve() / "state" / "sessions.db")
        assert load_config(tmp_path)["db_path"] == expected

    def test_api_key_in_git_repo_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "kestrel.toml", 'api_key = "sk-test"\n')
        load_config(tmp_path)
        assert "api_key" in capsys.readouterr().err


class TestGenerateConfig:
    def test_is_valid_toml(self):
        assert tomllib.loads(generate_config()) == {}

    def test_uncommented_is_valid(self):
        lines = []
        for line in generate_config().splitlines():
            if line.startswith("# ") and "=" in line and not line.startswith("# ---"):
                lines.append(line[2:])
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["mode"] == "interactive"
        assert parsed["max_iterations"] == 50

    def test_project_flag(self):
        assert "kestrel.toml" in generate_config(project=True)


# ===========================================================================
# Applying config to args
# ===========================================================================


class TestApplyConfig:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "m1", "max_iterations": 7})
        assert args.model == "m1"
        assert args.max_iterations == 7

    def test_cli_beats_config(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "config-model"})
        assert args.model == "cli-model"

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "anthropic"
        assert args.mode == "interactive"
        assert args.max_iterations == 50
        assert args.auto_approve_tools == list(DEFAULT_AUTO_APPROVE)
        assert args.denied_commands == list(DEFAULT_DENIED_COMMANDS)
        assert args.allowed_paths == []
        assert args.no_instructions is False

    def test_color_config(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_color_cli_overrides_config(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True
        assert args.no_color is False


class TestApiKey:
    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "env")
        assert resolve_api_key("anthropic", "explicit") == "explicit"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        assert resolve_api_key("openai", None) == "env-key"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert resolve_api_key("anthropic", None) is None


def test_global_dir_respects_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert global_config_dir() == tmp_path / "kestrel"


# ===========================================================================
# Parser -> config -> args
# ===========================================================================


class TestParserIntegration:
    def _parse(self, argv, base_dir, config_text=None):
        if config_text is not None:
            _write_toml(base_dir / "kestrel.toml", config_text)
        args = build_parser().parse_args(argv)
        for dest in ("allowed_commands", "denied_commands", "allowed_paths"):
            if getattr(args, dest) is None:
                setattr(args, dest, _UNSET)
        apply_config_to_args(args, load_config(base_dir))
        return args

    def test_config_used_when_flag_absent(self, tmp_path):
        args = self._parse(["q"], tmp_path, 'mode = "auto-approve"\nallowed_commands = ["git"]\n')
        assert args.mode == "auto-approve"
        assert args.allowed_commands == ["git"]

    def test_flag_overrides_config(self, tmp_path):
        args = self._parse(
            ["--yolo", "--allow-command", "make", "q"],
            tmp_path,
            'mode = "interactive"\nallowed_commands = ["git"]\n',
        )
        assert args.mode == "yolo"
        assert args.allowed_commands == ["make"]

    def test_defaults(self, tmp_path):
        args = self._parse(["q"], tmp_path)
        assert args.provider == "anthropic"
        assert args.quiet is False
        assert args.tool_timeout == 120
