import pytest

from shiki.core.config import (
    DEFAULT_CONFIG,
    load_config,
    load_config_file,
    merged_config,
    resolve_root,
    shiki_dir,
)
from shiki.core.errors import ConfigError


def _write_config(root, text):
    d = shiki_dir(root)
    d.mkdir(parents=True, exist_ok=True)
    (d / "config.yaml").write_text(text, encoding="utf-8")


def test_defaults_without_file(tmp_path):
    assert load_config(tmp_path) == DEFAULT_CONFIG
    assert DEFAULT_CONFIG.promotion == "lazy"
    assert DEFAULT_CONFIG.actor == "cli"


def test_file_overrides(tmp_path):
    _write_config(tmp_path, "promotion: eager\nactor: ci-bot\nlog_level: debug\n")
    cfg = load_config(tmp_path)
    assert cfg.promotion == "eager"
    assert cfg.actor == "ci-bot"
    assert cfg.log_level == "DEBUG"
    assert cfg.id_attempts == DEFAULT_CONFIG.id_attempts


def test_env_overrides_file(tmp_path, monkeypatch):
    _write_config(tmp_path, "promotion: eager\n")
    monkeypatch.setenv("SHIKI_PROMOTION", "LAZY")
    monkeypatch.setenv("SHIKI_ACTOR", "env-actor")
    cfg = load_config(tmp_path)
    assert cfg.promotion == "lazy"
    assert cfg.actor == "env-actor"


def test_empty_file_is_defaults(tmp_path):
    _write_config(tmp_path, "")
    assert load_config(tmp_path) == DEFAULT_CONFIG


@pytest.mark.parametrize(
    "overrides",
    [
        {"promotion": "sometimes"},
        {"id_attempts": 0},
        {"id_attempts": True},
        {"busy_timeout_ms": -1},
        {"actor": "  "},
        {"log_level": "LOUD"},
        {"colour": "blue"},
    ],
)
def test_invalid_values(overrides):
    with pytest.raises(ConfigError) as exc:
        merged_config(overrides)
    assert exc.value.code == "E_CONFIG_INVALID"
    assert isinstance(exc.value, ValueError)


def test_invalid_yaml(tmp_path):
    _write_config(tmp_path, "promotion: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_non_mapping_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- lazy\n- eager\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(path)


def test_resolve_root(tmp_path, monkeypatch):
    assert resolve_root(str(tmp_path)) == tmp_path
    monkeypatch.setenv("SHIKI_ROOT", str(tmp_path / "env"))
    assert resolve_root(None) == tmp_path / "env"
    monkeypatch.delenv("SHIKI_ROOT")
    monkeypatch.chdir(tmp_path)
    assert resolve_root(None) == tmp_path
