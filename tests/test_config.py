from __future__ import annotations

from pathlib import Path

import pytest

from clinic_chat.config import DEFAULTS, load_config


def test_missing_file_gives_defaults(clean_env, tmp_path: Path):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg == DEFAULTS
    assert cfg is not DEFAULTS


def test_file_is_merged_over_defaults(clean_env, tmp_path: Path):
    path = tmp_path / "cfg.yaml"
    path.write_text("engine:\n  mode: script\nmodel:\n  temperature: 0.1\n", encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg["engine"]["mode"] == "script"
    assert cfg["engine"]["autosave_delay"] == 1.0
    assert cfg["model"]["temperature"] == 0.1
    assert cfg["model"]["name"] == "gemini-2.5-flash"


def test_env_var_selects_file(clean_env, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "other.yaml"
    path.write_text("storage:\n  data_dir: /srv/chat\n", encoding="utf-8")
    monkeypatch.setenv("CLINIC_CHAT_CONFIG", str(path))
    assert load_config()["storage"]["data_dir"] == "/srv/chat"


def test_env_overrides_are_typed(clean_env, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CLINIC_CHAT__ENGINE__MODE", "script")
    monkeypatch.setenv("CLINIC_CHAT__ENGINE__AUTOSAVE_DELAY", "2.5")
    monkeypatch.setenv("CLINIC_CHAT__SERVER__PORT", "9000")
    monkeypatch.setenv("CLINIC_CHAT__LOGGING__JSON", "true")
    cfg = load_config(str(tmp_path / "missing.yaml"))
    assert cfg["engine"]["mode"] == "script"
    assert cfg["engine"]["autosave_delay"] == 2.5
    assert cfg["server"]["port"] == 9000
    assert cfg["logging"]["json"] is True


def test_invalid_yaml_raises(clean_env, tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("engine: [unclosed\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))

    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))


def test_shipped_default_config_loads(clean_env, project_root: Path):
    cfg = load_config(str(project_root / "config" / "default.yaml"))
    assert cfg["engine"]["mode"] in ("freeform", "script")
    assert cfg["model"]["api_key_env"] == "GOOGLE_API_KEY"
