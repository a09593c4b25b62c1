"""Tests for layered config loading and merging."""

from pathlib import Path

import pytest

from bakery.config import deep_merge, load_config, mask_secret
from bakery.errors import ConfigurationError


def _write_user_config(home: Path, text: str) -> None:
    path = home / ".bakery" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


# --- Layering ---

def test_defaults_without_any_file(tmp_project):
    config = load_config(tmp_project)
    assert config.tracker.base_url == "https://dev.azure.com"
    assert config.tracker.max_attempts == 3
    assert config.tracker.base_delay_sec == 0.5
    assert config.generator.command == "claude -p"
    assert config.validator.command == "openspec"
    assert config.display.truncate_at == 150
    assert config.base_directory() == Path("~/devops-data").expanduser()


def test_user_config_loaded(tmp_project, isolated_env):
    _write_user_config(isolated_env, """\
tracker:
  organization: contoso
  project: web
  pat_token: abc
""")
    config = load_config(tmp_project)
    assert config.tracker.organization == "contoso"
    assert config.tracker.pat_token == "abc"


def test_project_overrides_user_field_by_field(tmp_project, isolated_env):
    _write_user_config(isolated_env, """\
tracker:
  organization: contoso
  project: web
generator:
  timeout_sec: 100
""")
    (tmp_project / ".bakery" / "config.yaml").write_text("""\
tracker:
  project: mobile
""")
    config = load_config(tmp_project)
    assert config.tracker.project == "mobile"
    # Un-overridden fields keep the user value
    assert config.tracker.organization == "contoso"
    assert config.generator.timeout_sec == 100


def test_env_beats_files(tmp_project, monkeypatch):
    (tmp_project / ".bakery" / "config.yaml").write_text("tracker:\n  pat_token: from-file\n")
    monkeypatch.setenv("AZURE_DEVOPS_PAT", "from-env")
    monkeypatch.setenv("BAKERY_BASE_DIR", "/srv/bakery")
    config = load_config(tmp_project)
    assert config.tracker.pat_token == "from-env"
    assert config.storage.base_directory == "/srv/bakery"


def test_overrides_beat_env(tmp_project, monkeypatch):
    monkeypatch.setenv("AZURE_DEVOPS_ORG", "env-org")
    config = load_config(tmp_project, overrides={"tracker": {"organization": "cli-org", "project": None}})
    assert config.tracker.organization == "cli-org"
    assert config.tracker.project == ""


def test_local_baking_uses_project_root(tmp_project):
    (tmp_project / ".bakery" / "config.yaml").write_text("storage:\n  local_baking: true\n")
    config = load_config(tmp_project)
    assert config.tickets_directory() == tmp_project / "Tickets"
    assert config.openspec_directory() == tmp_project / "openspec"


# --- Validation ---

def test_invalid_yaml_raises(tmp_project):
    (tmp_project / ".bakery" / "config.yaml").write_text("{{invalid yaml")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config(tmp_project)


def test_non_mapping_raises(tmp_project):
    (tmp_project / ".bakery" / "config.yaml").write_text("- a\n- b\n")
    with pytest.raises(ConfigurationError):
        load_config(tmp_project)


def test_bad_section_type_raises(tmp_project):
    (tmp_project / ".bakery" / "config.yaml").write_text("tracker: nope\n")
    with pytest.raises(ConfigurationError, match="tracker"):
        load_config(tmp_project)


def test_unknown_fields_ignored(tmp_project):
    (tmp_project / ".bakery" / "config.yaml").write_text("some_future_field: true\ntracker:\n  extra: 1\n")
    assert load_config(tmp_project).tracker.organization == ""


@pytest.mark.parametrize("org,project,pat", [
    ("", "web", "pat"),
    ("contoso", "", "pat"),
    ("contoso", "web", ""),
    ("your-organization", "web", "pat"),
    ("contoso", "web", "your-pat-token-here"),
])
def test_require_tracker_rejects_missing(tmp_project, org, project, pat):
    config = load_config(tmp_project, overrides={
        "tracker": {"organization": org, "project": project, "pat_token": pat},
    })
    with pytest.raises(ConfigurationError, match="Missing tracker setting"):
        config.require_tracker()


def test_require_tracker_rejects_bad_scheme(tmp_project):
    config = load_config(tmp_project, overrides={
        "tracker": {"organization": "c", "project": "p", "pat_token": "t", "auth_scheme": "ntlm"},
    })
    with pytest.raises(ConfigurationError, match="auth_scheme"):
        config.require_tracker()


def test_require_tracker_ok(tmp_project):
    config = load_config(tmp_project, overrides={
        "tracker": {"organization": "c", "project": "p", "pat_token": "t"},
    })
    config.require_tracker()


# --- deep merge edge cases ---

def test_deep_merge_nested_dicts():
    base = {"a": {"x": 1, "y": 2}, "b": 10}
    override = {"a": {"y": 99, "z": 3}}
    assert deep_merge(base, override) == {"a": {"x": 1, "y": 99, "z": 3}, "b": 10}


def test_deep_merge_list_replaces():
    result = deep_merge({"tags": ["a"]}, {"tags": ["b", "c"]})
    assert result["tags"] == ["b", "c"]


def test_deep_merge_none_ignored():
    assert deep_merge({"command": "claude -p"}, {"command": None}) == {"command": "claude -p"}


def test_mask_secret():
    assert mask_secret("") == ""
    assert mask_secret("short") == "***"
    assert mask_secret("abcdefghijkl") == "abcd..."
