"""Strict config validation, structured issues, profiles and redaction."""

from __future__ import annotations

import pytest

from pipewright.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)


def _issue_paths(config: object) -> set[str]:
    return {issue.path for issue in validate_config(config).issues}


def test_defaults_are_valid_and_copied() -> None:
    first = default_config()
    first["scheduler"]["max_concurrency"] = 99

    assert validate_config(default_config()).is_valid
    assert default_config()["scheduler"]["max_concurrency"] == 4
    assert set(BUILTIN_PROFILE_NAMES) <= set(default_config()["profiles"])


def test_merge_replaces_lists_and_merges_tables() -> None:
    merged = merge_config(
        default_config(),
        {"triggers": {"protected_branches": ["trunk"]}, "scheduler": {"max_concurrency": 2}},
    )

    assert merged["triggers"]["protected_branches"] == ["trunk"]
    assert merged["triggers"]["pull_request_capabilities"] == ["analysis", "scan", "quality", "test"]
    assert merged["scheduler"]["cancel_poll_seconds"] == 0.5


def test_unknown_fields_and_embedded_secrets_are_rejected() -> None:
    config = merge_config(
        default_config(),
        {"scheduler": {"workers": 3}, "deployment": {"api_token": "abc"}},
    )

    result = validate_config(config)

    messages = {issue.path: issue.message for issue in result.issues}
    assert not result.is_valid
    assert messages["scheduler.workers"] == "unknown field"
    assert "secret" in messages["deployment.api_token"]


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"scheduler": {"max_concurrency": 0}}, "scheduler.max_concurrency"),
        ({"scheduler": {"cancel_poll_seconds": 0}}, "scheduler.cancel_poll_seconds"),
        ({"artifacts": {"version_base": "1"}}, "artifacts.version_base"),
        ({"triggers": {"feature_branch_capabilities": ["lint"]}}, "triggers.feature_branch_capabilities[0]"),
        ({"triggers": {"protected_branches": ["main", "main"]}}, "triggers.protected_branches"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"deployment": {"warn_gates_block_promotion": "yes"}}, "deployment.warn_gates_block_promotion"),
        ({"meta": {"schema_version": 9}}, "meta.schema_version"),
    ],
)
def test_field_level_issues_carry_paths(overlay: dict[str, object], path: str) -> None:
    assert path in _issue_paths(merge_config(default_config(), overlay))


def test_cross_field_rules() -> None:
    config = merge_config(
        default_config(),
        {
            "deployment": {
                "environments": ["staging", "production"],
                "production": "staging",
                "health_check_initial_backoff_seconds": 10.0,
                "health_check_max_backoff_seconds": 1.0,
            },
            "triggers": {"branch_environments": {"main": "qa"}},
            "artifacts": {"release_lineages": ["main", "develop"]},
        },
    )

    paths = _issue_paths(config)

    assert "deployment.production" in paths
    assert "deployment.health_check_max_backoff_seconds" in paths
    assert "triggers.branch_environments.main" in paths
    assert "artifacts.release_lineages" in paths
    assert "artifacts.release_lineages" not in _issue_paths(default_config())


def test_missing_sections_and_non_mapping_root() -> None:
    config = default_config()
    del config["scheduler"]  # type: ignore[misc]

    assert "scheduler" in _issue_paths(config)
    assert "<root>" in _issue_paths(["not", "a", "mapping"])


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    config = merge_config(default_config(), {"scheduler": {"max_concurrency": -1}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert "- scheduler.max_concurrency: must be >= 1" in str(excinfo.value)
    assert excinfo.value.issues[0].path == "scheduler.max_concurrency"


def test_profile_overlay_and_invalid_profiles() -> None:
    config = assert_valid_config(default_config())

    assert apply_profile_overlay(config, "fast")["scheduler"]["max_concurrency"] == 8
    assert apply_profile_overlay(config, None) == config
    with pytest.raises(ConfigValidationError, match="not defined"):
        apply_profile_overlay(config, "nightly")

    bad = merge_config(default_config(), {"profiles": {"Nightly": {}, "ok": {"paths": 3}}})
    paths = _issue_paths(bad)
    assert "profiles.Nightly" in paths
    assert "profiles.ok.paths" in paths


def test_redaction_is_recursive_and_non_destructive() -> None:
    config = {"deployment": {"hooks": [{"token": "abc", "url": "https://ci"}]}, "password": "x"}

    redacted = redact_config(config)

    assert redacted["password"] == "<redacted>"
    assert redacted["deployment"]["hooks"][0] == {"token": "<redacted>", "url": "https://ci"}
    assert config["password"] == "x"
    assert redact_config("not a mapping") == {}
