import os

import pytest

from aistack.config import (
    Config,
    ConfigError,
    LoggingConfig,
    ValidationError,
    default_config,
    format_validation_errors,
    load,
    load_from,
    merge_config,
    system_config_path,
    user_config_path,
)


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    system_dir = tmp_path / "etc"
    home_dir = tmp_path / "home"
    system_dir.mkdir()
    home_dir.mkdir()
    monkeypatch.setenv("AISTACK_CONFIG_DIR", str(system_dir))
    monkeypatch.setenv("HOME", str(home_dir))
    return system_dir, home_dir


@pytest.mark.parametrize(
    "getter, expected",
    [
        (lambda c: c.container_runtime, "docker"),
        (lambda c: c.profile, "standard-gpu"),
        (lambda c: c.gpu_lock, True),
        (lambda c: c.logging.level, "info"),
        (lambda c: c.logging.format, "json"),
        (lambda c: c.models.keep_cache_on_uninstall, True),
        (lambda c: c.updates.mode, "rolling"),
    ],
)
def test_default_config(getter, expected):
    assert getter(default_config()) == expected


def test_validation_valid_config():
    assert default_config().validate() == []


def test_validation_invalid_container_runtime():
    cfg = default_config()
    cfg.container_runtime = "invalid"
    errors = cfg.validate()
    assert errors
    assert any(error.path == "container_runtime" for error in errors)


def test_validation_invalid_profile():
    cfg = default_config()
    cfg.profile = "unknown-profile"
    errors = cfg.validate()
    assert [error.path for error in errors] == ["profile"]
    assert errors[0].message == (
        "must be one of [minimal standard-gpu dev], got 'unknown-profile'"
    )


def test_validation_invalid_log_level():
    cfg = default_config()
    cfg.logging.level = "trace"
    assert [error.path for error in cfg.validate()] == ["logging.level"]


def test_validation_invalid_log_format():
    cfg = default_config()
    cfg.logging.format = "xml"
    assert [error.path for error in cfg.validate()] == ["logging.format"]


def test_validation_invalid_updates_mode():
    cfg = default_config()
    cfg.updates.mode = "automatic"
    assert [error.path for error in cfg.validate()] == ["updates.mode"]


def test_load_from_valid_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "\ncontainer_runtime: podman\nprofile: minimal\n"
        "idle:\n  cpu_idle_threshold: 20\n  gpu_idle_threshold: 10\n"
        "logging:\n  level: debug\n"
    )
    cfg = load_from(path)
    assert cfg.container_runtime == "podman"
    assert cfg.profile == "minimal"
    assert cfg.logging.level == "debug"
    assert cfg.logging.format == "json"
    assert cfg.updates.mode == "rolling"


def test_load_from_booleans_are_overridden_when_absent(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("profile: dev\n")
    cfg = load_from(path)
    assert cfg.gpu_lock is False
    assert cfg.models.keep_cache_on_uninstall is False


def test_load_from_invalid_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("\ncontainer_runtime: invalid_runtime\nprofile: unknown\n")
    with pytest.raises(ConfigError) as info:
        load_from(path)
    assert [error.path for error in info.value.errors] == ["container_runtime", "profile"]
    assert "config.validation.error" in str(info.value)


def test_load_from_nonexistent_file():
    with pytest.raises(ConfigError):
        load_from("/nonexistent/config.yaml")


def test_load_from_malformed_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "\ncontainer_runtime: docker\n  invalid_indentation: value\nprofile: minimal\n"
    )
    with pytest.raises(ConfigError):
        load_from(path)


def test_load_from_wrong_type_for_bool(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("gpu_lock: notabool\n")
    with pytest.raises(ConfigError):
        load_from(path)


def test_load_from_empty_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    cfg = load_from(path)
    assert cfg.profile == "standard-gpu"
    assert cfg.gpu_lock is False


def test_from_mapping_rejects_non_mapping():
    with pytest.raises(ConfigError):
        Config.from_mapping(["a", "b"])


def test_merge_config():
    dst = default_config()
    src = Config(container_runtime="podman", logging=LoggingConfig(level="warn"))
    merge_config(dst, src)
    assert dst.container_runtime == "podman"
    assert dst.logging.level == "warn"
    assert dst.profile == "standard-gpu"
    assert dst.logging.format == "json"


def test_load_without_files_gives_defaults(isolated_env):
    assert load() == default_config()


def test_load_merges_system_then_user(isolated_env):
    system_dir, home_dir = isolated_env
    (system_dir / "config.yaml").write_text("profile: minimal\ngpu_lock: true\n")
    user_dir = home_dir / ".aistack"
    user_dir.mkdir()
    (user_dir / "config.yaml").write_text("logging:\n  level: debug\n")
    cfg = load()
    assert cfg.profile == "minimal"
    assert cfg.logging.level == "debug"
    assert cfg.gpu_lock is False


def test_load_system_parse_error(isolated_env):
    system_dir, _ = isolated_env
    (system_dir / "config.yaml").write_text("a: b\n  c: d\n")
    with pytest.raises(ConfigError) as info:
        load()
    assert "failed to load system config" in str(info.value)


def test_load_validation_error(isolated_env):
    system_dir, _ = isolated_env
    (system_dir / "config.yaml").write_text("updates:\n  mode: automatic\n")
    with pytest.raises(ConfigError) as info:
        load()
    assert [error.path for error in info.value.errors] == ["updates.mode"]


def test_system_config_path(isolated_env):
    system_dir, _ = isolated_env
    path = system_config_path()
    assert os.path.basename(path) == "config.yaml"
    assert path == os.path.join(str(system_dir), "config.yaml")


def test_user_config_path(isolated_env):
    _, home_dir = isolated_env
    path = user_config_path()
    assert os.path.basename(path) == "config.yaml"
    assert path == os.path.join(str(home_dir), ".aistack", "config.yaml")


def test_validation_error_str():
    error = ValidationError("idle.cpu_idle_threshold", "must be between 0 and 100")
    assert str(error) == "idle.cpu_idle_threshold: must be between 0 and 100"


def test_format_validation_errors_single():
    errors = [ValidationError("test.field", "error message")]
    assert format_validation_errors(errors) == "test.field: error message"


def test_format_validation_errors_multiple():
    errors = [ValidationError("field1", "error 1"), ValidationError("field2", "error 2")]
    assert format_validation_errors(errors) == (
        "2 validation errors:\n  - field1: error 1\n  - field2: error 2\n"
    )


def test_format_validation_errors_empty():
    assert format_validation_errors([]) == ""