from __future__ import annotations

from pathlib import Path

import pytest

from kmon.config import AppConfig, ConfigurationError, load_config, merge_config, validate_config, validate_mode


def _write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "kmon.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_without_file_returns_defaults() -> None:
    config = load_config()

    assert config.namespace == "default"
    assert config.pod.name == "kmon-pod"
    assert config.pod.volume_name == "kmon-volume"
    assert config.pod.pvc_name == "kmon-pvc"
    assert config.pod.snapshot_name == "kmon-snapshot"
    assert config.pod.ready_timeout_seconds == 60
    assert config.pvc.name == "kmon-pvc"
    assert config.pvc.snapshot_name == "kmon-snap"
    assert config.pvc.snapshot_class_name == ""


def test_load_config_with_yaml_file_overlays_defaults(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        """
namespace: storage
pod:
  mode: run-from-pvc
  name: debug
  pvc-name: db-data
  ready-timeout-seconds: 120
  exec_command: [bash, -l]
pvc:
  mode: snapshot-from-pvc
  snapshot-class-name: csi-hostpath
  source-pvc-name: db-data
""",
    )

    config = load_config(path)

    assert config.namespace == "storage"
    assert config.pod.mode == "run-from-pvc"
    assert config.pod.name == "debug"
    assert config.pod.pvc_name == "db-data"
    assert config.pod.ready_timeout_seconds == 120
    assert config.pod.exec_command == ("bash", "-l")
    assert config.pod.volume_name == "kmon-volume"
    assert config.pvc.snapshot_class_name == "csi-hostpath"
    assert config.pvc.source_pvc_name == "db-data"


def test_load_config_with_overrides_beats_file_and_ignores_unset_values(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "namespace: storage\npod:\n  name: from-file\n  image: busybox:1.36\n")

    config = load_config(
        path,
        overrides={"namespace": "apps", "pod": {"name": "from-cli", "image": None}, "context": None},
    )

    assert config.namespace == "apps"
    assert config.pod.name == "from-cli"
    assert config.pod.image == "busybox:1.36"
    assert config.context is None


def test_load_config_with_empty_file_returns_defaults(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path, ""))

    assert config == load_config()


def test_load_config_with_unknown_key_raises(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "pod:\n  nmae: typo\n")

    with pytest.raises(ConfigurationError, match="Unknown configuration key 'pod.nmae'"):
        load_config(path)


def test_load_config_with_non_mapping_document_raises(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "- pod\n- pvc\n")

    with pytest.raises(ConfigurationError, match="must contain a YAML mapping"):
        load_config(path)


def test_load_config_with_invalid_yaml_raises(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "pod: [unclosed\n")

    with pytest.raises(ConfigurationError, match="not valid YAML"):
        load_config(path)


def test_load_config_with_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Unable to read config file"):
        load_config(tmp_path / "missing.yaml")


def test_load_config_with_section_not_mapping_raises(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "pod: run-from-pvc\n")

    with pytest.raises(ConfigurationError, match="Config section 'pod' must be a mapping"):
        load_config(path)


@pytest.mark.parametrize(
    "overrides",
    [
        {"pod": {"ready_timeout_seconds": 0}},
        {"pod": {"delete_timeout_seconds": -5}},
        {"namespace": "  "},
        {"exit_delay_seconds": -1},
    ],
)
def test_load_config_with_invalid_values_raises(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        load_config(overrides=overrides)


def test_load_config_with_non_numeric_timeout_raises() -> None:
    with pytest.raises(ConfigurationError, match="'pod.ready_timeout_seconds' must be a number"):
        load_config(overrides={"pod": {"ready_timeout_seconds": "soon"}})


def test_merge_config_parses_string_booleans_and_commands() -> None:
    config = merge_config(
        AppConfig(),
        {"in-cluster": "yes", "pod": {"wait_after_restore": "true", "command": "sleep infinity"}},
    )

    assert config.in_cluster is True
    assert config.pod.wait_after_restore is True
    assert config.pod.command == ("sleep", "infinity")


def test_merge_config_with_bad_boolean_raises() -> None:
    with pytest.raises(ConfigurationError, match="'in_cluster' must be a boolean"):
        merge_config(AppConfig(), {"in_cluster": "maybe"})


def test_load_config_with_unknown_log_level_raises(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "log_level: verbose\n")

    with pytest.raises(ConfigurationError, match="log_level must be one of DEBUG, INFO"):
        load_config(path)


def test_validate_config_with_unknown_log_level_raises() -> None:
    with pytest.raises(ConfigurationError, match="got 'chatty'"):
        validate_config(AppConfig(log_level="chatty"))


def test_load_config_accepts_lowercase_log_level() -> None:
    assert load_config(overrides={"log_level": "debug"}).log_level == "debug"


def test_validate_mode_strips_known_modes() -> None:
    assert validate_mode("pvc", " get ") == "get"
    assert validate_mode("pod", "smoke-test") == "smoke-test"


def test_validate_mode_with_unknown_mode_lists_supported_modes() -> None:
    with pytest.raises(ConfigurationError, match="invalid pod mode: 'rnu-from-pvc'. Supported modes: delete, exec"):
        validate_mode("pod", "rnu-from-pvc")
