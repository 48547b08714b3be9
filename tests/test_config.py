import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "packages" / "core_engine" / "src"))

from mb_core.config import GeneratorConfig, config_from_dict, load_config


def _write_config(path: Path, data) -> str:
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return str(path)


def test_defaults_without_file(tmp_path):
    assert load_config(search_dir=str(tmp_path)) == GeneratorConfig()


def test_search_dir_file_is_used(tmp_path):
    _write_config(tmp_path / "modelbind.yaml", {"binding_suffix": "_gen", "exclude": ["legacy/*"]})
    config = load_config(search_dir=str(tmp_path))
    assert config.binding_suffix == "_gen"
    assert config.exclude == ["legacy/*"]
    assert config.model_info == "model-info.json"


def test_explicit_path_must_exist(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "modelbind.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == GeneratorConfig()


def test_log_level_is_normalized():
    assert config_from_dict({"log_level": "info"}).log_level == "INFO"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"unknown": 1}, "Unknown config key: unknown"),
        ({"exclude": "legacy/*"}, "'exclude' must be a list"),
        ({"on_error": "ignore"}, "'on_error' must be one of"),
        ({"log_level": "LOUD"}, "'log_level' must be one of"),
        ({"binding_suffix": ""}, "'binding_suffix' must not be empty"),
        ({"exclude": [1]}, "'exclude' must be a list of glob patterns"),
    ],
)
def test_invalid_config(data, message):
    with pytest.raises(ValueError) as info:
        config_from_dict(data)
    assert message in str(info.value)


def test_root_must_be_a_map(tmp_path):
    path = tmp_path / "modelbind.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))
