from __future__ import annotations

import json
import stat

import pytest
from pydantic import ValidationError as SchemaError

from steward.errors import RegistryLockedError, ValidationError
from steward.registry import (
    Application,
    ApplicationRegistry,
    RegistryIndex,
    Stage,
    validate_name,
)


def _mode(path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def test_load_creates_default_index(config) -> None:
    registry = ApplicationRegistry(config)

    index = registry.load()

    assert index.names == ["default"]
    assert index.current == "default"
    assert config.fleet_file.exists()
    assert _mode(config.fleet_file) == 0o600


def test_load_application_materializes_default_record(config) -> None:
    registry = ApplicationRegistry(config)

    app = registry.load_application("shop")

    assert app.service_name == "steward_app_shop"
    assert app.app_dir == config.apps_root / "steward_app_shop"
    assert app.venv_dir == app.app_dir / "venv"
    assert app.nginx_config == config.nginx_available_dir / "steward_app_shop"
    assert app.port == config.default_port
    assert app.stage == Stage.UNINITIALIZED
    assert _mode(registry.record_path("shop")) == 0o600
    # Second load reads the persisted record instead of re-deriving it.
    assert registry.load_application("shop") == app


def test_materialized_port_skips_ports_held_by_other_records(config) -> None:
    registry = ApplicationRegistry(config)
    index = RegistryIndex(current="a", names=["a", "b", "c"])
    registry.save_index(index)
    registry.save(registry.default_application("a", port=5000))
    registry.save(registry.default_application("b", port=5001))

    assert registry.load_application("c").port == 5002


def test_save_overwrites_whole_record_and_leaves_no_temp_files(config) -> None:
    registry = ApplicationRegistry(config)
    app = registry.load_application("shop")
    app.port = 6123
    app.stage = Stage.ACTIVE

    registry.save(app)

    data = json.loads(registry.record_path("shop").read_text())
    assert data["port"] == 6123
    assert data["stage"] == "active"
    assert [p.name for p in config.apps_dir.iterdir()] == ["shop.json"]


def test_get_does_not_materialize(config) -> None:
    registry = ApplicationRegistry(config)

    assert registry.get("ghost") is None
    assert not registry.record_path("ghost").exists()


def test_current_not_in_index_is_repaired(config) -> None:
    registry = ApplicationRegistry(config)
    config.ensure_dirs()
    config.fleet_file.write_text(json.dumps({"current": "gone", "names": ["a", "b"]}))

    index = registry.load()

    assert index.current == "a"
    assert json.loads(config.fleet_file.read_text())["current"] == "a"


def test_corrupt_record_is_set_aside_and_replaced(config) -> None:
    registry = ApplicationRegistry(config)
    config.ensure_dirs()
    registry.record_path("shop").write_text("{not json")

    app = registry.load_application("shop")

    assert app.name == "shop"
    assert (config.apps_dir / "shop.json.corrupt").exists()


def test_corrupt_index_is_rebuilt_from_records(config) -> None:
    registry = ApplicationRegistry(config)
    registry.save_index(RegistryIndex(current="shop", names=["shop", "blog"]))
    registry.save(registry.default_application("shop", port=5000))
    registry.save(registry.default_application("blog", port=5001))
    config.fleet_file.write_text("{truncated")

    index = registry.load()

    assert index.names == ["blog", "shop"]
    assert index.current == "blog"
    assert (config.data_dir / "fleet.json.corrupt").read_text() == "{truncated"
    assert [a.port for a in registry.applications()] == [5001, 5000]
    assert registry.load_application("new").port == 5002


def test_index_remove_keeps_current_valid() -> None:
    index = RegistryIndex(current="a", names=["a", "b"])

    index.remove("b")
    assert index.names == ["a"]

    index.remove("a")
    assert index.names == ["default"]
    assert index.current == "default"


@pytest.mark.parametrize("name", ["", "has space", "semi;colon", "dot.name", "../up"])
def test_validate_name_rejects_bad_names(name) -> None:
    with pytest.raises(ValidationError):
        validate_name(name)


def test_application_rejects_out_of_range_port(config) -> None:
    registry = ApplicationRegistry(config)
    record = registry.default_application("shop", port=5000).model_dump()
    record["port"] = 80

    with pytest.raises(SchemaError):
        Application(**record)


def test_second_lock_holder_is_rejected(config) -> None:
    registry = ApplicationRegistry(config)
    other = ApplicationRegistry(config)

    with registry.lock():
        with pytest.raises(RegistryLockedError):
            with other.lock():
                pass

    # Released after the first holder exits.
    with other.lock():
        pass
