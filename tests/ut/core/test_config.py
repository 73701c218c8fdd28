"""配置加载与异常体系测试"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml

import fetchkit.core.config as cfgmod
from fetchkit.core.config import Config, get_config, init_config
from fetchkit.core.exceptions import (
    ConfigError,
    ConflictingDeclarationError,
    FetchError,
    FetchKitError,
    IntegrationError,
    LockTimeoutError,
)
from fetchkit.utils.logger import JSONFormatter, reset_logging, setup_logging
from fetchkit.utils.yaml_io import load_yaml, save_yaml


class TestConfig:
    def test_defaults(self) -> None:
        cfg = Config()
        assert cfg.cache_root == "_deps"
        assert cfg.refresh_mutable_refs is True
        assert cfg.fully_disconnected is False
        assert cfg.source_dir_overrides == {}

    def test_from_file_keeps_unknown_in_extra(self, tmp_path: Path) -> None:
        path = tmp_path / "fetchkit.yml"
        path.write_text(yaml.safe_dump({
            "cache_root": str(tmp_path / "deps"),
            "max_workers": 2,
            "refresh_mutable_refs": False,
            "source_dir_overrides": {"fmt": "/opt/fmt"},
            "team": "infra",
        }))
        cfg = Config.from_file(str(path))
        assert cfg.max_workers == 2
        assert cfg.refresh_mutable_refs is False
        assert cfg.source_dir_overrides == {"fmt": "/opt/fmt"}
        assert cfg.extra == {"team": "infra"}

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        assert Config.from_file(str(tmp_path / "none.yml")) == Config()

    @pytest.mark.parametrize("field,value", [
        ("max_workers", 0),
        ("lock_timeout", 0),
        ("network_retries", -1),
    ])
    def test_invalid_values(self, field: str, value: int) -> None:
        with pytest.raises(ConfigError):
            Config(**{field: value})

    def test_init_and_get(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cfgmod, "_current", None)
        path = tmp_path / "c.yml"
        path.write_text("fail_fast: true\n")
        assert init_config(str(path)).fail_fast is True
        assert get_config().fail_fast is True


class TestExceptions:
    def test_fetch_error_kinds(self) -> None:
        e = FetchError("ref_not_found", "no such tag")
        assert e.code == "FETCH_REF_NOT_FOUND"
        assert not e.retryable
        assert FetchError("network", "reset").retryable
        assert isinstance(e, FetchKitError)

    def test_unknown_fetch_kind(self) -> None:
        with pytest.raises(ValueError):
            FetchError("dns", "x")

    def test_codes(self) -> None:
        assert IntegrationError("bad").code == "INTEGRATION_MALFORMED"
        assert LockTimeoutError("slow").code == "LOCK_TIMEOUT"
        err = ConflictingDeclarationError("X", "git a@v1", "git a@v2")
        assert err.code == "CONFLICTING_DECLARATION"
        assert "git a@v1" in str(err)


class TestYamlIo:
    def test_save_and_load(self, tmp_path: Path) -> None:
        path = tmp_path / "sub" / "record.yml"
        save_yaml(path, {"name": "lib1", "说明": "中文"})
        assert load_yaml(path) == {"name": "lib1", "说明": "中文"}
        assert list(path.parent.glob("*.tmp")) == []

    def test_non_mapping_is_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        assert load_yaml(path) == {}


class TestLogging:
    def test_json_formatter(self) -> None:
        record = logging.LogRecord("fetchkit.x", logging.INFO, __file__, 1, "拉取 %s", ("lib1",), None)
        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "拉取 lib1"
        assert data["level"] == "INFO"
        assert "thread" in data

    def test_setup_replaces_handlers(self) -> None:
        setup_logging("DEBUG")
        setup_logging("WARNING", json_output=True)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.WARNING
        reset_logging()
        assert root.handlers == []
