from __future__ import annotations

from contentflow.config import AppConfig
from contentflow.nodes import NodeKindRegistry, register_builtin_kinds


def test_settings_read_from_ini(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(
        "[dispatch]\nbatch_limit = 7\nstale_after_minutes = 0\n\n"
        "[webhook_test]\nbase_url = https://hooks.example.com\n\n"
        "[api]\ncors_origins = https://a.example.com, https://b.example.com\n",
        encoding="utf-8",
    )

    config = AppConfig(path)

    assert config.dispatch_settings()["batch_limit"] == 7
    assert config.dispatch_settings()["stale_after_minutes"] == 0
    assert config.dispatch_settings()["max_workers"] == 1
    assert config.webhook_test_settings()["base_url"] == "https://hooks.example.com"
    assert config.webhook_test_settings()["ttl_seconds"] == 300
    assert config.cors_origins() == ["https://a.example.com", "https://b.example.com"]
    assert config.backend_settings()["url"] == ""


def test_catalog_descriptions_can_be_overridden():
    registry = NodeKindRegistry()
    register_builtin_kinds(registry, {"delay": "Sleeps a while."})

    catalog = {item["kind"]: item["description"] for item in registry.list_specs()}

    assert catalog["delay"] == "Sleeps a while."
    assert catalog["trigger"]
    assert registry.list_kinds() == sorted(catalog)
    assert registry.validate_config("sequence", {"anything": 1}) == []
    assert registry.validate_config("not-registered", {"x": 1}) == []
