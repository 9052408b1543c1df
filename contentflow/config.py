from __future__ import annotations

import logging
from configparser import ConfigParser
from pathlib import Path

import yaml


class AppConfig:
    def __init__(self, config_path: Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        parser.read(config_path or package_root / "config.ini")
        if not parser.sections():
            parser.read(Path("config.ini"))
        self._parser = parser
        self._node_kinds = self._load_yaml(package_root / "node_kinds.yaml")

    def store_settings(self) -> dict[str, object]:
        return {
            "path": self._get_str("store", "path", "data/contentflow.db"),
            "busy_timeout": self._get_float("store", "busy_timeout", 30.0),
        }

    def backend_settings(self) -> dict[str, object]:
        return {
            "url": self._get_str("backend", "url", ""),
            "api_key": self._get_str("backend", "api_key", ""),
            "timeout_seconds": self._get_float("backend", "timeout_seconds", 30.0),
        }

    def dispatch_settings(self) -> dict[str, object]:
        return {
            "batch_limit": self._get_int("dispatch", "batch_limit", 20),
            "stale_after_minutes": self._get_int("dispatch", "stale_after_minutes", 30),
            "max_workers": self._get_int("dispatch", "max_workers", 1),
            "interval_seconds": self._get_int("dispatch", "interval_seconds", 0),
        }

    def webhook_test_settings(self) -> dict[str, object]:
        return {
            "base_url": self._get_str("webhook_test", "base_url", "http://127.0.0.1:8000"),
            "ttl_seconds": self._get_int("webhook_test", "ttl_seconds", 300),
            "sweep_interval_seconds": self._get_int("webhook_test", "sweep_interval_seconds", 60),
        }

    def cors_origins(self) -> list[str]:
        return self._get_csv(
            "api",
            "cors_origins",
            ["http://127.0.0.1:5173", "http://localhost:5173"],
        )

    def log_level(self) -> str:
        return self._get_str("logging", "level", "INFO").upper()

    def node_kind_descriptions(self) -> dict[str, str]:
        kinds = self._node_kinds.get("kinds", {})
        if not isinstance(kinds, dict):
            return {}
        descriptions: dict[str, str] = {}
        for kind, item in kinds.items():
            if isinstance(item, dict) and isinstance(item.get("description"), str):
                descriptions[str(kind)] = item["description"]
            elif isinstance(item, str):
                descriptions[str(kind)] = item
        return descriptions

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_csv(self, section: str, key: str, fallback: list[str]) -> list[str]:
        value = self._parser.get(section, key, fallback="")
        if not value:
            return list(fallback)
        return [part.strip() for part in value.split(",") if part.strip()]

    def _load_yaml(self, path: Path) -> dict[str, object]:
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            return {}
        return raw if isinstance(raw, dict) else {}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


app_config = AppConfig()
