from __future__ import annotations

from pathlib import Path

import pytest

from listing_tracker.config.loader import ConfigLocator, ConfigRepository, _slugify
from listing_tracker.config.models import GlobalConfig
from listing_tracker.errors import ConfigurationError


def test_config_locator_uses_env_and_creates_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LISTING_TRACKER_HOME", str(tmp_path))
    locator = ConfigLocator()
    assert locator.project_root == tmp_path.resolve()
    assert locator.portals_dir == tmp_path.resolve() / "data" / "portals"
    assert locator.global_config_path() == tmp_path.resolve() / "data" / "global_config.yaml"
    for path in (locator.portals_dir, locator.outputs_dir, locator.audit_dir, locator.logs_dir):
        assert path.exists()


def test_config_repository_global_roundtrip(temp_config_repository: ConfigRepository) -> None:
    config = GlobalConfig(redis_url="redis://cache:6379/2", audit_enabled=False)
    temp_config_repository.save_global_config(config)
    fresh = ConfigRepository(temp_config_repository.locator)
    assert fresh.load_global_config() == config


def test_missing_global_config_is_created_with_defaults(temp_config_repository: ConfigRepository) -> None:
    loaded = temp_config_repository.load_global_config()
    assert loaded == GlobalConfig()
    assert temp_config_repository.locator.global_config_path().exists()


def test_config_repository_portal_cycle(temp_config_repository: ConfigRepository, sample_portal_config) -> None:
    portal = sample_portal_config()
    path = temp_config_repository.save_portal(portal)
    assert path.name == "vivareal.yaml"
    assert temp_config_repository.load_portal("vivareal") == portal
    assert [item.portal for item in temp_config_repository.list_portals()] == ["vivareal"]
    temp_config_repository.delete_portal("vivareal")
    assert temp_config_repository.list_portals() == []


def test_config_repository_missing_portal(temp_config_repository: ConfigRepository) -> None:
    with pytest.raises(FileNotFoundError):
        temp_config_repository.load_portal("missing")


def test_invalid_portal_file_raises_configuration_error(temp_config_repository: ConfigRepository) -> None:
    path = temp_config_repository.portal_path("broken")
    path.write_text("portal: broken\nworker:\n  max_retries: -2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        temp_config_repository.load_portal("broken")

    path.write_text("portal: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        temp_config_repository.load_portal("broken")


def test_portal_files_accept_json(temp_config_repository: ConfigRepository) -> None:
    path = temp_config_repository.locator.portals_dir / "zap.json"
    path.write_text('{"portal": "zapimoveis", "country": "BR"}', encoding="utf-8")
    loaded = temp_config_repository.load_portal(path)
    assert loaded.portal == "zapimoveis"
    assert loaded.discovery.page_size == 100


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("VivaReal", "vivareal"),
        ("Already-Slug", "already-slug"),
        ("Zap Imóveis", "zap-imóveis"),
    ],
)
def test_slugify_behaviour(raw: str, expected: str) -> None:
    assert _slugify(raw) == expected
