"""Tests for the TOML config layer."""

from reviewgraph import config
from reviewgraph.config_manager import (
    DEFAULT_CONFIG,
    load_config,
    load_full_config,
    load_section,
    save_config,
    set_value,
)


class TestConfigManager:
    """Tests for loading and saving config.toml."""

    def test_defaults_without_file(self):
        assert load_full_config() == {}
        assert load_config() == DEFAULT_CONFIG

    def test_env_key_overrides_file(self, monkeypatch):
        set_value("embeddings", "api_key", "from-file")
        assert load_section("embeddings")["api_key"] == "from-file"

        monkeypatch.setenv("VOYAGE_API_KEY", "from-env")
        assert load_section("embeddings")["api_key"] == "from-env"

    def test_save_merges_sections(self):
        """Saving one section leaves the others intact."""
        assert save_config({"worker": {"attempts": 5}})
        assert save_config({"index": {"strategies": {"acme/erp": "artifact"}}})

        on_disk = load_full_config()
        assert on_disk["worker"] == {"attempts": 5}
        assert on_disk["index"]["strategies"] == {"acme/erp": "artifact"}

        merged = load_config()
        assert merged["worker"]["attempts"] == 5
        assert merged["worker"]["concurrency"] == 2

    def test_unreadable_file_falls_back(self):
        config.BASE_DIR.mkdir(parents=True, exist_ok=True)
        config.CONFIG_FILE.write_text("this is = = not toml", encoding="utf-8")
        assert load_full_config() == {}
        assert load_section("worker")["attempts"] == 3

    def test_defaults_not_mutated(self):
        set_value("worker", "attempts", 9)
        load_config()["worker"]["attempts"] = 11
        assert DEFAULT_CONFIG["worker"]["attempts"] == 3
