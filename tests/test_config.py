import pytest

from hamtmap.config import (
    ConfigError,
    ConfigManager,
    ValidationError,
    default_trie_options,
    get_config,
    get_config_manager,
)
from hamtmap.map import Map
from hamtmap.schema import CONFIG_SCHEMA, HEAD_SCHEMA, NODE_SCHEMA, is_valid, validate_with_schema


class TestConfigManager:
    def test_singleton(self):
        assert ConfigManager() is get_config_manager()

    def test_defaults(self):
        cfg = get_config().to_dict()
        assert cfg["trie"] == {"bit_width": 5, "bucket_size": 3}
        assert cfg["store"]["cache_size"] == 1024
        assert cfg["observability"]["log_format"] == "json"
        assert "bit_width: 5" in get_config().to_yaml()

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("HAMTMAP_BIT_WIDTH", "4")
        monkeypatch.setenv("HAMTMAP_VERIFY_READS", "no")
        assert default_trie_options().bit_width == 4
        assert get_config_manager().get("store.verify_reads") is False

    def test_set_coerces_strings(self):
        mgr = get_config_manager()
        mgr.set("trie.bucket_size", "6")
        assert mgr.get("trie.bucket_size") == 6
        assert default_trie_options().bucket_size == 6

    def test_set_validates(self):
        mgr = get_config_manager()
        with pytest.raises(ValidationError):
            mgr.set("trie.bit_width", 9)
        with pytest.raises(ConfigError):
            mgr.set("trie.nope", 1)
        with pytest.raises(ConfigError):
            mgr.set("trie", 1)

    def test_watchers_notified(self):
        mgr = get_config_manager()
        seen = []
        mgr.watch(lambda cfg: seen.append(cfg.trie.bit_width.get()))
        mgr.set("trie.bit_width", 3)
        assert seen == [3]

    def test_validate_reports_bad_environment(self, monkeypatch):
        monkeypatch.setenv("HAMTMAP_BIT_WIDTH", "20")
        monkeypatch.setenv("HAMTMAP_CACHE_SIZE", "lots")
        errors = get_config_manager().validate()
        assert any(e.startswith("trie.bit_width") for e in errors)
        assert any(e.startswith("store.cache_size") for e in errors)

    def test_export_schema(self):
        schema = get_config_manager().export_schema()
        assert schema["properties"]["trie"]["bit_width"]["env_var"] == "HAMTMAP_BIT_WIDTH"
        assert schema["properties"]["store"]["cache_size"]["type"] == "int"

    def test_map_uses_configured_shape(self, store):
        get_config_manager().set("trie.bit_width", 3)
        assert Map.empty(store).options.bit_width == 3

    def test_reset(self):
        mgr = get_config_manager()
        mgr.set("trie.bit_width", 3)
        mgr.reset()
        assert mgr.get("trie.bit_width") == 5


class TestConfigFiles:
    def test_load_valid_file(self, tmp_path):
        path = tmp_path / "hamtmap.yaml"
        path.write_text("trie:\n  bucket_size: 4\nstore:\n  root_dir: /tmp/x\n", encoding="utf-8")
        mgr = get_config_manager()
        mgr.load_from_file(path)
        assert mgr.get("trie.bucket_size") == 4
        assert mgr.get("store.root_dir") == "/tmp/x"
        assert mgr.loaded_paths == [path]

    def test_reload_rereads_file(self, tmp_path):
        path = tmp_path / "hamtmap.yaml"
        path.write_text("trie:\n  bucket_size: 4\n", encoding="utf-8")
        mgr = get_config_manager()
        mgr.load_from_file(path)
        path.write_text("trie:\n  bucket_size: 7\n", encoding="utf-8")
        mgr.reload()
        assert mgr.get("trie.bucket_size") == 7

    def test_empty_file_is_noop(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        get_config_manager().load_from_file(path)
        assert get_config_manager().get("trie.bit_width") == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("trie: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            get_config_manager().load_from_file(path)

    @pytest.mark.parametrize("body", [
        "trie:\n  bit_width: 12\n",
        "trie:\n  bucket_size: 0\n",
        "unknown: true\n",
        "observability:\n  log_format: xml\n",
    ])
    def test_schema_violations(self, tmp_path, body):
        path = tmp_path / "bad.yaml"
        path.write_text(body, encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            get_config_manager().load_from_file(path)
        assert get_config_manager().get("trie.bit_width") == 5

    def test_default_files_project_overrides_user(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        (home / ".hamtmap").mkdir(parents=True)
        (home / ".hamtmap" / "config.yaml").write_text(
            "trie:\n  bit_width: 4\n  bucket_size: 4\n", encoding="utf-8"
        )
        (tmp_path / "hamtmap.yaml").write_text("trie:\n  bucket_size: 6\n", encoding="utf-8")
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.chdir(tmp_path)

        loaded = get_config_manager().load_defaults()
        assert len(loaded) == 2
        assert get_config_manager().get("trie.bucket_size") == 6
        assert get_config_manager().get("trie.bit_width") == 4

    def test_default_files_absent(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.chdir(tmp_path)
        assert get_config_manager().load_defaults() == []
        assert get_config_manager().get("trie.bucket_size") == 3


class TestSchemas:
    def test_config_schema(self):
        assert is_valid({"trie": {"bit_width": 8}}, CONFIG_SCHEMA)
        errors = validate_with_schema({"trie": {"bit_width": "8"}}, CONFIG_SCHEMA)
        assert errors and errors[0].startswith("$.trie.bit_width")

    def test_node_schema_resolves_shared_definitions(self):
        assert is_valid({"v": 1, "bitmap": "0", "slots": []}, NODE_SCHEMA)
        assert is_valid({"v": 1, "bitmap": "1", "slots": [{"link": "ab" * 32}]}, NODE_SCHEMA)
        assert not is_valid({"v": 1, "bitmap": "01", "slots": []}, NODE_SCHEMA)
        assert not is_valid({"v": 1, "bitmap": "1", "slots": [{"link": "AB" * 32}]}, NODE_SCHEMA)
        assert not is_valid({"v": 2, "bitmap": "0", "slots": []}, NODE_SCHEMA)

    def test_head_schema(self):
        head = {"root": "ab" * 32, "bit_width": 5, "bucket_size": 3}
        assert is_valid(head, HEAD_SCHEMA)
        assert not is_valid({"root": "ab" * 32}, HEAD_SCHEMA)
        assert not is_valid(dict(head, bit_width=9), HEAD_SCHEMA)
        assert not is_valid(dict(head, root="AB" * 32), HEAD_SCHEMA)
        assert not is_valid(dict(head, extra=1), HEAD_SCHEMA)
