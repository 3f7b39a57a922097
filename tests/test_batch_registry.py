"""
Tests for the batch registry and the CLI configuration loader.
"""

import pytest

from core.batch_registry import BatchRegistry
from core.models import BatchStatus


class TestBatchRegistry:

    def test_create_and_lookup(self):
        registry = BatchRegistry()
        batch = registry.create(["14102000674"], [("abc", "Consumer number must be numeric")])

        assert len(batch.batch_id) == 12
        assert registry.get(batch.batch_id) is batch
        assert registry.get("missing") is None
        assert batch.rejected == [("abc", "Consumer number must be numeric")]
        assert len(registry) == 1

    def test_cleanup_keeps_running_and_fresh_batches(self, tmp_path):
        registry = BatchRegistry()
        running = registry.create(["14102000674"])
        fresh = registry.create(["14102000675"])
        fresh.finish(BatchStatus.COMPLETED, "all_accounted")

        assert registry.cleanup(retention_seconds=3600) == []
        assert registry.get(running.batch_id) and registry.get(fresh.batch_id)

    def test_cleanup_drops_downloaded_and_expired_batches(self, tmp_path):
        registry = BatchRegistry()
        downloaded = registry.create(["14102000674"])
        downloaded.finish(BatchStatus.COMPLETED, "all_accounted")
        results = tmp_path / "results.xlsx"
        results.write_bytes(b"x")
        downloaded.results_path = str(results)
        registry.mark_retrieved(downloaded.batch_id)

        expired = registry.create(["14102000675"])
        expired.finish(BatchStatus.DEGRADED, "stalled")

        removed = registry.cleanup(retention_seconds=60, now=expired.finished_at + 61)
        assert {b.batch_id for b in removed} == {downloaded.batch_id, expired.batch_id}
        assert not results.exists()
        assert len(registry) == 0

    def test_mark_retrieved_unknown(self):
        assert BatchRegistry().mark_retrieved("missing") is False


class TestLoadConfig:

    def test_yaml_then_overrides(self, tmp_path):
        from main import load_config

        path = tmp_path / "fetcher.yaml"
        path.write_text("POOL_SIZE: 4\nSESSION_ENGINE: api\nMAX_ATTEMPTS: 5\n")

        cfg = load_config(str(path), POOL_SIZE=2, HEADLESS=None)
        assert cfg.POOL_SIZE == 2
        assert cfg.SESSION_ENGINE == "api"
        assert cfg.MAX_ATTEMPTS == 5

    def test_unknown_key(self, tmp_path):
        from main import load_config

        path = tmp_path / "fetcher.yaml"
        path.write_text("POOL_SIZ: 4\n")
        with pytest.raises(SystemExit):
            load_config(str(path))

    def test_yaml_strings_are_converted_to_field_types(self, tmp_path):
        from main import load_config

        path = tmp_path / "fetcher.yaml"
        path.write_text(
            'POOL_SIZE: "3"\n'
            'HEADLESS: "false"\n'
            'ACQUIRE_TIMEOUT_SECONDS: 15\n'
            'ALLOWED_EXTENSIONS: ".xlsx, .xls"\n'
        )

        cfg = load_config(str(path))
        assert cfg.POOL_SIZE == 3
        assert cfg.HEADLESS is False
        assert cfg.ACQUIRE_TIMEOUT_SECONDS == 15.0
        assert isinstance(cfg.ACQUIRE_TIMEOUT_SECONDS, float)
        assert cfg.ALLOWED_EXTENSIONS == [".xlsx", ".xls"]

    @pytest.mark.parametrize("line", [
        'POOL_SIZE: "many"',
        "POOL_SIZE: 2.5",
        "POOL_SIZE: true",
        "HEADLESS: sometimes",
        "ALLOWED_EXTENSIONS: [1, 2]",
    ])
    def test_values_of_the_wrong_type_are_rejected(self, tmp_path, line):
        from main import load_config

        path = tmp_path / "fetcher.yaml"
        path.write_text(line + "\n")
        with pytest.raises(SystemExit, match="Invalid value"):
            load_config(str(path))

    def test_file_must_hold_a_mapping(self, tmp_path):
        from main import load_config

        path = tmp_path / "fetcher.yaml"
        path.write_text("- POOL_SIZE\n")
        with pytest.raises(SystemExit):
            load_config(str(path))
