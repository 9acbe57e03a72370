"""Unit tests for I/O helpers."""

import json
import logging

import pytest
import numpy as np
import yaml

from singlecell_refinery.io import (
    get_logger,
    load_dataset,
    load_raw_counts,
    log_json,
    log_stage_summary,
    log_yaml,
    save_dataset,
    timestamped_path,
)


class TestDatasetPersistence:
    """Tests for save_dataset / load_dataset."""

    def test_round_trip(self, pca_dataset, tmp_output_dir):
        """Test layers, reductions and history survive a write and read."""
        path = save_dataset(pca_dataset, tmp_output_dir / "nested" / "sample.h5ad")
        assert path.exists()

        loaded = load_dataset(path)
        assert loaded.n_cells == pca_dataset.n_cells
        assert loaded.layer_method("lognorm") == "log_normalize"
        assert sorted(loaded.variable_features) == sorted(pca_dataset.variable_features)
        red = loaded.get_reduction("pca")
        assert np.allclose(red.coords, pca_dataset.get_reduction("pca").coords)
        assert red.source == "lognorm"
        assert loaded.history("normalize")["nfeatures"] == 200

    def test_warnings_survive(self, count_dataset, tmp_output_dir):
        """Test attached warnings are persisted."""
        count_dataset.add_warning("DataQualityWarning", "normalize", "few genes")
        loaded = load_dataset(save_dataset(count_dataset, tmp_output_dir / "warn.h5ad"))
        warnings = loaded.list_warnings("DataQualityWarning")
        assert warnings == [
            {"category": "DataQualityWarning", "stage": "normalize", "message": "few genes"}
        ]


class TestLoadRawCounts:
    """Tests for load_raw_counts."""

    def test_missing_path(self, tmp_output_dir):
        """Test a missing input raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_raw_counts(tmp_output_dir / "absent.h5ad")

    def test_unsupported_suffix(self, tmp_output_dir):
        """Test an unknown format raises ValueError."""
        path = tmp_output_dir / "counts.txt"
        path.write_text("not counts")
        with pytest.raises(ValueError, match="Unsupported"):
            load_raw_counts(path)

    def test_h5ad(self, raw_droplets, tmp_output_dir):
        """Test an AnnData file is read back with its shape."""
        path = tmp_output_dir / "raw.h5ad"
        raw_droplets.write_h5ad(path)
        adata = load_raw_counts(path)
        assert adata.shape == (1000, 500)
        assert adata.var_names.is_unique


class TestRunLogs:
    """Tests for log files and structured summaries."""

    def test_timestamped_path(self, tmp_output_dir):
        """Test a timestamp is inserted before the suffix."""
        path = timestamped_path(tmp_output_dir / "run.log")
        assert path.parent == tmp_output_dir
        assert path.name.startswith("run_")
        assert path.suffix == ".log"

    def test_get_logger_writes_file(self, tmp_output_dir):
        """Test the file logger writes formatted lines."""
        logger, path = get_logger("test_io.sample", tmp_output_dir / "sample.log", timestamped=False)
        logger.info("hello %s", "world")
        for handler in logger.handlers:
            handler.flush()
        text = path.read_text()
        assert "| INFO | test_io.sample | hello world" in text

    def test_get_logger_replaces_handlers(self, tmp_output_dir):
        """Test repeated calls keep a single handler."""
        get_logger("test_io.repeat", tmp_output_dir / "a.log", timestamped=False)
        logger, _ = get_logger("test_io.repeat", tmp_output_dir / "b.log", timestamped=False)
        assert len(logger.handlers) == 1
        assert not logger.propagate

    def test_log_json_lines(self, tmp_output_dir):
        """Test each record is one parseable JSON line with numpy values converted."""
        path = tmp_output_dir / "summary.jsonl"
        log_json(path, {"n": np.int64(3), "values": np.array([1.0, 2.0])})
        log_json(path, {"n": 4})
        lines = path.read_text().splitlines()
        assert [json.loads(line)["n"] for line in lines] == [3, 4]
        assert json.loads(lines[0])["values"] == [1.0, 2.0]

    def test_log_yaml(self, tmp_output_dir):
        """Test YAML records are appended as separate documents."""
        path = tmp_output_dir / "summary.yaml"
        log_yaml(path, {"stage": "qc", "removed": np.int64(5)})
        log_yaml(path, {"stage": "normalize"})
        docs = [d for d in yaml.safe_load_all(path.read_text()) if d]
        assert docs == [{"stage": "qc", "removed": 5}, {"stage": "normalize"}]

    def test_log_yaml_to_logger(self, tmp_output_dir, caplog):
        """Test a record is logged instead of written when a logger is given."""
        logger = logging.getLogger("test_io.yaml")
        with caplog.at_level(logging.INFO, logger="test_io.yaml"):
            log_yaml(tmp_output_dir / "unused.yaml", {"stage": "qc"}, logger=logger)
        assert "stage: qc" in caplog.text
        assert not (tmp_output_dir / "unused.yaml").exists()

    def test_log_stage_summary(self, tmp_output_dir):
        """Test stage summaries are tagged with sample and stage."""

        class Result:
            def to_dict(self):
                return {"cells_removed": 2}

        path = tmp_output_dir / "stages.jsonl"
        log_stage_summary(path, "donor1", "B", Result())
        record = json.loads(path.read_text())
        assert record["sample_id"] == "donor1"
        assert record["stage"] == "B"
        assert record["cells_removed"] == 2
