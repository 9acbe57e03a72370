"""Unit tests for the command-line interface."""

import pytest
import pandas as pd
from click.testing import CliRunner

from singlecell_refinery import __version__
from singlecell_refinery.cli.main import cli
from singlecell_refinery.io import save_dataset


@pytest.fixture
def runner():
    return CliRunner()


class TestCli:
    """Tests for the top-level command group."""

    def test_help(self, runner):
        """Test help lists every command."""
        result = runner.invoke(cli, ["--help"], obj={})
        assert result.exit_code == 0
        for command in ["run", "integrate", "markers", "select-dims", "pipeline"]:
            assert command in result.output

    def test_version(self, runner):
        """Test version output."""
        result = runner.invoke(cli, ["--version"], obj={})
        assert result.exit_code == 0
        assert __version__ in result.output


class TestSelectDims:
    """Tests for the select-dims command."""

    def test_prints_pc_num(self, runner, pca_dataset, tmp_output_dir):
        """Test the selected number of dimensions is printed and saved."""
        path = save_dataset(pca_dataset, tmp_output_dir / "pca.h5ad")
        out = tmp_output_dir / "selected.h5ad"
        result = runner.invoke(
            cli, ["select-dims", "-i", str(path), "--threshold", "0.8", "-o", str(out)], obj={}
        )
        assert result.exit_code == 0, result.output
        assert "PCNum:" in result.output
        assert out.exists()

    def test_missing_reduction(self, runner, count_dataset, tmp_output_dir):
        """Test a missing reduction exits with an error."""
        path = save_dataset(count_dataset, tmp_output_dir / "counts.h5ad")
        result = runner.invoke(cli, ["select-dims", "-i", str(path)], obj={})
        assert result.exit_code == 1


class TestMarkers:
    """Tests for the markers command."""

    def test_writes_table(self, runner, normalized_dataset, tmp_output_dir):
        """Test a marker table is written."""
        path = save_dataset(normalized_dataset, tmp_output_dir / "norm.h5ad")
        out = tmp_output_dir / "tables" / "markers.csv"
        result = runner.invoke(
            cli,
            ["markers", "-i", str(path), "-g", "cell_type", "-o", str(out), "--only-pos"],
            obj={},
        )
        assert result.exit_code == 0, result.output
        table = pd.read_csv(out)
        assert set(table["group"]) == {"type_0", "type_1", "type_2"}
        assert (table["avg_log2FC"] > 0).all()

    def test_missing_group_column(self, runner, normalized_dataset, tmp_output_dir):
        """Test an unknown grouping column exits with an error."""
        path = save_dataset(normalized_dataset, tmp_output_dir / "norm.h5ad")
        result = runner.invoke(
            cli,
            ["markers", "-i", str(path), "-g", "absent", "-o", str(tmp_output_dir / "m.csv")],
            obj={},
        )
        assert result.exit_code == 1


class TestIntegrateCommand:
    """Tests for the integrate command."""

    def test_needs_two_inputs(self, runner, count_dataset, tmp_output_dir):
        """Test a single input is rejected."""
        path = save_dataset(count_dataset, tmp_output_dir / "one.h5ad")
        result = runner.invoke(
            cli, ["integrate", "-i", str(path), "-o", str(tmp_output_dir / "merged")], obj={}
        )
        assert result.exit_code == 1


class TestPipelineCommand:
    """Tests for the pipeline command."""

    def test_dry_run(self, runner, sample_pipeline_config):
        """Test a dry run prints the plan and succeeds."""
        result = runner.invoke(
            cli, ["pipeline", "-c", str(sample_pipeline_config), "--dry-run"], obj={}
        )
        assert result.exit_code == 0, result.output
        assert "Pipeline stages: A -> B -> C -> E -> F -> G -> H -> I -> J" in result.output
        assert "Pipeline completed successfully" in result.output

    def test_invalid_stages(self, runner, tmp_path):
        """Test a configuration with unmet dependencies exits with an error."""
        path = tmp_path / "bad.yaml"
        path.write_text("stages: [A, J]\nsamples: {}\n")
        result = runner.invoke(cli, ["pipeline", "-c", str(path)], obj={})
        assert result.exit_code == 1
