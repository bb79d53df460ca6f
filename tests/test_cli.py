"""Tests for the atacsplit command-line interface.

Tests cover:
- split: size-only and streaming output
- tsse: score and profile output
- Option validation and error exit codes
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from atacsplit import __version__
from atacsplit.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def tiled_bam(tmp_path: Path, write_bam, make_record) -> Path:
    """BAM of 100 bp reads tiling chr1 at depth 1, plus a pile at 3000."""
    records = [make_record(f"tile{i}", 100 * i, read_length=100) for i in range(100)]
    records += [make_record(f"pile{i}", 3000, read_length=100) for i in range(9)]
    return write_bam(records, tmp_path / "tiled.bam")


@pytest.fixture
def transcripts_bed(tmp_path: Path) -> Path:
    path = tmp_path / "tx.bed"
    path.write_text("chr1\t3000\t4000\ttx1\t0\t+\n")
    return path


class TestMain:
    """Tests for the command group."""

    def test_version(self, runner: CliRunner) -> None:
        """Test --version prints the package version."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self, runner: CliRunner) -> None:
        """Test both commands are listed."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "split" in result.output
        assert "tsse" in result.output


class TestSplitCommand:
    """Tests for the split command."""

    def test_size_split(self, runner: CliRunner, tmp_path: Path, mixed_bam: Path) -> None:
        """Test category files are written and counts reported."""
        out = tmp_path / "out"
        result = runner.invoke(main, ["split", "-b", str(mixed_bam), "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert (out / "NucleosomeFree.bam").exists()
        assert (out / "others.bam.bai").exists()
        assert "NucleosomeFree" in result.output

    def test_stream(self, runner: CliRunner, tmp_path: Path, mixed_bam: Path) -> None:
        """Test streaming with a small chunk size."""
        out = tmp_path / "out"
        result = runner.invoke(
            main,
            ["-q", "split", "-b", str(mixed_bam), "-o", str(out), "--stream", "--chunk-size", "5"],
        )

        assert result.exit_code == 0, result.output
        assert (out / "mononucleosome.bam").exists()

    def test_stream_needs_out_dir(self, runner: CliRunner, mixed_bam: Path) -> None:
        """Test --stream without --out-dir is a usage error."""
        result = runner.invoke(main, ["split", "-b", str(mixed_bam), "--stream"])
        assert result.exit_code == 2

    def test_conservation_needs_genome(self, runner: CliRunner, mixed_bam: Path) -> None:
        """Test --conservation without --genome is a usage error."""
        result = runner.invoke(
            main, ["split", "-b", str(mixed_bam), "--conservation", str(mixed_bam)]
        )
        assert result.exit_code == 2

    def test_invalid_config(self, runner: CliRunner, tmp_path: Path, mixed_bam: Path) -> None:
        """Test an invalid configuration exits with status 1."""
        config = tmp_path / "bad.yaml"
        config.write_text("refine:\n  cutoff: 2.0\n")

        result = runner.invoke(main, ["split", "-b", str(mixed_bam), "-c", str(config)])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_invalid_cutoff_option(self, runner: CliRunner, mixed_bam: Path) -> None:
        """Test option overrides are validated."""
        result = runner.invoke(main, ["split", "-b", str(mixed_bam), "--cutoff", "0"])
        assert result.exit_code == 1
        assert "cutoff" in result.output

    def test_missing_bam(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test a missing input file is a usage error."""
        result = runner.invoke(main, ["split", "-b", str(tmp_path / "absent.bam")])
        assert result.exit_code == 2


class TestTsseCommand:
    """Tests for the tsse command."""

    def test_score(self, runner: CliRunner, tiled_bam: Path, transcripts_bed: Path) -> None:
        """Test the score is printed."""
        result = runner.invoke(main, ["tsse", "-b", str(tiled_bam), "-t", str(transcripts_bed)])

        assert result.exit_code == 0, result.output
        assert "TSS enrichment score" in result.output

    def test_profile_output(
        self, runner: CliRunner, tmp_path: Path, tiled_bam: Path, transcripts_bed: Path
    ) -> None:
        """Test the averaged profile is written as TSV."""
        output = tmp_path / "profile.tsv"
        result = runner.invoke(
            main,
            ["tsse", "-b", str(tiled_bam), "-t", str(transcripts_bed), "--width", "200", "-o", str(output)],
        )

        assert result.exit_code == 0, result.output
        lines = output.read_text().splitlines()
        assert lines[0] == "bin\tvalue"
        assert len(lines) == 11
        assert lines[6] == "6\t2.75"

    def test_no_signal(self, runner: CliRunner, tiled_bam: Path, tmp_path: Path) -> None:
        """Test transcripts on other sequences exit with status 1."""
        bed = tmp_path / "other.bed"
        bed.write_text("chr9\t100\t200\ttx\t0\t+\n")
        result = runner.invoke(main, ["tsse", "-b", str(tiled_bam), "-t", str(bed)])
        assert result.exit_code == 1
        assert "Error:" in result.output
