"""Bounded-memory size splitting of on-disk BAM files.

The input is read in chunks; each chunk is split by size and its bins are
written to per-category temporary BAM files. Once the input is exhausted
the temporary files of each category are merged (or copied, when there is
only one) into ``<out_dir>/<label>.bam`` and read back without sequence
and quality payloads, sorted by name.

Only one chunk is held in memory at a time. If a read or write fails the
temporary directory is left in place.

Example:
    >>> from atacsplit.core.streaming import StreamingDriver
    >>> driver = StreamingDriver(BamSource("sample.bam"), BinningConfig(), "out")
    >>> bins = driver.run()
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from atacsplit.config import BinningConfig, StreamingConfig
from atacsplit.core.binning import split_by_size
from atacsplit.io.bam import (
    AlignmentRecord,
    BamChunkReader,
    BamSource,
    copy_bam,
    merge_bams,
    read_sorted_by_name,
    write_alignments,
)
from atacsplit.utils.logging import ProgressLogger, Timer

logger = logging.getLogger(__name__)


class StreamingDriver:
    """Split a BAM file chunk by chunk.

    Attributes:
        source: BAM file and scan parameters.
        scheme: Size bins.
        out_dir: Directory receiving ``<label>.bam`` files.
        config: Chunk size and temporary directory location.
    """

    def __init__(
        self,
        source: BamSource,
        scheme: BinningConfig,
        out_dir: Path | str,
        config: StreamingConfig | None = None,
    ) -> None:
        self.source = source
        self.scheme = scheme
        self.out_dir = Path(out_dir)
        self.config = config or StreamingConfig()

    def run(self) -> dict[str, list[AlignmentRecord]]:
        """Split the source and return every label's records, sorted by name."""
        self.scheme.validate()
        self.out_dir.mkdir(parents=True, exist_ok=True)
        if self.config.temp_dir is not None:
            self.config.temp_dir.mkdir(parents=True, exist_ok=True)
        tmp_dir = Path(tempfile.mkdtemp(prefix="atacsplit_", dir=self.config.temp_dir))

        with Timer("Streaming split", logger):
            chunk_files, header = self._split_chunks(tmp_dir)
            merged = self._merge(chunk_files, header)
            shutil.rmtree(tmp_dir)

        return {
            label: (
                read_sorted_by_name(merged[label], self.source.mate_position_tag)
                if label in merged
                else []
            )
            for label in self.scheme.labels
        }

    def _split_chunks(self, tmp_dir: Path) -> tuple[dict[str, list[Path]], dict]:
        """Write each chunk's non-empty bins to temporary files."""
        chunk_files: dict[str, list[Path]] = {}
        progress = ProgressLogger(logger, description="Streaming", unit="records")

        with BamChunkReader(self.source) as reader:
            header = reader.header
            n_chunk = 0
            while chunk := reader.read_chunk(self.config.chunk_size):
                bins = split_by_size(chunk, self.scheme, log_level=logging.DEBUG)
                n_records = len(chunk)
                del chunk
                for label, records in bins.items():
                    if not records:
                        continue
                    path = tmp_dir / f"{label}.{n_chunk:05d}.bam"
                    chunk_files.setdefault(label, []).append(
                        write_alignments(records, path, header)
                    )
                del bins
                n_chunk += 1
                progress.update(n_records)

        progress.finish()
        return chunk_files, header

    def _merge(self, chunk_files: dict[str, list[Path]], header: dict) -> dict[str, Path]:
        """Merge or copy each category's temporary files into the output directory."""
        merged = {}
        for label, paths in chunk_files.items():
            destination = self.out_dir / f"{label}.bam"
            if len(paths) > 1:
                merged[label] = merge_bams(paths, destination, header)
            else:
                merged[label] = copy_bam(paths[0], destination)
            logger.debug(f"{label}: {len(paths)} chunk files -> {destination}")
        logger.info(f"Wrote {len(merged)} category files to {self.out_dir}")
        return merged
