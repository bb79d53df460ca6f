"""BAM file handling for ATAC-seq alignments.

This module converts between pysam alignments and the immutable
AlignmentRecord used by the rest of atacsplit, reads BAM files whole or
in fixed-size chunks, and writes, merges and indexes per-category output
files.

Features:
    - Immutable alignment records with explicit pysam conversion
    - Deferred handles (BamSource) for files read later or in chunks
    - Chunked reading that can keep mates of collated files together
    - Sorted and indexed BAM output, one file per category

Example:
    >>> from atacsplit.io.bam import BamSource, load_alignments, write_split
    >>> alignments = load_alignments(BamSource("sample.bam"))
    >>> len(alignments.records)
    120345
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Any, Iterable, Iterator

import attrs
import pysam

from atacsplit.utils.intervals import GenomicInterval

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

FLAG_PAIRED = 0x1
FLAG_UNMAPPED = 0x4
FLAG_REVERSE = 0x10
FLAG_SECONDARY = 0x100
FLAG_DUPLICATE = 0x400
FLAG_SUPPLEMENTARY = 0x800

DEFAULT_EXCLUDE_FLAGS = FLAG_UNMAPPED | FLAG_SECONDARY | FLAG_SUPPLEMENTARY

# BAI indexes cannot address positions beyond 2^29
MAX_BAI_SEQUENCE_LENGTH = 536_870_912

# CIGAR operations consuming the reference: M, D, N, =, X
_CIGAR_PATTERN = re.compile(r"(\d+)([MIDNSHP=X])")
_REFERENCE_OPS = set("MDN=X")


def cigar_reference_length(cigar: str) -> int:
    """Number of reference bases spanned by a CIGAR string."""
    return sum(int(n) for n, op in _CIGAR_PATTERN.findall(cigar) if op in _REFERENCE_OPS)


# =============================================================================
# Data Structures
# =============================================================================


@attrs.frozen(slots=True)
class AlignmentRecord:
    """One aligned read of a sequenced fragment.

    Records sharing a name are the mates of one fragment.

    Attributes:
        name: Query (fragment) name.
        reference_name: Chromosome/contig of the alignment.
        reference_start: Alignment start (0-based).
        cigar: CIGAR string.
        template_length: Signed template length; its magnitude is the fragment size.
        flag: SAM flag.
        mapping_quality: Mapping quality.
        next_reference_name: Mate reference (None if unavailable).
        next_reference_start: Mate start (0-based, -1 if unavailable).
        query_sequence: Read sequence, dropped when records are stripped.
        query_qualities: Phred+33 quality string, dropped when stripped.
        tags: Auxiliary (tag, value) pairs.
        reference_end: Alignment end (0-based, exclusive); derived from the CIGAR.
    """

    name: str
    reference_name: str
    reference_start: int
    cigar: str
    template_length: int | None
    flag: int = 0
    mapping_quality: int = 255
    next_reference_name: str | None = None
    next_reference_start: int = -1
    query_sequence: str | None = None
    query_qualities: str | None = None
    tags: tuple[tuple[str, Any], ...] = ()
    reference_end: int = attrs.field(
        default=attrs.Factory(
            lambda self: self.reference_start + cigar_reference_length(self.cigar),
            takes_self=True,
        )
    )

    @property
    def strand(self) -> str:
        """Alignment strand from the SAM flag."""
        return "-" if self.flag & FLAG_REVERSE else "+"

    @property
    def fragment_length(self) -> int:
        """Absolute template length."""
        if self.template_length is None:
            raise ValueError(f"Record {self.name} has no template length")
        return abs(self.template_length)

    @property
    def span(self) -> int:
        """Reference bases covered by the alignment."""
        return self.reference_end - self.reference_start

    def to_interval(self) -> GenomicInterval:
        """Alignment span as a named interval."""
        return GenomicInterval(
            self.reference_name,
            self.reference_start,
            self.reference_end,
            self.strand,
            name=self.name,
        )

    def without_payload(self) -> AlignmentRecord:
        """Copy of the record without sequence and qualities."""
        if self.query_sequence is None and self.query_qualities is None:
            return self
        return attrs.evolve(self, query_sequence=None, query_qualities=None)


@attrs.define(slots=True)
class BamSource:
    """A BAM file plus the parameters used to scan it.

    Attributes:
        path: Path to the BAM file.
        index: Index path; defaults to ``<path>.bai`` when present.
        region: Optional region string (requires an index).
        min_mapq: Minimum mapping quality.
        exclude_flags: Records with any of these flag bits are skipped.
        as_mates: Keep records with the same name in one chunk (for
            name-collated files).
        mate_position_tag: Auxiliary tag whose value replaces the mate start.
    """

    path: Path = attrs.field(converter=Path)
    index: Path | None = attrs.field(default=None, converter=attrs.converters.optional(Path))
    region: str | None = None
    min_mapq: int = 0
    exclude_flags: int = DEFAULT_EXCLUDE_FLAGS
    as_mates: bool = False
    mate_position_tag: str | None = None

    def resolve_index(self) -> Path | None:
        """Index file to open the BAM with, or None if there is none."""
        if self.index is not None and self.index.exists():
            return self.index
        candidate = Path(str(self.path) + ".bai")
        return candidate if candidate.exists() else None


@attrs.define(slots=True)
class AlignmentSet:
    """In-memory alignments or a deferred handle to an on-disk file.

    The set is deferred when it holds no records but carries a source.

    Attributes:
        records: Alignment records.
        header: SAM header as a pysam header dictionary.
        source: File the records come from (or will be read from).
    """

    records: list[AlignmentRecord] = attrs.Factory(list)
    header: dict[str, Any] | None = None
    source: BamSource | None = None

    @property
    def is_deferred(self) -> bool:
        """True if the set is empty and bound to a file."""
        return not self.records and self.source is not None

    @property
    def seqlengths(self) -> dict[str, int]:
        """Reference lengths from the header (empty if no header)."""
        if not self.header:
            return {}
        return {sq["SN"]: int(sq["LN"]) for sq in self.header.get("SQ", [])}

    def ensure_header(self) -> dict[str, Any]:
        """Header of the set, derived from the records when absent."""
        if self.header is None:
            self.header = make_header(self.records)
        return self.header


def make_header(
    records: Iterable[AlignmentRecord],
    seqlengths: dict[str, int] | None = None,
) -> dict[str, Any]:
    """Minimal header listing every reference used by ``records``.

    Lengths default to the furthest alignment end seen on each reference.
    """
    lengths = dict(seqlengths or {})
    for rec in records:
        if rec.reference_name not in (seqlengths or {}):
            lengths[rec.reference_name] = max(lengths.get(rec.reference_name, 0), rec.reference_end)
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": name, "LN": length} for name, length in lengths.items()],
    }


# =============================================================================
# Conversion
# =============================================================================


def record_from_segment(
    segment: pysam.AlignedSegment,
    mate_position_tag: str | None = None,
    minimal: bool = False,
) -> AlignmentRecord:
    """Convert a pysam alignment into an AlignmentRecord.

    Args:
        segment: Mapped alignment.
        mate_position_tag: Auxiliary tag holding the mate position.
        minimal: Drop sequence, qualities and tags (the mate position tag
            is still honoured).

    Returns:
        The converted record.
    """
    next_start = segment.next_reference_start
    if mate_position_tag is not None and segment.has_tag(mate_position_tag):
        next_start = int(segment.get_tag(mate_position_tag))

    sequence = None
    qualities = None
    tags: tuple[tuple[str, Any], ...] = ()
    if not minimal:
        sequence = segment.query_sequence
        if segment.query_qualities is not None:
            qualities = pysam.array_to_qualitystring(segment.query_qualities)
        tags = tuple(segment.get_tags())

    return AlignmentRecord(
        name=segment.query_name,
        reference_name=segment.reference_name,
        reference_start=segment.reference_start,
        cigar=segment.cigarstring or "",
        template_length=segment.template_length,
        flag=segment.flag,
        mapping_quality=segment.mapping_quality,
        next_reference_name=segment.next_reference_name,
        next_reference_start=next_start,
        query_sequence=sequence,
        query_qualities=qualities,
        tags=tags,
        reference_end=segment.reference_end,
    )


def record_to_segment(
    record: AlignmentRecord,
    header: pysam.AlignmentHeader,
) -> pysam.AlignedSegment:
    """Convert an AlignmentRecord into a pysam alignment bound to ``header``."""
    segment = pysam.AlignedSegment(header)
    segment.query_name = record.name
    segment.flag = record.flag
    segment.reference_name = record.reference_name
    segment.reference_start = record.reference_start
    segment.mapping_quality = record.mapping_quality
    segment.cigarstring = record.cigar
    if record.next_reference_name is not None:
        segment.next_reference_name = record.next_reference_name
    else:
        segment.next_reference_id = -1
    segment.next_reference_start = record.next_reference_start
    segment.template_length = record.template_length or 0
    if record.query_sequence is not None:
        segment.query_sequence = record.query_sequence
        if record.query_qualities is not None:
            segment.query_qualities = pysam.qualitystring_to_array(record.query_qualities)
    if record.tags:
        segment.set_tags(list(record.tags))
    return segment


def strip_payload(records: Iterable[AlignmentRecord]) -> list[AlignmentRecord]:
    """Records without sequence and quality strings."""
    return [rec.without_payload() for rec in records]


# =============================================================================
# Reading
# =============================================================================


class BamChunkReader:
    """Read a BAM file in chunks of at most ``chunk_size`` records.

    Unmapped records and records failing the source filters are skipped.
    With ``as_mates`` a chunk is extended past ``chunk_size`` while the
    next record has the same name as the last one.

    Example:
        >>> with BamChunkReader(BamSource("sample.bam")) as reader:
        ...     while chunk := reader.read_chunk(100_000):
        ...         process(chunk)
    """

    def __init__(self, source: BamSource, minimal: bool = False) -> None:
        self.source = source
        self.minimal = minimal
        self._bam: pysam.AlignmentFile | None = None
        self._iter: Iterator[pysam.AlignedSegment] | None = None
        self._pending: AlignmentRecord | None = None

    def open(self) -> None:
        """Open the BAM file read-only."""
        if not self.source.path.exists():
            raise FileNotFoundError(f"BAM file not found: {self.source.path}")
        index = self.source.resolve_index()
        if index is not None:
            self._bam = pysam.AlignmentFile(
                str(self.source.path), "rb", index_filename=str(index)
            )
        else:
            self._bam = pysam.AlignmentFile(str(self.source.path), "rb")
        if self.source.region is not None:
            self._iter = self._bam.fetch(region=self.source.region)
        else:
            self._iter = self._bam.fetch(until_eof=True)
        logger.debug(f"Opened BAM file: {self.source.path.name}")

    def __enter__(self) -> BamChunkReader:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the BAM file."""
        if self._bam is not None:
            self._bam.close()
            self._bam = None
            self._iter = None

    @property
    def header(self) -> dict[str, Any]:
        """Header of the open file as a dictionary."""
        if self._bam is None:
            raise RuntimeError("BAM file not open")
        return self._bam.header.to_dict()

    def _convert(self, segment: pysam.AlignedSegment) -> AlignmentRecord | None:
        if segment.is_unmapped or segment.flag & self.source.exclude_flags:
            return None
        if segment.mapping_quality < self.source.min_mapq:
            return None
        return record_from_segment(
            segment,
            mate_position_tag=self.source.mate_position_tag,
            minimal=self.minimal,
        )

    def read_chunk(self, max_count: int) -> list[AlignmentRecord]:
        """Next chunk of records; empty when the file is exhausted."""
        if self._iter is None:
            raise RuntimeError("BAM file not open")

        chunk: list[AlignmentRecord] = []
        if self._pending is not None:
            chunk.append(self._pending)
            self._pending = None

        for segment in self._iter:
            record = self._convert(segment)
            if record is None:
                continue
            if len(chunk) >= max_count:
                if self.source.as_mates and record.name == chunk[-1].name:
                    chunk.append(record)
                    continue
                self._pending = record
                break
            chunk.append(record)

        return chunk


def load_alignments(
    source: BamSource | Path | str,
    minimal: bool = False,
    chunk_size: int = 100_000,
) -> AlignmentSet:
    """Read every record of a BAM file into memory.

    Args:
        source: BamSource or BAM path.
        minimal: Drop sequence, qualities and tags.
        chunk_size: Records pulled per read.

    Returns:
        AlignmentSet with the file header and the source attached.
    """
    if not isinstance(source, BamSource):
        source = BamSource(source)

    records: list[AlignmentRecord] = []
    with BamChunkReader(source, minimal=minimal) as reader:
        header = reader.header
        while chunk := reader.read_chunk(chunk_size):
            records.extend(chunk)

    logger.info(f"Loaded {len(records):,} alignments from {source.path.name}")
    return AlignmentSet(records=records, header=header, source=source)


def read_sorted_by_name(path: Path | str, mate_position_tag: str | None = None) -> list[AlignmentRecord]:
    """Read a BAM file without payloads, sorted by record name."""
    source = BamSource(path, mate_position_tag=mate_position_tag)
    records = load_alignments(source, minimal=True).records
    records.sort(key=lambda r: r.name)
    return records


# =============================================================================
# Writing
# =============================================================================


def _indexable(header: dict[str, Any]) -> bool:
    return all(int(sq["LN"]) <= MAX_BAI_SEQUENCE_LENGTH for sq in header.get("SQ", []))


def index_bam(path: Path | str, header: dict[str, Any] | None = None) -> Path | None:
    """Create a BAI index unless a reference is too long for one."""
    if header is not None and not _indexable(header):
        logger.warning(f"Not indexing {Path(path).name}: reference longer than BAI limit")
        return None
    pysam.index(str(path))
    return Path(str(path) + ".bai")


def write_alignments(
    records: Iterable[AlignmentRecord],
    path: Path | str,
    header: dict[str, Any],
    index: bool = True,
) -> Path:
    """Write records to a coordinate-sorted (and indexed) BAM file.

    Args:
        records: Records to write.
        path: Destination BAM path.
        header: Header dictionary listing every reference used.
        index: Create a BAI index next to the file.

    Returns:
        The destination path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    unsorted = path.with_name(path.name + ".unsorted.bam")

    sam_header = pysam.AlignmentHeader.from_dict(header)
    n = 0
    with pysam.AlignmentFile(str(unsorted), "wb", header=sam_header) as out:
        for record in records:
            out.write(record_to_segment(record, sam_header))
            n += 1

    pysam.sort("-o", str(path), str(unsorted))
    unsorted.unlink()
    if index:
        index_bam(path, header)

    logger.debug(f"Wrote {n:,} alignments to {path}")
    return path


def merge_bams(paths: list[Path], destination: Path | str, header: dict[str, Any]) -> Path:
    """Merge coordinate-sorted BAM files into one indexed file."""
    destination = Path(destination)
    pysam.merge("-f", str(destination), *[str(p) for p in paths])
    index_bam(destination, header)
    return destination


def copy_bam(path: Path, destination: Path | str) -> Path:
    """Copy a BAM file and its index, if any."""
    destination = Path(destination)
    shutil.copyfile(path, destination)
    bai = Path(str(path) + ".bai")
    if bai.exists():
        shutil.copyfile(bai, Path(str(destination) + ".bai"))
    return destination


def write_split(
    bins: dict[str, list[AlignmentRecord]],
    out_dir: Path | str,
    header: dict[str, Any],
) -> dict[str, Path]:
    """Write every non-empty category to ``<out_dir>/<label>.bam``.

    Args:
        bins: Category label to records.
        out_dir: Output directory (created if needed).
        header: Header dictionary for the output files.

    Returns:
        Mapping from label to written file.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    written = {}
    for label, records in bins.items():
        if not records:
            continue
        written[label] = write_alignments(records, out_dir / f"{label}.bam", header)

    logger.info(f"Wrote {len(written)} category files to {out_dir}")
    return written
