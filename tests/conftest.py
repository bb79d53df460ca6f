"""Pytest configuration and shared fixtures for atacsplit tests.

Fixtures are organized by category:

- Record fixtures: build AlignmentRecord objects and BAM files
- Genome fixtures: FASTA files and in-memory sequence providers
- Collaborator fakes: conservation providers and classifiers
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import numpy as np
import pysam
import pytest

from atacsplit.io.bam import AlignmentRecord
from atacsplit.utils.intervals import GenomicInterval

SEQLENGTHS = {"chr1": 10_000, "chr2": 5_000}


# =============================================================================
# Record Fixtures
# =============================================================================


def _make_record(
    name: str,
    start: int,
    read_length: int = 50,
    template_length: int | None = 100,
    seqid: str = "chr1",
    reverse: bool = False,
    **kwargs,
) -> AlignmentRecord:
    flag = kwargs.pop("flag", 0x1 | (0x10 if reverse else 0))
    return AlignmentRecord(
        name=name,
        reference_name=seqid,
        reference_start=start,
        cigar=f"{read_length}M",
        template_length=template_length,
        flag=flag,
        **kwargs,
    )


@pytest.fixture
def make_record() -> Callable[..., AlignmentRecord]:
    """Factory for alignment records with a read_length-bp match CIGAR."""
    return _make_record


@pytest.fixture
def make_pair() -> Callable[..., list[AlignmentRecord]]:
    """Factory for the two mates of a fragment starting at ``start``."""

    def factory(
        name: str,
        start: int,
        fragment_length: int,
        read_length: int = 30,
        seqid: str = "chr1",
    ) -> list[AlignmentRecord]:
        mate_start = start + fragment_length - read_length
        return [
            _make_record(
                name, start, read_length, fragment_length, seqid,
                flag=0x1 | 0x2 | 0x20 | 0x40,
                next_reference_name=seqid, next_reference_start=mate_start,
            ),
            _make_record(
                name, mate_start, read_length, -fragment_length, seqid,
                flag=0x1 | 0x2 | 0x10 | 0x80,
                next_reference_name=seqid, next_reference_start=start,
            ),
        ]

    return factory


@pytest.fixture
def size_records() -> list[AlignmentRecord]:
    """One record per default size bin, lengths 50 to 700."""
    lengths = [50, 150, 200, 300, 400, 500, 600, 700]
    return [
        _make_record(f"frag{i}", 100 * i, template_length=length)
        for i, length in enumerate(lengths)
    ]


@pytest.fixture
def bam_header() -> dict:
    """SAM header for the synthetic genome."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": name, "LN": length} for name, length in SEQLENGTHS.items()],
    }


def _write_bam(
    records: list[AlignmentRecord],
    path: Path,
    header: dict,
    sort: bool = True,
) -> Path:
    """Write records with plain pysam calls, optionally sorted and indexed."""
    unsorted = path.with_suffix(".unsorted.bam") if sort else path
    sam_header = pysam.AlignmentHeader.from_dict(header)
    with pysam.AlignmentFile(str(unsorted), "wb", header=sam_header) as out:
        for rec in records:
            seg = pysam.AlignedSegment(sam_header)
            seg.query_name = rec.name
            seg.flag = rec.flag
            seg.reference_name = rec.reference_name
            seg.reference_start = rec.reference_start
            seg.mapping_quality = rec.mapping_quality
            seg.cigarstring = rec.cigar
            if rec.next_reference_name is not None:
                seg.next_reference_name = rec.next_reference_name
            seg.next_reference_start = rec.next_reference_start
            seg.template_length = rec.template_length or 0
            if rec.query_sequence is not None:
                seg.query_sequence = rec.query_sequence
                if rec.query_qualities is not None:
                    seg.query_qualities = pysam.qualitystring_to_array(rec.query_qualities)
            if rec.tags:
                seg.set_tags(list(rec.tags))
            out.write(seg)
    if sort:
        pysam.sort("-o", str(path), str(unsorted))
        unsorted.unlink()
        pysam.index(str(path))
    return path


@pytest.fixture
def write_bam(bam_header: dict) -> Callable[..., Path]:
    """Factory writing records to a BAM file (sorted and indexed by default)."""

    def factory(records: list[AlignmentRecord], path: Path, sort: bool = True) -> Path:
        return _write_bam(records, path, bam_header, sort=sort)

    return factory


@pytest.fixture
def mixed_pairs(make_pair) -> list[AlignmentRecord]:
    """Twelve paired fragments spread over all default size bins."""
    lengths = [60, 80, 150, 190, 200, 260, 400, 500, 590, 600, 700, 90]
    records = []
    for i, length in enumerate(lengths):
        records.extend(make_pair(f"pair{i:02d}", 200 + 700 * i, length))
    return records


@pytest.fixture
def mixed_bam(tmp_path: Path, write_bam, mixed_pairs) -> Path:
    """Sorted, indexed BAM of ``mixed_pairs``."""
    return write_bam(mixed_pairs, tmp_path / "mixed.bam")


# =============================================================================
# Genome Fixtures
# =============================================================================


@pytest.fixture
def synthetic_fasta(tmp_path: Path) -> Path:
    """FASTA with chr1 (ACGT repeats) and chr2 (all G then all A)."""
    fasta_path = tmp_path / "genome.fa"
    sequences = {
        "chr1": "ACGT" * (SEQLENGTHS["chr1"] // 4),
        "chr2": "G" * 2500 + "A" * 2500,
    }
    with open(fasta_path, "w") as f:
        for seqid, seq in sequences.items():
            f.write(f">{seqid}\n")
            for i in range(0, len(seq), 80):
                f.write(seq[i : i + 80] + "\n")
    return fasta_path


class FakeGenome:
    """In-memory sequence provider."""

    def __init__(self, sequences: dict[str, str]) -> None:
        self.sequences = sequences
        self.seqlengths = {name: len(seq) for name, seq in sequences.items()}
        self.calls: list[int] = []

    def get_sequences(self, intervals: list[GenomicInterval]) -> list[str]:
        self.calls.append(len(intervals))
        return [self.sequences[iv.seqid][iv.start : iv.end] for iv in intervals]


@pytest.fixture
def fake_genome() -> FakeGenome:
    """Sequence provider with ACGT repeats on chr1 and GC-only chr2."""
    return FakeGenome(
        {
            "chr1": "ACGT" * (SEQLENGTHS["chr1"] // 4),
            "chr2": "GC" * (SEQLENGTHS["chr2"] // 2),
        }
    )


# =============================================================================
# Collaborator Fakes
# =============================================================================


class FakeConservation:
    """Conservation provider scoring every interval with a callable."""

    def __init__(self, score: Callable[[GenomicInterval], float] = lambda iv: 0.5) -> None:
        self.score = score
        self.calls: list[list[GenomicInterval]] = []

    def scores(
        self,
        intervals: list[GenomicInterval],
        summary_fun: str = "mean",
        population: str | None = None,
    ) -> list[GenomicInterval]:
        self.calls.append(list(intervals))
        return [iv._replace(score=self.score(iv)) for iv in intervals]


@pytest.fixture
def fake_conservation() -> FakeConservation:
    """Provider returning 0.5 for every interval."""
    return FakeConservation()


class StubClassifier:
    """Classifier returning fixed or rule-based probabilities.

    Either ``probabilities`` (P(free), P(nucleosome) arrays in test row
    order) or ``rule`` (feature row -> (P(free), P(nucleosome))) is used.
    """

    def __init__(
        self,
        probabilities: tuple[list[float], list[float]] | None = None,
        rule: Callable[[np.ndarray], tuple[float, float]] | None = None,
    ) -> None:
        self.probabilities = probabilities
        self.rule = rule
        self.trained_with: tuple[np.ndarray, np.ndarray, int] | None = None

    def train(self, features: np.ndarray, labels: np.ndarray, n_trees: int) -> str:
        self.trained_with = (features, labels, n_trees)
        return "model"

    def predict_proba(self, model: str, features: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        if self.probabilities is not None:
            return np.asarray(self.probabilities[0]), np.asarray(self.probabilities[1])
        calls = [self.rule(row) for row in features]
        return np.array([c[0] for c in calls]), np.array([c[1] for c in calls])


def length_rule(row: np.ndarray) -> tuple[float, float]:
    """Call rows with fragment length above 120 nucleosome, others free."""
    return (0.0, 1.0) if row[0] > 120 else (1.0, 0.0)


@pytest.fixture
def length_classifier() -> StubClassifier:
    """Stub classifier splitting on the fragment length feature."""
    return StubClassifier(rule=length_rule)


# =============================================================================
# Training Data
# =============================================================================


@pytest.fixture
def training_records(make_record) -> list[AlignmentRecord]:
    """Single-read fragments forming one dense region per class on chr1.

    Nucleosome-free coverage: depth 20 on [1000, 1060), 1 on [2000, 2300),
    2 on [2300, 2400). Mononucleosome coverage: depth 20 on [5000, 5150),
    1 on [6000, 6600), 2 on [6600, 6900). Both give a threshold of 2 at
    training fraction 0.15.
    """
    records = []
    layout = [
        # (prefix, count, start, read length, template length)
        ("nf_peak", 20, 1000, 60, 60),
        ("nf_low", 1, 2000, 300, 90),
        ("nf_mid", 2, 2300, 100, 90),
        ("mono_peak", 20, 5000, 150, 200),
        ("mono_low", 1, 6000, 600, 200),
        ("mono_mid", 2, 6600, 300, 200),
    ]
    for prefix, count, start, read_length, tlen in layout:
        for i in range(count):
            records.append(make_record(f"{prefix}{i}", start, read_length, tlen))
    return records


@pytest.fixture
def training_transcripts() -> list[GenomicInterval]:
    """A "+" transcript with TSS at 1100 and a "-" transcript with TSS at 5199."""
    return [
        GenomicInterval("chr1", 1100, 1500, "+", name="tx1"),
        GenomicInterval("chr1", 4000, 5200, "-", name="tx2"),
    ]


@pytest.fixture
def make_classifier() -> type[StubClassifier]:
    """The stub classifier class, for tests that need fixed probabilities."""
    return StubClassifier


@pytest.fixture
def make_conservation() -> type[FakeConservation]:
    """The fake conservation provider class, for custom score functions."""
    return FakeConservation
