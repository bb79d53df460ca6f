"""Core splitting and scoring logic for atacsplit.

This module contains the algorithms of the splitting pipeline:

- Size binning of fragments
- Training set construction from coverage
- Feature extraction and classifier refinement
- Chunked splitting of on-disk files
- TSS enrichment scoring

Example:
    >>> from atacsplit.core import split_alignments_by_cut, tss_enrichment_score
"""

from atacsplit.core.binning import assign_bins, split_by_size
from atacsplit.core.coverage import CoverageTrack
from atacsplit.core.features import FeatureExtractor, FeatureMatrix
from atacsplit.core.refine import FragmentRefiner, RandomForestBackend
from atacsplit.core.split import split_alignments_by_cut
from atacsplit.core.streaming import StreamingDriver
from atacsplit.core.training import TrainingSet, TrainingSetBuilder
from atacsplit.core.tsse import TSSEnrichment, tss_enrichment_score

__all__: list[str] = [
    # Size binning
    "assign_bins",
    "split_by_size",
    # Refinement
    "CoverageTrack",
    "FeatureExtractor",
    "FeatureMatrix",
    "FragmentRefiner",
    "RandomForestBackend",
    "TrainingSet",
    "TrainingSetBuilder",
    # Pipeline
    "StreamingDriver",
    "split_alignments_by_cut",
    # TSS enrichment
    "TSSEnrichment",
    "tss_enrichment_score",
]
