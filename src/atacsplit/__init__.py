"""atacsplit: split ATAC-seq fragments into nucleosome categories.

atacsplit bins aligned ATAC-seq fragments by template length into
nucleosome-free, mono-, di- and trinucleosome categories, optionally
refines that split with a random forest trained on fragment length,
conservation and GC content, and computes the TSS enrichment score.

Example:
    >>> import atacsplit
    >>> atacsplit.__version__
    '0.1.0'

Modules:
    io: BAM, FASTA, bigWig and BED adapters
    core: Size binning, training set construction, features, refinement,
        streaming and TSS enrichment
    utils: Interval operations and logging
"""

__version__ = "0.1.0"

from atacsplit.core.binning import split_by_size
from atacsplit.core.split import split_alignments_by_cut
from atacsplit.core.tsse import tss_enrichment_score

__all__ = [
    "__version__",
    "split_alignments_by_cut",
    "split_by_size",
    "tss_enrichment_score",
]
