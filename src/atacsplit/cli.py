"""Command-line interface for atacsplit.

This module provides the main entry point for the atacsplit CLI tool.
It uses Click to define commands and rich for console output.

Commands:
    split: Split a BAM file into nucleosome categories
    tsse: Compute the TSS enrichment score of a BAM file

Example:
    $ atacsplit --help
    $ atacsplit split --bam sample.bam --out-dir split
    $ atacsplit split --bam sample.bam --out-dir split --genome hg38.fa \\
        --conservation phastCons.bw --transcripts transcripts.bed
    $ atacsplit tsse --bam sample.bam --transcripts transcripts.bed -o profile.tsv
"""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from atacsplit import __version__
from atacsplit.config import Config
from atacsplit.errors import AtacSplitError
from atacsplit.utils.logging import setup_logging

# Initialize rich console for pretty output
console = Console()


def _fail(ctx: click.Context, error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    if ctx.obj.get("verbose"):
        console.print_exception()
    raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="atacsplit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
@click.option("-q", "--quiet", is_flag=True, help="Suppress non-error output.")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Also write debug-level logs to this file.",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool, log_file: Path | None) -> None:
    """atacsplit: split ATAC-seq fragments into nucleosome categories.

    Fragments are binned by size and, given conservation scores and a
    genome, refined with a random forest. The TSS enrichment score
    summarises signal at promoters.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    verbosity = 0 if quiet else (2 if verbose else 1)
    setup_logging(verbosity=verbosity, log_file=log_file)


# =============================================================================
# split command
# =============================================================================


@main.command("split")
@click.option(
    "-b",
    "--bam",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Input BAM file.",
)
@click.option(
    "-o",
    "--out-dir",
    type=click.Path(path_type=Path),
    help="Directory for <label>.bam output files.",
)
@click.option(
    "--genome",
    type=click.Path(exists=True, path_type=Path),
    help="Reference genome FASTA (refinement).",
)
@click.option(
    "--conservation",
    type=click.Path(exists=True, path_type=Path),
    help="Conservation bigWig; enables classifier refinement.",
)
@click.option(
    "--transcripts",
    type=click.Path(exists=True, path_type=Path),
    help="Transcript BED file (refinement).",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="YAML configuration file.",
)
@click.option("--cutoff", type=float, help="Classifier probability cutoff.")
@click.option("--training-fraction", type=float, help="Top-coverage fraction used for training.")
@click.option("--chunk-size", type=int, help="Records per chunk when streaming.")
@click.option("--min-mapq", type=int, default=0, show_default=True, help="Minimum mapping quality.")
@click.option(
    "--as-mates",
    is_flag=True,
    help="Keep mates of a name-collated BAM in the same chunk.",
)
@click.option("--mate-tag", help="Auxiliary tag holding the mate position.")
@click.option(
    "--stream/--no-stream",
    default=False,
    show_default=True,
    help="Split in chunks without loading the whole file (needs --out-dir).",
)
@click.pass_context
def split_cmd(
    ctx: click.Context,
    bam: Path,
    out_dir: Path | None,
    genome: Path | None,
    conservation: Path | None,
    transcripts: Path | None,
    config_path: Path | None,
    cutoff: float | None,
    training_fraction: float | None,
    chunk_size: int | None,
    min_mapq: int,
    as_mates: bool,
    mate_tag: str | None,
    stream: bool,
) -> None:
    """Split a BAM file into fragment size categories.

    Examples:

        atacsplit split -b sample.bam -o split

        atacsplit split -b sample.bam -o split --stream --chunk-size 500000

        atacsplit split -b sample.bam -o split --genome hg38.fa
            --conservation phastCons.bw --transcripts tx.bed
    """
    from atacsplit.core.split import split_alignments_by_cut
    from atacsplit.io.bam import AlignmentSet, BamSource, load_alignments
    from atacsplit.io.bed import read_intervals_bed
    from atacsplit.io.conservation import BigWigConservation
    from atacsplit.io.fasta import GenomeAccessor

    try:
        config = Config.load(config_path)
        if cutoff is not None:
            config.refine.cutoff = cutoff
        if training_fraction is not None:
            config.training.training_fraction = training_fraction
        if chunk_size is not None:
            config.streaming.chunk_size = chunk_size
            config.features.chunk_size = chunk_size

        refine = conservation is not None
        if refine and (genome is None or transcripts is None):
            raise click.UsageError("--conservation requires --genome and --transcripts")
        if stream and out_dir is None:
            raise click.UsageError("--stream requires --out-dir")

        source = BamSource(
            bam, min_mapq=min_mapq, as_mates=as_mates, mate_position_tag=mate_tag
        )
        if stream:
            alignments = AlignmentSet(source=source)
        else:
            alignments = load_alignments(source)

        if not ctx.obj["quiet"]:
            console.print(f"[blue]Input:[/blue] {bam}")
            if out_dir is not None:
                console.print(f"[blue]Output directory:[/blue] {out_dir}")
            if refine:
                console.print(f"[blue]Conservation:[/blue] {conservation}")

        if refine:
            with GenomeAccessor(genome) as fasta, BigWigConservation(conservation) as cons:
                bins = split_alignments_by_cut(
                    alignments,
                    transcripts=read_intervals_bed(transcripts),
                    genome=fasta,
                    conservation=cons,
                    out_dir=out_dir,
                    config=config,
                )
        else:
            bins = split_alignments_by_cut(alignments, out_dir=out_dir, config=config)

    except (AtacSplitError, OSError, ValueError) as e:
        _fail(ctx, e)

    if not ctx.obj["quiet"]:
        table = Table(title="Fragment categories")
        table.add_column("Category")
        table.add_column("Records", justify="right")
        for label, records in bins.items():
            table.add_row(label, f"{len(records):,}")
        console.print(table)


# =============================================================================
# tsse command
# =============================================================================


@main.command("tsse")
@click.option(
    "-b",
    "--bam",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Input BAM file.",
)
@click.option(
    "-t",
    "--transcripts",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Transcript BED file.",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="YAML configuration file.",
)
@click.option("--upstream", type=int, help="Bases upstream of the TSS.")
@click.option("--downstream", type=int, help="Bases downstream of the TSS.")
@click.option("--end-size", type=int, help="Width of each background flank.")
@click.option("--width", type=int, help="Sliding window width.")
@click.option("--step", type=int, help="Sliding window step (default: width).")
@click.option("--pseudocount", type=float, help="Added to every coverage position.")
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=Path),
    help="Write the averaged profile as TSV.",
)
@click.pass_context
def tsse_cmd(
    ctx: click.Context,
    bam: Path,
    transcripts: Path,
    config_path: Path | None,
    upstream: int | None,
    downstream: int | None,
    end_size: int | None,
    width: int | None,
    step: int | None,
    pseudocount: float | None,
    output: Path | None,
) -> None:
    """Compute the TSS enrichment score.

    Examples:

        atacsplit tsse -b sample.bam -t tx.bed

        atacsplit tsse -b sample.bam -t tx.bed --width 50 -o profile.tsv
    """
    import attrs

    from atacsplit.core.tsse import tss_enrichment_score
    from atacsplit.io.bam import AlignmentSet, BamSource
    from atacsplit.io.bed import read_intervals_bed

    try:
        tss_config = Config.load(config_path).tss
        overrides = {
            "upstream": upstream,
            "downstream": downstream,
            "end_size": end_size,
            "width": width,
            "step": step,
            "pseudocount": pseudocount,
        }
        tss_config = attrs.evolve(
            tss_config, **{k: v for k, v in overrides.items() if v is not None}
        )

        alignments = AlignmentSet(source=BamSource(bam))
        result = tss_enrichment_score(alignments, read_intervals_bed(transcripts), tss_config)
    except (AtacSplitError, OSError, ValueError) as e:
        _fail(ctx, e)

    if output is not None:
        with open(output, "w") as f:
            f.write("bin\tvalue\n")
            for i, value in enumerate(result.values, 1):
                f.write(f"{i}\t{value:.6g}\n")
        if not ctx.obj["quiet"]:
            console.print(f"[green]Wrote profile:[/green] {output}")

    console.print(f"TSS enrichment score: [bold]{result.score:.4f}[/bold]")


if __name__ == "__main__":
    main()
