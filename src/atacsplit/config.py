"""Configuration management for atacsplit.

This module holds the typed settings for every stage of the pipeline.
Configuration can come from:
- Default values
- A YAML configuration file
- Command-line arguments (applied on top by the CLI)

Example:
    >>> from atacsplit.config import Config
    >>> config = Config.load("atacsplit.yaml")
    >>> config.refine.cutoff
    0.8
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any

import attrs
import yaml

from atacsplit.errors import ConfigurationError

# =============================================================================
# Default Configuration Values
# =============================================================================

# Fragment size bins following Buenrostro et al. (2013)
DEFAULT_BREAKS = (0.0, 100.0, 180.0, 247.0, 315.0, 473.0, 558.0, 615.0, math.inf)
DEFAULT_LABELS = (
    "NucleosomeFree",
    "inter1",
    "mononucleosome",
    "inter2",
    "dinucleosome",
    "inter3",
    "trinucleosome",
    "others",
)
DEFAULT_NUCLEOSOME_FREE_LABEL = "NucleosomeFree"
DEFAULT_MONONUCLEOSOME_LABEL = "mononucleosome"

# Training set construction
DEFAULT_TRAINING_FRACTION = 0.15
DEFAULT_MIN_ATOM_WIDTH = 40
DEFAULT_HALF_SIZE_OF_NUCLEOSOME = 80
DEFAULT_MAX_TRAINING_REGIONS = 100_000

# Feature extraction / streaming
DEFAULT_CHUNK_SIZE = 100_000
SUMMARY_FUNCTIONS = ("mean", "median", "max", "min")

# Refinement
DEFAULT_CUTOFF = 0.8

# TSS enrichment
DEFAULT_UPSTREAM = 1000
DEFAULT_DOWNSTREAM = 1000
DEFAULT_END_SIZE = 100
DEFAULT_WINDOW_WIDTH = 100
DEFAULT_LOESS_SPAN = 2 / 3


# =============================================================================
# Validators
# =============================================================================


def _positive(instance: Any, attribute: attrs.Attribute, value: float) -> None:
    if value <= 0:
        raise ConfigurationError(f"{attribute.name} must be > 0, got {value}")


def _non_negative(instance: Any, attribute: attrs.Attribute, value: float) -> None:
    if value < 0:
        raise ConfigurationError(f"{attribute.name} must be >= 0, got {value}")


def _probability(instance: Any, attribute: attrs.Attribute, value: float) -> None:
    if not 0 < value <= 1:
        raise ConfigurationError(f"{attribute.name} must be in (0, 1], got {value}")


# =============================================================================
# Configuration Classes
# =============================================================================


@attrs.define
class BinningConfig:
    """Fragment size bins.

    Bins are right-closed: a fragment of length ``n`` belongs to label
    ``i`` when ``breaks[i] < n <= breaks[i + 1]``.

    Attributes:
        breaks: Strictly increasing breakpoints, one more than labels.
        labels: Distinct category names.
        nucleosome_free_label: Label holding nucleosome-free fragments.
        mononucleosome_label: Label holding mononucleosome fragments.
    """

    breaks: tuple[float, ...] = attrs.field(default=DEFAULT_BREAKS, converter=tuple)
    labels: tuple[str, ...] = attrs.field(default=DEFAULT_LABELS, converter=tuple)
    nucleosome_free_label: str = DEFAULT_NUCLEOSOME_FREE_LABEL
    mononucleosome_label: str = DEFAULT_MONONUCLEOSOME_LABEL

    def validate(self) -> None:
        """Check the label scheme.

        Raises:
            ConfigurationError: If breaks and labels are inconsistent.
        """
        breaks = [float(b) for b in self.breaks]
        if len(breaks) != len(self.labels) + 1:
            raise ConfigurationError(
                f"Expected {len(self.labels) + 1} breaks for {len(self.labels)} labels, "
                f"got {len(breaks)}"
            )
        if any(math.isnan(b) for b in breaks):
            raise ConfigurationError("Breaks must not contain NaN")
        if any(not b < a for b, a in zip(breaks, breaks[1:])):
            raise ConfigurationError(f"Breaks must be strictly increasing: {breaks}")
        if len(set(self.labels)) != len(self.labels):
            raise ConfigurationError(f"Labels must be distinct: {list(self.labels)}")
        for name, label in (
            ("nucleosome_free_label", self.nucleosome_free_label),
            ("mononucleosome_label", self.mononucleosome_label),
        ):
            if label not in self.labels:
                raise ConfigurationError(f"{name} '{label}' is not one of {list(self.labels)}")
        if self.nucleosome_free_label == self.mononucleosome_label:
            raise ConfigurationError(
                "nucleosome_free_label and mononucleosome_label must differ"
            )


@attrs.define
class TrainingConfig:
    """Training set construction from coverage quantiles.

    Attributes:
        training_fraction: Fraction of top-coverage positions used for training.
        min_atom_width: Minimum width of a disjoint candidate region.
        half_size_of_nucleosome: Width candidate regions are re-centred to.
        max_training_regions: Cap on training regions per class.
    """

    training_fraction: float = attrs.field(
        default=DEFAULT_TRAINING_FRACTION, validator=_probability
    )
    min_atom_width: int = attrs.field(default=DEFAULT_MIN_ATOM_WIDTH, validator=_non_negative)
    half_size_of_nucleosome: int = attrs.field(
        default=DEFAULT_HALF_SIZE_OF_NUCLEOSOME, validator=_positive
    )
    max_training_regions: int = attrs.field(
        default=DEFAULT_MAX_TRAINING_REGIONS, validator=_positive
    )


@attrs.define
class FeatureConfig:
    """Feature extraction settings.

    Attributes:
        chunk_size: Intervals per provider call.
        summary: Per-interval conservation summary function name.
        population: Score population requested from the conservation source.
    """

    chunk_size: int = attrs.field(default=DEFAULT_CHUNK_SIZE, validator=_positive)
    summary: str = attrs.field(
        default="mean", validator=attrs.validators.in_(SUMMARY_FUNCTIONS)
    )
    population: str | None = None


@attrs.define
class RefineConfig:
    """Classifier-based refinement settings.

    Attributes:
        cutoff: Probability a call must reach.
        random_state: Seed for the random forest.
    """

    cutoff: float = attrs.field(default=DEFAULT_CUTOFF, validator=_probability)
    random_state: int | None = 0


@attrs.define
class StreamingConfig:
    """Chunked processing of on-disk alignments.

    Attributes:
        chunk_size: Records read per chunk.
        temp_dir: Parent directory for per-category temporary files.
    """

    chunk_size: int = attrs.field(default=DEFAULT_CHUNK_SIZE, validator=_positive)
    temp_dir: Path | None = attrs.field(
        default=None, converter=attrs.converters.optional(Path)
    )


@attrs.define
class TSSConfig:
    """TSS enrichment score settings.

    Attributes:
        upstream: Bases upstream of the TSS.
        downstream: Bases downstream of the TSS.
        end_size: Width of each end flank used as background.
        width: Sliding window width.
        step: Sliding window step; defaults to ``width``.
        pseudocount: Added to every coverage position.
        span: Fraction of points used by the local regression smoother.
    """

    upstream: int = attrs.field(default=DEFAULT_UPSTREAM, validator=_non_negative)
    downstream: int = attrs.field(default=DEFAULT_DOWNSTREAM, validator=_non_negative)
    end_size: int = attrs.field(default=DEFAULT_END_SIZE, validator=_positive)
    width: int = attrs.field(default=DEFAULT_WINDOW_WIDTH, validator=_positive)
    step: int | None = None
    pseudocount: float = 0.0
    span: float = attrs.field(default=DEFAULT_LOESS_SPAN, validator=_probability)

    @property
    def window_step(self) -> int:
        """Effective sliding window step."""
        return self.width if self.step is None else self.step

    def __attrs_post_init__(self) -> None:
        if self.step is not None and self.step <= 0:
            raise ConfigurationError(f"step must be > 0, got {self.step}")
        if self.upstream + self.downstream <= 0:
            raise ConfigurationError("upstream + downstream must be > 0")


@attrs.define
class Config:
    """Main configuration container for atacsplit.

    Attributes:
        binning: Fragment size bins.
        training: Training set construction.
        features: Feature extraction.
        refine: Classifier refinement.
        streaming: Chunked processing of on-disk input.
        tss: TSS enrichment scoring.
    """

    binning: BinningConfig = attrs.Factory(BinningConfig)
    training: TrainingConfig = attrs.Factory(TrainingConfig)
    features: FeatureConfig = attrs.Factory(FeatureConfig)
    refine: RefineConfig = attrs.Factory(RefineConfig)
    streaming: StreamingConfig = attrs.Factory(StreamingConfig)
    tss: TSSConfig = attrs.Factory(TSSConfig)

    _SECTIONS = {
        "binning": BinningConfig,
        "training": TrainingConfig,
        "features": FeatureConfig,
        "refine": RefineConfig,
        "streaming": StreamingConfig,
        "tss": TSSConfig,
    }

    @classmethod
    def load(cls, path: Path | str | None = None) -> Config:
        """Load configuration from a YAML file.

        Args:
            path: Path to configuration file. If None, returns defaults.

        Returns:
            Loaded configuration object.

        Raises:
            FileNotFoundError: If configuration file doesn't exist.
            ConfigurationError: If the file is not valid YAML or has unknown
                sections or keys.
        """
        if path is None:
            return cls()

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must hold a mapping of sections")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build a configuration from nested section dictionaries."""
        sections = {}
        for name, values in data.items():
            section_cls = cls._SECTIONS.get(name)
            if section_cls is None:
                raise ConfigurationError(f"Unknown configuration section: [{name}]")
            known = {a.name for a in attrs.fields(section_cls)}
            unknown = set(values) - known
            if unknown:
                raise ConfigurationError(
                    f"Unknown keys in [{name}]: {', '.join(sorted(unknown))}"
                )
            values = dict(values)
            if name == "binning" and "breaks" in values:
                values["breaks"] = [_parse_break(b) for b in values["breaks"]]
            sections[name] = section_cls(**values)

        config = cls(**sections)
        config.binning.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration.
        """
        return attrs.asdict(self, filter=lambda a, v: v is not None)

    def save(self, path: Path | str) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save configuration file.
        """
        data = attrs.asdict(
            self,
            filter=lambda a, v: v is not None,
            value_serializer=lambda inst, a, v: str(v) if isinstance(v, Path) else v,
        )
        with open(path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)


def _parse_break(value: Any) -> float:
    # YAML reads .inf as a float; "Inf" and "inf" arrive as strings
    if isinstance(value, str):
        return float(value.lower().replace("infinity", "inf"))
    return float(value)

