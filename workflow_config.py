"""
YAML configuration for the RNA-seq workflow.

A workflow file maps onto nested dataclasses::

    source:
      counts: data/GSE60450_Lactation-GenewiseCounts.txt
      metadata: data/SampleInfo.txt
      sample_column: FileName
      sample_id_extract: "^([^_]+)"
      sample_id_pattern: "\\."
      sample_id_replacement: "-"
    filter:
      group_covariates: [CellType, Status]
    differential:
      formula: "~0 + group"
      contrasts:
        - groupbasal.pregnant - groupbasal.lactate
    enrichment:
      sources:
        - {type: msigdb, category: mh.all, dbver: 2023.2.Mm}

Unknown keys raise ConfigError; invalid statistical parameters raise
ThresholdConfigError.
"""

from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging
import yaml

from workflow_errors import ConfigError, ThresholdConfigError
from tidy_counts import SampleIdRule, GROUP
from normalization import NORMALIZATION_METHODS
from dimensionality import REDUCTION_METHODS
from de_analysis import WEIGHTING_METHODS

logger = logging.getLogger(__name__)

DE_METHODS = ("limma_voom", "deseq2")
GENE_SET_SOURCES = ("gmt", "yaml", "enrichr", "msigdb")


def _build(cls, data: Optional[Dict[str, Any]], section: str):
    """Instantiate a config dataclass, rejecting unknown keys."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Section '{section}' must be a mapping, got {type(data).__name__}.",
            details={"section": section},
        )
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in '{section}': {', '.join(unknown)}. "
            f"Allowed: {', '.join(sorted(known))}.",
            details={"section": section, "unknown": unknown},
        )
    return cls(**data)


def _is_remote(location: str) -> bool:
    return str(location).startswith(("http://", "https://"))


def _resolve(location: Optional[str], base_dir: Optional[Path]) -> Optional[str]:
    if location is None or base_dir is None or _is_remote(location):
        return location
    path = Path(location)
    return str(path if path.is_absolute() else base_dir / path)


@dataclass
class SourceConfig:
    """Where the inputs live and how their sample ids line up."""

    counts: Optional[str] = None
    metadata: Optional[str] = None
    gene_column: str = "EntrezGeneID"
    length_column: Optional[str] = "Length"
    sample_column: str = "FileName"
    sample_id_extract: Optional[str] = None
    sample_id_pattern: Optional[str] = None
    sample_id_replacement: str = ""
    symbols: Optional[str] = None  # delimited id → symbol table
    symbol_id_column: str = "EntrezGeneID"
    symbol_column: str = "Symbols"
    mygene_species: Optional[str] = None  # e.g. "mouse"; queries MyGene.info

    def sample_id_rule(self) -> Optional[SampleIdRule]:
        if not (self.sample_id_extract or self.sample_id_pattern):
            return None
        return SampleIdRule(
            extract=self.sample_id_extract,
            pattern=self.sample_id_pattern,
            replacement=self.sample_id_replacement,
        )

    def validate(self) -> None:
        if self.symbols and self.mygene_species:
            raise ConfigError(
                "Use either 'symbols' or 'mygene_species', not both.",
                details={"section": "source"},
            )


@dataclass
class FilterConfig:
    group_covariates: List[str] = field(default_factory=list)
    group_sep: str = "."
    factor_of_interest: Optional[str] = GROUP
    min_count: float = 10
    min_total_count: float = 15
    large_n: float = 10
    min_proportion: float = 0.7

    def validate(self) -> None:
        for name in ("min_count", "min_total_count", "large_n"):
            value = getattr(self, name)
            if value < 0:
                raise ThresholdConfigError(
                    f"filter.{name} must be >= 0, got {value}", details={name: value}
                )
        if not 0 <= self.min_proportion <= 1:
            raise ThresholdConfigError(
                f"filter.min_proportion must be within [0, 1], got {self.min_proportion}",
                details={"min_proportion": self.min_proportion},
            )


@dataclass
class NormalizationConfig:
    method: str = "TMM"
    reference: Optional[str] = None
    logratio_trim: float = 0.3
    sum_trim: float = 0.05

    def validate(self) -> None:
        if self.method not in NORMALIZATION_METHODS:
            raise ConfigError(
                f"Unknown normalization method '{self.method}'. "
                f"Use one of {list(NORMALIZATION_METHODS)}.",
                details={"method": self.method},
            )
        for name in ("logratio_trim", "sum_trim"):
            value = getattr(self, name)
            if not 0 <= value < 0.5:
                raise ThresholdConfigError(
                    f"normalization.{name} must be within [0, 0.5), got {value}",
                    details={name: value},
                )


@dataclass
class ReductionConfig:
    methods: List[str] = field(default_factory=lambda: ["MDS"])
    dims: int = 2
    top: int = 500
    scale: bool = False
    color_by: Optional[str] = GROUP
    symbol_by: Optional[str] = None

    def validate(self) -> None:
        unknown = [m for m in self.methods if m not in REDUCTION_METHODS]
        if unknown:
            raise ConfigError(
                f"Unknown reduction method(s) {unknown}. Use {list(REDUCTION_METHODS)}.",
                details={"methods": unknown},
            )
        if self.dims < 1:
            raise ThresholdConfigError(
                f"reduction.dims must be >= 1, got {self.dims}", details={"dims": self.dims}
            )
        if self.top < 1:
            raise ThresholdConfigError(
                f"reduction.top must be >= 1, got {self.top}", details={"top": self.top}
            )


@dataclass
class DifferentialConfig:
    formula: str = "~0 + group"
    contrasts: List[Union[str, Dict[str, float]]] = field(default_factory=list)
    method: str = "limma_voom"
    weighting: str = "voom"
    lfc_threshold: Optional[float] = None
    padj_threshold: float = 0.05
    span: float = 0.5

    def validate(self) -> None:
        if not self.contrasts:
            raise ConfigError(
                "differential.contrasts must list at least one contrast.",
                details={"section": "differential"},
            )
        if self.method not in DE_METHODS:
            raise ConfigError(
                f"Unknown DE method '{self.method}'. Use one of {list(DE_METHODS)}.",
                details={"method": self.method},
            )
        if self.weighting not in WEIGHTING_METHODS:
            raise ConfigError(
                f"Unknown weighting '{self.weighting}'. Use one of {list(WEIGHTING_METHODS)}.",
                details={"weighting": self.weighting},
            )
        if self.lfc_threshold is not None and self.lfc_threshold < 0:
            raise ThresholdConfigError(
                f"differential.lfc_threshold must be >= 0, got {self.lfc_threshold}",
                details={"lfc_threshold": self.lfc_threshold},
            )
        if not 0 < self.padj_threshold <= 1:
            raise ThresholdConfigError(
                f"differential.padj_threshold must be within (0, 1], got {self.padj_threshold}",
                details={"padj_threshold": self.padj_threshold},
            )
        if not 0 < self.span <= 1:
            raise ThresholdConfigError(
                f"differential.span must be within (0, 1], got {self.span}",
                details={"span": self.span},
            )


@dataclass
class EnrichmentConfig:
    """
    Gene-set sources and CAMERA options.

    Each source is a mapping with a ``type`` of gmt/yaml (``path``),
    enrichr (``library``, ``organism``) or msigdb (``category``, ``dbver``).
    """

    sources: List[Dict[str, Any]] = field(default_factory=list)
    method: str = "camera"
    key: str = "gene_id"
    inter_gene_cor: Optional[float] = 0.01
    use_ranks: bool = False
    min_size: int = 2
    max_size: Optional[int] = None
    n_jobs: Optional[int] = None

    def validate(self) -> None:
        for source in self.sources:
            kind = source.get("type") if isinstance(source, dict) else None
            if kind not in GENE_SET_SOURCES:
                raise ConfigError(
                    f"Gene-set source {source!r} needs a type in {list(GENE_SET_SOURCES)}.",
                    details={"source": source},
                )
            if kind in ("gmt", "yaml") and "path" not in source:
                raise ConfigError(
                    f"Gene-set source of type '{kind}' needs a 'path'.", details={"source": source}
                )
            if kind == "enrichr" and "library" not in source:
                raise ConfigError(
                    "Gene-set source of type 'enrichr' needs a 'library'.", details={"source": source}
                )
        if self.key not in ("gene_id", "symbol"):
            raise ConfigError(
                f"enrichment.key must be 'gene_id' or 'symbol', got '{self.key}'.",
                details={"key": self.key},
            )
        if self.inter_gene_cor is not None and not -1 < self.inter_gene_cor < 1:
            raise ThresholdConfigError(
                f"enrichment.inter_gene_cor must be within (-1, 1), got {self.inter_gene_cor}",
                details={"inter_gene_cor": self.inter_gene_cor},
            )
        if self.min_size < 1:
            raise ThresholdConfigError(
                f"enrichment.min_size must be >= 1, got {self.min_size}",
                details={"min_size": self.min_size},
            )
        if self.max_size is not None and self.max_size < self.min_size:
            raise ThresholdConfigError(
                f"enrichment.max_size ({self.max_size}) is below min_size ({self.min_size})",
                details={"min_size": self.min_size, "max_size": self.max_size},
            )


@dataclass
class OutputConfig:
    outdir: str = "results"
    excel: bool = True
    pdf: bool = False
    html_figures: bool = True
    embed_figures: bool = False
    top_n_labels: int = 10
    n_top_genes: int = 6
    heatmap_genes: int = 500


@dataclass
class WorkflowConfig:
    """Complete workflow configuration."""

    source: SourceConfig = field(default_factory=SourceConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    differential: DifferentialConfig = field(default_factory=DifferentialConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    SECTIONS = {
        "source": SourceConfig,
        "filter": FilterConfig,
        "normalization": NormalizationConfig,
        "reduction": ReductionConfig,
        "differential": DifferentialConfig,
        "enrichment": EnrichmentConfig,
        "output": OutputConfig,
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "WorkflowConfig":
        """
        Build and validate a configuration from a parsed YAML mapping.

        Relative local paths are resolved against ``base_dir``.
        """
        if not isinstance(data, dict):
            raise ConfigError("Workflow configuration must be a mapping.")
        unknown = sorted(set(data) - set(cls.SECTIONS))
        if unknown:
            raise ConfigError(
                f"Unknown section(s): {', '.join(unknown)}. "
                f"Allowed: {', '.join(cls.SECTIONS)}.",
                details={"unknown": unknown},
            )
        sections = {name: _build(kind, data.get(name), name) for name, kind in cls.SECTIONS.items()}
        config = cls(**sections)

        source = config.source
        source.counts = _resolve(source.counts, base_dir)
        source.metadata = _resolve(source.metadata, base_dir)
        source.symbols = _resolve(source.symbols, base_dir)
        for entry in config.enrichment.sources:
            if "path" in entry:
                entry["path"] = _resolve(entry["path"], base_dir)
        if base_dir is not None:
            config.output.outdir = _resolve(config.output.outdir, base_dir)

        config.validate()
        return config

    def validate(self) -> None:
        self.source.validate()
        self.filter.validate()
        self.normalization.validate()
        self.reduction.validate()
        self.differential.validate()
        self.enrichment.validate()

    def settings(self) -> Dict[str, Any]:
        """Flat key → value view used for report settings sheets."""
        flat = {}
        for section, values in asdict(self).items():
            for key, value in values.items():
                flat[f"{section}.{key}"] = value
        flat["formula"] = self.differential.formula
        flat["padj_threshold"] = self.differential.padj_threshold
        flat["min_count"] = self.filter.min_count
        flat["min_total_count"] = self.filter.min_total_count
        return flat


def load_config(config_path) -> WorkflowConfig:
    """
    Load a workflow configuration from YAML.

    Args:
        config_path: Path to YAML config file

    Returns:
        Validated WorkflowConfig

    Raises:
        ConfigError: missing file, malformed YAML, unknown keys
        ThresholdConfigError: invalid statistical parameters
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigError(f"Workflow config not found: {config_path}", details={"location": str(config_path)})

    with open(config_file, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Cannot parse {config_path}: {e}", details={"location": str(config_path)}
            ) from e

    config = WorkflowConfig.from_dict(data, base_dir=config_file.parent)
    logger.info(f"Loaded workflow config {config_path}")
    return config
