"""
Linear models for log-expression data with precision weights.

Implements the limma workflow on numpy/scipy:

    design = build_design_matrix(samples, "~0 + group + lane")
    contrasts = make_contrasts(["groupA - groupB"], design.columns)
    v = voom(counts, design, lib_size)
    fit = e_bayes(contrasts_fit(lm_fit(v.expression, design, v.weights), contrasts))
    table = top_table(fit, "groupA - groupB")

Per-gene weighted least squares is solved for all genes at once with
batched normal equations.
"""

import ast
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from workflow_errors import ConfigError, FormatError, ModelRankError, ThresholdConfigError

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"

# Fewer genes than this cannot support a mean-variance trend
MIN_TREND_GENES = 10

ContrastSpec = Union[str, Mapping[str, float]]


# =============================================================================
# Design matrices
# =============================================================================


def parse_formula(formula: Union[str, Sequence[str]]) -> Tuple[List[str], bool]:
    """
    Split a model formula into covariate names and an intercept flag.

    ``"~0 + group + lane"`` → (["group", "lane"], False)
    ``"~ group"`` → (["group"], True). A list of names means no intercept.
    """
    if not isinstance(formula, str):
        return list(formula), False

    text = formula.strip()
    if text.startswith("~"):
        text = text[1:]
    terms = [t.strip() for t in text.split("+") if t.strip()]

    intercept = True
    covariates = []
    for term in terms:
        if term in ("0", "-1"):
            intercept = False
        elif term == "1":
            intercept = True
        elif re.search(r"[:*^()|/-]", term):
            raise ConfigError(
                f"Unsupported term '{term}' in formula '{formula}'. "
                f"Only additive main effects are supported.",
                details={"formula": formula, "term": term},
            )
        else:
            covariates.append(term)

    if not covariates:
        raise ConfigError(
            f"Formula '{formula}' names no covariates.", details={"formula": formula}
        )
    return covariates, intercept


def _levels(values: pd.Series) -> List[str]:
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [str(c) for c in values.cat.remove_unused_categories().cat.categories]
    return sorted(values.astype(str).unique())


def _is_continuous(values: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values)


def build_design_matrix(
    samples: pd.DataFrame, formula: Union[str, Sequence[str]]
) -> pd.DataFrame:
    """
    Model matrix for one row per sample.

    Without an intercept the first factor is cell-means coded (one column per
    level) and later factors are treatment coded against their first level.
    Columns are named ``<covariate><level>``, e.g. ``groupbasal.lactate``.
    Numeric covariates enter as a single continuous column.

    Args:
        samples: one row per sample, indexed by sample id
        formula: "~0 + a + b" style formula or list of covariate names

    Returns:
        samples × coefficients float DataFrame
    """
    covariates, intercept = parse_formula(formula)
    missing = [c for c in covariates if c not in samples.columns]
    if missing:
        raise FormatError(
            f"Covariates {missing} not found in sample table. "
            f"Available: {', '.join(map(str, samples.columns))}",
            details={"missing": missing},
        )

    columns: Dict[str, np.ndarray] = {}
    if intercept:
        columns[INTERCEPT] = np.ones(len(samples))

    for position, cov in enumerate(covariates):
        values = samples[cov]
        if values.isna().any():
            bad = values[values.isna()].index.tolist()
            raise FormatError(
                f"Covariate '{cov}' is missing for samples {bad}.",
                details={"covariate": cov, "samples": bad},
            )
        if _is_continuous(values):
            columns[cov] = values.to_numpy(dtype=float)
            continue
        levels = _levels(values)
        as_str = values.astype(str).to_numpy()
        keep = levels if (position == 0 and not intercept) else levels[1:]
        for level in keep:
            columns[f"{cov}{level}"] = (as_str == level).astype(float)

    design = pd.DataFrame(columns, index=samples.index)
    design.index.name = samples.index.name
    return design


def non_estimable(design: pd.DataFrame, tol: float = 1e-7) -> List[str]:
    """
    Coefficients that are linear combinations of earlier columns.

    Columns are visited in order; a column whose residual after projection on
    the retained columns is negligible is reported, so the later of two
    confounded columns is named.
    """
    x = design.to_numpy(dtype=float)
    kept: List[int] = []
    dropped: List[str] = []
    for j in range(x.shape[1]):
        col = x[:, j]
        norm = np.linalg.norm(col)
        if norm == 0:
            dropped.append(design.columns[j])
            continue
        if kept:
            q, _ = np.linalg.qr(x[:, kept])
            resid = col - q @ (q.T @ col)
        else:
            resid = col
        if np.linalg.norm(resid) <= tol * norm:
            dropped.append(design.columns[j])
        else:
            kept.append(j)
    return dropped


def check_estimable(design: pd.DataFrame) -> int:
    """
    Verify the design has full column rank and residual degrees of freedom.

    Returns:
        residual degrees of freedom

    Raises:
        ModelRankError: naming the non-estimable coefficient(s)
    """
    dropped = non_estimable(design)
    if dropped:
        raise ModelRankError(
            f"Coefficients not estimable: {', '.join(dropped)}. "
            f"Suggestion: remove covariates confounded with the factor of interest.",
            details={"coefficients": dropped},
        )
    df_residual = design.shape[0] - design.shape[1]
    if df_residual <= 0:
        raise ModelRankError(
            f"No residual degrees of freedom: {design.shape[0]} samples for "
            f"{design.shape[1]} coefficients. Suggestion: add replicates.",
            details={"samples": design.shape[0], "coefficients": design.shape[1]},
        )
    return df_residual


# =============================================================================
# Contrasts
# =============================================================================


class _LinearCombination:
    """Evaluates a parsed contrast expression into coefficient weights."""

    def __init__(self, names: Dict[str, int], n: int, contrast: str):
        self.names = names
        self.n = n
        self.contrast = contrast

    def fail(self, message: str):
        raise ConfigError(
            f"Invalid contrast '{self.contrast}': {message}",
            details={"contrast": self.contrast},
        )

    def visit(self, node) -> Tuple[np.ndarray, float]:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return np.zeros(self.n), float(node.value)
        if isinstance(node, ast.Name):
            if node.id not in self.names:
                self.fail(f"unknown coefficient '{node.id}'")
            vec = np.zeros(self.n)
            vec[self.names[node.id]] = 1.0
            return vec, 0.0
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
            vec, const = self.visit(node.operand)
            sign = -1.0 if isinstance(node.op, ast.USub) else 1.0
            return sign * vec, sign * const
        if isinstance(node, ast.BinOp):
            lv, lc = self.visit(node.left)
            rv, rc = self.visit(node.right)
            if isinstance(node.op, ast.Add):
                return lv + rv, lc + rc
            if isinstance(node.op, ast.Sub):
                return lv - rv, lc - rc
            if isinstance(node.op, ast.Mult):
                if not lv.any():
                    return lc * rv, lc * rc
                if not rv.any():
                    return rc * lv, rc * lc
                self.fail("product of two coefficients is not linear")
            if isinstance(node.op, ast.Div):
                if rv.any() or rc == 0:
                    self.fail("can only divide by a non-zero number")
                return lv / rc, lc / rc
        self.fail(f"unsupported expression '{type(node).__name__}'")


def parse_contrast(expression: str, design_columns: Sequence[str]) -> np.ndarray:
    """
    Weights over ``design_columns`` for an expression like
    ``"(groupA + groupB)/2 - groupC"``.

    Column names may contain characters such as ``.`` or ``-``; they are
    matched longest first before the arithmetic is parsed.
    """
    placeholders: Dict[str, int] = {}
    text = expression
    for name in sorted(design_columns, key=len, reverse=True):
        token = f"__coef{len(placeholders)}__"
        pattern = r"(?<![\w.])" + re.escape(name) + r"(?![\w.])"
        text, n_subs = re.subn(pattern, token, text)
        if n_subs:
            placeholders[token] = list(design_columns).index(name)

    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise ConfigError(
            f"Invalid contrast '{expression}': {e.msg}", details={"contrast": expression}
        ) from e

    evaluator = _LinearCombination(placeholders, len(design_columns), expression)
    vec, const = evaluator.visit(tree)
    if const != 0:
        evaluator.fail("contains a constant term")
    if not vec.any():
        evaluator.fail("all coefficient weights are zero")
    return vec


def make_contrasts(
    contrasts: Union[Sequence[ContrastSpec], Mapping[str, ContrastSpec]],
    design_columns: Sequence[str],
) -> pd.DataFrame:
    """
    Contrast matrix (coefficients × contrasts).

    Args:
        contrasts: expressions, ``{coefficient: weight}`` dicts, or a mapping
            from contrast name to either
        design_columns: coefficient names of the design matrix

    Raises:
        ConfigError: unknown coefficient or malformed expression, naming the
            contrast
    """
    design_columns = list(design_columns)
    if isinstance(contrasts, Mapping):
        items = list(contrasts.items())
    else:
        items = []
        for entry in contrasts:
            if isinstance(entry, Mapping):
                name = " + ".join(f"{w:g}*{k}" for k, w in entry.items())
            else:
                name = str(entry).strip()
            items.append((name, entry))

    if not items:
        raise ConfigError("At least one contrast is required.")

    matrix = {}
    for name, entry in items:
        if isinstance(entry, Mapping):
            unknown = [k for k in entry if k not in design_columns]
            if unknown:
                raise ConfigError(
                    f"Invalid contrast '{name}': unknown coefficients {unknown}",
                    details={"contrast": name, "unknown": unknown},
                )
            vec = np.array([float(entry.get(c, 0.0)) for c in design_columns])
            if not vec.any():
                raise ConfigError(
                    f"Invalid contrast '{name}': all coefficient weights are zero",
                    details={"contrast": name},
                )
        else:
            vec = parse_contrast(str(entry), design_columns)
        if name in matrix:
            raise ConfigError(f"Duplicated contrast '{name}'.", details={"contrast": name})
        matrix[name] = vec

    return pd.DataFrame(matrix, index=design_columns)


# =============================================================================
# Linear model fits
# =============================================================================


@dataclass
class LinearFit:
    """Per-gene linear model fit (MArrayLM-like)."""

    coefficients: pd.DataFrame  # genes × coefficients (or contrasts)
    stdev_unscaled: pd.DataFrame  # genes × coefficients
    sigma: pd.Series  # residual standard deviation per gene
    df_residual: np.ndarray  # per gene
    cov_unscaled: np.ndarray  # genes × k × k
    amean: pd.Series  # average log-expression per gene
    design: pd.DataFrame
    contrasts: Optional[pd.DataFrame] = None
    # Empirical Bayes moderation
    s2_prior: Optional[float] = None
    df_prior: Optional[float] = None
    s2_post: Optional[pd.Series] = None
    df_total: Optional[np.ndarray] = None
    t: Optional[pd.DataFrame] = None
    p_value: Optional[pd.DataFrame] = None
    treat_lfc: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index


def _as_gene_matrix(values, like: pd.DataFrame) -> np.ndarray:
    if isinstance(values, pd.DataFrame):
        values = values.reindex(index=like.index, columns=like.columns).to_numpy(dtype=float)
    values = np.asarray(values, dtype=float)
    if values.shape != like.shape:
        raise FormatError(
            f"Weights shape {values.shape} does not match expression shape {like.shape}.",
            details={"weights": list(values.shape), "expression": list(like.shape)},
        )
    return values


def lm_fit(
    expression: pd.DataFrame,
    design: pd.DataFrame,
    weights: Optional[Union[pd.DataFrame, np.ndarray]] = None,
) -> LinearFit:
    """
    Weighted least squares fit of every gene on the design.

    Args:
        expression: genes × samples log-expression
        design: samples × coefficients (rows matched to expression columns)
        weights: genes × samples precision weights (default: 1)
    """
    if set(design.index) != set(expression.columns):
        raise FormatError(
            "Design rows do not match expression columns.",
            details={
                "design_only": sorted(set(design.index) - set(expression.columns)),
                "expression_only": sorted(set(expression.columns) - set(design.index)),
            },
        )
    design = design.loc[expression.columns]
    df_residual = check_estimable(design)

    y = expression.to_numpy(dtype=float)
    x = design.to_numpy(dtype=float)
    w = np.ones_like(y) if weights is None else _as_gene_matrix(weights, expression)

    xtwx = np.einsum("np,gn,nq->gpq", x, w, x)
    xtwy = np.einsum("np,gn,gn->gp", x, w, y)
    cov = np.linalg.inv(xtwx)
    coef = np.einsum("gpq,gq->gp", cov, xtwy)

    resid = y - coef @ x.T
    sigma2 = (w * resid**2).sum(axis=1) / df_residual
    stdev = np.sqrt(np.einsum("gpp->gp", cov))

    genes = expression.index
    return LinearFit(
        coefficients=pd.DataFrame(coef, index=genes, columns=design.columns),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=design.columns),
        sigma=pd.Series(np.sqrt(sigma2), index=genes),
        df_residual=np.full(len(genes), float(df_residual)),
        cov_unscaled=cov,
        amean=pd.Series(y.mean(axis=1), index=genes),
        design=design,
    )


def contrasts_fit(fit: LinearFit, contrasts: pd.DataFrame) -> LinearFit:
    """
    Re-express a fit in terms of contrasts of its coefficients.

    Standard errors use each gene's own unscaled covariance, so they are exact
    under per-observation weights.
    """
    if list(contrasts.index) != list(fit.coefficients.columns):
        contrasts = contrasts.reindex(fit.coefficients.columns)
        if contrasts.isna().any().any():
            raise ConfigError(
                "Contrast matrix rows do not match the design coefficients.",
                details={"coefficients": list(fit.coefficients.columns)},
            )
    c = contrasts.to_numpy(dtype=float)
    coef = fit.coefficients.to_numpy() @ c
    cov = np.einsum("pk,gpq,ql->gkl", c, fit.cov_unscaled, c)
    stdev = np.sqrt(np.einsum("gkk->gk", cov))
    genes = fit.genes
    return replace(
        fit,
        coefficients=pd.DataFrame(coef, index=genes, columns=contrasts.columns),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=contrasts.columns),
        cov_unscaled=cov,
        contrasts=contrasts,
        s2_prior=None,
        df_prior=None,
        s2_post=None,
        df_total=None,
        t=None,
        p_value=None,
        treat_lfc=None,
    )


# =============================================================================
# voom
# =============================================================================


@dataclass
class VoomResult:
    """log-CPM values with observation-level precision weights."""

    expression: pd.DataFrame  # genes × samples log2-CPM
    weights: pd.DataFrame  # genes × samples
    design: pd.DataFrame
    lib_size: pd.Series
    trend_x: np.ndarray  # mean log2 count per trend gene
    trend_y: np.ndarray  # sqrt residual standard deviation per trend gene
    trend_fitted: bool = True


def _interpolator(x: np.ndarray, y: np.ndarray):
    """Linear interpolation with constant extrapolation; tied x averaged."""
    frame = pd.DataFrame({"x": x, "y": y}).groupby("x", sort=True)["y"].mean()
    xs, ys = frame.index.to_numpy(), frame.to_numpy()
    return lambda v: np.interp(v, xs, ys)


def voom(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    lib_size: Optional[pd.Series] = None,
    span: float = 0.5,
) -> VoomResult:
    """
    Transform counts to log2-CPM and estimate precision weights.

    The square-root residual standard deviation of each gene is smoothed
    against its mean log count with lowess; every observation is weighted by
    the inverse of the predicted variance at its fitted count. Genes with
    zero counts in every sample do not contribute to the trend.

    Args:
        counts: genes × samples raw counts
        design: samples × coefficients
        lib_size: effective library sizes (library size × normalization factor)
        span: lowess smoothing fraction
    """
    counts = counts.astype(float)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = lib_size.reindex(counts.columns).astype(float)
    lib = lib_size.to_numpy()

    expression = np.log2((counts + 0.5).div(lib + 1, axis=1) * 1e6)
    fit = lm_fit(expression, design)

    sx = fit.amean.to_numpy() + np.mean(np.log2(lib + 1)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma.to_numpy())
    informative = counts.sum(axis=1).to_numpy() > 0
    sx, sy = sx[informative], sy[informative]

    if informative.sum() < MIN_TREND_GENES:
        logger.warning(
            f"Only {int(informative.sum())} genes available for the voom "
            f"mean-variance trend; using unit weights"
        )
        weights = pd.DataFrame(1.0, index=counts.index, columns=counts.columns)
        return VoomResult(expression, weights, fit.design, lib_size, sx, sy, trend_fitted=False)

    smoothed = lowess(sy, sx, frac=span, it=3, return_sorted=True)
    trend = _interpolator(smoothed[:, 0], smoothed[:, 1])

    x = fit.design.to_numpy(dtype=float)
    fitted = fit.coefficients.to_numpy() @ x.T
    fitted_count = 1e-6 * 2.0**fitted * (lib + 1)
    predicted = trend(np.log2(fitted_count))
    # Lowess can dip to zero at the edges of the trend
    positive = smoothed[:, 1][smoothed[:, 1] > 0]
    predicted = np.maximum(predicted, positive.min() if positive.size else 1e-8)
    weights = pd.DataFrame(1.0 / predicted**4, index=counts.index, columns=counts.columns)

    logger.info(f"voom trend fitted on {int(informative.sum())} genes")
    return VoomResult(expression, weights, fit.design, lib_size, sx, sy)


# =============================================================================
# Empirical Bayes
# =============================================================================


def trigamma_inverse(x: np.ndarray, max_iter: int = 50) -> np.ndarray:
    """Solve trigamma(y) = x for y by Newton iteration."""
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.empty_like(x)
    big = x > 1e7
    small = x < 1e-6
    mid = ~(big | small)
    y[big] = 1.0 / np.sqrt(x[big])
    y[small] = 1.0 / x[small]

    if mid.any():
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(max_iter):
            tri = special.polygamma(1, ym)
            dif = tri * (1 - tri / xm) / special.polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse did not converge")
        y[mid] = ym
    return y


def fit_f_dist(s2: np.ndarray, df1: np.ndarray) -> Tuple[float, float]:
    """
    Moment estimation of the scaled-F prior for sample variances.

    Returns:
        (s2_prior, df_prior); df_prior is inf when the variances are no more
        dispersed than sampling error alone explains
    """
    s2 = np.asarray(s2, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), s2.shape)
    ok = np.isfinite(s2) & np.isfinite(df1) & (df1 > 1e-15)
    x, d = s2[ok], df1[ok]
    n = x.size
    if n == 0:
        return float("nan"), float("nan")
    if n == 1:
        return float(x[0]), 0.0

    x = np.maximum(x, 0)
    m = float(np.median(x))
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - special.digamma(d / 2) + np.log(d / 2)
    emean = e.mean()
    evar = np.sum((e - emean) ** 2) / (n - 1) - np.mean(special.polygamma(1, d / 2))
    if evar > 0:
        df2 = 2 * float(trigamma_inverse(evar)[0])
        s20 = float(np.exp(emean + special.digamma(df2 / 2) - np.log(df2 / 2)))
    else:
        df2 = float("inf")
        s20 = float(np.exp(emean))
    return s20, df2


def squeeze_var(s2: np.ndarray, df: np.ndarray) -> Tuple[np.ndarray, float, float]:
    """Posterior variances shrunk toward the fitted prior."""
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    s2_prior, df_prior = fit_f_dist(s2, df)
    if np.isinf(df_prior):
        post = np.full_like(s2, s2_prior)
    else:
        post = (df_prior * s2_prior + df * s2) / (df_prior + df)
    return post, s2_prior, df_prior


def e_bayes(fit: LinearFit) -> LinearFit:
    """
    Moderated t-statistics by empirical Bayes shrinkage of gene variances.

    Total degrees of freedom are capped at the pooled residual degrees of
    freedom across genes.
    """
    s2 = fit.sigma.to_numpy() ** 2
    s2_post, s2_prior, df_prior = squeeze_var(s2, fit.df_residual)
    df_pooled = float(np.sum(fit.df_residual))
    df_total = np.minimum(fit.df_residual + df_prior, df_pooled)

    se = fit.stdev_unscaled.to_numpy() * np.sqrt(s2_post)[:, None]
    t = fit.coefficients.to_numpy() / se
    p = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    logger.info(f"eBayes: prior df {df_prior:.3g}, prior variance {s2_prior:.3g}")
    return replace(
        fit,
        s2_prior=s2_prior,
        df_prior=df_prior,
        s2_post=pd.Series(s2_post, index=fit.genes),
        df_total=df_total,
        t=pd.DataFrame(t, index=fit.genes, columns=fit.coefficients.columns),
        p_value=pd.DataFrame(p, index=fit.genes, columns=fit.coefficients.columns),
        treat_lfc=None,
    )


def treat(fit: LinearFit, lfc: float = np.log2(1.2)) -> LinearFit:
    """
    Test H0: |coefficient| <= lfc against |coefficient| > lfc.

    With lfc = 0 this is the ordinary moderated t-test. Larger thresholds
    never decrease a p-value.

    Raises:
        ThresholdConfigError: for negative lfc
    """
    if lfc < 0:
        raise ThresholdConfigError(
            f"Fold-change threshold must be >= 0, got {lfc}", details={"lfc": lfc}
        )
    moderated = fit if fit.s2_post is not None else e_bayes(fit)
    coef = moderated.coefficients.to_numpy()
    se = moderated.stdev_unscaled.to_numpy() * np.sqrt(moderated.s2_post.to_numpy())[:, None]
    df = moderated.df_total[:, None]

    acoef = np.abs(coef)
    t_right = (acoef - lfc) / se
    t_left = (acoef + lfc) / se
    p = stats.t.sf(t_right, df) + stats.t.sf(t_left, df)
    t = np.sign(coef) * np.maximum(t_right, 0)

    columns = moderated.coefficients.columns
    return replace(
        moderated,
        t=pd.DataFrame(t, index=fit.genes, columns=columns),
        p_value=pd.DataFrame(np.minimum(p, 1.0), index=fit.genes, columns=columns),
        treat_lfc=float(lfc),
    )


# =============================================================================
# Result tables
# =============================================================================


def adjust_bh(pvalues: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values; NaN entries stay NaN."""
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full_like(pvalues, np.nan)
    ok = np.isfinite(pvalues)
    if ok.any():
        adjusted[ok] = multipletests(pvalues[ok], method="fdr_bh")[1]
    return adjusted


def top_table(fit: LinearFit, coef: str) -> pd.DataFrame:
    """
    Per-gene statistics for one coefficient or contrast, BH-adjusted within
    that contrast, in gene order.
    """
    if fit.p_value is None:
        raise ValueError("Fit has no test statistics. Call e_bayes() or treat() first.")
    if coef not in fit.coefficients.columns:
        raise ConfigError(
            f"Unknown contrast '{coef}'. Available: {list(fit.coefficients.columns)}",
            details={"contrast": coef},
        )
    pvalues = fit.p_value[coef].to_numpy()
    return pd.DataFrame(
        {
            "gene_id": fit.genes.astype(str),
            "contrast": coef,
            "log2FoldChange": fit.coefficients[coef].to_numpy(),
            "AveExpr": fit.amean.to_numpy(),
            "stat": fit.t[coef].to_numpy(),
            "pvalue": pvalues,
            "padj": adjust_bh(pvalues),
        }
    )
