#!/usr/bin/env python3
"""
TBNI and Seagrass Analysis
==========================
Exploratory plots and logistic models relating the Tampa Bay Nekton Index
(TBNI) to seagrass cover and acreage, stratified by bay segment.

Outline:
- Station-level FIM records (TBNI score, bottom vegetation cover, acreage)
- Segment/year TBNI averages joined to segment seagrass acreage estimates
- TBNI action categories (On Alert / Caution / Stay the Course) and a
  binary indicator split at the category midpoint
- Binomial GLM and proportional-odds models with predictor x segment
  interactions, predicted probabilities with confidence bands
- Faceted exploratory and probability figures

License: MIT
"""

from __future__ import annotations

import argparse
import io
import logging
import tempfile
import warnings
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pyreadr
import requests
import seaborn as sns
import statsmodels.api as sm
from matplotlib.figure import Figure
from matplotlib.patches import Patch
from scipy.special import expit, logit
from statsmodels.miscmodels.ordinal_model import OrderedModel
from statsmodels.tools.numdiff import approx_fprime

# =============================================================================
# CONFIGURATION
# =============================================================================

class ActionCategory(Enum):
    """TBNI management action categories, lowest score first."""
    ON_ALERT = "On Alert"
    CAUTION = "Caution"
    STAY_THE_COURSE = "Stay the Course"

    @classmethod
    def from_bin(cls, index: int) -> "ActionCategory":
        members = list(cls)
        if not 1 <= index <= len(members):
            raise ValueError(f"Action bin must be between 1 and {len(members)}, got {index}")
        return members[index - 1]

    @classmethod
    def ordered_labels(cls) -> list[str]:
        return [member.value for member in cls]


class DataLevel(Enum):
    """Which analysis table a model scenario is fitted on."""
    STATION = "station"
    SEGMENT = "segment"


# Score and grouping columns for each analysis table
SCORE_COLUMNS = {DataLevel.STATION: "TBNI_Score", DataLevel.SEGMENT: "tbni"}
GROUP_COLUMNS = {DataLevel.STATION: "TBEP_seg", DataLevel.SEGMENT: "segment"}


@dataclass
class ModelScenario:
    """One predictor / grouping combination to fit, predict and plot."""
    name: str
    level: DataLevel
    predictor: str
    predictor_label: str
    free_scales: bool = False

    @property
    def score_column(self) -> str:
        return SCORE_COLUMNS[self.level]

    @property
    def group_column(self) -> str:
        return GROUP_COLUMNS[self.level]


@dataclass
class AnalysisConfig:
    """Configuration settings for the TBNI / seagrass analysis."""

    # File paths
    station_file: Path = Path("data/tbnidat.csv")
    diversity_file: Path = Path("data/divdat.csv")
    # Segment seagrass estimates archive (.RData); a local path or CSV also works
    seagrass_source: str = "https://github.com/tbep-tech/tbep-os-presentations/raw/master/data/sgsegest.RData"
    output_dir: Path = Path("tbni_seagrass_output")

    # TBNI action category breakpoints and binary midpoint
    action_breaks: tuple[float, float] = (32, 46)
    binary_midpoint: float = 39

    # Seagrass segment names -> bay segment codes (also the facet order)
    segment_names: dict = field(default_factory=lambda: {
        "Old Tampa Bay": "OTB",
        "Hillsborough Bay": "HB",
        "Middle Tampa Bay": "MTB",
        "Lower Tampa Bay": "LTB",
    })

    # Model settings
    grid_points: int = 100
    z_value: float = 1.96
    ordinal_method: str = "bfgs"
    max_iter: int = 2000

    # Plotting settings
    figure_dpi: int = 150
    figure_format: str = "png"
    category_colors: dict = field(default_factory=lambda: {
        ActionCategory.ON_ALERT.value: "#CC3231",
        ActionCategory.CAUTION.value: "#E9C318",
        ActionCategory.STAY_THE_COURSE.value: "#2DC938",
    })

    scenarios: list = field(default_factory=lambda: [
        ModelScenario("cover_station", DataLevel.STATION, "BottomVegCover",
                      "Bottom vegetation cover (%)", free_scales=False),
        ModelScenario("acres_station", DataLevel.STATION, "acres",
                      "Seagrass acres", free_scales=True),
        ModelScenario("acres_segment", DataLevel.SEGMENT, "acres",
                      "Seagrass acres", free_scales=True),
    ])

    @property
    def segment_codes(self) -> list[str]:
        return list(self.segment_names.values())


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(output_dir: Path) -> logging.Logger:
    """Configure logging to both file and console."""
    output_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("tbni_seagrass_analysis")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    # File handler - detailed logging
    fh = logging.FileHandler(output_dir / "analysis.log", mode='w')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    # Console handler - info and above
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter('%(levelname)-8s | %(message)s'))

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger


# =============================================================================
# DATA LOADING
# =============================================================================

R_DATA_SUFFIXES = ('.rdata', '.rda', '.rds')


def is_r_data(source: str) -> bool:
    return Path(str(source).split('?')[0]).suffix.lower() in R_DATA_SUFFIXES


def read_r_frame(path: str | Path) -> pd.DataFrame:
    """First data frame stored in an .RData / .rds file."""
    objects = pyreadr.read_r(str(path))
    if not objects:
        raise ValueError(f"No data frame found in {path}")
    return next(iter(objects.values()))


def read_r_bytes(content: bytes, suffix: str) -> pd.DataFrame:
    """Parse downloaded R data; pyreadr only reads from a file path."""
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / f"download{suffix}"
        path.write_bytes(content)
        return read_r_frame(path)


class TBNIDataLoader:
    """Loads the station table, the diversity table and seagrass estimates."""

    station_numeric_cols = [
        'month', 'year', 'StartDepth', 'BottomVegCover', 'BycatchQuantity',
        'TBNI_Score', 'acres', 'Non', 'HA', 'TH', 'SAV', 'Alg', 'RU',
        'temperature', 'salinity', 'dissolvedO2',
    ]

    diversity_renames = {'sgyear': 'year', 'TBNI_Score': 'tbni', 'TBEP_seg': 'segment'}

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def load_station_data(self) -> pd.DataFrame:
        """Load station-level FIM catch, habitat and TBNI records."""
        self.logger.info(f"Loading station data from {self.config.station_file}")

        df = pd.read_csv(
            self.config.station_file,
            dtype={'Reference': 'str', 'Season': 'str', 'TBEP_seg': 'str'},
            na_values=['NA', 'N/A', '', 'null', 'NULL'],
        )
        for col in self.station_numeric_cols:
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors='coerce')

        self.logger.info(f"Loaded {len(df):,} station records with {len(df.columns)} columns")
        return df

    def load_diversity_data(self) -> pd.DataFrame:
        """Load segment/year TBNI records as (year, tbni, segment)."""
        self.logger.info(f"Loading diversity data from {self.config.diversity_file}")

        df = pd.read_csv(self.config.diversity_file, na_values=['NA', ''])
        df = df[list(self.diversity_renames)].rename(columns=self.diversity_renames)
        df['year'] = pd.to_numeric(df['year'], errors='coerce')
        df['tbni'] = pd.to_numeric(df['tbni'], errors='coerce')

        self.logger.info(f"Loaded {len(df):,} diversity records")
        return df

    def load_seagrass_estimates(self) -> pd.DataFrame:
        """
        Load segment seagrass acreage estimates.

        The source is read once; a URL is fetched with requests and any HTTP
        or connection failure propagates. R data files (.RData / .rds) are
        parsed with pyreadr, anything else as CSV. Rows are limited to the
        four bay segments and relabelled to segment codes.
        """
        source = str(self.config.seagrass_source)
        if source.startswith(('http://', 'https://')):
            self.logger.info(f"Fetching seagrass estimates from {source}")
            response = requests.get(source)
            response.raise_for_status()
            if is_r_data(source):
                df = read_r_bytes(response.content, Path(source.split('?')[0]).suffix)
            else:
                df = pd.read_csv(io.BytesIO(response.content))
        else:
            self.logger.info(f"Loading seagrass estimates from {source}")
            df = read_r_frame(source) if is_r_data(source) else pd.read_csv(source)

        n_raw = len(df)
        df['segment'] = df['segment'].astype(str)
        df = df[df['segment'].isin(self.config.segment_names)].copy()
        df['segment'] = df['segment'].map(self.config.segment_names)
        df['year'] = pd.to_numeric(df['year'], errors='coerce')
        df['acres'] = pd.to_numeric(df['acres'], errors='coerce')
        df = df[['segment', 'year', 'acres']].reset_index(drop=True)

        self.logger.info(f"Kept {len(df):,} of {n_raw:,} seagrass estimates for "
                         f"{', '.join(self.config.segment_codes)}")
        return df


# =============================================================================
# OUTCOME DERIVATION
# =============================================================================

class OutcomeDeriver:
    """Derives TBNI action categories and the binary indicator from a score."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        low, high = config.action_breaks
        if not low < high:
            raise ValueError(f"action_breaks must be strictly increasing, got {config.action_breaks}")
        self.breaks = np.array([low, high], dtype=float)
        self.midpoint = float(config.binary_midpoint)
        self.logger = logger

    def action_bin(self, score: pd.Series) -> pd.Series:
        """Bin index 1-3: below first break, between breaks, at or above second break."""
        score = pd.to_numeric(score, errors='coerce')
        bins = pd.Series(np.digitize(score.to_numpy(dtype=float), self.breaks) + 1, index=score.index)
        return bins.where(score.notna()).astype('Int64')

    def action_category(self, bins: pd.Series) -> pd.Series:
        """Map bin indices to the ordered action category labels."""
        labels = [np.nan if pd.isna(b) else ActionCategory.from_bin(int(b)).value for b in bins]
        categorical = pd.Categorical(labels, categories=ActionCategory.ordered_labels(), ordered=True)
        return pd.Series(categorical, index=bins.index)

    def binary_outcome(self, score: pd.Series) -> pd.Series:
        """1 when the score is above the midpoint, 0 otherwise, missing when the score is."""
        score = pd.to_numeric(score, errors='coerce')
        return (score > self.midpoint).astype('Int64').where(score.notna())

    def derive(self, df: pd.DataFrame, score_col: str) -> pd.DataFrame:
        """Add `action_bin`, `action` and `outcome` columns derived from `score_col`."""
        df = df.copy()
        df['action_bin'] = self.action_bin(df[score_col])
        df['action'] = self.action_category(df['action_bin'])
        df['outcome'] = self.binary_outcome(df[score_col])

        counts = df['action'].value_counts(sort=False)
        self.logger.debug(f"Action categories from {score_col}: "
                          + ", ".join(f"{k}={v}" for k, v in counts.items()))
        n_missing = df['action_bin'].isna().sum()
        if n_missing > 0:
            self.logger.debug(f"  {n_missing:,} rows without a {score_col} value")
        return df


# =============================================================================
# SEGMENT JOIN
# =============================================================================

class SegmentJoiner:
    """Builds the segment/year table of mean TBNI and seagrass acreage."""

    keys = ['segment', 'year']

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def aggregate_diversity(self, diversity: pd.DataFrame) -> pd.DataFrame:
        """Average TBNI within each segment and year."""
        return diversity.groupby(self.keys, as_index=False)['tbni'].mean()

    def join(self, diversity: pd.DataFrame, seagrass: pd.DataFrame) -> pd.DataFrame:
        """Inner join on (segment, year); unmatched keys on either side are dropped."""
        self.logger.info("Joining segment TBNI with seagrass estimates...")

        tbni = self.aggregate_diversity(diversity)
        tomodseg = tbni.merge(seagrass[self.keys + ['acres']], on=self.keys, how='inner')

        if tomodseg.empty:
            raise ValueError("No (segment, year) keys shared by the diversity and seagrass tables")

        self.logger.info(f"  {len(tbni):,} segment-years with TBNI, {len(seagrass):,} with seagrass, "
                         f"{len(tomodseg):,} joined")
        return tomodseg.sort_values(self.keys).reset_index(drop=True)


# =============================================================================
# MODEL FITTING
# =============================================================================

def coefficient_table(result: Any) -> pd.DataFrame:
    """Tidy coefficient table for a fitted statsmodels result."""
    names = getattr(result.params, 'index', None)
    if names is None:
        names = result.model.exog_names
    return pd.DataFrame({
        'term': list(names),
        'estimate': np.asarray(result.params, dtype=float),
        'std_error': np.asarray(result.bse, dtype=float),
        'z': np.asarray(result.tvalues, dtype=float),
        'p_value': np.asarray(result.pvalues, dtype=float),
    })


class ModelFitter:
    """Fits binomial and proportional-odds models of predictor x group."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    @staticmethod
    def design_matrix(df: pd.DataFrame, predictor: str, group: str,
                      levels: list[str]) -> pd.DataFrame:
        """
        Predictor, treatment-coded group dummies and their products.

        The first entry of `levels` is the reference group. No constant
        column is included.
        """
        x = df[predictor].astype(float)
        dummies = pd.get_dummies(
            pd.Categorical(df[group], categories=levels),
            prefix=group, prefix_sep='', drop_first=True, dtype=float,
        )
        dummies.index = df.index

        design = pd.concat([x.rename(predictor), dummies], axis=1)
        for col in dummies.columns:
            design[f"{predictor}:{col}"] = x * dummies[col]
        return design

    def fit_binary(self, df: pd.DataFrame, predictor: str, group: str,
                   levels: list[str]) -> Any:
        """Logistic regression of `outcome` on predictor * group."""
        exog = sm.add_constant(self.design_matrix(df, predictor, group, levels), has_constant='add')
        endog = df['outcome'].astype(float)

        result = sm.GLM(endog, exog, family=sm.families.Binomial()).fit()

        if not result.converged:
            self.logger.warning(f"  Binomial model for {predictor} x {group} did not converge")
        self.logger.info(f"  Binomial fit: n={int(result.nobs):,}, deviance={result.deviance:.2f}")
        return result

    def fit_ordinal(self, df: pd.DataFrame, predictor: str, group: str,
                    levels: list[str]) -> Any:
        """Proportional-odds (logit) regression of `action` on predictor * group."""
        exog = self.design_matrix(df, predictor, group, levels)
        endog = df['action'].cat.remove_unused_categories()

        model = OrderedModel(endog, exog, distr='logit')
        result = model.fit(method=self.config.ordinal_method, maxiter=self.config.max_iter, disp=False)

        if not result.mle_retvals.get('converged', True):
            self.logger.warning(f"  Ordinal model for {predictor} x {group} did not converge")
        self.logger.info(f"  Ordinal fit: n={int(result.nobs):,}, levels={len(endog.cat.categories)}, "
                         f"log-likelihood={result.llf:.2f}")
        return result


# =============================================================================
# PREDICTION
# =============================================================================

class ProbabilityPredictor:
    """Predicted probabilities and confidence limits over a per-group grid."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def prediction_grid(self, df: pd.DataFrame, predictor: str, group: str,
                        levels: list[str]) -> pd.DataFrame:
        """Evenly spaced predictor values over each group's observed range."""
        frames = []
        for level in levels:
            values = df.loc[df[group] == level, predictor]
            frames.append(pd.DataFrame({
                group: level,
                'point': np.arange(self.config.grid_points),
                predictor: np.linspace(values.min(), values.max(), self.config.grid_points),
            }))
        grid = pd.concat(frames, ignore_index=True)
        self.logger.debug(f"  Prediction grid: {len(levels)} groups x {self.config.grid_points} points")
        return grid

    def predict_binary(self, result: Any, grid: pd.DataFrame, predictor: str, group: str,
                       levels: list[str]) -> pd.DataFrame:
        """
        Fitted probability with mean +/- z * se on the response scale.

        Bounds are a normal approximation and are not clipped, so they can
        fall outside [0, 1] where the curve approaches either boundary.
        """
        exog = sm.add_constant(ModelFitter.design_matrix(grid, predictor, group, levels),
                               has_constant='add')
        frame = result.get_prediction(exog).summary_frame()

        out = grid.copy()
        out['prob'] = frame['mean'].to_numpy()
        out['se'] = frame['mean_se'].to_numpy()
        out['lower'] = out['prob'] - self.config.z_value * out['se']
        out['upper'] = out['prob'] + self.config.z_value * out['se']
        return out

    def predict_ordinal(self, result: Any, grid: pd.DataFrame, predictor: str, group: str,
                        levels: list[str]) -> pd.DataFrame:
        """
        Per-category probabilities with delta-method confidence limits.

        Standard errors come from the numerical Jacobian of the category
        probabilities with respect to all model parameters and the
        Hessian-based covariance. Limits are formed on the logit of each
        probability and transformed back, so they stay within [0, 1].
        """
        exog = ModelFitter.design_matrix(grid, predictor, group, levels).to_numpy(dtype=float)
        params = np.asarray(result.params, dtype=float)
        labels = [str(label) for label in result.model.labels]

        def category_probs(p: np.ndarray) -> np.ndarray:
            return np.asarray(result.model.predict(p, exog=exog)).ravel()

        probs = category_probs(params)
        jacobian = approx_fprime(params, category_probs, centered=True)
        cov = np.asarray(result.cov_params(), dtype=float)
        se = np.sqrt(np.clip(np.einsum('ij,jk,ik->i', jacobian, cov, jacobian), 0, None))

        eps = np.finfo(float).eps
        p = np.clip(probs, eps, 1 - eps)
        se_logit = se / (p * (1 - p))
        lower = expit(logit(p) - self.config.z_value * se_logit)
        upper = expit(logit(p) + self.config.z_value * se_logit)

        out = grid.loc[grid.index.repeat(len(labels))].reset_index(drop=True)
        out['level'] = pd.Categorical(
            np.tile(labels, len(grid)), categories=ActionCategory.ordered_labels(), ordered=True
        )
        out['prob'] = probs
        out['se'] = se
        out['lower'] = lower
        out['upper'] = upper
        return out


# =============================================================================
# VISUALIZATION
# =============================================================================

class TBNIVisualizer:
    """Builds faceted exploratory and probability figures in memory."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.labels = ActionCategory.ordered_labels()
        self.palette = dict(config.category_colors)

    @staticmethod
    def _facet_axes(parent: Any, n: int, sharex: bool, sharey: bool) -> list:
        """Grid of panels, two per row, with unused panels hidden."""
        ncols = 2 if n > 1 else 1
        nrows = int(np.ceil(n / ncols))
        axes = parent.subplots(nrows, ncols, sharex=sharex, sharey=sharey, squeeze=False).ravel()
        for ax in axes[n:]:
            ax.set_visible(False)
        return list(axes[:n])

    def _category_legend(self, fig: Any) -> None:
        handles = [Patch(facecolor=self.palette[label], label=label) for label in self.labels]
        fig.legend(handles=handles, loc='lower center', ncol=len(handles), frameon=False)

    def exploratory_figure(self, df: pd.DataFrame, scenario: ModelScenario,
                           levels: list[str]) -> Figure:
        """Score vs predictor scatter with OLS trend, and predictor by category boxplots."""
        self.logger.info(f"  Creating exploratory figure for {scenario.name}...")
        x, y, group = scenario.predictor, scenario.score_column, scenario.group_column

        fig = plt.figure(figsize=(14, 7), layout='constrained')
        left, right = fig.subfigures(1, 2)

        scatter_axes = self._facet_axes(left, len(levels), sharex=not scenario.free_scales, sharey=True)
        for ax, level in zip(scatter_axes, levels):
            sub = df[df[group] == level]
            sns.scatterplot(data=sub, x=x, y=y, hue='action', hue_order=self.labels,
                            palette=self.palette, ax=ax, legend=False)
            sns.regplot(data=sub, x=x, y=y, scatter=False, ci=None, color='black',
                        line_kws={'linewidth': 1}, ax=ax)
            ax.set_title(level)
            ax.set_xlabel(scenario.predictor_label)
            ax.set_ylabel('TBNI')

        box_axes = self._facet_axes(right, len(levels), sharex=True, sharey=not scenario.free_scales)
        for ax, level in zip(box_axes, levels):
            sub = df[df[group] == level]
            sns.boxplot(data=sub, x='action', y=x, order=self.labels, hue='action',
                        hue_order=self.labels, palette=self.palette, legend=False, ax=ax)
            ax.set_title(level)
            ax.set_xlabel('')
            ax.set_ylabel(scenario.predictor_label)

        self._category_legend(fig)
        return fig

    def binary_probability_figure(self, predictions: pd.DataFrame, df: pd.DataFrame,
                                  scenario: ModelScenario, levels: list[str]) -> Figure:
        """Probability of TBNI above the midpoint with band and observation rugs."""
        self.logger.info(f"  Creating binary probability figure for {scenario.name}...")
        x, group = scenario.predictor, scenario.group_column

        fig = plt.figure(figsize=(10, 8), layout='constrained')
        axes = self._facet_axes(fig, len(levels), sharex=not scenario.free_scales, sharey=True)
        for ax, level in zip(axes, levels):
            pred = predictions[predictions[group] == level]
            obs = df[df[group] == level]

            ax.fill_between(pred[x], pred['lower'], pred['upper'], color='grey', alpha=0.3)
            ax.plot(pred[x], pred['prob'], color='black', linewidth=1.5)

            # Observed outcomes as rugs on the bottom (0) and top (1) edges
            for flag in (0, 1):
                xs = obs.loc[obs['outcome'] == flag, x]
                ax.plot(xs, np.full(len(xs), float(flag)), '|', color='black',
                        markersize=8, alpha=0.5, clip_on=False)

            ax.set_ylim(0, 1)
            ax.set_title(level)
            ax.set_xlabel(scenario.predictor_label)
            ax.set_ylabel(f"Pr(TBNI > {self.config.binary_midpoint:g})")
        return fig

    def ordinal_probability_figure(self, predictions: pd.DataFrame, scenario: ModelScenario,
                                   levels: list[str]) -> Figure:
        """Category probability ribbons and stacked areas per group."""
        self.logger.info(f"  Creating ordinal probability figure for {scenario.name}...")
        x, group = scenario.predictor, scenario.group_column

        fig = plt.figure(figsize=(14, 7), layout='constrained')
        left, right = fig.subfigures(1, 2)

        ribbon_axes = self._facet_axes(left, len(levels), sharex=not scenario.free_scales, sharey=True)
        for ax, level in zip(ribbon_axes, levels):
            sub = predictions[predictions[group] == level]
            for label in self.labels:
                cat = sub[sub['level'] == label]
                if cat.empty:
                    continue
                ax.fill_between(cat[x], cat['lower'], cat['upper'], color=self.palette[label], alpha=0.3)
                ax.plot(cat[x], cat['prob'], color=self.palette[label], linewidth=1.5)
            ax.set_ylim(0, 1)
            ax.set_title(level)
            ax.set_xlabel(scenario.predictor_label)
            ax.set_ylabel('Probability')

        area_axes = self._facet_axes(right, len(levels), sharex=not scenario.free_scales, sharey=True)
        for ax, level in zip(area_axes, levels):
            sub = predictions[predictions[group] == level]
            wide = sub.assign(level=sub['level'].astype(str)).pivot(index='point', columns='level', values='prob')
            xs = sub.drop_duplicates('point').set_index('point')[x].reindex(wide.index)
            present = [label for label in self.labels if label in wide.columns]
            ax.stackplot(xs, *[wide[label] for label in present],
                         colors=[self.palette[label] for label in present])
            ax.set_ylim(0, 1)
            ax.set_title(level)
            ax.set_xlabel(scenario.predictor_label)
            ax.set_ylabel('Probability')

        self._category_legend(fig)
        return fig


# =============================================================================
# ANALYSIS PIPELINE
# =============================================================================

@dataclass
class ScenarioResult:
    """Fits, predictions and figures for one model scenario."""
    scenario: ModelScenario
    data: pd.DataFrame
    levels: list[str]
    binary_fit: Any
    ordinal_fit: Any
    binary_predictions: pd.DataFrame
    ordinal_predictions: pd.DataFrame
    figures: dict[str, Figure] = field(default_factory=dict)


@dataclass
class AnalysisResults:
    station: pd.DataFrame
    tomodseg: pd.DataFrame
    scenarios: dict[str, ScenarioResult] = field(default_factory=dict)


class TBNISeagrassAnalysis:
    """Runs load, derive, join and the fit / predict / plot scenarios."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.loader = TBNIDataLoader(config, logger)
        self.deriver = OutcomeDeriver(config, logger)
        self.joiner = SegmentJoiner(logger)
        self.fitter = ModelFitter(config, logger)
        self.predictor = ProbabilityPredictor(config, logger)
        self.visualizer = TBNIVisualizer(config, logger)

    def prepare_tables(self) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Load sources and build the station and segment analysis tables."""
        self.logger.info("=" * 60)
        self.logger.info("DATA PREPARATION")
        self.logger.info("=" * 60)

        station = self.loader.load_station_data()
        diversity = self.loader.load_diversity_data()
        seagrass = self.loader.load_seagrass_estimates()

        station = self.deriver.derive(station, SCORE_COLUMNS[DataLevel.STATION])
        tomodseg = self.joiner.join(diversity, seagrass)
        tomodseg = self.deriver.derive(tomodseg, SCORE_COLUMNS[DataLevel.SEGMENT])
        return station, tomodseg

    def group_levels(self, values: pd.Series) -> list[str]:
        """Observed groups, configured bay segments first."""
        present = set(values.dropna().astype(str))
        ordered = [code for code in self.config.segment_codes if code in present]
        return ordered + sorted(present - set(ordered))

    def model_frame(self, df: pd.DataFrame, scenario: ModelScenario) -> pd.DataFrame:
        """Complete rows for a scenario's score, predictor and group."""
        cols = [scenario.group_column, scenario.predictor, scenario.score_column]
        data = df.dropna(subset=cols).copy()
        data[scenario.group_column] = data[scenario.group_column].astype(str)

        n_dropped = len(df) - len(data)
        if n_dropped > 0:
            self.logger.info(f"  Dropped {n_dropped:,} rows with missing {', '.join(cols)}")
        if data.empty:
            raise ValueError(f"No complete rows to fit for scenario {scenario.name}")
        return data

    def run_scenario(self, df: pd.DataFrame, scenario: ModelScenario) -> ScenarioResult:
        """Fit both models, predict over the grid and build the figures."""
        self.logger.info("=" * 60)
        self.logger.info(f"SCENARIO: {scenario.name} ({scenario.predictor} x {scenario.group_column})")
        self.logger.info("=" * 60)

        data = self.model_frame(df, scenario)
        x, group = scenario.predictor, scenario.group_column
        levels = self.group_levels(data[group])
        self.logger.info(f"  {len(data):,} rows across groups {', '.join(levels)}")

        binary_fit = self.fitter.fit_binary(data, x, group, levels)
        ordinal_fit = self.fitter.fit_ordinal(data, x, group, levels)

        grid = self.predictor.prediction_grid(data, x, group, levels)
        binary_predictions = self.predictor.predict_binary(binary_fit, grid, x, group, levels)
        ordinal_predictions = self.predictor.predict_ordinal(ordinal_fit, grid, x, group, levels)

        figures = {
            'exploratory': self.visualizer.exploratory_figure(data, scenario, levels),
            'binary': self.visualizer.binary_probability_figure(binary_predictions, data, scenario, levels),
            'ordinal': self.visualizer.ordinal_probability_figure(ordinal_predictions, scenario, levels),
        }

        return ScenarioResult(
            scenario=scenario,
            data=data,
            levels=levels,
            binary_fit=binary_fit,
            ordinal_fit=ordinal_fit,
            binary_predictions=binary_predictions,
            ordinal_predictions=ordinal_predictions,
            figures=figures,
        )

    def run(self, station: Optional[pd.DataFrame] = None,
            tomodseg: Optional[pd.DataFrame] = None) -> AnalysisResults:
        """Run every configured scenario; tables are loaded unless both are given."""
        if station is None or tomodseg is None:
            station, tomodseg = self.prepare_tables()

        tables = {DataLevel.STATION: station, DataLevel.SEGMENT: tomodseg}
        results = AnalysisResults(station=station, tomodseg=tomodseg)
        for scenario in self.config.scenarios:
            results.scenarios[scenario.name] = self.run_scenario(tables[scenario.level], scenario)
        return results


# =============================================================================
# REPORT GENERATION
# =============================================================================

class ReportGenerator:
    """Writes prediction tables, coefficient tables, figures and a text summary."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def generate_reports(self, results: AnalysisResults) -> None:
        """Export everything produced by the analysis."""
        self.logger.info("=" * 60)
        self.logger.info("GENERATING REPORTS")
        self.logger.info("=" * 60)

        output_dir = self.config.output_dir
        plot_dir = output_dir / "plots"
        plot_dir.mkdir(parents=True, exist_ok=True)

        results.tomodseg.to_csv(output_dir / 'tomodseg.csv', index=False)
        self.logger.info("  Saved: tomodseg.csv")

        for name, res in results.scenarios.items():
            res.binary_predictions.to_csv(output_dir / f'{name}_binary_predictions.csv', index=False)
            res.ordinal_predictions.to_csv(output_dir / f'{name}_ordinal_predictions.csv', index=False)
            coefficient_table(res.binary_fit).to_csv(output_dir / f'{name}_binary_coefficients.csv', index=False)
            coefficient_table(res.ordinal_fit).to_csv(output_dir / f'{name}_ordinal_coefficients.csv', index=False)
            self.logger.info(f"  Saved: {name} prediction and coefficient tables")

            for kind, fig in res.figures.items():
                path = plot_dir / f'{name}_{kind}.{self.config.figure_format}'
                fig.savefig(path, dpi=self.config.figure_dpi, bbox_inches='tight')
                plt.close(fig)
            self.logger.info(f"  Saved: {len(res.figures)} figures for {name}")

        self._generate_text_report(results, output_dir)

    def _generate_text_report(self, results: AnalysisResults, output_dir: Path) -> None:
        low, high = self.config.action_breaks
        lines = [
            "=" * 80,
            "TBNI AND SEAGRASS ANALYSIS REPORT",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Action categories: On Alert < {low:g} <= Caution < {high:g} <= Stay the Course",
            f"Binary outcome: TBNI > {self.config.binary_midpoint:g}",
            "=" * 80,
            "",
            f"Station records: {len(results.station):,}",
            f"Segment-years (inner join): {len(results.tomodseg):,}",
            "",
        ]

        for name, res in results.scenarios.items():
            counts = res.data['action'].value_counts(sort=False)
            lines.extend([
                f"{name.upper()}: {res.scenario.predictor} x {res.scenario.group_column}",
                "-" * 50,
                f"Rows: {len(res.data):,}  Groups: {', '.join(res.levels)}",
                "Categories: " + ", ".join(f"{k}={v}" for k, v in counts.items()),
                f"Binomial: converged={res.binary_fit.converged}, AIC={res.binary_fit.aic:.2f}",
                f"Ordinal: converged={res.ordinal_fit.mle_retvals.get('converged')}, "
                f"AIC={res.ordinal_fit.aic:.2f}",
                "",
            ])

        with open(output_dir / 'analysis_report.txt', 'w') as f:
            f.write('\n'.join(lines))
        self.logger.info("  Saved: analysis_report.txt")


# =============================================================================
# MAIN EXECUTION
# =============================================================================

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    defaults = AnalysisConfig()
    parser = argparse.ArgumentParser(description="TBNI vs seagrass exploratory models")
    parser.add_argument("--station-file", type=Path, default=defaults.station_file)
    parser.add_argument("--diversity-file", type=Path, default=defaults.diversity_file)
    parser.add_argument("--seagrass-source", default=defaults.seagrass_source,
                        help="Path or URL of the segment seagrass estimates")
    parser.add_argument("--output-dir", type=Path, default=defaults.output_dir)
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    """Main execution function."""
    args = parse_args(argv)
    config = AnalysisConfig(
        station_file=args.station_file,
        diversity_file=args.diversity_file,
        seagrass_source=args.seagrass_source,
        output_dir=args.output_dir,
    )
    logger = setup_logging(config.output_dir)

    logger.info("=" * 60)
    logger.info("TBNI AND SEAGRASS ANALYSIS")
    logger.info("Tampa Bay segments: " + ", ".join(config.segment_codes))
    logger.info("=" * 60)

    warnings.filterwarnings('ignore', category=FutureWarning)

    try:
        analysis = TBNISeagrassAnalysis(config, logger)
        results = analysis.run()

        reporter = ReportGenerator(config, logger)
        reporter.generate_reports(results)

        logger.info("=" * 60)
        logger.info("ANALYSIS COMPLETE")
        logger.info(f"Results saved to: {config.output_dir.absolute()}")
        logger.info("=" * 60)

    except FileNotFoundError as e:
        logger.error(f"Input file not found: {e}")
        raise
    except Exception as e:
        logger.exception(f"Analysis failed: {e}")
        raise


if __name__ == "__main__":
    main()
