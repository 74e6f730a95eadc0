import logging

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from tbni_seagrass_analysis import AnalysisConfig, OutcomeDeriver

SEGMENT_NAMES = {"OTB": "Old Tampa Bay", "HB": "Hillsborough Bay"}


@pytest.fixture
def logger():
    return logging.getLogger("tbni_seagrass_analysis.tests")


@pytest.fixture
def config(tmp_path):
    return AnalysisConfig(output_dir=tmp_path / "out")


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    analysis_logger = logging.getLogger("tbni_seagrass_analysis")
    for handler in analysis_logger.handlers:
        handler.close()
    analysis_logger.handlers.clear()


def make_station_frame(seed=42, n_per_segment=150):
    """Station records whose TBNI rises with cover and acreage, with noise."""
    rng = np.random.default_rng(seed)
    frames = []
    for shift, segment in enumerate(["OTB", "HB"]):
        years = rng.integers(2000, 2020, n_per_segment)
        acres = 4000 + 150 * (years - 2000) + 1000 * shift + rng.normal(0, 300, n_per_segment)
        cover = rng.uniform(0, 100, n_per_segment)
        score = 28 + 0.15 * cover + 0.001 * (acres - 4000) + 2 * shift + rng.normal(0, 6, n_per_segment)
        frames.append(pd.DataFrame({
            "Reference": [f"{segment}{i:04d}" for i in range(n_per_segment)],
            "year": years,
            "TBEP_seg": segment,
            "BottomVegCover": cover,
            "acres": acres,
            "TBNI_Score": score,
        }))
    return pd.concat(frames, ignore_index=True)


def make_diversity_frame(seed=7, n_years=30, per_year=4):
    rng = np.random.default_rng(seed)
    rows = []
    for shift, segment in enumerate(["OTB", "HB"]):
        for year in range(1990, 1990 + n_years):
            for _ in range(per_year):
                rows.append({
                    "sgyear": year,
                    "TBNI_Score": 30 + 0.6 * (year - 1990) + 2 * shift + rng.normal(0, 8),
                    "TBEP_seg": segment,
                })
    return pd.DataFrame(rows)


def make_seagrass_frame(n_years=30):
    rows = []
    for shift, code in enumerate(["OTB", "HB"]):
        for year in range(1990, 1990 + n_years):
            rows.append({
                "segment": SEGMENT_NAMES[code],
                "year": year,
                "acres": 3000 + 120 * (year - 1990) + 800 * shift + 50 * ((year * 7) % 5),
            })
    rows.append({"segment": "Boca Ciega Bay", "year": 2000, "acres": 9000.0})
    return pd.DataFrame(rows)


@pytest.fixture
def station_frame(config, logger):
    return OutcomeDeriver(config, logger).derive(make_station_frame(), "TBNI_Score")


@pytest.fixture
def input_files(tmp_path):
    """Station, diversity and seagrass CSVs written to a temporary directory."""
    station = tmp_path / "tbnidat.csv"
    diversity = tmp_path / "divdat.csv"
    seagrass = tmp_path / "sgsegest.csv"
    make_station_frame().to_csv(station, index=False)
    make_diversity_frame().to_csv(diversity, index=False)
    make_seagrass_frame().to_csv(seagrass, index=False)
    return station, diversity, seagrass


@pytest.fixture
def file_config(tmp_path, input_files):
    station, diversity, seagrass = input_files
    return AnalysisConfig(
        station_file=station,
        diversity_file=diversity,
        seagrass_source=str(seagrass),
        output_dir=tmp_path / "out",
    )
