import numpy as np
import pandas as pd
import pytest

from tbni_seagrass_analysis import ActionCategory, AnalysisConfig, OutcomeDeriver


@pytest.fixture
def deriver(config, logger):
    return OutcomeDeriver(config, logger)


def test_category_order_and_bins():
    assert ActionCategory.ordered_labels() == ["On Alert", "Caution", "Stay the Course"]
    assert ActionCategory.from_bin(1) is ActionCategory.ON_ALERT
    assert ActionCategory.from_bin(2) is ActionCategory.CAUTION
    assert ActionCategory.from_bin(3) is ActionCategory.STAY_THE_COURSE


@pytest.mark.parametrize("index", [0, -1, 4])
def test_from_bin_rejects_out_of_range(index):
    with pytest.raises(ValueError):
        ActionCategory.from_bin(index)


def test_low_and_high_scores(deriver):
    df = deriver.derive(pd.DataFrame({"TBNI_Score": [20.0, 50.0]}), "TBNI_Score")

    assert list(df["action"]) == ["On Alert", "Stay the Course"]
    assert list(df["outcome"]) == [0, 1]
    assert list(df["action_bin"]) == [1, 3]


def test_breakpoints_are_left_closed(deriver):
    score = pd.Series([31.9, 32.0, 45.9, 46.0])
    assert list(deriver.action_bin(score)) == [1, 2, 2, 3]


def test_midpoint_is_exclusive(deriver):
    score = pd.Series([38.9, 39.0, 39.1])
    assert list(deriver.binary_outcome(score)) == [0, 0, 1]


def test_missing_scores_propagate(deriver):
    df = deriver.derive(pd.DataFrame({"tbni": [np.nan, 40.0]}), "tbni")

    assert pd.isna(df.loc[0, "action_bin"])
    assert pd.isna(df.loc[0, "action"])
    assert pd.isna(df.loc[0, "outcome"])
    assert df.loc[1, "action"] == "Caution"
    assert df.loc[1, "outcome"] == 1


def test_category_is_ordered_categorical(deriver):
    df = deriver.derive(pd.DataFrame({"tbni": [10.0, 35.0, 60.0]}), "tbni")

    assert df["action"].cat.ordered
    assert list(df["action"].cat.categories) == ActionCategory.ordered_labels()
    assert df["action"].cat.codes.tolist() == [0, 1, 2]
    assert df["action"].min() == "On Alert"
    assert df["action"].max() == "Stay the Course"


def test_category_and_flag_monotonic_in_score(deriver):
    score = pd.Series(np.linspace(0, 80, 401))
    bins = deriver.action_bin(score).astype(int)
    flags = deriver.binary_outcome(score).astype(int)

    assert (np.diff(bins) >= 0).all()
    assert (np.diff(flags) >= 0).all()
    # a favourable flag never pairs with the lowest category
    assert not ((flags == 1) & (bins == 1)).any()


def test_derive_does_not_modify_input(deriver):
    raw = pd.DataFrame({"TBNI_Score": [20.0, 50.0]})
    deriver.derive(raw, "TBNI_Score")
    assert list(raw.columns) == ["TBNI_Score"]


def test_breaks_must_increase(logger):
    with pytest.raises(ValueError):
        OutcomeDeriver(AnalysisConfig(action_breaks=(46, 32)), logger)
