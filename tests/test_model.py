from __future__ import annotations

from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from session_scalper.ml.model import (
    ProbabilityScorer,
    feature_importances,
    load_model,
    predict_proba,
    save_model,
    train_probability_model,
)


def _dataset(n=160, seed=0):
    rng = np.random.default_rng(seed)
    t0 = datetime(2024, 1, 2, 7, 0, tzinfo=timezone.utc)
    strength = rng.random(n)
    rows = []
    for i in range(n):
        label = "win" if strength[i] + rng.normal() * 0.1 > 0.5 else "loss"
        if i % 10 == 0:
            label = "expired"
        rows.append(
            {
                "time": t0 + timedelta(minutes=30 * i),
                "signal_id": f"s{i}",
                "level_type": "ASIA_HIGH" if i % 2 else "ASIA_LOW",
                "breakout_session": "LONDON" if i % 3 else "NEWYORK",
                "breakout_strength": float(strength[i]),
                "volume_ratio": float(1.0 + rng.random()),
                "hour": 7 + i % 8,
                "label": label,
            }
        )
    return pd.DataFrame(rows)


def _features(strength, **extra):
    return {"level_type": "ASIA_HIGH", "breakout_session": "LONDON", "breakout_strength": strength, "volume_ratio": 1.8, "hour": 8, **extra}


def test_train_and_score():
    df = _dataset()
    artifacts, metrics = train_probability_model(df, calibration="none")
    assert metrics["samples"] == int((df["label"] != "expired").sum())
    assert metrics["calibration_method"] == "none"
    assert metrics["oof_samples"] > 0
    assert "signal_id" not in artifacts.feature_columns
    assert "time" not in artifacts.feature_columns

    p = predict_proba(artifacts, df.drop(columns=["label"]))
    assert p.shape == (len(df),)
    assert ((p >= 0.0) & (p <= 1.0)).all()

    scorer = ProbabilityScorer(artifacts)
    strong = scorer.score(_features(0.95))
    weak = scorer.score(_features(0.05))
    assert 0.0 <= weak < strong <= 1.0

    top = feature_importances(artifacts, top_n=3)
    assert len(top) == 3
    assert top[0][0] == "breakout_strength"


def test_unknown_columns_are_ignored_when_scoring():
    artifacts, _ = train_probability_model(_dataset(), calibration="none")
    p = ProbabilityScorer(artifacts).score(_features(0.7, not_a_feature=1))
    assert 0.0 <= p <= 1.0


def test_single_class_is_rejected():
    df = _dataset()
    df["label"] = "win"
    with pytest.raises(ValueError):
        train_probability_model(df)


def test_save_and_load(tmp_path):
    artifacts, _ = train_probability_model(_dataset(), calibration="none")
    path = tmp_path / "model.joblib"
    save_model(artifacts, str(path))
    loaded = load_model(str(path))
    assert loaded.feature_columns == artifacts.feature_columns
    assert ProbabilityScorer.load(str(path)).score(_features(0.9)) == pytest.approx(
        ProbabilityScorer(artifacts).score(_features(0.9))
    )
