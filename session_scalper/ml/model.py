from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import joblib
import numpy as np
import pandas as pd
from sklearn.calibration import CalibratedClassifierCV
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import RandomForestClassifier
from sklearn.frozen import FrozenEstimator
from sklearn.metrics import brier_score_loss, classification_report, roc_auc_score
from sklearn.model_selection import TimeSeriesSplit
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder

# Identifiers carried in feature frames that must not reach the model
META_COLUMNS = ("time", "signal_id")


@dataclass(frozen=True)
class ModelArtifacts:
    raw_pipeline: Pipeline
    calibrated_model: CalibratedClassifierCV | None
    calibration_method: str
    feature_columns: list[str]
    target_positive: str


def _make_pipeline(cat_cols: list[str], num_cols: list[str]) -> Pipeline:
    pre = ColumnTransformer(
        transformers=[
            ("cat", OneHotEncoder(handle_unknown="ignore"), cat_cols),
            ("num", "passthrough", num_cols),
        ],
        remainder="drop",
    )
    clf = RandomForestClassifier(
        n_estimators=300,
        max_depth=6,
        min_samples_leaf=5,
        random_state=42,
        class_weight="balanced_subsample",
        n_jobs=-1,
    )
    return Pipeline([("pre", pre), ("clf", clf)])


def train_probability_model(
    df: pd.DataFrame,
    *,
    target_col: str = "label",
    positive_label: str = "win",
    drop_labels: Iterable[str] = ("expired",),
    calibration: str = "sigmoid",
    calibration_fraction: float = 0.2,
) -> tuple[ModelArtifacts, dict]:
    work = df.copy()
    work = work[~work[target_col].isin(list(drop_labels))].reset_index(drop=True)
    if "time" in work.columns:
        work = work.sort_values("time").reset_index(drop=True)
    y = (work[target_col] == positive_label).astype(int)
    if y.nunique() < 2:
        raise ValueError("training data needs both winning and losing signals")
    X = work.drop(columns=[target_col, *[c for c in META_COLUMNS if c in work.columns]])
    X = X.fillna(0)

    cat_cols = [c for c in X.columns if not pd.api.types.is_numeric_dtype(X[c])]
    num_cols = [c for c in X.columns if c not in cat_cols]

    n = len(X)
    n_splits = max(2, min(5, n // 20))
    tscv = TimeSeriesSplit(n_splits=n_splits)
    oof = np.full(n, np.nan, dtype=float)
    for train_idx, test_idx in tscv.split(X):
        y_train = y.iloc[train_idx]
        if y_train.nunique() < 2:
            continue
        pipe_fold = _make_pipeline(cat_cols, num_cols)
        pipe_fold.fit(X.iloc[train_idx], y_train)
        oof[test_idx] = pipe_fold.predict_proba(X.iloc[test_idx])[:, 1]

    scored = ~np.isnan(oof)
    y_scored = y[scored]
    metrics: dict = {"samples": int(n), "positives": int(y.sum()), "oof_samples": int(scored.sum())}
    if scored.any():
        metrics.update(
            {
                "roc_auc_oof": float(roc_auc_score(y_scored, oof[scored])) if y_scored.nunique() > 1 else float("nan"),
                "brier_oof": float(brier_score_loss(y_scored, oof[scored])),
                "report_oof": classification_report(
                    y_scored, (oof[scored] >= 0.5).astype(int), output_dict=True, zero_division=0
                ),
            }
        )

    calib_n = int(max(0, min(n, round(n * calibration_fraction))))
    train_n = n - calib_n

    raw_pipe_full = _make_pipeline(cat_cols, num_cols)
    raw_pipe_full.fit(X, y)

    calibrated_model: CalibratedClassifierCV | None = None
    final_method = "none"
    if (
        calib_n >= 50
        and train_n >= 200
        and calibration in ("sigmoid", "isotonic")
        and y.iloc[:train_n].nunique() > 1
        and y.iloc[train_n:].nunique() > 1
    ):
        X_train = X.iloc[:train_n]
        y_train = y.iloc[:train_n]
        X_cal = X.iloc[train_n:]
        y_cal = y.iloc[train_n:]
        raw_pipe_train = _make_pipeline(cat_cols, num_cols)
        raw_pipe_train.fit(X_train, y_train)
        cal = CalibratedClassifierCV(FrozenEstimator(raw_pipe_train), method=calibration)
        cal.fit(X_cal, y_cal)
        p_raw = raw_pipe_train.predict_proba(X_cal)[:, 1]
        p_cal = cal.predict_proba(X_cal)[:, 1]
        metrics.update(
            {
                "brier_calibration_raw": float(brier_score_loss(y_cal, p_raw)),
                "brier_calibration_calibrated": float(brier_score_loss(y_cal, p_cal)),
            }
        )
        calibrated_model = cal
        final_method = calibration
    metrics.update({"calibration_method": final_method, "calibration_samples": int(calib_n)})

    artifacts = ModelArtifacts(
        raw_pipeline=raw_pipe_full,
        calibrated_model=calibrated_model,
        calibration_method=final_method,
        feature_columns=list(X.columns),
        target_positive=positive_label,
    )
    return artifacts, metrics


def predict_proba(artifacts: ModelArtifacts, df_features: pd.DataFrame) -> np.ndarray:
    X = df_features.reindex(columns=artifacts.feature_columns).fillna(0)
    if artifacts.calibrated_model is None:
        return artifacts.raw_pipeline.predict_proba(X)[:, 1]
    return artifacts.calibrated_model.predict_proba(X)[:, 1]


class ProbabilityScorer:
    """Scores one signal's features; plugs into the signal generator."""

    def __init__(self, artifacts: ModelArtifacts) -> None:
        self.artifacts = artifacts

    @classmethod
    def load(cls, path: str) -> "ProbabilityScorer":
        return cls(load_model(path))

    def score(self, features: dict[str, float | int | str | None]) -> float:
        return float(predict_proba(self.artifacts, pd.DataFrame([features]))[0])


def save_model(artifacts: ModelArtifacts, path: str) -> None:
    joblib.dump(artifacts, path)


def load_model(path: str) -> ModelArtifacts:
    return joblib.load(path)


def feature_importances(artifacts: ModelArtifacts, top_n: int = 25) -> list[tuple[str, float]]:
    pre: ColumnTransformer = artifacts.raw_pipeline.named_steps["pre"]
    clf: RandomForestClassifier = artifacts.raw_pipeline.named_steps["clf"]

    cat: OneHotEncoder = pre.named_transformers_["cat"]
    cat_cols = pre.transformers_[0][2]
    num_cols = pre.transformers_[1][2]

    cat_names: list[str] = []
    if len(cat_cols):
        cat_names = list(cat.get_feature_names_out(cat_cols))
    feature_names = cat_names + list(num_cols)
    importances = clf.feature_importances_
    pairs = list(zip(feature_names, importances))
    pairs.sort(key=lambda x: x[1], reverse=True)
    return [(n, float(v)) for n, v in pairs[:top_n]]
