from __future__ import annotations

import argparse
from pathlib import Path

import pandas as pd

from session_scalper.config import DEFAULT_CONFIG, ScalperConfig, load_config
from session_scalper.data.csv_loader import CsvFeed
from session_scalper.features.builder import FeatureRow, feature_frame, signal_features
from session_scalper.labeling.labeler import label_signals
from session_scalper.ml.model import feature_importances, save_model, train_probability_model
from session_scalper.news import load_news_calendar
from session_scalper.pipelines.replay import ReplayResult, parse_csv_arg, run_replay
from session_scalper.utils import price_to_pips


def build_dataset(result: ReplayResult, cfg: ScalperConfig = DEFAULT_CONFIG) -> pd.DataFrame:
    """One row per replayed signal: features at issue time plus the outcome label."""
    breakouts = {b.id: b for b in result.breakouts()}
    levels = result.storage.levels
    rows: list[FeatureRow] = []
    labels: list[dict] = []
    for sym in result.engine.engines:
        spec = cfg.spec(sym)
        signals = [s for s in result.signals() if s.symbol == sym]
        for ls in label_signals(spec=spec, candles=result.candles, signals=signals).labeled:
            s = ls.signal
            b = breakouts.get(s.breakout_id)
            lv = levels.get(s.level_id)
            if b is None or lv is None:
                continue
            feats = signal_features(
                b,
                lv,
                category=s.category,
                risk_pips=abs(price_to_pips(spec, s.entry - s.stop)),
                risk_reward=s.risk_reward,
                confidence=s.confidence,
            )
            rows.append(FeatureRow(time=s.created_at, signal_id=s.id, features=feats))
            labels.append(
                {
                    "signal_id": s.id,
                    "label": ls.label,
                    "mfe_pips": ls.mfe_pips,
                    "mae_pips": ls.mae_pips,
                    "minutes_to_outcome": ls.minutes_to_outcome,
                }
            )
    feat_df = feature_frame(rows)
    if feat_df.empty:
        return feat_df
    return feat_df.merge(pd.DataFrame(labels), on="signal_id", how="inner")


def main() -> int:
    ap = argparse.ArgumentParser(description="Train the signal probability model from replayed history")
    ap.add_argument("--csv", type=parse_csv_arg, action="append", required=True, help="SYMBOL=path.csv, repeatable")
    ap.add_argument("--schema", choices=["mt5", "generic"], default="generic")
    ap.add_argument("--config", default="")
    ap.add_argument("--news", default="")
    ap.add_argument("--out-model", required=True)
    ap.add_argument("--out-dataset", required=False)
    ap.add_argument("--calibration", choices=["none", "sigmoid", "isotonic"], default="sigmoid")
    args = ap.parse_args()

    cfg = load_config(args.config) if args.config else DEFAULT_CONFIG
    candles = []
    for sym, path in args.csv:
        spec = cfg.spec(sym)
        if spec is None:
            raise SystemExit(f"unsupported symbol: {sym}")
        candles.extend(CsvFeed(spec, path, schema=args.schema).drain())
    news = load_news_calendar(args.news) if args.news else []

    result = run_replay(candles, cfg=cfg, news=news)
    dataset = build_dataset(result, cfg)
    if dataset.empty:
        raise SystemExit("replay produced no signals to train on")
    if args.out_dataset:
        Path(args.out_dataset).parent.mkdir(parents=True, exist_ok=True)
        dataset.to_csv(args.out_dataset, index=False)

    artifacts, metrics = train_probability_model(
        dataset.drop(columns=["mfe_pips", "mae_pips", "minutes_to_outcome"]),
        target_col="label",
        calibration=args.calibration,
    )
    save_model(artifacts, args.out_model)

    top = feature_importances(artifacts, top_n=20)
    metrics_out = {
        **metrics,
        "feature_importances_top20": top,
        "signals": len(dataset),
        "labels": dataset["label"].value_counts().to_dict(),
    }
    print(pd.Series(metrics_out).to_string())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
