"""Train a TemporalMemory on a repeating symbol sequence and report how fast it stops bursting.

Usage:
    python -m sequence_memory.sequence_demo --config '{"sequence": "ABCDE", "repetitions": 40}'
"""
from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import matplotlib.pyplot as plt
import pandas as pd
from tqdm import tqdm

from .sdr import SDR
from .temporal_memory import TemporalMemory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequenceConfig:
    sequence: str = "ABCD"
    repetitions: int = 20
    columns_per_symbol: int = 8
    num_columns: int = 64
    cells_per_column: int = 8
    activation_threshold: int = 6
    min_threshold: int = 4
    max_new_synapse_count: int = 16
    initial_permanence: float = 0.21
    connected_permanence: float = 0.5
    permanence_increment: float = 0.1
    permanence_decrement: float = 0.1
    predicted_segment_decrement: float = 0.0
    seed: int = 42
    plot: bool = False
    plot_path: str = "plots/bursting_columns.png"


def _resolve_config(config: dict[str, Any] | SequenceConfig | None) -> SequenceConfig:
    if config is None:
        return SequenceConfig()
    if isinstance(config, SequenceConfig):
        return config
    return SequenceConfig(**config)


def encode_symbol(symbol: str, alphabet: list[str], config: SequenceConfig) -> SDR:
    """Give every symbol its own block of ``columns_per_symbol`` adjacent columns."""
    offset = alphabet.index(symbol) * config.columns_per_symbol
    sdr = SDR(config.num_columns)
    sdr.set_sparse(list(range(offset, offset + config.columns_per_symbol)))
    return sdr


def _build_tm(config: SequenceConfig) -> TemporalMemory:
    return TemporalMemory(
        [config.num_columns],
        cells_per_column=config.cells_per_column,
        activation_threshold=config.activation_threshold,
        min_threshold=config.min_threshold,
        max_new_synapse_count=config.max_new_synapse_count,
        initial_permanence=config.initial_permanence,
        connected_permanence=config.connected_permanence,
        permanence_increment=config.permanence_increment,
        permanence_decrement=config.permanence_decrement,
        predicted_segment_decrement=config.predicted_segment_decrement,
        seed=config.seed,
    )


def _train_tm(tm: TemporalMemory, config: SequenceConfig) -> pd.DataFrame:
    alphabet = sorted(set(config.sequence))
    encodings = {symbol: encode_symbol(symbol, alphabet, config) for symbol in alphabet}

    rows = []
    total_steps = config.repetitions * len(config.sequence)
    for step in tqdm(range(total_steps), desc="Training"):
        symbol = config.sequence[step % len(config.sequence)]
        tm.compute(encodings[symbol], learn=True)
        rows.append(
            {
                "step": step,
                "repetition": step // len(config.sequence),
                "symbol": symbol,
                "bursting_columns": tm.get_bursting_columns().get_sum(),
                "active_cells": tm.get_active_cells().get_sum(),
                "winner_cells": tm.get_winner_cells().get_sum(),
            }
        )
    return pd.DataFrame(rows)


def _plot_bursting(history: pd.DataFrame, path: str) -> None:
    plt.figure(figsize=(14, 6))
    plt.plot(history["step"], history["bursting_columns"], label="Bursting columns", alpha=0.8)
    plt.xlabel("Time Step")
    plt.ylabel("Bursting columns")
    plt.title("Temporal Memory bursting over a repeating sequence")
    plt.legend()
    plt.tight_layout()
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(path, dpi=150)
    plt.show()


def evaluate_sequence(config: dict[str, Any] | SequenceConfig | None = None) -> dict[str, Any]:
    """Train on ``config.sequence`` and summarize bursting per repetition."""
    config_obj = _resolve_config(config)
    if not config_obj.sequence:
        raise ValueError("sequence must contain at least one symbol")
    alphabet_size = len(set(config_obj.sequence))
    if alphabet_size * config_obj.columns_per_symbol > config_obj.num_columns:
        raise ValueError(
            f"{alphabet_size} symbols x {config_obj.columns_per_symbol} columns do not fit "
            f"in {config_obj.num_columns} columns"
        )

    tm = _build_tm(config_obj)
    history = _train_tm(tm, config_obj)
    per_repetition = history.groupby("repetition")["bursting_columns"].mean()

    if config_obj.plot:
        _plot_bursting(history, config_obj.plot_path)

    first_predicted = per_repetition[per_repetition == 0]
    metrics = {
        "steps": int(len(history)),
        "first_repetition_bursting": float(per_repetition.iloc[0]),
        "final_repetition_bursting": float(per_repetition.iloc[-1]),
        "first_fully_predicted_repetition": int(first_predicted.index[0]) if len(first_predicted) else None,
        "segments": tm.connections.num_segments(),
        "synapses": tm.connections.num_synapses(),
        "score": float(per_repetition.iloc[-1]) / config_obj.columns_per_symbol,
    }
    logger.info("Sequence %r: %s", config_obj.sequence, metrics)
    return metrics


def load_config(config_value: str | None) -> dict[str, Any]:
    if not config_value:
        return {}
    config_path = Path(config_value)
    if config_path.exists():
        return json.loads(config_path.read_text())
    return json.loads(config_value)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Train a Temporal Memory on a repeating symbol sequence and report bursting."
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="SequenceConfig overrides as a JSON string or a path to a JSON file.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("sequence_results.json"),
        help="Where to write the metrics JSON.",
    )
    parser.add_argument("--plot", action="store_true", help="Plot bursting columns over time.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    overrides = load_config(args.config)
    if args.plot:
        overrides["plot"] = True
    config = _resolve_config(overrides)
    metrics = evaluate_sequence(config)

    summary = {"config": asdict(config), "metrics": metrics}
    args.output.write_text(json.dumps(summary, indent=2))
    print(json.dumps(metrics, indent=2))
    print(f"\nResults written to {args.output}")


if __name__ == "__main__":
    main()
