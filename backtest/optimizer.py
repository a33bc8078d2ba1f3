import logging
from concurrent.futures import ProcessPoolExecutor
from itertools import product
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from backtest.simulator import SimulationResult, load_candles_csv, run_simulation
from config import config
from strategy.trade_types import Candle, Position, TradeConfig


logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['bb', 's', 'wSize', 'v_wSize', 'stop_threshold', 'trades', 'netgain']
CONFIG_COLUMNS = RESULT_COLUMNS[:5]


def frange(start: float, stop: float, step: float) -> List[float]:
    """Inclusive float range, rounded to keep grid keys stable."""
    if step <= 0:
        raise ValueError("step must be positive")
    values = np.arange(start, stop + step / 2.0, step)
    return [round(float(v), 10) for v in values]


def build_grid(symbol: str, grid: Mapping[str, Mapping[str, float]],
               position: Position = Position.BUY) -> List[TradeConfig]:
    """Cartesian grid of configs; velocity windows run 1..window_size // 2 per window."""
    bbs = frange(**grid['bb_factor'])
    smoothings = frange(**grid['smoothing_const'])
    windows = [int(w) for w in frange(**grid['window_size'])]
    stops = frange(**grid['stop_loss_threshold'])

    configs: List[TradeConfig] = []
    for bb, s, window, stop in product(bbs, smoothings, windows, stops):
        for vw in range(1, max(1, window // 2) + 1):
            configs.append(TradeConfig(
                symbol=symbol,
                bb_factor=bb,
                smoothing_const=s,
                window_size=window,
                velocity_window_size=vw,
                stop_loss_threshold=stop,
                position=position,
            ))
    return configs


def _evaluate_chunk(candles: Sequence[Candle], configs: Sequence[TradeConfig]) -> List[SimulationResult]:
    return [run_simulation(cfg, candles) for cfg in configs]


def evaluate_configs(candles: Sequence[Candle], configs: Sequence[TradeConfig],
                     workers: int = 1) -> List[SimulationResult]:
    if workers <= 1 or len(configs) <= 1:
        return _evaluate_chunk(candles, configs)

    chunk = int(np.ceil(len(configs) / workers))
    chunks = [configs[i:i + chunk] for i in range(0, len(configs), chunk)]
    results: List[SimulationResult] = []
    with ProcessPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_evaluate_chunk, candles, part) for part in chunks]
        for future in futures:
            results.extend(future.result())
    return results


def rank_results(results: Iterable[SimulationResult], min_net_gain: float = 0.0,
                 top: Optional[int] = None) -> List[SimulationResult]:
    kept = [r for r in results if r.net_gain >= min_net_gain]
    kept.sort(key=lambda r: r.net_gain, reverse=True)
    return kept[:top] if top else kept


def results_frame(results: Iterable[SimulationResult]) -> pd.DataFrame:
    return pd.DataFrame([r.as_row() for r in results], columns=RESULT_COLUMNS)


def write_results_csv(results: Iterable[SimulationResult], path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    frame = results_frame(results).sort_values('netgain', ascending=False)
    frame.to_csv(out, index=False)
    return out


def aggregate_results(frames: Iterable[Any]) -> pd.DataFrame:
    """Sum each config's net gain across several result sets (frames or CSV paths), best first."""
    loaded = [f if isinstance(f, pd.DataFrame) else pd.read_csv(f) for f in frames]
    if not loaded:
        return pd.DataFrame(columns=CONFIG_COLUMNS + ['netgain', 'periods'])
    combined = pd.concat(loaded, ignore_index=True)
    grouped = (
        combined.groupby(CONFIG_COLUMNS, as_index=False)
        .agg(netgain=('netgain', 'sum'), periods=('netgain', 'size'))
        .sort_values('netgain', ascending=False)
        .reset_index(drop=True)
    )
    return grouped


def optimize(candles: Sequence[Candle], symbol: str, grid: Mapping[str, Mapping[str, float]],
             workers: int = 1, min_net_gain: float = 0.0) -> List[SimulationResult]:
    configs = build_grid(symbol, grid)
    logger.info("Beginning simulations on %s configs with %s workers", len(configs), workers)
    results = evaluate_configs(candles, configs, workers=workers)
    ranked = rank_results(results, min_net_gain)
    if ranked:
        best = ranked[0]
        logger.info(
            "Best config %s: trades=%s net_gain=%.4f",
            best.config.as_row(),
            best.trade_count,
            best.net_gain,
        )
    else:
        logger.warning("No config reached net gain %.4f", min_net_gain)
    return ranked


def run_optimization(start_date: str, end_date: Optional[str] = None,
                     output_dir: str = 'model') -> List[SimulationResult]:
    backtest_cfg = config.backtest
    symbol = config.exchange['symbol']
    candles = load_candles_csv(backtest_cfg['data_path'], start_date, end_date)
    ranked = optimize(
        candles,
        symbol,
        backtest_cfg['grid'],
        workers=int(backtest_cfg.get('workers', 1)),
        min_net_gain=float(backtest_cfg.get('min_net_gain', 0)),
    )
    out = write_results_csv(ranked, Path(output_dir) / f"{start_date}_{end_date or 'latest'}.csv")
    logger.info("Wrote %s ranked configs to %s", len(ranked), out)
    return ranked


if __name__ == "__main__":
    from monitoring.logging_utils import setup_logging

    setup_logging(config.monitoring.get('log_level', 'INFO'))
    run_optimization('2020-05-01', '2020-05-02')
