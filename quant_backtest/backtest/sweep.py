"""
Parameter sweeps: many independent backtests run concurrently.

Each run gets its own engine from ``engine_factory`` and its own event
loop on a worker thread; nothing is shared between runs except read-only
inputs. Results come back in the order of the submitted configs.
"""

from __future__ import annotations

import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Mapping, Sequence

from quant_backtest.backtest.engine import BacktestingEngine, BacktestResult
from quant_backtest.config.backtest_config import BacktestConfig
from quant_backtest.config.settings import get_settings
from quant_backtest.core.reproducibility import child_seed

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], BacktestingEngine]


def _set_path(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    node = data
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        child = node.get(part)
        node[part] = dict(child) if isinstance(child, Mapping) else {}
        node = node[part]
    node[parts[-1]] = value


def expand_parameter_grid(
    base: Mapping[str, Any],
    grid: Mapping[str, Sequence[Any]],
) -> list[dict[str, Any]]:
    """Build one config mapping per combination of ``grid`` values.

    Keys are dotted paths into the config, e.g. ``risk_management.max_drawdown``.
    When the base config has a seed, combination ``i`` gets ``seed + i``.

    Args:
        base: Base config mapping.
        grid: Values to sweep per dotted key.

    Returns:
        List of config mappings in ``itertools.product`` order.
    """
    keys = list(grid.keys())
    combinations = list(itertools.product(*(grid[k] for k in keys)))
    configs = []
    for index, combo in enumerate(combinations):
        config = dict(base)
        for key, value in zip(keys, combo):
            _set_path(config, key, value)
        seed = child_seed(base.get("seed"), index)
        if seed is not None:
            config["seed"] = seed
        configs.append(config)
    return configs


def _run_one(engine_factory: EngineFactory, config: BacktestConfig | Mapping[str, Any]) -> BacktestResult:
    engine = engine_factory()
    return engine.run_backtest_sync(config)


def run_parameter_sweep(
    configs: Sequence[BacktestConfig | Mapping[str, Any]],
    engine_factory: EngineFactory,
    max_workers: int | None = None,
) -> list[BacktestResult]:
    """Run independent backtests on a thread pool.

    Args:
        configs: One config per run.
        engine_factory: Builds a fresh engine, strategies registered,
            for every run. Data sources holding network sessions must not
            be shared between runs.
        max_workers: Worker threads; the sweep settings when None.

    Returns:
        Results in the same order as ``configs``. Failed runs are FAILED
        results, never exceptions.
    """
    if not configs:
        return []
    if max_workers is None:
        max_workers = get_settings().sweep.max_workers

    logger.info(f"Starting parameter sweep of {len(configs)} runs on {max_workers} workers")
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backtest-sweep") as executor:
        futures = [executor.submit(_run_one, engine_factory, config) for config in configs]
        results = [future.result() for future in futures]

    succeeded = sum(1 for r in results if r.is_success)
    logger.info(f"Parameter sweep finished: {succeeded}/{len(results)} runs finalized")
    return results
