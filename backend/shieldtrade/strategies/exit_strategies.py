"""
Exit Strategy Catalogue

Named exit policies assigned to positions at creation. Each policy is one of
three kinds:

- ManualExit: never exits automatically; the owner sells by hand.
- FixedStopExit: staged take-profits plus a fixed stop-loss on current profit.
- TrailingStopExit: staged take-profits plus a stop measured as the drawdown
  from the peak observed profit.

Stages are consumed strictly in order, one per trigger. On percentage-based
strategies the stage time gate is advisory and only the profit gate applies.

TIME-BASED: scalping, aggressive, breakout, conservative, moderate, grid, slow
PERCENTAGE-BASED: hodl1, hodl2, hodl3, swing, trailing, takeProfit, dca
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from shieldtrade.exceptions import ValidationError


@dataclass(frozen=True)
class ExitStage:
    sell_percent: float  # % of the entry quantity sold when the stage fires
    min_profit_percent: float
    time_minutes: Optional[float] = None  # Minimum hold time, ignored when percentage-based


@dataclass(frozen=True)
class ManualExit:
    description: str = ""

    @property
    def stages(self) -> Tuple[ExitStage, ...]:
        return ()

    @property
    def percentage_based(self) -> bool:
        return False


@dataclass(frozen=True)
class FixedStopExit:
    stages: Tuple[ExitStage, ...]
    stop_loss_percent: float  # Negative, e.g. -20.0; -100 disables it
    max_hold_minutes: float
    percentage_based: bool = False
    description: str = ""


@dataclass(frozen=True)
class TrailingStopExit:
    stages: Tuple[ExitStage, ...]
    trailing_stop_percent: float  # Allowed drawdown from peak profit, in profit points
    max_hold_minutes: float
    percentage_based: bool = True
    description: str = ""


ExitStrategy = Union[ManualExit, FixedStopExit, TrailingStopExit]


def _stages(*rows) -> Tuple[ExitStage, ...]:
    """Build stages from (sell%, min profit%, minutes) rows; minutes may be omitted."""
    return tuple(ExitStage(*row) for row in rows)


EXIT_STRATEGIES: Dict[str, ExitStrategy] = {
    "manual": ManualExit(description="Full manual control, no automated exits"),
    "scalping": FixedStopExit(
        stages=_stages((50, 5, 0.5), (30, 10, 1), (20, 15, 2)),
        stop_loss_percent=-10,
        max_hold_minutes=3,
        description="Ultra-fast 1-3min trades for quick 5-15% gains",
    ),
    "aggressive": FixedStopExit(
        stages=_stages((40, 30, 2), (40, 60, 5), (20, 100, 8)),
        stop_loss_percent=-20,
        max_hold_minutes=10,
        description="Fast exits for volatile plays (8min max)",
    ),
    "moderate": FixedStopExit(
        stages=_stages((25, 50, 5), (25, 100, 10), (25, 200, 15), (25, 300, 20)),
        stop_loss_percent=-30,
        max_hold_minutes=25,
        description="Balanced exits for mid-cap plays (20min max)",
    ),
    "slow": FixedStopExit(
        stages=_stages(
            (10, 50, 5), (10, 100, 10), (15, 150, 15), (15, 200, 20),
            (15, 300, 25), (15, 400, 30), (10, 500, 40), (10, 0, 50),
        ),
        stop_loss_percent=-35,
        max_hold_minutes=60,
        description="Patient exits for trend following (50min max)",
    ),
    "breakout": FixedStopExit(
        stages=_stages((30, 40, 3), (30, 80, 7), (20, 120, 12), (20, 150, 15)),
        stop_loss_percent=-25,
        max_hold_minutes=18,
        description="Momentum trading for 40-150% gains",
    ),
    "grid": FixedStopExit(
        stages=_stages(
            (15, 10, 5), (15, 15, 10), (15, 20, 15),
            (15, 25, 20), (15, 30, 25), (25, 40, 30),
        ),
        stop_loss_percent=-20,
        max_hold_minutes=35,
        description="Range trading with multiple 10-30% exits",
    ),
    "conservative": FixedStopExit(
        stages=_stages((40, 10, 3), (30, 20, 7), (20, 40, 12), (10, 60, 15)),
        stop_loss_percent=-10,
        max_hold_minutes=18,
        description="Safe exits with a tight -10% stop for 10-60% gains",
    ),
    "hodl1": FixedStopExit(
        stages=_stages((25, 30), (25, 75), (25, 150), (25, 300)),
        stop_loss_percent=-35,
        max_hold_minutes=4320,  # 3 days
        percentage_based=True,
        description="Percentage-based exits for DeFi protocols (hours-days)",
    ),
    "hodl2": FixedStopExit(
        stages=_stages((20, 50), (20, 100), (20, 200), (20, 400), (20, 800)),
        stop_loss_percent=-40,
        max_hold_minutes=10080,  # 7 days
        percentage_based=True,
        description="Percentage-based exits for utility tokens (days-weeks)",
    ),
    "hodl3": FixedStopExit(
        stages=_stages(
            (10, 100), (10, 200), (10, 400), (10, 900),
            (10, 1900), (10, 4900), (10, 9900),
        ),
        stop_loss_percent=-50,
        max_hold_minutes=43200,  # 30 days
        percentage_based=True,
        description="Diamond hands for moon shots (weeks-months)",
    ),
    "swing": FixedStopExit(
        stages=_stages((25, 40), (25, 80), (25, 120), (25, 200)),
        stop_loss_percent=-25,
        max_hold_minutes=7200,  # 5 days
        percentage_based=True,
        description="Multi-day trend following for 40-200% gains",
    ),
    "trailing": TrailingStopExit(
        stages=_stages((20, 25), (20, 60), (20, 120), (20, 250), (20, 500)),
        trailing_stop_percent=15,
        max_hold_minutes=2880,  # 2 days
        description="Trailing stop locks in profits while riding trends",
    ),
    "takeProfit": FixedStopExit(
        stages=_stages((20, 50), (20, 100), (20, 200), (20, 350), (20, 500)),
        stop_loss_percent=-100,  # No stop loss
        max_hold_minutes=10080,
        percentage_based=True,
        description="Profit targets only, no stop loss",
    ),
    "dca": FixedStopExit(
        stages=_stages((15, 20), (20, 40), (20, 70), (20, 100), (25, 150)),
        stop_loss_percent=-30,
        max_hold_minutes=14400,  # 10 days
        percentage_based=True,
        description="Conservative exits for averaged-in positions",
    ),
}


def get_strategy(name: str) -> ExitStrategy:
    """Look up a strategy by name, raising ValidationError for unknown names."""
    strategy = EXIT_STRATEGIES.get(name)
    if strategy is None:
        raise ValidationError(f"Unknown exit strategy: {name}")
    return strategy


def is_valid_strategy(name: str) -> bool:
    return name in EXIT_STRATEGIES


def strategy_names() -> List[str]:
    return list(EXIT_STRATEGIES.keys())


def total_stages(name: str) -> int:
    return len(get_strategy(name).stages)


def describe_strategy(name: str) -> dict:
    """Serializable summary of a strategy for the API."""
    strategy = get_strategy(name)
    info = {
        "name": name,
        "kind": type(strategy).__name__,
        "description": strategy.description,
        "percentage_based": strategy.percentage_based,
        "stages": [
            {
                "sell_percent": stage.sell_percent,
                "min_profit_percent": stage.min_profit_percent,
                "time_minutes": stage.time_minutes,
            }
            for stage in strategy.stages
        ],
    }
    if isinstance(strategy, FixedStopExit):
        info["stop_loss_percent"] = strategy.stop_loss_percent
        info["max_hold_minutes"] = strategy.max_hold_minutes
    elif isinstance(strategy, TrailingStopExit):
        info["trailing_stop_percent"] = strategy.trailing_stop_percent
        info["max_hold_minutes"] = strategy.max_hold_minutes
    return info
