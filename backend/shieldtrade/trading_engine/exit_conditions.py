"""
Exit Condition Evaluation

Pure decision function used by the exit executor on every price tick:

- Trailing stop: exit 100% when profit has fallen trailing_stop_percent
  points below the peak observed profit
- Fixed stop: exit 100% when profit is at or below stop_loss_percent
- Stages: the next uncompleted stage fires when its profit gate is met and,
  unless the position is percentage-based, its time gate has elapsed
- Max hold: exit 100% once the position is older than max_hold_minutes

Nothing here writes to the position. Persisting the peak profit is the
caller's job (PositionStore.refresh_price), done once per tick.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from shieldtrade.strategies.exit_strategies import (
    ExitStrategy,
    FixedStopExit,
    ManualExit,
    TrailingStopExit,
    get_strategy,
)

logger = logging.getLogger(__name__)


@dataclass
class ExitDecision:
    should_exit: bool
    sell_percentage: float = 0.0
    reason: str = ""
    stage_index: Optional[int] = None  # Set when a take-profit stage fired

    @property
    def is_full_exit(self) -> bool:
        return self.should_exit and self.sell_percentage >= 100


def _elapsed_minutes(position: Any, now: datetime) -> float:
    entry_time = position.entry_time or now
    return (now - entry_time).total_seconds() / 60


def _check_stage(
    position: Any,
    strategy: ExitStrategy,
    current_profit: float,
    elapsed_minutes: float,
) -> Optional[ExitDecision]:
    """Only the first uncompleted stage is eligible; stages never fire out of order."""
    stage_index = position.exit_stages_completed or 0
    stages = strategy.stages
    if stage_index >= len(stages):
        return None

    stage = stages[stage_index]
    if current_profit < stage.min_profit_percent:
        return None

    time_gate_applies = stage.time_minutes is not None and not position.percentage_based
    if time_gate_applies and elapsed_minutes < stage.time_minutes:
        return None

    is_last = stage_index == len(stages) - 1
    sell_percentage = 100.0 if is_last else float(stage.sell_percent)
    return ExitDecision(
        should_exit=True,
        sell_percentage=sell_percentage,
        reason=(
            f"Stage {stage_index + 1}/{len(stages)}: profit {current_profit:.2f}% "
            f">= {stage.min_profit_percent}%, selling {stage.sell_percent}%"
        ),
        stage_index=stage_index,
    )


def evaluate_exit(
    position: Any,
    current_price: float,
    strategy: Optional[ExitStrategy] = None,
    now: Optional[datetime] = None,
) -> ExitDecision:
    """
    Decide whether a position should exit at current_price.

    Args:
        position: Position model instance (or any object with the same fields)
        current_price: Latest observed price, SOL per token
        strategy: Strategy to apply; defaults to the position's assigned one
        now: Evaluation time, defaults to utcnow (injectable for tests)

    Returns:
        ExitDecision; sell_percentage is relative to the position's entry quantity
    """
    if strategy is None:
        strategy = get_strategy(position.exit_strategy)
    now = now or datetime.utcnow()

    if isinstance(strategy, ManualExit):
        return ExitDecision(False, reason="Manual strategy - no automatic exits")

    entry_price = position.entry_price
    if not entry_price or entry_price <= 0:
        return ExitDecision(False, reason="Invalid entry price")

    current_profit = (current_price - entry_price) / entry_price * 100
    peak_profit = max(position.peak_profit or 0.0, current_profit)
    elapsed = _elapsed_minutes(position, now)

    if isinstance(strategy, TrailingStopExit):
        drawdown = peak_profit - current_profit
        if drawdown >= abs(strategy.trailing_stop_percent):
            return ExitDecision(
                True,
                100.0,
                f"Trailing stop triggered: profit {current_profit:.2f}% is "
                f"{drawdown:.2f} points below peak {peak_profit:.2f}%",
            )
    elif isinstance(strategy, FixedStopExit):
        if current_profit <= strategy.stop_loss_percent:
            return ExitDecision(
                True,
                100.0,
                f"Stop loss triggered: profit {current_profit:.2f}% <= {strategy.stop_loss_percent}%",
            )

    stage_decision = _check_stage(position, strategy, current_profit, elapsed)
    if stage_decision is not None:
        return stage_decision

    if elapsed >= strategy.max_hold_minutes:
        return ExitDecision(
            True,
            100.0,
            f"Max hold time reached: {elapsed:.1f}min >= {strategy.max_hold_minutes}min",
        )

    return ExitDecision(False, reason=f"Holding: profit {current_profit:.2f}%, peak {peak_profit:.2f}%")
