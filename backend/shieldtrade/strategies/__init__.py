"""
Exit strategy framework.

Strategies are plain frozen dataclasses; the evaluator in
trading_engine/exit_conditions.py dispatches on their type.
"""

from shieldtrade.strategies.exit_strategies import (  # noqa: F401
    EXIT_STRATEGIES,
    ExitStage,
    ExitStrategy,
    FixedStopExit,
    ManualExit,
    TrailingStopExit,
    describe_strategy,
    get_strategy,
    is_valid_strategy,
    strategy_names,
    total_stages,
)
