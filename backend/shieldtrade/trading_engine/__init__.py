"""
Trading Engine Components

Core execution components:
- PositionStore: position state and lifecycle (one open position per owner/asset)
- DCAOrderStore: DCA order lifecycle and buy bookkeeping
- evaluate_exit: pure exit decision for a position at a price
- DCABuyExecutor: sizes, auto-executes or stages DCA buys
- ExitExecutor: turns exit decisions into swaps or pending sells
"""
