"""
PM 15m Hedge Engine
===================
Hedged pair accumulation on Polymarket BTC 15-minute Up/Down markets.

Each 15-minute market gets a window. The engine buys the cheap side when
momentum agrees, hedges the other side once it is cheap enough, and stops
adding once min(qty_up, qty_down) exceeds total cost (profit locked).

Usage:
    pm-15m-hedge                # dry run, no real orders
    pm-15m-hedge --live         # real orders (needs PM_* credentials)
    pm-15m-hedge --stats        # print tracker stats and exit
"""

__version__ = "0.1.0"
