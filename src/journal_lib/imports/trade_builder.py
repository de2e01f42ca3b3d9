"""
Build trades from executed orders.

Orders are replayed per symbol in execution order.  Same-side orders add
to the open position; opposite-side orders reduce it, and once it is flat
the position becomes a CLOSED trade.  An opposite order larger than the
open quantity closes the position and opens a reversed one with the
excess.  Whatever is still open at the end is stored as an OPEN trade.

``build_trades_for_user`` re-opens the user's OPEN trades (their orders
are replayed again) so partially built positions carry across imports.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from src.journal_lib.core.models import (
    STATUS_CLOSED,
    STATUS_OPEN,
    _query_to_list,
    create_trade,
    fmt_ts,
    get_connection,
    parse_ts,
)

logger = logging.getLogger("imports.trade_builder")

MARKET_OPEN_MINUTES = 9 * 60 + 30
MARKET_CLOSE_MINUTES = 16 * 60
INTRADAY_MAX_SECONDS = 24 * 60 * 60


def market_session(open_time: datetime) -> str:
    minutes = open_time.hour * 60 + open_time.minute
    if minutes < MARKET_OPEN_MINUTES:
        return "PRE_MARKET"
    if minutes < MARKET_CLOSE_MINUTES:
        return "REGULAR"
    return "AFTER_HOURS"


def holding_period(open_time: datetime, close_time: Optional[datetime]) -> str:
    if close_time is None:
        return "INTRADAY"
    seconds = (close_time - open_time).total_seconds()
    return "INTRADAY" if seconds <= INTRADAY_MAX_SECONDS else "SWING"


@dataclass
class _Position:
    symbol: str
    side: str  # LONG | SHORT
    open_time: datetime
    entry_quantity: float = 0.0
    entry_cost: float = 0.0
    exit_quantity: float = 0.0
    exit_value: float = 0.0
    order_ids: list[int] = field(default_factory=list)

    @property
    def open_quantity(self) -> float:
        return self.entry_quantity - self.exit_quantity

    def add_entry(self, quantity: float, price: float, order_id: int) -> None:
        self.entry_quantity += quantity
        self.entry_cost += quantity * price
        self.order_ids.append(order_id)

    def add_exit(self, quantity: float, price: float, order_id: int) -> None:
        self.exit_quantity += quantity
        self.exit_value += quantity * price
        if order_id not in self.order_ids:
            self.order_ids.append(order_id)

    def to_trade(self, close_time: Optional[datetime]) -> dict:
        entry_price = self.entry_cost / self.entry_quantity if self.entry_quantity else 0.0
        trade = {
            "symbol": self.symbol,
            "side": self.side,
            "open_time": self.open_time,
            "trade_date": self.open_time,
            "entry_price": round(entry_price, 4),
            "market_session": market_session(self.open_time),
            "order_ids": list(self.order_ids),
        }
        if close_time is None:
            trade.update(
                status=STATUS_OPEN,
                quantity=self.open_quantity,
                pnl=0.0,
                holding_period=holding_period(self.open_time, None),
            )
            return trade

        exit_price = self.exit_value / self.exit_quantity
        direction = 1 if self.side == "LONG" else -1
        trade.update(
            status=STATUS_CLOSED,
            close_time=close_time,
            exit_price=round(exit_price, 4),
            quantity=self.entry_quantity,
            pnl=round((exit_price - entry_price) * self.entry_quantity * direction, 2),
            time_in_trade=int((close_time - self.open_time).total_seconds()),
            holding_period=holding_period(self.open_time, close_time),
        )
        return trade


class TradeBuilder:
    """Replay orders into trades; pure, no database access."""

    def __init__(self):
        self.positions: dict[str, _Position] = {}
        self.trades: list[dict] = []

    def process(self, orders: list[dict]) -> list[dict]:
        for order in orders:
            self.process_order(order)
        for position in self.positions.values():
            if position.open_quantity > 0:
                self.trades.append(position.to_trade(None))
        self.positions.clear()
        return self.trades

    def process_order(self, order: dict) -> None:
        executed = parse_ts(order.get("order_executed_time"))
        price = order.get("price") if order.get("price") is not None else order.get("limit_price")
        if executed is None or price is None:
            logger.warning("Order %s missing execution time or price, skipping", order.get("id"))
            return

        symbol = order["symbol"]
        quantity = float(order["order_quantity"])
        price = float(price)
        side = "LONG" if order["side"] == "BUY" else "SHORT"
        position = self.positions.get(symbol)

        if position is None:
            position = _Position(symbol, side, executed)
            position.add_entry(quantity, price, order["id"])
            self.positions[symbol] = position
            return

        if position.side == side:
            position.add_entry(quantity, price, order["id"])
            return

        closing = min(quantity, position.open_quantity)
        position.add_exit(closing, price, order["id"])
        if position.open_quantity <= 0:
            self.trades.append(position.to_trade(executed))
            del self.positions[symbol]

        excess = quantity - closing
        if excess > 0:
            reversed_position = _Position(symbol, side, executed)
            reversed_position.add_entry(excess, price, order["id"])
            self.positions[symbol] = reversed_position


def build_trades_for_user(user_id: str) -> dict:
    """Turn the user's unprocessed orders into trades and link them."""
    with get_connection() as conn:
        open_ids = [
            r["id"]
            for r in _query_to_list(
                conn,
                "SELECT id FROM trades WHERE user_id = ? AND status = ?",
                (user_id, STATUS_OPEN),
            )
        ]
        for trade_id in open_ids:
            conn.execute(
                "UPDATE orders SET used_in_trade = 0, trade_id = NULL WHERE trade_id = ?",
                (trade_id,),
            )
            conn.execute("DELETE FROM trades WHERE id = ?", (trade_id,))

        orders = _query_to_list(
            conn,
            """
            SELECT * FROM orders
            WHERE user_id = ? AND used_in_trade = 0 AND order_executed_time IS NOT NULL
            ORDER BY order_executed_time, id
            """,
            (user_id,),
        )

        trades = TradeBuilder().process(orders)
        for trade in trades:
            order_ids = trade.pop("order_ids")
            fields = {k: (fmt_ts(v) if isinstance(v, datetime) else v) for k, v in trade.items()}
            trade_id = create_trade(user_id, conn=conn, **fields)
            for order_id in order_ids:
                conn.execute(
                    "UPDATE orders SET used_in_trade = 1, trade_id = ? WHERE id = ?",
                    (trade_id, order_id),
                )

    closed = sum(1 for t in trades if t["status"] == STATUS_CLOSED)
    logger.info(
        "Built %d trades (%d closed) from %d orders for %s",
        len(trades),
        closed,
        len(orders),
        user_id,
    )
    return {
        "orders_processed": len(orders),
        "closed_trades": closed,
        "open_trades": len(trades) - closed,
    }
