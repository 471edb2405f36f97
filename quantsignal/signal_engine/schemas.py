"""
Signal Engine Output Schemas

Defines trade direction and the trading signal handed downstream.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from enum import Enum


class TradeDirection(int, Enum):
    """Trade direction"""
    LONG = 1
    SHORT = -1


@dataclass(frozen=True)
class TradingSignal:
    """
    Actionable trade recommendation.

    Quantity is > 0 and never above the configured maximum. Stop-loss sits on
    the losing side of the reference price, take-profit on the winning side.
    """

    symbol: str
    direction: TradeDirection
    quantity: float
    price: float
    stop_loss: float
    take_profit: float
    confidence: float
    rationale: str
    strategy_name: str
    timestamp: Optional[datetime]
    model_name: str = ""

    @property
    def stop_distance(self) -> float:
        """Stop distance as a fraction of price"""
        return abs(self.price - self.stop_loss) / self.price if self.price else 0.0

    @property
    def take_profit_distance(self) -> float:
        return abs(self.take_profit - self.price) / self.price if self.price else 0.0

    @property
    def reward_risk(self) -> float:
        stop = self.stop_distance
        return self.take_profit_distance / stop if stop > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'symbol': self.symbol,
            'direction': self.direction.name,
            'quantity': float(self.quantity),
            'price': float(self.price),
            'stop_loss': float(self.stop_loss),
            'take_profit': float(self.take_profit),
            'confidence': float(self.confidence),
            'rationale': self.rationale,
            'strategy_name': self.strategy_name,
            'model_name': self.model_name,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }
