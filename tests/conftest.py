"""
Shared fixtures: synthetic OHLCV bar builders and small model configs.
"""

import pytest
import numpy as np
from datetime import datetime, timezone, timedelta

from quantsignal.feature_engine.schemas import MarketBar, FeatureVector
from quantsignal.ml_layer.config import (
    MLConfig,
    SpecialistConfig,
    EnsembleConfig,
    StochasticConfig,
    LifecycleConfig,
)


BASE_TIME = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def make_bar(symbol, i, open_, high, low, close, volume=5000.0):
    return MarketBar(
        symbol=symbol,
        timestamp=BASE_TIME + timedelta(days=i),
        open=float(open_),
        high=float(high),
        low=float(low),
        close=float(close),
        volume=float(volume),
    )


def random_walk_bars(n_bars=200, symbol='AAPL', start=0, seed=42):
    """Random-walk OHLCV with realistic candle shapes"""
    rng = np.random.RandomState(seed)
    close = 100.0
    bars = []
    for i in range(n_bars):
        prev_close = close
        close = close * (1 + rng.normal(0.0005, 0.012))
        high = max(prev_close, close) * (1 + rng.uniform(0, 0.006))
        low = min(prev_close, close) * (1 - rng.uniform(0, 0.006))
        volume = rng.uniform(1000, 10000)
        bars.append(make_bar(symbol, start + i, prev_close, high, low, close, volume))
    return bars


def rising_hammer_bars(n_bars=60, symbol='AAPL'):
    """
    Steady 1% per bar rise, every candle a hammer.

    range R = 2% of close, open = close - 0.15R, high = close + 0.05R,
    low = high - R  ->  body 0.15, lower shadow 0.8, upper shadow 0.05
    """
    bars = []
    for i in range(n_bars):
        close = 100.0 * 1.01 ** i
        r = 0.02 * close
        high = close + 0.05 * r
        bars.append(make_bar(symbol, i, close - 0.15 * r, high, high - r, close, 5000.0))
    return bars


def plain_rising_bars(n_bars=60, symbol='AAPL'):
    """
    Steady 1% per bar rise with ordinary bullish bodies (no hammer shape).

    open = previous close, high = close * 1.001, low = open * 0.999
    """
    bars = []
    for i in range(n_bars):
        open_ = 100.0 * 1.01 ** (i - 1)
        close = open_ * 1.01
        bars.append(make_bar(symbol, i, open_, close * 1.001, open_ * 0.999, close, 5000.0))
    return bars


def overbought_bars(symbol='AAPL'):
    """
    30 bars oscillating 100 / 100.2, then 6 bars rising 0.5 each.

    RSI(14) ends near 82.6 with close above the upper Bollinger band.
    """
    closes = [100.0 if i % 2 == 0 else 100.2 for i in range(30)]
    closes += [100.2 + 0.5 * k for k in range(1, 7)]
    bars = []
    prev = closes[0]
    for i, close in enumerate(closes):
        bars.append(make_bar(symbol, i, prev, close + 0.1, close - 0.1, close, 5000.0))
        prev = close
    return bars


def feature_vector(values, symbol='AAPL', timestamp=BASE_TIME):
    return FeatureVector(symbol=symbol, timestamp=timestamp, values=dict(values))


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def sample_bars():
    """200 random-walk bars (seeded)"""
    np.random.seed(42)
    return random_walk_bars(200)


@pytest.fixture
def rising_bars():
    return rising_hammer_bars(60)


@pytest.fixture
def small_stochastic_config():
    """Tiny network so training runs in well under a second"""
    return StochasticConfig(
        lookback=10,
        hidden_size=16,
        latent_dim=4,
        learning_rate=0.01,
        min_epochs=2,
        max_epochs=5,
        n_samples=8,
        update_buffer_size=50,
        retrain_buffer_threshold=20,
    )


@pytest.fixture
def small_ml_config(small_stochastic_config):
    return MLConfig(
        specialist=SpecialistConfig(),
        ensemble=EnsembleConfig(),
        stochastic=small_stochastic_config,
        lifecycle=LifecycleConfig(max_workers=2),
    )
