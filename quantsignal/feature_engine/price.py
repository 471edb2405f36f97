"""
Family A: Price Structure Features

Features:
    - return_1d: one-bar simple return
    - sma_N, price_vs_sma_N: moving averages and relative distance
    - price_position_20d: close within the 20-bar low/high range
    - distance_from_52w_high / _low: distance from 52-bar extrema
"""

import pandas as pd
import logging

from quantsignal.feature_engine.config import PriceConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class PriceFeatures:
    """Compute price structure features."""

    def __init__(self, config: PriceConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Compute price features.

        Args:
            df: OHLCV DataFrame

        Returns:
            DataFrame with added feature columns
        """
        if not self.config.enabled:
            LOG.debug("Price features disabled")
            return df

        df = df.copy()
        close = df['close']

        df['return_1d'] = PT.simple_return(close, 1)

        for window in self.config.sma_windows:
            sma = PT.rolling_mean(close, window)
            df[f'sma_{window}'] = sma
            df[f'price_vs_sma_{window}'] = PT.safe_divide(close - sma, sma)

        w = self.config.range_window
        df[f'price_position_{w}d'] = PT.range_position(close, df['low'], df['high'], w)

        # 52-bar extrema ("52w" on weekly bars)
        n = self.config.extrema_window
        high_n = PT.rolling_max(df['high'], n)
        low_n = PT.rolling_min(df['low'], n)
        df['distance_from_52w_high'] = PT.safe_divide(high_n - close, high_n)
        df['distance_from_52w_low'] = PT.safe_divide(close - low_n, low_n)

        return df
