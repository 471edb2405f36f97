"""
Family D: Statistical Features

Rolling distribution moments of closing prices and of one-bar returns.
Skewness and kurtosis are bias-corrected sample estimates (excess kurtosis).
Returns use the window's closes, so the return window is one shorter.
"""

import pandas as pd
import logging

from quantsignal.feature_engine.config import StatisticalConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class StatisticalFeatures:
    """Compute rolling mean/std/skew/kurtosis of price and returns."""

    def __init__(self, config: StatisticalConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        if not self.config.enabled:
            LOG.debug("Statistical features disabled")
            return df

        df = df.copy()
        w = self.config.window
        close = df['close']
        returns = PT.simple_return(close, 1)

        df[f'price_mean_{w}d'] = PT.rolling_mean(close, w)
        df[f'price_std_{w}d'] = PT.rolling_std(close, w)
        df[f'price_skewness_{w}d'] = PT.rolling_skew(close, w)
        df[f'price_kurtosis_{w}d'] = PT.rolling_kurt(close, w)

        rw = w - 1
        df[f'return_mean_{w}d'] = PT.rolling_mean(returns, rw)
        df[f'return_std_{w}d'] = PT.rolling_std(returns, rw)
        df[f'return_skewness_{w}d'] = PT.rolling_skew(returns, rw)
        df[f'return_kurtosis_{w}d'] = PT.rolling_kurt(returns, rw)

        return df
