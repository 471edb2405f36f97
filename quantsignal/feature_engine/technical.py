"""
Family C: Technical Indicator Features

Features:
    - rsi, rsi_overbought, rsi_oversold
    - macd, macd_signal, macd_histogram, macd_bullish
    - bb_position, bb_width
    - stochastic, stoch_overbought, stoch_oversold

Flags are encoded as 1.0 / 0.0.
"""

import numpy as np
import pandas as pd
import logging

from quantsignal.feature_engine.config import TechnicalConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class TechnicalFeatures:
    """
    Compute classic oscillator and band indicators.

    Indicators stay NaN until their window is filled; the pipeline resolves
    those to documented defaults (RSI 50, stochastic 50, others 0).
    """

    def __init__(self, config: TechnicalConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        if not self.config.enabled:
            LOG.debug("Technical features disabled")
            return df

        df = df.copy()
        c = self.config
        close = df['close']

        # RSI (needs rsi_window + 1 closes)
        rsi = PT.simple_rsi(close, c.rsi_window)
        df['rsi'] = rsi
        df['rsi_overbought'] = self._flag(rsi > c.rsi_overbought, rsi)
        df['rsi_oversold'] = self._flag(rsi < c.rsi_oversold, rsi)

        # MACD, valid once the slow EMA has a full window
        macd = PT.ema(close, c.macd_fast) - PT.ema(close, c.macd_slow)
        signal = PT.ema(macd, c.macd_signal)
        valid = close.expanding().count() >= c.macd_slow
        macd = macd.where(valid)
        signal = signal.where(valid)
        df['macd'] = macd
        df['macd_signal'] = signal
        df['macd_histogram'] = macd - signal
        df['macd_bullish'] = self._flag(macd > signal, macd)

        # Bollinger bands
        sma = PT.rolling_mean(close, c.bb_window)
        std = PT.rolling_std(close, c.bb_window)
        lower = sma - c.bb_num_std * std
        upper = sma + c.bb_num_std * std
        df['bb_position'] = PT.safe_divide(close - lower, upper - lower)
        df['bb_width'] = PT.safe_divide(upper - lower, sma)

        # Stochastic %K, neutral 50 on a flat range
        stoch = PT.range_position(close, df['low'], df['high'], c.stoch_window, zero_value=0.5) * 100.0
        df['stochastic'] = stoch
        df['stoch_overbought'] = self._flag(stoch > c.stoch_overbought, stoch)
        df['stoch_oversold'] = self._flag(stoch < c.stoch_oversold, stoch)

        return df

    @staticmethod
    def _flag(condition: pd.Series, source: pd.Series) -> pd.Series:
        """1.0/0.0 flag that stays NaN where the source is undefined"""
        return condition.astype(float).where(source.notna(), np.nan)
