"""
Family E: Volatility Structure Features

Purpose: Risk context and regime awareness.

Features:
    - volatility_Nd: annualized sample std of one-bar returns over the last
      N closes (N-1 returns), scaled by sqrt(252)
    - volatility_ratio: short / long volatility (1.0 when long vol is zero)
    - intraday_volatility: (high - low) / close
"""

import numpy as np
import pandas as pd
import logging

from quantsignal.feature_engine.config import VolatilityConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class VolatilityFeatures:
    """
    Compute volatility structure features.

    All features describe risk context, not direction.
    """

    def __init__(self, config: VolatilityConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        if not self.config.enabled:
            LOG.debug("Volatility features disabled")
            return df

        df = df.copy()
        returns = PT.simple_return(df['close'], 1)
        scale = np.sqrt(self.config.annualization_factor)

        windows = sorted(set(self.config.vol_windows) | {self.config.ratio_short, self.config.ratio_long})
        vols = {w: PT.rolling_std(returns, w - 1) * scale for w in windows}

        for window in self.config.vol_windows:
            df[f'volatility_{window}d'] = vols[window]

        df['volatility_ratio'] = PT.safe_divide(
            vols[self.config.ratio_short],
            vols[self.config.ratio_long],
            zero_value=1.0
        )
        df['intraday_volatility'] = PT.safe_divide(df['high'] - df['low'], df['close'])

        return df
