"""
Family B: Volume Features

Features:
    - volume_ratio_10d / _20d: current volume vs. its rolling average
    - volume_trend: (avg_short - avg_long) / avg_long
    - price_volume_correlation: return_1d * log(1 + volume / avg_long)
"""

import numpy as np
import pandas as pd
import logging

from quantsignal.feature_engine.config import VolumeConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class VolumeFeatures:
    """
    Compute volume features.

    A zero average volume yields a neutral ratio of 1.0.
    """

    def __init__(self, config: VolumeConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        if not self.config.enabled:
            LOG.debug("Volume features disabled")
            return df

        df = df.copy()
        volume = df['volume']
        short_w, long_w = self.config.short_window, self.config.long_window

        avg_short = PT.rolling_mean(volume, short_w)
        avg_long = PT.rolling_mean(volume, long_w)

        df[f'volume_ratio_{short_w}d'] = PT.safe_divide(volume, avg_short, zero_value=1.0)
        df[f'volume_ratio_{long_w}d'] = PT.safe_divide(volume, avg_long, zero_value=1.0)
        df['volume_trend'] = PT.safe_divide(avg_short - avg_long, avg_long)

        ret_1d = PT.simple_return(df['close'], 1)
        relative_volume = PT.safe_divide(volume, avg_long)
        df['price_volume_correlation'] = ret_1d * np.log1p(relative_volume.clip(lower=0))

        return df
