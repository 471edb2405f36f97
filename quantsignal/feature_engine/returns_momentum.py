"""
Family F: Returns & Momentum Features

Features:
    - momentum_Nd: close_t / close_{t-N} - 1 for N in (3, 5, 10, 20)
    - rate_of_change_10d: same 10-bar change expressed in percent
"""

import pandas as pd
import logging

from quantsignal.feature_engine.config import MomentumConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class ReturnsMomentumFeatures:
    """Compute multi-horizon momentum."""

    def __init__(self, config: MomentumConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        if not self.config.enabled:
            LOG.debug("Momentum features disabled")
            return df

        df = df.copy()
        close = df['close']

        for window in self.config.momentum_windows:
            df[f'momentum_{window}d'] = PT.simple_return(close, window)

        roc = self.config.roc_window
        df[f'rate_of_change_{roc}d'] = PT.simple_return(close, roc) * 100.0

        return df
