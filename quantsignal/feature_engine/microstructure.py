"""
Family G: Candle Microstructure Features

Features:
    - body_ratio: |close - open| / (high - low)
    - upper_shadow_ratio: (high - max(open, close)) / (high - low)
    - lower_shadow_ratio: (min(open, close) - low) / (high - low)
    - close_position_in_range: (close - low) / (high - low)
    - gap: open / prev_close - 1
    - gap_filled: 1.0 when |gap| is below the fill tolerance

A zero-range bar resolves every ratio to 0.0.
"""

import numpy as np
import pandas as pd
import logging

from quantsignal.feature_engine.config import MicrostructureConfig
from quantsignal.feature_engine.primitives import PrimitiveTransforms as PT

LOG = logging.getLogger(__name__)


class MicrostructureFeatures:
    """Compute single-bar shape features."""

    def __init__(self, config: MicrostructureConfig):
        self.config = config

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        if not self.config.enabled:
            LOG.debug("Microstructure features disabled")
            return df

        df = df.copy()
        o, h, lo, c = df['open'], df['high'], df['low'], df['close']
        bar_range = h - lo
        body_top = np.maximum(o, c)
        body_bottom = np.minimum(o, c)

        df['body_ratio'] = PT.safe_divide((c - o).abs(), bar_range)
        df['upper_shadow_ratio'] = PT.safe_divide(h - body_top, bar_range)
        df['lower_shadow_ratio'] = PT.safe_divide(body_bottom - lo, bar_range)
        df['close_position_in_range'] = PT.safe_divide(c - lo, bar_range)

        prev_close = c.shift(1)
        gap = PT.safe_divide(o - prev_close, prev_close).fillna(0.0)
        df['gap'] = gap
        df['gap_filled'] = (gap.abs() < self.config.gap_fill_tolerance).astype(float)

        return df
