"""
Feature Primitives

Rolling-window and arithmetic helpers shared by the feature families.
Every helper is causal: the value at row t depends on rows <= t only.
"""

import pandas as pd
import numpy as np
import logging

LOG = logging.getLogger(__name__)


class PrimitiveTransforms:
    """
    Series-in, series-out helpers.

    Output is index-aligned with the input. Rows whose window is not yet
    full stay NaN; the pipeline replaces them with documented defaults.
    """

    @staticmethod
    def _full_window(series: pd.Series, window: int):
        return series.rolling(window=window, min_periods=window)

    @staticmethod
    def rolling_mean(series: pd.Series, window: int) -> pd.Series:
        """Trailing mean over `window` bars (NaN for the first window-1 rows)"""
        return PrimitiveTransforms._full_window(series, window).mean()

    @staticmethod
    def rolling_std(series: pd.Series, window: int, ddof: int = 1) -> pd.Series:
        """Trailing standard deviation; ddof=1 gives the sample estimate"""
        return PrimitiveTransforms._full_window(series, window).std(ddof=ddof)

    @staticmethod
    def rolling_sum(series: pd.Series, window: int) -> pd.Series:
        return PrimitiveTransforms._full_window(series, window).sum()

    @staticmethod
    def rolling_min(series: pd.Series, window: int) -> pd.Series:
        return PrimitiveTransforms._full_window(series, window).min()

    @staticmethod
    def rolling_max(series: pd.Series, window: int) -> pd.Series:
        return PrimitiveTransforms._full_window(series, window).max()

    @staticmethod
    def rolling_skew(series: pd.Series, window: int) -> pd.Series:
        """Bias-corrected sample skewness"""
        return PrimitiveTransforms._full_window(series, window).skew()

    @staticmethod
    def rolling_kurt(series: pd.Series, window: int) -> pd.Series:
        """Bias-corrected sample excess kurtosis"""
        return PrimitiveTransforms._full_window(series, window).kurt()

    @staticmethod
    def simple_return(close: pd.Series, periods: int = 1) -> pd.Series:
        """
        Simple return over N bars.

        r_t = close_t / close_{t-N} - 1
        """
        return PrimitiveTransforms.safe_divide(close - close.shift(periods), close.shift(periods))

    @staticmethod
    def ema(series: pd.Series, span: int) -> pd.Series:
        """
        Exponential moving average, seeded at the first observation.

        alpha = 2 / (span + 1)
        """
        return series.ewm(span=span, adjust=False).mean()

    @staticmethod
    def safe_divide(
        numerator: pd.Series,
        denominator: pd.Series,
        zero_value: float = 0.0
    ) -> pd.Series:
        """
        Element-wise division with a sentinel for zero denominators.

        NaN inputs stay NaN (window not filled); a zero denominator with a
        defined numerator resolves to zero_value instead of ±inf.
        """
        result = numerator / denominator.replace(0, np.nan)
        zero_mask = (denominator == 0) & numerator.notna()
        result = result.mask(zero_mask, zero_value)
        return result.replace([np.inf, -np.inf], zero_value)

    @staticmethod
    def simple_rsi(close: pd.Series, window: int) -> pd.Series:
        """
        RSI from simple (not Wilder-smoothed) average gain and loss.

        RSI = 100 - 100 / (1 + avg_gain / avg_loss)
        RSI = 100 when avg_loss == 0
        """
        change = close.diff()
        avg_gain = PrimitiveTransforms.rolling_sum(change.clip(lower=0), window) / window
        avg_loss = PrimitiveTransforms.rolling_sum((-change).clip(lower=0), window) / window

        rs = avg_gain / avg_loss.replace(0, np.nan)
        rsi = 100.0 - 100.0 / (1.0 + rs)
        return rsi.mask((avg_loss == 0) & avg_gain.notna(), 100.0)

    @staticmethod
    def range_position(
        close: pd.Series,
        low: pd.Series,
        high: pd.Series,
        window: int,
        zero_value: float = 0.0
    ) -> pd.Series:
        """
        Position of close within the N-bar low/high range.

        0 = at the low, 1 = at the high
        """
        range_low = PrimitiveTransforms.rolling_min(low, window)
        range_high = PrimitiveTransforms.rolling_max(high, window)
        return PrimitiveTransforms.safe_divide(close - range_low, range_high - range_low, zero_value)
