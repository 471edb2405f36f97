"""
Feature Engine Schemas

Defines market bars, feature vectors and the versioned feature schema shared
by the extractor and every model that consumes its output.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union
import numpy as np
import pandas as pd

from quantsignal.feature_engine.config import FeatureEngineConfig


@dataclass(frozen=True)
class MarketBar:
    """
    One OHLCV sample for a symbol.

    Immutable once created.
    """

    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp.isoformat(),
            'open': float(self.open),
            'high': float(self.high),
            'low': float(self.low),
            'close': float(self.close),
            'volume': float(self.volume),
        }


# Values used when a feature's window is not yet filled. Anything not listed
# defaults to 0.0, which is also the sentinel for a zero denominator.
FEATURE_DEFAULTS: Dict[str, float] = {
    'rsi': 50.0,
    'stochastic': 50.0,
    'volume_ratio_10d': 1.0,
    'volume_ratio_20d': 1.0,
    'volatility_ratio': 1.0,
}


def default_for(name: str) -> float:
    """Documented default for a feature name"""
    if name in FEATURE_DEFAULTS:
        return FEATURE_DEFAULTS[name]
    if name.startswith('volume_ratio_'):
        return 1.0
    return 0.0


@dataclass(frozen=True)
class FeatureVector:
    """
    Named feature snapshot for one bar.

    Keys follow FeatureSchema order. An empty vector means the symbol did not
    have enough history yet (try again later), it is not an error.
    """

    symbol: str
    timestamp: Optional[datetime]
    values: Dict[str, float] = field(default_factory=dict)
    schema_version: str = ""

    @classmethod
    def empty(cls, symbol: str, timestamp: Optional[datetime] = None,
              schema_version: str = "") -> 'FeatureVector':
        return cls(symbol=symbol, timestamp=timestamp, values={}, schema_version=schema_version)

    @property
    def is_empty(self) -> bool:
        return not self.values

    @property
    def names(self) -> List[str]:
        return list(self.values.keys())

    def get(self, name: str, default: Optional[float] = None) -> float:
        """Feature value, falling back to the documented default"""
        if name in self.values:
            return self.values[name]
        return default_for(name) if default is None else default

    def __getitem__(self, name: str) -> float:
        return self.values[name]

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def __len__(self) -> int:
        return len(self.values)

    def to_array(self, names: Sequence[str]) -> np.ndarray:
        """Values in the given order (missing names use defaults)"""
        return np.array([self.get(n) for n in names], dtype=float)

    def to_dict(self) -> dict:
        """Serialize to dictionary"""
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'values': {k: float(v) for k, v in self.values.items()},
            'schema_version': self.schema_version,
        }


class FeatureSchema:
    """
    Ordered feature names per family.

    The schema is derived from the config, so disabling a family removes its
    keys for every call made with that config (keys stay stable per version).
    """

    def __init__(self, config: Optional[FeatureEngineConfig] = None):
        self.config = config or FeatureEngineConfig()
        self.version = self.config.get_config_hash()

    def price_features(self) -> List[str]:
        c = self.config.price
        names = ['return_1d']
        names += [f'sma_{w}' for w in c.sma_windows]
        names += [f'price_vs_sma_{w}' for w in c.sma_windows]
        names += [f'price_position_{c.range_window}d', 'distance_from_52w_high', 'distance_from_52w_low']
        return names

    def volume_features(self) -> List[str]:
        c = self.config.volume
        return [
            f'volume_ratio_{c.short_window}d',
            f'volume_ratio_{c.long_window}d',
            'volume_trend',
            'price_volume_correlation',
        ]

    def technical_features(self) -> List[str]:
        return [
            'rsi', 'rsi_overbought', 'rsi_oversold',
            'macd', 'macd_signal', 'macd_histogram', 'macd_bullish',
            'bb_position', 'bb_width',
            'stochastic', 'stoch_overbought', 'stoch_oversold',
        ]

    def statistical_features(self) -> List[str]:
        w = self.config.statistical.window
        return [
            f'price_mean_{w}d', f'price_std_{w}d', f'price_skewness_{w}d', f'price_kurtosis_{w}d',
            f'return_mean_{w}d', f'return_std_{w}d', f'return_skewness_{w}d', f'return_kurtosis_{w}d',
        ]

    def volatility_features(self) -> List[str]:
        names = [f'volatility_{w}d' for w in self.config.volatility.vol_windows]
        return names + ['volatility_ratio', 'intraday_volatility']

    def momentum_features(self) -> List[str]:
        c = self.config.momentum
        return [f'momentum_{w}d' for w in c.momentum_windows] + [f'rate_of_change_{c.roc_window}d']

    def microstructure_features(self) -> List[str]:
        return [
            'body_ratio', 'upper_shadow_ratio', 'lower_shadow_ratio',
            'close_position_in_range', 'gap', 'gap_filled',
        ]

    def get_all_features(self) -> List[str]:
        """All enabled feature names, family by family"""
        families = [
            (self.config.price.enabled, self.price_features),
            (self.config.volume.enabled, self.volume_features),
            (self.config.technical.enabled, self.technical_features),
            (self.config.statistical.enabled, self.statistical_features),
            (self.config.volatility.enabled, self.volatility_features),
            (self.config.momentum.enabled, self.momentum_features),
            (self.config.microstructure.enabled, self.microstructure_features),
        ]
        names: List[str] = []
        for enabled, getter in families:
            if enabled:
                names.extend(getter())
        return names


def bars_to_frame(bars: Sequence[MarketBar]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by bar position"""
    return pd.DataFrame(
        {
            'timestamp': [b.timestamp for b in bars],
            'open': [float(b.open) for b in bars],
            'high': [float(b.high) for b in bars],
            'low': [float(b.low) for b in bars],
            'close': [float(b.close) for b in bars],
            'volume': [float(b.volume) for b in bars],
        }
    )


def as_feature_frame(
    feature_series: Union[pd.DataFrame, Sequence[FeatureVector]]
) -> pd.DataFrame:
    """Accept a feature DataFrame or a list of FeatureVectors"""
    if isinstance(feature_series, pd.DataFrame):
        return feature_series
    rows = [fv.values for fv in feature_series]
    return pd.DataFrame(rows)
