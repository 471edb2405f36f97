"""
Feature Engine Configuration

Defines history sizing, feature windows, and per-family toggles.
All parameters are versioned through the config hash, which doubles as the
feature schema version shared with every consumer.
"""

from dataclasses import dataclass, field
from typing import List
import json
import hashlib

from quantsignal.exceptions import ConfigurationError


@dataclass
class PriceConfig:
    """Family A: Price structure"""

    # Simple moving average windows (price_vs_sma_N)
    sma_windows: List[int] = field(default_factory=lambda: [5, 10, 20, 50])

    # Position within N-bar high/low range
    range_window: int = 20

    # Distance from long-horizon extrema
    extrema_window: int = 52

    enabled: bool = True


@dataclass
class VolumeConfig:
    """Family B: Volume"""

    short_window: int = 10
    long_window: int = 20

    enabled: bool = True


@dataclass
class TechnicalConfig:
    """Family C: Technical indicators"""

    rsi_window: int = 14
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0

    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    bb_window: int = 20
    bb_num_std: float = 2.0

    stoch_window: int = 14
    stoch_overbought: float = 80.0
    stoch_oversold: float = 20.0

    enabled: bool = True


@dataclass
class StatisticalConfig:
    """Family D: Rolling distribution statistics"""

    window: int = 20

    enabled: bool = True


@dataclass
class VolatilityConfig:
    """Family E: Volatility structure"""

    vol_windows: List[int] = field(default_factory=lambda: [5, 10, 20])

    # Short/long pair for volatility_ratio
    ratio_short: int = 5
    ratio_long: int = 20

    annualization_factor: int = 252

    enabled: bool = True


@dataclass
class MomentumConfig:
    """Family F: Returns & momentum"""

    momentum_windows: List[int] = field(default_factory=lambda: [3, 5, 10, 20])
    roc_window: int = 10

    enabled: bool = True


@dataclass
class MicrostructureConfig:
    """Family G: Candle microstructure"""

    # |gap| below this counts as filled
    gap_fill_tolerance: float = 0.001

    enabled: bool = True


@dataclass
class FeatureEngineConfig:
    """
    Master configuration for Feature Engine.

    All parameters versioned for reproducibility.
    """

    # Configuration version
    config_version: str = "1.0.0"

    # Rolling history (ring buffer length per symbol)
    history_size: int = 200

    # Minimum stored bars before extract() returns values
    min_history: int = 20

    # Feature families
    price: PriceConfig = field(default_factory=PriceConfig)
    volume: VolumeConfig = field(default_factory=VolumeConfig)
    technical: TechnicalConfig = field(default_factory=TechnicalConfig)
    statistical: StatisticalConfig = field(default_factory=StatisticalConfig)
    volatility: VolatilityConfig = field(default_factory=VolatilityConfig)
    momentum: MomentumConfig = field(default_factory=MomentumConfig)
    microstructure: MicrostructureConfig = field(default_factory=MicrostructureConfig)

    def validate(self):
        """Raise ConfigurationError for inconsistent settings"""
        if self.min_history < 2:
            raise ConfigurationError(f"min_history must be >= 2, got {self.min_history}")
        if self.history_size < self.min_history:
            raise ConfigurationError(
                f"history_size ({self.history_size}) must be >= min_history ({self.min_history})"
            )
        windows = list(self.price.sma_windows) + list(self.volatility.vol_windows)
        windows += list(self.momentum.momentum_windows)
        if any(w < 2 for w in windows):
            raise ConfigurationError(f"All rolling windows must be >= 2: {windows}")

    def get_config_hash(self) -> str:
        """
        Generate deterministic hash of configuration.

        Used as the feature schema version.
        """
        config_str = json.dumps(self._to_dict_no_hash(), sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    def _to_dict_no_hash(self) -> dict:
        """Internal method: serialize config without hash (prevents recursion)"""
        return {
            "config_version": self.config_version,
            "history_size": self.history_size,
            "min_history": self.min_history,
            "price": {
                "sma_windows": list(self.price.sma_windows),
                "range_window": self.price.range_window,
                "extrema_window": self.price.extrema_window,
                "enabled": self.price.enabled,
            },
            "volume": {
                "short_window": self.volume.short_window,
                "long_window": self.volume.long_window,
                "enabled": self.volume.enabled,
            },
            "technical": {
                "rsi_window": self.technical.rsi_window,
                "rsi_overbought": self.technical.rsi_overbought,
                "rsi_oversold": self.technical.rsi_oversold,
                "macd_fast": self.technical.macd_fast,
                "macd_slow": self.technical.macd_slow,
                "macd_signal": self.technical.macd_signal,
                "bb_window": self.technical.bb_window,
                "bb_num_std": self.technical.bb_num_std,
                "stoch_window": self.technical.stoch_window,
                "stoch_overbought": self.technical.stoch_overbought,
                "stoch_oversold": self.technical.stoch_oversold,
                "enabled": self.technical.enabled,
            },
            "statistical": {
                "window": self.statistical.window,
                "enabled": self.statistical.enabled,
            },
            "volatility": {
                "vol_windows": list(self.volatility.vol_windows),
                "ratio_short": self.volatility.ratio_short,
                "ratio_long": self.volatility.ratio_long,
                "annualization_factor": self.volatility.annualization_factor,
                "enabled": self.volatility.enabled,
            },
            "momentum": {
                "momentum_windows": list(self.momentum.momentum_windows),
                "roc_window": self.momentum.roc_window,
                "enabled": self.momentum.enabled,
            },
            "microstructure": {
                "gap_fill_tolerance": self.microstructure.gap_fill_tolerance,
                "enabled": self.microstructure.enabled,
            },
        }

    def to_dict(self) -> dict:
        """Serialize configuration to dictionary with hash"""
        d = self._to_dict_no_hash()
        d["config_hash"] = self.get_config_hash()
        return d

    def to_json(self) -> str:
        """Serialize configuration to JSON string"""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'FeatureEngineConfig':
        """Create config from dictionary"""
        return cls(
            config_version=config_dict.get('config_version', '1.0.0'),
            history_size=config_dict.get('history_size', 200),
            min_history=config_dict.get('min_history', 20),
            price=PriceConfig(**config_dict.get('price', {})),
            volume=VolumeConfig(**config_dict.get('volume', {})),
            technical=TechnicalConfig(**config_dict.get('technical', {})),
            statistical=StatisticalConfig(**config_dict.get('statistical', {})),
            volatility=VolatilityConfig(**config_dict.get('volatility', {})),
            momentum=MomentumConfig(**config_dict.get('momentum', {})),
            microstructure=MicrostructureConfig(**config_dict.get('microstructure', {})),
        )


# Default configuration instance
DEFAULT_CONFIG = FeatureEngineConfig()
