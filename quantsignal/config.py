"""
QuantSignal Configuration

Bundles the feature, ML and signal configs and loads overrides from a
`.env` file / environment via `python-dotenv`.

Recognised variables:
    QUANTSIGNAL_MIN_CONFIDENCE      signal.min_confidence
    QUANTSIGNAL_MAX_POSITION_SIZE   signal.sizing.max_position_size
    QUANTSIGNAL_PREDICTION_POLICY   signal.prediction_policy
    QUANTSIGNAL_LOOKBACK            ml.stochastic.lookback
    QUANTSIGNAL_STALENESS_DAYS      ml.lifecycle.staleness_days
    QUANTSIGNAL_ACCURACY_FLOOR      ml.lifecycle.accuracy_floor
    QUANTSIGNAL_STORAGE_PATH        ml.lifecycle.storage_path
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Optional
import hashlib
import json
import logging

from dotenv import load_dotenv

from quantsignal.exceptions import ConfigurationError
from quantsignal.feature_engine.config import FeatureEngineConfig
from quantsignal.ml_layer.config import MLConfig
from quantsignal.signal_engine.config import SignalConfig

LOG = logging.getLogger(__name__)

ENV_PREFIX = "QUANTSIGNAL_"


@dataclass
class QuantSignalConfig:
    """Top-level configuration for the whole pipeline"""

    features: FeatureEngineConfig = field(default_factory=FeatureEngineConfig)
    ml: MLConfig = field(default_factory=MLConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)

    def validate(self):
        """Validate every sub-config (raises ConfigurationError)"""
        self.features.validate()
        self.ml.validate()
        self.signal.validate()

    def to_dict(self) -> dict:
        """Convert configuration to dictionary"""
        return {
            'features': self.features.to_dict(),
            'ml': self.ml.to_dict(),
            'signal': self.signal.to_dict(),
        }

    def get_config_hash(self) -> str:
        config_str = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'QuantSignalConfig':
        """Create config from dictionary"""
        return cls(
            features=FeatureEngineConfig.from_dict(config_dict.get('features', {})),
            ml=MLConfig.from_dict(config_dict.get('ml', {})),
            signal=SignalConfig.from_dict(config_dict.get('signal', {})),
        )


def _env(name: str, cast: Callable, default=None):
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {ENV_PREFIX}{name}={raw!r}: {e}") from e


def load_config_from_env(
    env_path: Optional[str] = None,
    base: Optional[QuantSignalConfig] = None
) -> QuantSignalConfig:
    """
    Load QUANTSIGNAL_* overrides from a .env file and the environment.

    Args:
        env_path: explicit .env file (default: search from the working dir)
        base: config to override (defaults if None)

    Returns:
        Validated QuantSignalConfig
    """
    if env_path:
        load_dotenv(env_path)
    else:
        load_dotenv()

    config = base or QuantSignalConfig()

    min_confidence = _env("MIN_CONFIDENCE", float)
    if min_confidence is not None:
        config.signal.min_confidence = min_confidence

    max_position = _env("MAX_POSITION_SIZE", float)
    if max_position is not None:
        config.signal.sizing.max_position_size = max_position

    policy = _env("PREDICTION_POLICY", str)
    if policy is not None:
        config.signal.prediction_policy = policy.strip().lower()

    lookback = _env("LOOKBACK", int)
    if lookback is not None:
        config.ml.stochastic.lookback = lookback

    staleness = _env("STALENESS_DAYS", int)
    if staleness is not None:
        config.ml.lifecycle.staleness_days = staleness

    accuracy_floor = _env("ACCURACY_FLOOR", float)
    if accuracy_floor is not None:
        config.ml.lifecycle.accuracy_floor = accuracy_floor

    storage_path = _env("STORAGE_PATH", str)
    if storage_path is not None:
        config.ml.lifecycle.storage_path = storage_path

    config.validate()
    LOG.info(f"Configuration loaded (hash={config.get_config_hash()})")
    return config
