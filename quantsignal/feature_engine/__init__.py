"""
quantsignal Feature Engine

Turns per-symbol OHLCV bars into named, versioned feature vectors.

Philosophy:
- Causal: features at bar t use bars <= t only
- Total: every schema key is always present, never NaN or inf
- Bounded: per-symbol ring buffer history
- Snapshot reads: extraction never sees a buffer under mutation
"""

from quantsignal.feature_engine.config import FeatureEngineConfig, DEFAULT_CONFIG
from quantsignal.feature_engine.schemas import (
    MarketBar,
    FeatureVector,
    FeatureSchema,
    FEATURE_DEFAULTS,
    as_feature_frame,
)
from quantsignal.feature_engine.pipeline import FeaturePipeline
from quantsignal.feature_engine.extractor import FeatureExtractor

__all__ = [
    'FeatureEngineConfig',
    'DEFAULT_CONFIG',
    'MarketBar',
    'FeatureVector',
    'FeatureSchema',
    'FEATURE_DEFAULTS',
    'as_feature_frame',
    'FeaturePipeline',
    'FeatureExtractor',
]

__version__ = '1.0.0'
