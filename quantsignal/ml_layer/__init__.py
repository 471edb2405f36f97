"""
ML Layer - Direction Prediction

Two complementary predictors behind one model contract:
- Ensemble of four rule specialists (trend, mean reversion, volatility
  regime, candlestick pattern) fused with condition-dependent weights
- Stochastic latent sequence model with uncertainty-discounted confidence

Plus the lifecycle around them: background training with copy-then-swap,
health checks, retraining and versioned persistence.

Flow:
    Feature Engine → ML Layer (Prediction) → Signal Engine
"""

from quantsignal.ml_layer.config import (
    MLConfig,
    SpecialistConfig,
    EnsembleConfig,
    StochasticConfig,
    LifecycleConfig,
)
from quantsignal.ml_layer.schemas import (
    Direction,
    Regime,
    Prediction,
    EnsembleWeightSet,
    ModelState,
    ModelMetadata,
)
from quantsignal.ml_layer.base import PredictiveModel
from quantsignal.ml_layer.specialists import SpecialistModel, create_specialists, SPECIALIST_NAMES
from quantsignal.ml_layer.ensemble import EnsembleFusion, EnsembleModel
from quantsignal.ml_layer.stochastic_model import StochasticSequenceModel
from quantsignal.ml_layer.model_registry import ModelRegistry
from quantsignal.ml_layer.lifecycle import ModelLifecycleManager, ModelStatus

__version__ = "1.0.0"

__all__ = [
    'MLConfig',
    'SpecialistConfig',
    'EnsembleConfig',
    'StochasticConfig',
    'LifecycleConfig',
    'Direction',
    'Regime',
    'Prediction',
    'EnsembleWeightSet',
    'ModelState',
    'ModelMetadata',
    'PredictiveModel',
    'SpecialistModel',
    'create_specialists',
    'SPECIALIST_NAMES',
    'EnsembleFusion',
    'EnsembleModel',
    'StochasticSequenceModel',
    'ModelRegistry',
    'ModelLifecycleManager',
    'ModelStatus',
]
