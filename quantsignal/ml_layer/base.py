"""
Trainable Model Interface

Common contract for every trainable component (specialists, ensemble,
stochastic sequence model):

    train(history, feature_series, cancel_event=None) -> bool
    predict(bar, features) -> Prediction | None
    update(bar, features)
    is_ready

plus outcome bookkeeping and opaque save/load of the model's parameters.
"""

import pickle
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union
import logging

import pandas as pd

from quantsignal.feature_engine.schemas import MarketBar, FeatureVector
from quantsignal.ml_layer.schemas import ModelState, Prediction

LOG = logging.getLogger(__name__)

FeatureSeries = Union[pd.DataFrame, Sequence[FeatureVector]]


class PredictiveModel(ABC):
    """
    Abstract base for trainable predictors.

    Locking:
        Each model owns an RLock. train/update/load take it as writers;
        predict takes it only around reads of parameters, so concurrent
        predictions for different symbols (different model instances) never
        contend.
    """

    name: str = "model"

    def __init__(self, min_training_samples: int):
        self.min_training_samples = min_training_samples
        self.state = ModelState()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    def train(
        self,
        history: Sequence[MarketBar],
        feature_series: FeatureSeries,
        cancel_event: Optional[threading.Event] = None
    ) -> bool:
        """Fit on history; False when data is insufficient, training fails or is cancelled"""

    @abstractmethod
    def predict(self, bar: MarketBar, features: FeatureVector) -> Optional[Prediction]:
        """Predict for the current bar"""

    @abstractmethod
    def update(self, bar: MarketBar, features: FeatureVector):
        """Record a new observation without retraining"""

    @abstractmethod
    def _get_params(self) -> Dict[str, Any]:
        """Picklable parameter snapshot"""

    @abstractmethod
    def _set_params(self, params: Dict[str, Any]):
        """Restore a parameter snapshot"""

    @property
    def is_ready(self) -> bool:
        return self.state.ready

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def _mark_trained(self, n_samples: int):
        self.state.ready = True
        self.state.last_trained = datetime.now()
        self.state.training_samples = n_samples

    def _count_prediction(self):
        with self._lock:
            self.state.prediction_count += 1

    def record_outcome(self, correct: bool):
        """Score one earlier prediction against realised ground truth"""
        with self._lock:
            self.state.scored_count += 1
            if correct:
                self.state.correct_count += 1

    def reset_outcomes(self):
        """Forget scored outcomes (a freshly trained model starts a new accuracy window)"""
        with self._lock:
            self.state.scored_count = 0
            self.state.correct_count = 0

    def needs_retraining(
        self,
        staleness_days: int = 30,
        accuracy_floor: float = 0.45,
        min_samples: int = 50,
        now: Optional[datetime] = None
    ) -> bool:
        """Stale or under-performing"""
        if not self.state.ready:
            return False
        age = self.state.age_days(now)
        if age is not None and age > staleness_days:
            return True
        return self.state.scored_count > min_samples and self.state.accuracy < accuracy_floor

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self) -> bytes:
        """Opaque blob of parameters + state"""
        with self._lock:
            payload = {
                'name': self.name,
                'params': self._get_params(),
                'state': self.state.to_dict(),
                'last_trained': self.state.last_trained,
            }
            blob = pickle.dumps(payload)
            self.state.blob = blob
            return blob

    def deserialize(self, blob: bytes):
        """Restore from serialize() output; the model becomes ready"""
        payload = pickle.loads(blob)
        if payload.get('name') != self.name:
            raise ValueError(f"Blob holds a '{payload.get('name')}' model, expected '{self.name}'")
        with self._lock:
            self._set_params(payload['params'])
            saved = payload['state']
            self.state = ModelState(
                ready=True,
                last_trained=payload.get('last_trained'),
                prediction_count=saved.get('prediction_count', 0),
                correct_count=saved.get('correct_count', 0),
                scored_count=saved.get('scored_count', 0),
                training_samples=saved.get('training_samples', 0),
                blob=blob,
            )

    def save(self, path: Union[str, Path]) -> bool:
        """Write the model blob to path"""
        if not self.is_ready:
            LOG.warning(f"Refusing to save untrained {self.name} model")
            return False
        try:
            path = Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(self.serialize())
            LOG.info(f"✓ Saved {self.name} model to {path}")
            return True
        except (OSError, pickle.PicklingError) as e:
            LOG.error(f"Failed to save {self.name} model to {path}: {e}")
            return False

    def load(self, path: Union[str, Path]) -> bool:
        """Read a blob written by save(); sets ready without a data check"""
        try:
            self.deserialize(Path(path).read_bytes())
            LOG.info(f"✓ Loaded {self.name} model from {path}")
            return True
        except (OSError, pickle.UnpicklingError, ValueError, KeyError, EOFError) as e:
            LOG.error(f"Failed to load {self.name} model from {path}: {e}")
            return False

    def __getstate__(self):
        state = self.__dict__.copy()
        state.pop('_lock', None)
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._lock = threading.RLock()
