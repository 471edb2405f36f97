"""
Model Lifecycle Manager

Orchestrates training, health checks, retraining and persistence for every
(symbol, model) slot.

State machine per slot:

    UNTRAINED -> TRAINING -> READY -> DEGRADED -> TRAINING -> READY
        ^            |                                |
        +-- failure -+            failure keeps ------+ DEGRADED

Training runs on a worker pool against a deep copy of the live model. The
copy replaces the live model only when training succeeds and was not
cancelled, so predictions keep using the previous model until then.
"""

import copy
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Deque, Dict, List, Optional, Sequence, Tuple, Union
import logging

from quantsignal.exceptions import PersistenceError
from quantsignal.feature_engine.schemas import MarketBar
from quantsignal.ml_layer.base import PredictiveModel, FeatureSeries
from quantsignal.ml_layer.config import LifecycleConfig
from quantsignal.ml_layer.model_registry import ModelRegistry

LOG = logging.getLogger(__name__)


class ModelStatus(str, Enum):
    """Lifecycle state of one (symbol, model) slot"""
    UNTRAINED = "UNTRAINED"
    TRAINING = "TRAINING"
    READY = "READY"
    DEGRADED = "DEGRADED"


@dataclass
class ModelSlot:
    """Live model plus its lifecycle bookkeeping"""

    symbol: str
    model_name: str
    model: PredictiveModel
    status: ModelStatus = ModelStatus.UNTRAINED

    # Training task
    future: Optional[Future] = None
    cancel_event: Optional[threading.Event] = None
    previous_status: ModelStatus = ModelStatus.UNTRAINED

    # Trailing prediction outcomes (True = correct)
    outcomes: Deque[bool] = field(default_factory=lambda: deque(maxlen=100))

    last_training_attempt: Optional[datetime] = None
    last_successful_training: Optional[datetime] = None
    last_error: Optional[str] = None
    training_data_size: int = 0
    model_path: Optional[str] = None

    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def trailing_accuracy(self) -> Optional[float]:
        if not self.outcomes:
            return None
        return sum(self.outcomes) / len(self.outcomes)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            'symbol': self.symbol,
            'model_name': self.model_name,
            'status': self.status.value,
            'training_in_progress': self.status == ModelStatus.TRAINING,
            'model_ready': self.model.is_ready,
            'last_training_attempt': self.last_training_attempt.isoformat() if self.last_training_attempt else None,
            'last_successful_training': (
                self.last_successful_training.isoformat() if self.last_successful_training else None
            ),
            'last_error': self.last_error,
            'training_data_size': self.training_data_size,
            'trailing_accuracy': self.trailing_accuracy,
            'scored_outcomes': len(self.outcomes),
            'model_path': self.model_path,
            'model_state': self.model.state.to_dict(),
        }


class ModelLifecycleManager:
    """
    Training and retraining orchestration.

    Thread safety:
        - One RLock per slot guards status transitions and the model swap
        - Training work never holds a slot lock
        - Callers poll status() or the returned Future without blocking
    """

    def __init__(
        self,
        config: Optional[LifecycleConfig] = None,
        registry: Optional[ModelRegistry] = None,
        config_hash: str = ""
    ):
        self.config = config or LifecycleConfig()
        self.registry = registry
        # Hash of the model configuration, stored with every registry snapshot
        self.config_hash = config_hash
        if self.registry is None and self.config.storage_path:
            self.registry = ModelRegistry(self.config.storage_path)

        self._slots: Dict[Tuple[str, str], ModelSlot] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="ModelTrainer"
        )

        LOG.info(f"Model lifecycle manager initialized (workers={self.config.max_workers})")

    # ==================================================================
    # REGISTRATION / LOOKUP
    # ==================================================================

    def register(self, symbol: str, model_name: str, model: PredictiveModel) -> ModelSlot:
        """Add a model slot (READY if the model is already trained)"""
        slot = ModelSlot(
            symbol=symbol,
            model_name=model_name,
            model=model,
            status=ModelStatus.READY if model.is_ready else ModelStatus.UNTRAINED,
            outcomes=deque(maxlen=self.config.accuracy_window),
        )
        with self._lock:
            self._slots[(symbol, model_name)] = slot
        LOG.debug(f"Registered slot {symbol}/{model_name} ({slot.status.value})")
        return slot

    def _slot(self, symbol: str, model_name: str) -> ModelSlot:
        with self._lock:
            slot = self._slots.get((symbol, model_name))
        if slot is None:
            raise KeyError(f"No model registered for {symbol}/{model_name}")
        return slot

    def has_slot(self, symbol: str, model_name: str) -> bool:
        with self._lock:
            return (symbol, model_name) in self._slots

    def get_model(self, symbol: str, model_name: str) -> PredictiveModel:
        """Live model (never an in-flight training copy)"""
        slot = self._slot(symbol, model_name)
        with slot.lock:
            return slot.model

    def status(self, symbol: str, model_name: str) -> ModelStatus:
        slot = self._slot(symbol, model_name)
        with slot.lock:
            return slot.status

    def is_serving(self, symbol: str, model_name: str) -> bool:
        """True when the live model can produce trained predictions"""
        return self.get_model(symbol, model_name).is_ready

    def get_all_statuses(self) -> Dict[str, dict]:
        with self._lock:
            slots = list(self._slots.values())
        return {f"{s.symbol}/{s.model_name}": s.to_dict() for s in slots}

    # ==================================================================
    # TRAINING
    # ==================================================================

    def submit_training(
        self,
        symbol: str,
        model_name: str,
        history: Sequence[MarketBar],
        feature_series: FeatureSeries
    ) -> Future:
        """
        Train asynchronously on a copy of the live model.

        Returns:
            Future resolving to True when the trained copy was swapped in.
            If training is already running, its Future is returned.
        """
        slot = self._slot(symbol, model_name)
        with slot.lock:
            if slot.status == ModelStatus.TRAINING and slot.future is not None and not slot.future.done():
                LOG.debug(f"Training already in progress for {symbol}/{model_name}")
                return slot.future

            with slot.model._lock:
                candidate = copy.deepcopy(slot.model)

            slot.previous_status = slot.status
            slot.status = ModelStatus.TRAINING
            slot.cancel_event = threading.Event()
            slot.last_training_attempt = datetime.now()
            slot.future = self._executor.submit(
                self._run_training, slot, candidate, list(history), feature_series, slot.cancel_event
            )
            LOG.info(f"Training scheduled for {symbol}/{model_name} ({len(history)} bars)")
            return slot.future

    def _run_training(
        self,
        slot: ModelSlot,
        candidate: PredictiveModel,
        history: List[MarketBar],
        feature_series: FeatureSeries,
        cancel_event: threading.Event
    ) -> bool:
        error = None
        try:
            ok = candidate.train(history, feature_series, cancel_event=cancel_event)
        except Exception as e:  # worker boundary: report, never crash the pool
            LOG.exception(f"Training raised for {slot.symbol}/{slot.model_name}")
            ok, error = False, str(e)

        with slot.lock:
            cancelled = cancel_event.is_set()
            if ok and not cancelled:
                candidate.reset_outcomes()
                slot.model = candidate
                slot.status = ModelStatus.READY
                slot.outcomes.clear()
                slot.last_successful_training = datetime.now()
                slot.training_data_size = len(history)
                slot.last_error = None
                LOG.info(f"✓ {slot.symbol}/{slot.model_name} trained and swapped in")
                return True

            slot.status = slot.previous_status
            if cancelled:
                LOG.info(f"Training cancelled for {slot.symbol}/{slot.model_name}; "
                         f"keeping {slot.status.value} model")
            else:
                slot.last_error = error or "training returned False"
                LOG.error(f"Training failed for {slot.symbol}/{slot.model_name}: {slot.last_error}")
            return False

    def cancel(self, symbol: str, model_name: str) -> bool:
        """
        Abandon an in-flight training task.

        The live model and its prior status are left untouched.
        """
        slot = self._slot(symbol, model_name)
        with slot.lock:
            if slot.status != ModelStatus.TRAINING or slot.cancel_event is None:
                return False
            slot.cancel_event.set()
            if slot.future is not None and slot.future.cancel():
                # Never started: restore the status here
                slot.status = slot.previous_status
            LOG.info(f"Cancellation requested for {symbol}/{model_name}")
            return True

    def maybe_train(
        self,
        symbol: str,
        model_name: str,
        history: Sequence[MarketBar],
        feature_series: FeatureSeries
    ) -> Optional[Future]:
        """
        Start training when the slot needs it and enough data exists.

        UNTRAINED with data >= the model minimum, or DEGRADED.
        """
        slot = self._slot(symbol, model_name)
        with slot.lock:
            status = slot.status
            minimum = slot.model.min_training_samples
        if status == ModelStatus.UNTRAINED and len(history) >= minimum:
            return self.submit_training(symbol, model_name, history, feature_series)
        if status == ModelStatus.DEGRADED and len(history) >= minimum:
            LOG.info(f"Retraining degraded model {symbol}/{model_name}")
            return self.submit_training(symbol, model_name, history, feature_series)
        return None

    def wait(self, symbol: str, model_name: str, timeout: Optional[float] = None) -> Optional[bool]:
        """Block until the current training task finishes (None if none)"""
        slot = self._slot(symbol, model_name)
        with slot.lock:
            future = slot.future
        if future is None or future.cancelled():
            return None
        return future.result(timeout=timeout)

    # ==================================================================
    # HEALTH
    # ==================================================================

    def record_outcome(self, symbol: str, model_name: str, correct: bool):
        """Score a prediction of the live model"""
        slot = self._slot(symbol, model_name)
        with slot.lock:
            slot.model.record_outcome(correct)
            slot.outcomes.append(bool(correct))

    def check_health(self, symbol: str, model_name: str, now: Optional[datetime] = None) -> ModelStatus:
        """
        READY -> DEGRADED when trailing accuracy is below the floor over at
        least min_accuracy_samples outcomes, the model is older than the
        staleness horizon, or the model itself asks for retraining
        (needs_retraining, e.g. a full update buffer).
        """
        slot = self._slot(symbol, model_name)
        with slot.lock:
            if slot.status != ModelStatus.READY:
                return slot.status

            accuracy = slot.trailing_accuracy
            if (len(slot.outcomes) >= self.config.min_accuracy_samples
                    and accuracy is not None and accuracy < self.config.accuracy_floor):
                slot.status = ModelStatus.DEGRADED
                LOG.warning(f"{symbol}/{model_name} degraded: trailing accuracy "
                            f"{accuracy:.2%} < {self.config.accuracy_floor:.2%}")
                return slot.status

            age = slot.model.state.age_days(now)
            if age is not None and age > self.config.staleness_days:
                slot.status = ModelStatus.DEGRADED
                LOG.warning(f"{symbol}/{model_name} degraded: model is {age:.1f} days old")
                return slot.status

            if slot.model.needs_retraining(
                staleness_days=self.config.staleness_days,
                accuracy_floor=self.config.accuracy_floor,
                min_samples=self.config.min_accuracy_samples,
                now=now,
            ):
                slot.status = ModelStatus.DEGRADED
                LOG.warning(f"{symbol}/{model_name} degraded: model requested retraining")
            return slot.status

    def perform_maintenance(self, now: Optional[datetime] = None) -> List[str]:
        """
        Health-check every slot and snapshot READY models to the registry.

        A model is stored only when it was trained after the latest stored
        version, so repeated passes over an unchanged model add nothing.

        Returns:
            Keys ("symbol/model") of slots that are DEGRADED after the check
        """
        with self._lock:
            keys = list(self._slots.keys())

        degraded = []
        for symbol, model_name in keys:
            status = self.check_health(symbol, model_name, now)
            if status == ModelStatus.DEGRADED:
                degraded.append(f"{symbol}/{model_name}")
            elif status == ModelStatus.READY and self.registry is not None:
                try:
                    model = self.get_model(symbol, model_name)
                    if self._has_new_snapshot(symbol, model_name, model):
                        self.registry.register_model(symbol, model_name, model, config_hash=self.config_hash)
                except PersistenceError as e:
                    LOG.error(f"Auto-save failed for {symbol}/{model_name}: {e}")

        if degraded:
            LOG.warning(f"Maintenance found {len(degraded)} degraded models: {degraded}")
        return degraded

    def _has_new_snapshot(self, symbol: str, model_name: str, model: PredictiveModel) -> bool:
        trained = model.state.last_trained
        if trained is None:
            return False
        stored = self.registry.get_latest_trained_on(symbol, model_name)
        return stored is None or trained > stored

    # ==================================================================
    # PERSISTENCE
    # ==================================================================

    def save(self, symbol: str, model_name: str, path: Union[str, Path]) -> bool:
        slot = self._slot(symbol, model_name)
        with slot.lock:
            ok = slot.model.save(path)
            if ok:
                slot.model_path = str(path)
            return ok

    def load(self, symbol: str, model_name: str, path: Union[str, Path]) -> bool:
        """
        Restore a saved model into the slot; the slot becomes READY.

        An in-flight training run is cancelled so it can neither overwrite the
        loaded model nor restore a stale status when it finishes.
        """
        slot = self._slot(symbol, model_name)
        with slot.lock:
            with slot.model._lock:
                candidate = copy.deepcopy(slot.model)
            if not candidate.load(path):
                slot.last_error = f"load failed: {path}"
                return False
            if slot.status == ModelStatus.TRAINING and slot.cancel_event is not None:
                slot.cancel_event.set()
                if slot.future is not None:
                    slot.future.cancel()
                LOG.info(f"Cancelled in-flight training for {symbol}/{model_name} on load")
            slot.model = candidate
            slot.status = ModelStatus.READY
            slot.previous_status = ModelStatus.READY
            slot.outcomes.clear()
            slot.model_path = str(path)
            return True

    def shutdown(self, wait: bool = True):
        """Stop the training pool"""
        with self._lock:
            slots = list(self._slots.values())
        if not wait:
            for slot in slots:
                if slot.cancel_event is not None:
                    slot.cancel_event.set()
        self._executor.shutdown(wait=wait)
        LOG.info("Model lifecycle manager shut down")
