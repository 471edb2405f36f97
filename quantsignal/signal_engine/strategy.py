"""
ML Signal Strategy

Per-bar facade wiring the whole flow together:

    MarketBar
      → FeatureExtractor (per-symbol history, FeatureVector)
      → score previous predictions against the realised move
      → EnsembleModel / StochasticSequenceModel (via lifecycle manager)
      → prediction policy (ensemble | stochastic | best)
      → SignalSynthesizer
      → Optional[TradingSignal]

The worst outcome of any bar is "no signal".
"""

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Deque, Dict, List, Optional, Sequence
import logging

import numpy as np

from quantsignal.feature_engine.config import FeatureEngineConfig
from quantsignal.feature_engine.extractor import FeatureExtractor
from quantsignal.feature_engine.schemas import MarketBar, FeatureVector
from quantsignal.ml_layer.config import MLConfig
from quantsignal.ml_layer.ensemble import EnsembleModel, ENSEMBLE_MODEL_NAME
from quantsignal.ml_layer.lifecycle import ModelLifecycleManager, ModelStatus
from quantsignal.ml_layer.schemas import Prediction, direction_from_return
from quantsignal.ml_layer.stochastic_model import StochasticSequenceModel, STOCHASTIC_MODEL_NAME
from quantsignal.signal_engine.config import SignalConfig
from quantsignal.signal_engine.schemas import TradingSignal
from quantsignal.signal_engine.synthesizer import SignalSynthesizer

LOG = logging.getLogger(__name__)

MODEL_NAMES = (ENSEMBLE_MODEL_NAME, STOCHASTIC_MODEL_NAME)


class MLSignalStrategy:
    """
    Bar-driven ML trading strategy.

    One EnsembleModel and one StochasticSequenceModel per symbol, owned by
    the lifecycle manager; training happens in the background while the
    previous model (or a neutral default) keeps serving.
    """

    def __init__(
        self,
        signal_config: Optional[SignalConfig] = None,
        ml_config: Optional[MLConfig] = None,
        feature_config: Optional[FeatureEngineConfig] = None,
        lifecycle: Optional[ModelLifecycleManager] = None
    ):
        self.signal_config = signal_config or SignalConfig()
        self.signal_config.validate()
        self.ml_config = ml_config or MLConfig()
        self.ml_config.validate()

        self.extractor = FeatureExtractor(feature_config)
        self.lifecycle = lifecycle or ModelLifecycleManager(
            self.ml_config.lifecycle, config_hash=self.ml_config.get_config_hash()
        )
        self.synthesizer = SignalSynthesizer(self.signal_config)

        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[FeatureVector]] = {}
        self._pending: Dict[str, Dict[str, Prediction]] = {}
        self._last_close: Dict[str, float] = {}
        self._bar_count: Dict[str, int] = {}
        self._last_attempt: Dict[str, int] = {}
        self._batch_executor = ThreadPoolExecutor(thread_name_prefix="BatchPredict")

        LOG.info(f"ML signal strategy '{self.signal_config.strategy_name}' initialized "
                 f"(policy={self.signal_config.prediction_policy})")

    @property
    def name(self) -> str:
        return self.signal_config.strategy_name

    # ==================================================================
    # PER-BAR ENTRY POINT
    # ==================================================================

    def on_bar(self, bar: MarketBar) -> Optional[TradingSignal]:
        """
        Process one bar.

        Returns:
            TradingSignal or None (insufficient data, untrained models,
            SIDEWAYS, low confidence or a prediction error)
        """
        symbol = bar.symbol
        self._ensure_models(symbol)
        self._score_previous(symbol, bar)

        self.extractor.add_bar(symbol, bar)
        with self._lock:
            self._bar_count[symbol] = self._bar_count.get(symbol, 0) + 1
            self._last_close[symbol] = float(bar.close)

        features = self.extractor.extract(symbol, bar)
        if features.is_empty:
            return None

        window = self._window(symbol)
        window.append(features)

        for model_name in MODEL_NAMES:
            self.lifecycle.get_model(symbol, model_name).update(bar, features)

        if self.signal_config.auto_train:
            self._maybe_train(symbol)

        try:
            predictions = self.predict(symbol, bar, features, list(window))
        except (ValueError, KeyError, FloatingPointError, np.linalg.LinAlgError) as e:
            LOG.error(f"Prediction failed for {symbol}: {e}")
            return None

        with self._lock:
            self._pending[symbol] = {
                name: p for name, p in predictions.items()
                if p is not None and self.lifecycle.is_serving(symbol, name)
            }

        prediction = self.select_prediction(symbol, predictions)
        return self.synthesizer.synthesize(prediction, bar, features)

    # ==================================================================
    # PREDICTION
    # ==================================================================

    def predict(
        self,
        symbol: str,
        bar: MarketBar,
        features: FeatureVector,
        window: Optional[Sequence[FeatureVector]] = None
    ) -> Dict[str, Optional[Prediction]]:
        """Predictions of both live models keyed by model name"""
        self._ensure_models(symbol)
        ensemble = self.lifecycle.get_model(symbol, ENSEMBLE_MODEL_NAME)
        stochastic = self.lifecycle.get_model(symbol, STOCHASTIC_MODEL_NAME)
        return {
            ENSEMBLE_MODEL_NAME: ensemble.predict(bar, features),
            STOCHASTIC_MODEL_NAME: stochastic.predict(bar, features, window=window),
        }

    def predict_batch(self, bars: List[MarketBar]) -> Dict[str, Optional[Prediction]]:
        """
        Predict many symbols concurrently without touching their histories.

        Each bar is scored against its symbol's stored history as if it were
        the next bar; nothing is appended and no model is updated.

        Returns:
            symbol -> selected Prediction (None for short histories, untrained
            models or a prediction error)
        """
        futures = {
            self._batch_executor.submit(self._predict_one, bar): bar.symbol
            for bar in bars
        }
        results: Dict[str, Optional[Prediction]] = {}
        for future in as_completed(futures):
            symbol = futures[future]
            results[symbol] = future.result()

        LOG.info(f"✓ Batch prediction: {sum(p is not None for p in results.values())}"
                 f"/{len(results)} symbols predicted")
        return results

    def _predict_one(self, bar: MarketBar) -> Optional[Prediction]:
        symbol = bar.symbol
        self._ensure_models(symbol)
        features = self.extractor.extract(symbol, bar)
        if features.is_empty:
            return None

        window = (list(self._window(symbol)) + [features])[-self.ml_config.stochastic.lookback:]
        try:
            predictions = self.predict(symbol, bar, features, window)
        except (ValueError, KeyError, FloatingPointError, np.linalg.LinAlgError) as e:
            LOG.error(f"Batch prediction failed for {symbol}: {e}")
            return None
        return self.select_prediction(symbol, predictions)

    def select_prediction(
        self,
        symbol: str,
        predictions: Dict[str, Optional[Prediction]]
    ) -> Optional[Prediction]:
        """
        Apply the prediction policy.

        ensemble / stochastic: that model's prediction
        best: the higher-confidence prediction among trained models
        """
        policy = self.signal_config.prediction_policy
        if policy == "ensemble":
            return predictions.get(ENSEMBLE_MODEL_NAME)
        if policy == "stochastic":
            return predictions.get(STOCHASTIC_MODEL_NAME)

        candidates = [
            p for name, p in predictions.items()
            if p is not None and self.lifecycle.is_serving(symbol, name)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.confidence)

    # ==================================================================
    # TRAINING
    # ==================================================================

    def warm_up(self, bars: Sequence[MarketBar]) -> Dict[str, Future]:
        """
        Load a history for one symbol and start training both models.

        Returns:
            model name -> training Future
        """
        if not bars:
            return {}
        symbol = bars[0].symbol
        self._ensure_models(symbol)
        for bar in bars:
            self.extractor.add_bar(symbol, bar)
        with self._lock:
            self._bar_count[symbol] = self._bar_count.get(symbol, 0) + len(bars)
            self._last_close[symbol] = float(bars[-1].close)

        history = self.extractor.history(symbol)
        frame = self.extractor.compute_frame(history)
        window = self._window(symbol)
        window.extend(self.extractor.frame_to_vectors(symbol, frame.iloc[-window.maxlen:]))

        futures = {}
        for model_name in MODEL_NAMES:
            futures[model_name] = self.lifecycle.submit_training(symbol, model_name, history, frame)
        LOG.info(f"Warm-up for {symbol}: {len(history)} bars, training {list(futures)}")
        return futures

    def _maybe_train(self, symbol: str):
        history_length = self.extractor.history_length(symbol)
        with self._lock:
            bar_count = self._bar_count.get(symbol, 0)

        history = None
        frame = None
        for model_name in MODEL_NAMES:
            status = self.lifecycle.check_health(symbol, model_name)
            if status not in (ModelStatus.UNTRAINED, ModelStatus.DEGRADED):
                continue
            model = self.lifecycle.get_model(symbol, model_name)
            if history_length < model.min_training_samples:
                continue

            key = f"{symbol}/{model_name}"
            with self._lock:
                last = self._last_attempt.get(key)
                if last is not None and bar_count - last < self.signal_config.training_retry_bars:
                    continue
                self._last_attempt[key] = bar_count

            if history is None:
                history = self.extractor.history(symbol)
                frame = self.extractor.compute_frame(history)
            self.lifecycle.maybe_train(symbol, model_name, history, frame)

    # ==================================================================
    # OUTCOMES
    # ==================================================================

    def _score_previous(self, symbol: str, bar: MarketBar):
        """Score the previous bar's predictions against this bar's move"""
        with self._lock:
            pending = self._pending.pop(symbol, None)
            previous_close = self._last_close.get(symbol)
        if not pending or not previous_close:
            return

        threshold = self.ml_config.stochastic.label_threshold
        realised = direction_from_return((bar.close - previous_close) / previous_close, threshold)
        for model_name, prediction in pending.items():
            self.lifecycle.record_outcome(symbol, model_name, prediction.direction == realised)

    def record_signal_outcome(self, success: bool):
        """Feed a closed trade's result into position sizing"""
        self.synthesizer.update_performance(success)

    # ==================================================================
    # HELPERS
    # ==================================================================

    def _ensure_models(self, symbol: str):
        for model_name in MODEL_NAMES:
            if self.lifecycle.has_slot(symbol, model_name):
                continue
            if model_name == ENSEMBLE_MODEL_NAME:
                model = EnsembleModel(self.ml_config.ensemble, self.ml_config.specialist)
            else:
                model = StochasticSequenceModel(self.ml_config.stochastic)
            self.lifecycle.register(symbol, model_name, model)

    def _window(self, symbol: str) -> Deque[FeatureVector]:
        with self._lock:
            window = self._windows.get(symbol)
            if window is None:
                window = deque(maxlen=self.ml_config.stochastic.lookback)
                self._windows[symbol] = window
            return window

    def get_status(self) -> Dict:
        """Strategy, model and performance summary"""
        return {
            'strategy_name': self.name,
            'prediction_policy': self.signal_config.prediction_policy,
            'symbols': self.extractor.symbols(),
            'models': self.lifecycle.get_all_statuses(),
            'win_rate': self.synthesizer.get_win_rate(),
            'performance_multiplier': self.synthesizer.performance_multiplier(),
            'signals_emitted': self.synthesizer.signals_emitted,
            'signals_skipped': self.synthesizer.signals_skipped,
        }

    def shutdown(self, wait: bool = True):
        self._batch_executor.shutdown(wait=wait)
        self.lifecycle.shutdown(wait=wait)
