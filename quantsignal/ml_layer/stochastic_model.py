"""
Stochastic Sequence Model

Latent-variable sequence classifier producing UP / DOWN / SIDEWAYS
probabilities together with an uncertainty estimate.

Architecture:
    window of feature vectors (lookback x features), z-scored and clipped
        -> RecurrentEncoder (fixed echo-state recurrence, layer norm) -> h
        -> dropout mask on h (training only)
        -> mean = h W_mu + b_mu, logvar = h W_lv + b_lv
        -> latent = mean + exp(0.5 * logvar) * noise
        -> softmax(latent W_out + b_out)

Loss:
    cross-entropy + kl_weight * KL(N(mean, exp(logvar)) || N(0, I))

Confidence handed downstream is always discounted by uncertainty:
    confidence = p_max * (1 - min(mean(exp(logvar)), 0.5))
"""

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
from scipy.special import softmax
from scipy.stats import entropy

from quantsignal.feature_engine.schemas import MarketBar, FeatureVector, as_feature_frame
from quantsignal.ml_layer.base import PredictiveModel, FeatureSeries
from quantsignal.ml_layer.config import StochasticConfig
from quantsignal.ml_layer.latent import (
    LOGVAR_MAX,
    LOGVAR_MIN,
    AdamOptimizer,
    LatentState,
    RecurrentEncoder,
    dropout_mask,
    kl_divergence,
)
from quantsignal.ml_layer.schemas import Direction, Prediction, clamp

LOG = logging.getLogger(__name__)

STOCHASTIC_MODEL_NAME = "stochastic"

# Output order of the softmax head
CLASSES: Tuple[Direction, ...] = (Direction.UP, Direction.DOWN, Direction.SIDEWAYS)
NEUTRAL_PROBABILITIES = (0.33, 0.33, 0.34)


class StochasticSequenceModel(PredictiveModel):
    """
    Stochastic latent sequence model.

    Training needs lookback + 10 aligned bars/feature rows. update() only
    buffers observations for the next retraining; live weights change only
    when train() completes and swaps in a fully built parameter set.
    """

    name = STOCHASTIC_MODEL_NAME

    def __init__(self, config: Optional[StochasticConfig] = None):
        self.config = config or StochasticConfig()
        super().__init__(self.config.lookback + 10)

        # Noise source for predict() when the caller does not pass one
        self._rng = np.random.default_rng(self.config.seed + 1)

        self.feature_names: List[str] = []
        self._norm_mean: Optional[np.ndarray] = None
        self._norm_std: Optional[np.ndarray] = None
        self.encoder: Optional[RecurrentEncoder] = None
        self._params: Dict[str, np.ndarray] = {}

        self._buffer: Deque[Tuple[MarketBar, FeatureVector]] = deque(
            maxlen=self.config.update_buffer_size
        )
        self._loss_history: List[float] = []
        self._train_accuracy: Optional[float] = None
        self._last_uncertainty = 1.0
        self._last_kl = 0.0
        self._last_entropy = float(entropy(NEUTRAL_PROBABILITIES))

    # ==================================================================
    # TRAINING
    # ==================================================================

    def train(
        self,
        history: Sequence[MarketBar],
        feature_series: FeatureSeries,
        cancel_event: Optional[threading.Event] = None
    ) -> bool:
        """
        Fit the latent and output heads.

        Args:
            history: bars aligned row-for-row with feature_series
            feature_series: DataFrame (or list of FeatureVectors)
            cancel_event: checked between epochs; when set, training stops
                and the current parameters are left untouched

        Returns:
            True when a new parameter set was installed
        """
        frame = as_feature_frame(feature_series)
        n = min(len(history), len(frame))
        if n < self.min_training_samples:
            LOG.warning(f"Insufficient data for stochastic model: {n}/{self.min_training_samples}")
            return False

        try:
            return self._fit(list(history)[-n:], frame.iloc[-n:], cancel_event)
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
            LOG.error(f"Stochastic model training failed: {e}")
            return False

    def _fit(self, bars: List[MarketBar], frame, cancel_event: Optional[threading.Event]) -> bool:
        c = self.config
        rng = np.random.default_rng(c.seed)

        feature_names = sorted(str(col) for col in frame.columns)
        raw = np.nan_to_num(frame[feature_names].to_numpy(dtype=float), nan=0.0, posinf=0.0, neginf=0.0)
        norm_mean = raw.mean(axis=0)
        norm_std = raw.std(axis=0)
        norm_std[norm_std < 1e-12] = 1.0
        normalized = np.clip((raw - norm_mean) / norm_std, -c.z_score_clip, c.z_score_clip)

        closes = np.array([b.close for b in bars], dtype=float)
        windows, labels = self._build_windows(normalized, closes)
        n_windows = len(labels)

        encoder = RecurrentEncoder(
            input_size=len(feature_names),
            hidden_size=c.hidden_size,
            rng=rng,
            spectral_radius=c.spectral_radius,
            input_scale=c.input_scale,
        )
        hidden = encoder.encode(windows)

        params = self._init_params(rng)
        optimizer = AdamOptimizer(params, learning_rate=c.learning_rate)
        epochs = int(clamp(n_windows // 20, c.min_epochs, c.max_epochs))

        losses: List[float] = []
        for epoch in range(epochs):
            if cancel_event is not None and cancel_event.is_set():
                LOG.info(f"Stochastic model training cancelled at epoch {epoch}/{epochs}")
                return False

            order = rng.permutation(n_windows)
            epoch_loss = 0.0
            for start in range(0, n_windows, c.batch_size):
                idx = order[start:start + c.batch_size]
                loss, grads = self._loss_and_grads(params, hidden[idx], labels[idx], rng)
                if not np.isfinite(loss):
                    LOG.error(f"Non-finite loss at epoch {epoch}; keeping previous parameters")
                    return False
                optimizer.step(grads)
                epoch_loss += loss * len(idx)
            losses.append(epoch_loss / n_windows)

        # Deterministic (mean-path) training accuracy
        mean = hidden @ params['w_mu'] + params['b_mu']
        train_pred = np.argmax(mean @ params['w_out'] + params['b_out'], axis=1)
        train_accuracy = float(np.mean(train_pred == labels))

        with self._lock:
            self.feature_names = feature_names
            self._norm_mean = norm_mean
            self._norm_std = norm_std
            self.encoder = encoder
            self._params = params
            self._loss_history = losses
            self._train_accuracy = train_accuracy
            self._buffer.clear()
            self._mark_trained(len(bars))

        LOG.info(f"✓ Stochastic model trained: {n_windows} windows, {epochs} epochs, "
                 f"loss {losses[0]:.4f} -> {losses[-1]:.4f}, train acc {train_accuracy:.3f}")
        return True

    def _build_windows(self, normalized: np.ndarray, closes: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Sliding windows ending at bar i, labelled from the return of bar i+1.

        Returns:
            windows (n - lookback, lookback, features), labels (n - lookback,)
        """
        lookback = self.config.lookback
        n = len(normalized)
        # (n - lookback + 1, features, lookback) -> (.., lookback, features)
        views = np.lib.stride_tricks.sliding_window_view(normalized, lookback, axis=0)
        windows = np.ascontiguousarray(views.transpose(0, 2, 1)[: n - lookback])

        current = closes[lookback - 1:n - 1]
        following = closes[lookback:n]
        with np.errstate(divide='ignore', invalid='ignore'):
            returns = np.where(current != 0, following / current - 1.0, 0.0)

        threshold = self.config.label_threshold
        labels = np.full(len(returns), CLASSES.index(Direction.SIDEWAYS), dtype=int)
        labels[returns > threshold] = CLASSES.index(Direction.UP)
        labels[returns < -threshold] = CLASSES.index(Direction.DOWN)
        return windows, labels

    def _init_params(self, rng: np.random.Generator) -> Dict[str, np.ndarray]:
        h, z, k = self.config.hidden_size, self.config.latent_dim, len(CLASSES)
        return {
            'w_mu': rng.normal(0.0, 1.0 / np.sqrt(h), size=(h, z)),
            'b_mu': np.zeros(z),
            'w_lv': rng.normal(0.0, 0.01, size=(h, z)),
            'b_lv': np.zeros(z),
            'w_out': rng.normal(0.0, 1.0 / np.sqrt(z), size=(z, k)),
            'b_out': np.zeros(k),
        }

    def _loss_and_grads(
        self,
        params: Dict[str, np.ndarray],
        hidden: np.ndarray,
        labels: np.ndarray,
        rng: np.random.Generator
    ) -> Tuple[float, Dict[str, np.ndarray]]:
        """Forward pass with dropout + sampled latent, and exact gradients"""
        beta = self.config.kl_weight
        batch = len(labels)

        h = hidden * dropout_mask(hidden.shape, self.config.dropout, rng)
        mean = h @ params['w_mu'] + params['b_mu']
        raw_logvar = h @ params['w_lv'] + params['b_lv']
        logvar = np.clip(raw_logvar, LOGVAR_MIN, LOGVAR_MAX)

        noise = rng.standard_normal(mean.shape)
        std = np.exp(0.5 * logvar)
        latent = mean + std * noise
        probs = softmax(latent @ params['w_out'] + params['b_out'], axis=1)

        cross_entropy = -np.mean(np.log(probs[np.arange(batch), labels] + 1e-12))
        kl = float(np.mean(kl_divergence(mean, logvar)))
        loss = float(cross_entropy + beta * kl)

        d_logits = probs.copy()
        d_logits[np.arange(batch), labels] -= 1.0
        d_logits /= batch

        d_latent = d_logits @ params['w_out'].T
        d_mean = d_latent + beta * mean / batch
        d_logvar = d_latent * noise * 0.5 * std + beta * 0.5 * (np.exp(logvar) - 1.0) / batch
        d_logvar *= (raw_logvar > LOGVAR_MIN) & (raw_logvar < LOGVAR_MAX)

        grads = {
            'w_out': latent.T @ d_logits,
            'b_out': d_logits.sum(axis=0),
            'w_mu': h.T @ d_mean,
            'b_mu': d_mean.sum(axis=0),
            'w_lv': h.T @ d_logvar,
            'b_lv': d_logvar.sum(axis=0),
        }
        return loss, grads

    # ==================================================================
    # INFERENCE
    # ==================================================================

    def predict(
        self,
        bar: MarketBar,
        features: FeatureVector,
        window: Optional[Sequence[FeatureVector]] = None,
        rng: Optional[np.random.Generator] = None
    ) -> Optional[Prediction]:
        """
        Direction probabilities with uncertainty metrics.

        Args:
            bar: current bar (price target reference)
            features: current feature vector
            window: recent feature vectors, oldest first; the current vector
                is appended if missing. Short windows are left-padded with the
                oldest vector, None repeats the current vector.
            rng: noise source; a fixed seed makes the call deterministic

        Returns:
            Prediction (neutral when untrained), None for empty features
        """
        if features.is_empty:
            return None
        if not self.is_ready:
            return self._neutral_prediction(bar, features)

        n_samples = max(1, self.config.n_samples)
        with self._lock:
            names = self.feature_names
            norm_mean, norm_std = self._norm_mean, self._norm_std
            encoder, params = self.encoder, self._params
            source = rng if rng is not None else self._rng
            noise = source.standard_normal((n_samples, self.config.latent_dim))

        sequence = self._window_matrix(features, window, names, norm_mean, norm_std)
        state = self._latent_state(encoder, params, sequence)

        latent = state.sample(noise)
        probs = softmax(latent @ params['w_out'] + params['b_out'], axis=1).mean(axis=0)
        prob_up, prob_down, prob_sideways = (float(p) for p in probs)

        best = int(np.argmax(probs))
        p_max = float(probs[best])
        uncertainty = state.uncertainty
        confidence = p_max * (1.0 - min(uncertainty, self.config.uncertainty_cap))
        kl = state.kl
        ent = float(entropy(probs))
        price_target = bar.close * (1.0 + (prob_up - prob_down) * self.config.max_expected_move)

        current = sequence[-1]
        magnitude = np.abs(current)
        total = magnitude.sum()
        importance = {n: float(v / total) for n, v in zip(names, magnitude)} if total > 0 else {}

        with self._lock:
            self._last_uncertainty = uncertainty
            self._last_kl = kl
            self._last_entropy = ent
            self.state.prediction_count += 1

        return Prediction(
            symbol=features.symbol,
            timestamp=features.timestamp,
            direction=CLASSES[best],
            confidence=confidence,
            model_name=self.name,
            metrics={
                'prob_up': prob_up,
                'prob_down': prob_down,
                'prob_sideways': prob_sideways,
                'uncertainty': uncertainty,
                'kl_divergence': kl,
                'entropy': ent,
                'raw_confidence': p_max,
                'price_target': price_target,
            },
            feature_importance=importance,
        )

    def latent_state(self, features: FeatureVector,
                     window: Optional[Sequence[FeatureVector]] = None) -> Optional[LatentState]:
        """Hidden / mean / logvar for a window (None when untrained)"""
        if not self.is_ready or features.is_empty:
            return None
        with self._lock:
            names = self.feature_names
            norm_mean, norm_std = self._norm_mean, self._norm_std
            encoder, params = self.encoder, self._params
        sequence = self._window_matrix(features, window, names, norm_mean, norm_std)
        return self._latent_state(encoder, params, sequence)

    @staticmethod
    def _latent_state(encoder: RecurrentEncoder, params: Dict[str, np.ndarray],
                      sequence: np.ndarray) -> LatentState:
        hidden = encoder.encode(sequence[np.newaxis])[0]
        mean = hidden @ params['w_mu'] + params['b_mu']
        logvar = np.clip(hidden @ params['w_lv'] + params['b_lv'], LOGVAR_MIN, LOGVAR_MAX)
        return LatentState(hidden=hidden, mean=mean, logvar=logvar)

    def _window_matrix(
        self,
        features: FeatureVector,
        window: Optional[Sequence[FeatureVector]],
        names: List[str],
        norm_mean: np.ndarray,
        norm_std: np.ndarray
    ) -> np.ndarray:
        """(lookback, features) normalised input matrix, current vector last"""
        lookback = self.config.lookback
        vectors = [v for v in (window or []) if not v.is_empty]
        if not vectors or vectors[-1].timestamp != features.timestamp:
            vectors.append(features)
        vectors = vectors[-lookback:]
        if len(vectors) < lookback:
            vectors = [vectors[0]] * (lookback - len(vectors)) + vectors

        raw = np.vstack([v.to_array(names) for v in vectors])
        raw = np.nan_to_num(raw, nan=0.0, posinf=0.0, neginf=0.0)
        clip = self.config.z_score_clip
        return np.clip((raw - norm_mean) / norm_std, -clip, clip)

    def _neutral_prediction(self, bar: MarketBar, features: FeatureVector) -> Prediction:
        """Default output before the model is trained"""
        p_up, p_down, p_side = NEUTRAL_PROBABILITIES
        return Prediction(
            symbol=features.symbol,
            timestamp=features.timestamp,
            direction=Direction.SIDEWAYS,
            confidence=0.1,
            model_name=self.name,
            metrics={
                'prob_up': p_up,
                'prob_down': p_down,
                'prob_sideways': p_side,
                'uncertainty': 1.0,
                'kl_divergence': 0.0,
                'entropy': float(entropy(NEUTRAL_PROBABILITIES)),
                'raw_confidence': p_side,
                'price_target': float(bar.close),
            },
        )

    # ==================================================================
    # INCREMENTAL UPDATES / HEALTH
    # ==================================================================

    def update(self, bar: MarketBar, features: FeatureVector):
        """Buffer an observation for the next retraining"""
        if features.is_empty:
            return
        with self._lock:
            self._buffer.append((bar, features))

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def needs_retraining(self, staleness_days: int = 30, accuracy_floor: float = 0.45,
                         min_samples: int = 50, now=None) -> bool:
        if not self.state.ready:
            return False
        if super().needs_retraining(staleness_days, accuracy_floor, min_samples, now):
            return True
        return len(self._buffer) > self.config.retrain_buffer_threshold

    def get_metrics(self) -> Dict[str, Any]:
        """Counts, accuracy and the latest uncertainty bookkeeping"""
        with self._lock:
            return {
                'model_name': self.name,
                'total_predictions': self.state.prediction_count,
                'correct_predictions': self.state.correct_count,
                'accuracy': self.state.accuracy,
                'last_trained': self.state.last_trained.isoformat() if self.state.last_trained else None,
                'train_accuracy': self._train_accuracy,
                'final_loss': self._loss_history[-1] if self._loss_history else None,
                'last_uncertainty': self._last_uncertainty,
                'last_kl_divergence': self._last_kl,
                'last_entropy': self._last_entropy,
                'buffered_samples': len(self._buffer),
                'hidden_size': self.config.hidden_size,
                'latent_dim': self.config.latent_dim,
                'lookback': self.config.lookback,
            }

    # ==================================================================
    # PERSISTENCE
    # ==================================================================

    def _get_params(self) -> Dict[str, Any]:
        return {
            'config': self.config.to_dict(),
            'feature_names': list(self.feature_names),
            'norm_mean': self._norm_mean,
            'norm_std': self._norm_std,
            'encoder': self.encoder.to_dict() if self.encoder else None,
            'weights': {k: v.copy() for k, v in self._params.items()},
            'loss_history': list(self._loss_history),
            'train_accuracy': self._train_accuracy,
        }

    def _set_params(self, params: Dict[str, Any]):
        if params.get('encoder') is None:
            raise ValueError("Blob does not contain a trained stochastic model")
        self.config = StochasticConfig(**params['config'])
        self.min_training_samples = self.config.lookback + 10
        self.feature_names = list(params['feature_names'])
        self._norm_mean = np.asarray(params['norm_mean'])
        self._norm_std = np.asarray(params['norm_std'])
        self.encoder = RecurrentEncoder.from_dict(params['encoder'])
        self._params = {k: np.asarray(v) for k, v in params['weights'].items()}
        self._loss_history = list(params.get('loss_history', []))
        self._train_accuracy = params.get('train_accuracy')
