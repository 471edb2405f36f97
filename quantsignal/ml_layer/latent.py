"""
Latent-Variable Building Blocks

numpy primitives behind the stochastic sequence model:

    reparameterize   latent = mean + exp(0.5 * logvar) * noise
    kl_divergence    KL = -0.5 * Σ(1 + logvar - mean² - exp(logvar))
    dropout_mask     Bernoulli keep-mask scaled by 1 / (1 - rate)
    RecurrentEncoder fixed random tanh recurrence over a feature window
    AdamOptimizer    in-place Adam updates on a dict of arrays
"""

from dataclasses import dataclass
from typing import Dict, Optional
import logging

import numpy as np

LOG = logging.getLogger(__name__)

LOGVAR_MIN = -10.0
LOGVAR_MAX = 10.0


def reparameterize(mean: np.ndarray, logvar: np.ndarray, noise: np.ndarray) -> np.ndarray:
    """Sample the latent vector through the reparameterization trick"""
    return mean + np.exp(0.5 * logvar) * noise


def kl_divergence(mean: np.ndarray, logvar: np.ndarray) -> np.ndarray:
    """
    KL(N(mean, exp(logvar)) || N(0, I)), summed over the last axis.

    Zero exactly when mean = 0 and logvar = 0.
    """
    return -0.5 * np.sum(1.0 + logvar - mean ** 2 - np.exp(logvar), axis=-1)


def dropout_mask(shape, rate: float, rng: np.random.Generator) -> np.ndarray:
    """
    Inverted-dropout mask.

    Entries are 0 with probability `rate`, otherwise 1 / (1 - rate), so the
    expected activation is unchanged.
    """
    if rate <= 0.0:
        return np.ones(shape)
    keep = 1.0 - rate
    return (rng.random(shape) < keep).astype(float) / keep


def layer_norm(x: np.ndarray, eps: float = 1e-5) -> np.ndarray:
    """Normalise each row to zero mean and unit variance"""
    mu = x.mean(axis=-1, keepdims=True)
    var = x.var(axis=-1, keepdims=True)
    return (x - mu) / np.sqrt(var + eps)


@dataclass
class LatentState:
    """
    Per-inference state of the latent path.

    hidden:  recurrent representation (after layer norm)
    mean, logvar: latent Gaussian parameters
    """

    hidden: np.ndarray
    mean: np.ndarray
    logvar: np.ndarray

    @property
    def uncertainty(self) -> float:
        """Mean variance across latent dimensions (higher = less certain)"""
        return float(np.mean(np.exp(self.logvar)))

    @property
    def kl(self) -> float:
        return float(kl_divergence(self.mean, self.logvar))

    def sample(self, noise: np.ndarray) -> np.ndarray:
        """Latent draws, one per row of noise"""
        return reparameterize(self.mean, self.logvar, noise)


class RecurrentEncoder:
    """
    Echo-state recurrent encoder.

    h_t = tanh(x_t W_in + h_{t-1} W_rec + b)

    The weights are random and fixed after construction; the recurrent
    matrix is rescaled to the configured spectral radius so the state fades
    old inputs instead of exploding. Only the latent and output heads are
    trained.
    """

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        rng: Optional[np.random.Generator] = None,
        spectral_radius: float = 0.9,
        input_scale: float = 0.5
    ):
        rng = rng or np.random.default_rng()
        self.input_size = input_size
        self.hidden_size = hidden_size

        self.w_in = rng.normal(0.0, input_scale / np.sqrt(max(input_size, 1)),
                               size=(input_size, hidden_size))
        w_rec = rng.normal(0.0, 1.0 / np.sqrt(hidden_size), size=(hidden_size, hidden_size))
        radius = float(np.max(np.abs(np.linalg.eigvals(w_rec))))
        self.w_rec = w_rec * (spectral_radius / radius) if radius > 0 else w_rec
        self.bias = rng.normal(0.0, 0.1, size=hidden_size)

    def encode(self, windows: np.ndarray) -> np.ndarray:
        """
        Run the recurrence over a batch of windows.

        Args:
            windows: (batch, steps, input_size)

        Returns:
            (batch, hidden_size) final hidden states, layer-normalised
        """
        batch, steps, _ = windows.shape
        h = np.zeros((batch, self.hidden_size))
        for t in range(steps):
            h = np.tanh(windows[:, t, :] @ self.w_in + h @ self.w_rec + self.bias)
        return layer_norm(h)

    def to_dict(self) -> Dict[str, np.ndarray]:
        return {'w_in': self.w_in, 'w_rec': self.w_rec, 'bias': self.bias}

    @classmethod
    def from_dict(cls, d: Dict[str, np.ndarray]) -> 'RecurrentEncoder':
        encoder = cls.__new__(cls)
        encoder.w_in = np.asarray(d['w_in'])
        encoder.w_rec = np.asarray(d['w_rec'])
        encoder.bias = np.asarray(d['bias'])
        encoder.input_size, encoder.hidden_size = encoder.w_in.shape
        return encoder


class AdamOptimizer:
    """Adam over a dict of parameter arrays (updated in place)."""

    def __init__(
        self,
        params: Dict[str, np.ndarray],
        learning_rate: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-8
    ):
        self.params = params
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.t = 0
        self.m = {k: np.zeros_like(v) for k, v in params.items()}
        self.v = {k: np.zeros_like(v) for k, v in params.items()}

    def step(self, grads: Dict[str, np.ndarray]):
        self.t += 1
        for key, grad in grads.items():
            self.m[key] = self.beta1 * self.m[key] + (1 - self.beta1) * grad
            self.v[key] = self.beta2 * self.v[key] + (1 - self.beta2) * grad ** 2
            m_hat = self.m[key] / (1 - self.beta1 ** self.t)
            v_hat = self.v[key] / (1 - self.beta2 ** self.t)
            self.params[key] -= self.learning_rate * m_hat / (np.sqrt(v_hat) + self.eps)
