"""
Feature Extractor

Owns the per-symbol rolling bar history and produces FeatureVectors for the
latest bar.

Concurrency:
    - One ring buffer (bounded deque) per symbol, owned by this object
    - add_bar is the single writer per symbol
    - extract works on a snapshot copied under the symbol lock
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence
import logging

import pandas as pd

from quantsignal.feature_engine.config import FeatureEngineConfig
from quantsignal.feature_engine.pipeline import FeaturePipeline
from quantsignal.feature_engine.schemas import MarketBar, FeatureVector

LOG = logging.getLogger(__name__)


class FeatureExtractor:
    """
    Rolling-history feature extraction.

    extract() never raises for short histories: it returns an empty
    FeatureVector until min_history bars have been stored.
    """

    def __init__(self, config: Optional[FeatureEngineConfig] = None):
        self.config = config or FeatureEngineConfig()
        self.config.validate()
        self.pipeline = FeaturePipeline(self.config)

        self._histories: Dict[str, Deque[MarketBar]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @property
    def feature_names(self) -> List[str]:
        return list(self.pipeline.feature_names)

    @property
    def schema_version(self) -> str:
        return self.pipeline.schema.version

    def _buffer(self, symbol: str):
        """Get or create the (buffer, lock) pair for a symbol"""
        with self._registry_lock:
            if symbol not in self._histories:
                self._histories[symbol] = deque(maxlen=self.config.history_size)
                self._locks[symbol] = threading.Lock()
            return self._histories[symbol], self._locks[symbol]

    def add_bar(self, symbol: str, bar: MarketBar):
        """Append a bar; the oldest bar is evicted once history_size is reached"""
        history, lock = self._buffer(symbol)
        with lock:
            history.append(bar)

    def history(self, symbol: str) -> List[MarketBar]:
        """Snapshot copy of a symbol's history"""
        history, lock = self._buffer(symbol)
        with lock:
            return list(history)

    def history_length(self, symbol: str) -> int:
        with self._registry_lock:
            history = self._histories.get(symbol)
            return len(history) if history is not None else 0

    def symbols(self) -> List[str]:
        with self._registry_lock:
            return list(self._histories.keys())

    def clear(self, symbol: str):
        """Drop a symbol's history"""
        with self._registry_lock:
            self._histories.pop(symbol, None)
            self._locks.pop(symbol, None)

    def extract(self, symbol: str, bar: MarketBar) -> FeatureVector:
        """
        Compute the feature vector for a bar against the stored history.

        The bar is appended to a copy of the history unless it already is the
        latest stored bar, so calling this before or after add_bar gives the
        same result.

        Returns:
            FeatureVector (empty when fewer than min_history bars are stored)
        """
        snapshot = self.history(symbol)

        if len(snapshot) < self.config.min_history:
            LOG.debug(f"Insufficient history for {symbol}: "
                      f"{len(snapshot)}/{self.config.min_history} bars")
            return FeatureVector.empty(symbol, bar.timestamp, self.schema_version)

        if snapshot[-1] != bar:
            snapshot.append(bar)
            snapshot = snapshot[-self.config.history_size:]

        values = self.pipeline.compute_latest(snapshot)
        return FeatureVector(
            symbol=symbol,
            timestamp=bar.timestamp,
            values=values,
            schema_version=self.schema_version,
        )

    def compute_frame(self, bars: Sequence[MarketBar]) -> pd.DataFrame:
        """Feature rows for a whole bar sequence (training series)"""
        return self.pipeline.compute_frame(bars)

    def frame_to_vectors(self, symbol: str, frame: pd.DataFrame) -> List[FeatureVector]:
        """Convert compute_frame() output rows into FeatureVectors"""
        vectors = []
        for timestamp, row in frame.iterrows():
            vectors.append(FeatureVector(
                symbol=symbol,
                timestamp=timestamp,
                values={name: float(row[name]) for name in frame.columns},
                schema_version=self.schema_version,
            ))
        return vectors
