"""
Tests for signal synthesis, the per-bar strategy and configuration loading.

Run: pytest tests/test_signal_engine.py -v
"""

import os
import pytest
import numpy as np

from quantsignal.config import QuantSignalConfig, load_config_from_env
from quantsignal.exceptions import ConfigurationError
from quantsignal.feature_engine.schemas import FeatureVector
from quantsignal.ml_layer.lifecycle import ModelStatus
from quantsignal.ml_layer.schemas import Direction, Prediction, Regime
from quantsignal.signal_engine.config import SignalConfig, SizingConfig, PerformanceConfig
from quantsignal.signal_engine.schemas import TradeDirection, TradingSignal
from quantsignal.signal_engine.strategy import MLSignalStrategy
from quantsignal.signal_engine.synthesizer import PerformanceTracker, SignalSynthesizer

from conftest import make_bar, feature_vector, random_walk_bars


def make_prediction(direction=Direction.UP, confidence=0.8, regime=Regime.BULL,
                    model_name='ensemble', importance=None):
    return Prediction(
        symbol='AAPL',
        timestamp=None,
        direction=direction,
        confidence=confidence,
        model_name=model_name,
        regime=regime,
        feature_importance=importance or {},
    )


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def synthesizer():
    return SignalSynthesizer(SignalConfig(min_confidence=0.6))


@pytest.fixture
def bar():
    return make_bar('AAPL', 0, 100.0, 101.0, 99.0, 100.0)


@pytest.fixture
def calm_features():
    return feature_vector({'volatility_20d': 0.01})


# ============================================================================
# TEST SYNTHESIS
# ============================================================================

class TestSynthesis:
    """Test prediction -> signal gating and construction"""

    def test_none_prediction(self, synthesizer, bar, calm_features):
        assert synthesizer.synthesize(None, bar, calm_features) is None

    def test_sideways_no_signal(self, synthesizer, bar, calm_features):
        pred = make_prediction(Direction.SIDEWAYS, 0.9)
        assert synthesizer.synthesize(pred, bar, calm_features) is None
        assert synthesizer.signals_skipped == 1

    def test_trade_directions_are_long_or_short(self):
        """No-trade is expressed as a None signal, never as a direction"""
        assert [d.name for d in TradeDirection] == ['LONG', 'SHORT']

    def test_low_confidence_no_signal(self, synthesizer, bar, calm_features):
        pred = make_prediction(Direction.UP, 0.5)
        assert synthesizer.synthesize(pred, bar, calm_features) is None

    def test_long_signal(self, synthesizer, bar, calm_features):
        signal = synthesizer.synthesize(make_prediction(), bar, calm_features)

        assert isinstance(signal, TradingSignal)
        assert signal.direction == TradeDirection.LONG
        assert signal.quantity == 1080.0
        assert signal.price == 100.0
        assert np.isclose(signal.stop_loss, 98.0)
        # 0.02 * 2 * 1.2 * 1.3 (BULL + LONG)
        assert np.isclose(signal.take_profit, 100.0 * (1 + 0.0624))
        assert signal.stop_loss < signal.price < signal.take_profit
        assert signal.strategy_name == 'ml_signal_strategy'
        assert signal.model_name == 'ensemble'
        assert synthesizer.signals_emitted == 1

    def test_short_signal(self, synthesizer, bar, calm_features):
        pred = make_prediction(Direction.DOWN, 0.8, Regime.BEAR)
        signal = synthesizer.synthesize(pred, bar, calm_features)

        assert signal.direction == TradeDirection.SHORT
        assert signal.take_profit < signal.price < signal.stop_loss
        assert np.isclose(signal.stop_distance, 0.02)
        assert np.isclose(signal.take_profit_distance, 0.0624)

    def test_missing_volatility_uses_default(self, synthesizer, bar):
        signal = synthesizer.synthesize(make_prediction(), bar, feature_vector({'rsi_14': 50.0}))
        # 1000 * 1.2 * (1 - 0.2)
        assert signal.quantity == 960.0

    def test_nan_volatility_uses_default(self, synthesizer, bar):
        signal = synthesizer.synthesize(make_prediction(), bar,
                                        feature_vector({'volatility_20d': float('nan')}))
        assert signal.quantity == 960.0

    def test_zero_size_no_signal(self, bar, calm_features):
        config = SignalConfig(min_confidence=0.6, sizing=SizingConfig(max_position_size=0.01))
        assert SignalSynthesizer(config).synthesize(make_prediction(), bar, calm_features) is None

    def test_non_positive_price(self, synthesizer, calm_features):
        bad = make_bar('AAPL', 0, 1.0, 1.0, 0.0, 0.0)
        assert synthesizer.synthesize(make_prediction(), bad, calm_features) is None

    def test_to_dict(self, synthesizer, bar, calm_features):
        data = synthesizer.synthesize(make_prediction(), bar, calm_features).to_dict()
        assert data['direction'] == 'LONG'
        assert data['quantity'] == 1080.0
        assert data['timestamp'] == bar.timestamp.isoformat()


# ============================================================================
# TEST SIZING AND RISK
# ============================================================================

class TestSizingAndRisk:
    """Test the sizing, stop and take-profit components"""

    def test_size_caps_confidence(self, synthesizer):
        # confidence multiplier capped at 1.5
        assert synthesizer.position_size(1.0, 0.0) == 1500.0

    def test_size_volatility_floor(self, synthesizer):
        assert synthesizer.position_size(0.8, 0.5) == 360.0

    def test_size_never_exceeds_max(self):
        config = SignalConfig(sizing=SizingConfig(base_fraction=1.0))
        synth = SignalSynthesizer(config)
        for _ in range(10):
            synth.update_performance(True)
        assert synth.position_size(1.0, 0.0) == config.sizing.max_position_size

    def test_volatile_regime_widens_stop(self, synthesizer):
        normal = synthesizer.stop_distance(0.05, Regime.BULL)
        volatile = synthesizer.stop_distance(0.05, Regime.VOLATILE)

        assert np.isclose(normal, 0.025)
        assert np.isclose(volatile, 0.0375)

    def test_sideways_regime_tightens_stop(self, synthesizer):
        assert np.isclose(synthesizer.stop_distance(0.01, Regime.SIDEWAYS), 0.014)

    def test_stop_clamped(self, synthesizer):
        assert synthesizer.stop_distance(0.1, Regime.VOLATILE) == 0.05
        assert synthesizer.stop_distance(0.0, None) == 0.02

    def test_take_profit_alignment_boost(self, synthesizer):
        aligned = synthesizer.take_profit_distance(0.02, 0.8, Regime.BULL, TradeDirection.LONG)
        against = synthesizer.take_profit_distance(0.02, 0.8, Regime.BULL, TradeDirection.SHORT)

        assert np.isclose(aligned / against, 1.3)
        assert np.isclose(against, 0.048)

    def test_take_profit_floor_on_confidence(self, synthesizer):
        # max(1, 0.5 * 1.5) = 1
        assert np.isclose(synthesizer.take_profit_distance(0.02, 0.5, None, TradeDirection.LONG), 0.04)

    def test_rationale(self):
        pred = make_prediction(importance={
            'rsi_14': 0.5, 'macd': 0.3, 'volume_ratio': 0.2, 'atr_14': 0.1
        })
        text = SignalSynthesizer.build_rationale(pred, TradeDirection.LONG)

        assert text == ("LONG signal from ensemble: confidence 80.0%, regime BULL, "
                        "key features: rsi_14=0.500, macd=0.300, volume_ratio=0.200")

    def test_rationale_without_regime(self):
        pred = make_prediction(Direction.DOWN, 0.7, regime=None, model_name='stochastic')
        text = SignalSynthesizer.build_rationale(pred, TradeDirection.SHORT)
        assert text == "SHORT signal from stochastic: confidence 70.0%"


# ============================================================================
# TEST PERFORMANCE TRACKING
# ============================================================================

class TestPerformanceTracker:
    """Test the trailing win-rate multiplier"""

    def test_no_outcomes(self):
        tracker = PerformanceTracker()
        assert tracker.win_rate() is None
        assert tracker.multiplier() == 1.0

    def test_high_win_rate(self):
        tracker = PerformanceTracker()
        for i in range(10):
            tracker.record(i < 7)
        assert tracker.multiplier() == 1.2

    def test_low_win_rate(self):
        tracker = PerformanceTracker()
        for i in range(10):
            tracker.record(i < 3)
        assert tracker.multiplier() == 0.7

    def test_neutral_band(self):
        tracker = PerformanceTracker()
        for i in range(10):
            tracker.record(i < 6)
        # exactly 0.6 is not above the threshold
        assert tracker.multiplier() == 1.0

    def test_window_bounded(self):
        tracker = PerformanceTracker(PerformanceConfig(window=50))
        for _ in range(50):
            tracker.record(False)
        for _ in range(50):
            tracker.record(True)

        assert tracker.sample_count == 50
        assert tracker.win_rate() == 1.0
        assert tracker.total_recorded == 100

    def test_reset(self):
        tracker = PerformanceTracker()
        tracker.record(True)
        tracker.reset()
        assert tracker.win_rate() is None

    def test_multiplier_scales_size(self, synthesizer, bar, calm_features):
        for _ in range(10):
            synthesizer.update_performance(True)

        signal = synthesizer.synthesize(make_prediction(), bar, calm_features)
        assert signal.quantity == 1296.0


# ============================================================================
# TEST STRATEGY
# ============================================================================

class TestStrategy:
    """Test the per-bar facade"""

    @pytest.fixture
    def strategy(self, small_ml_config):
        strat = MLSignalStrategy(SignalConfig(auto_train=False), small_ml_config)
        yield strat
        strat.shutdown(wait=True)

    def test_insufficient_history(self, strategy):
        bars = random_walk_bars(19)
        assert all(strategy.on_bar(b) is None for b in bars)
        assert strategy.lifecycle.status('AAPL', 'ensemble') == ModelStatus.UNTRAINED

    def test_untrained_models_no_signal(self, strategy):
        signals = [strategy.on_bar(b) for b in random_walk_bars(40)]
        assert all(s is None for s in signals)
        assert strategy.get_status()['models']['AAPL/stochastic']['scored_outcomes'] == 0

    def test_warm_up_trains_both_models(self, strategy):
        futures = strategy.warm_up(random_walk_bars(150))

        assert set(futures) == {'ensemble', 'stochastic'}
        assert all(f.result(timeout=60) for f in futures.values())
        assert strategy.lifecycle.status('AAPL', 'ensemble') == ModelStatus.READY
        assert strategy.lifecycle.status('AAPL', 'stochastic') == ModelStatus.READY

    def test_predictions_scored_on_next_bar(self, strategy):
        futures = strategy.warm_up(random_walk_bars(150))
        for future in futures.values():
            future.result(timeout=60)

        for b in random_walk_bars(2, start=150, seed=7):
            strategy.on_bar(b)

        models = strategy.get_status()['models']
        assert models['AAPL/ensemble']['scored_outcomes'] == 1
        assert models['AAPL/stochastic']['scored_outcomes'] == 1

    def test_signal_respects_bounds(self, strategy):
        futures = strategy.warm_up(random_walk_bars(150))
        for future in futures.values():
            future.result(timeout=60)

        for b in random_walk_bars(30, start=150, seed=11):
            signal = strategy.on_bar(b)
            if signal is not None:
                assert 0 < signal.quantity <= 10000.0
                assert signal.confidence >= 0.65

    def test_predict_batch_across_symbols(self, strategy):
        for symbol in ('AAPL', 'MSFT'):
            futures = strategy.warm_up(random_walk_bars(150, symbol=symbol))
            for future in futures.values():
                assert future.result(timeout=60)

        bars = [
            random_walk_bars(1, symbol='AAPL', start=150, seed=7)[0],
            random_walk_bars(1, symbol='MSFT', start=150, seed=8)[0],
            random_walk_bars(1, symbol='TSLA', start=150, seed=9)[0],
        ]
        results = strategy.predict_batch(bars)

        assert set(results) == {'AAPL', 'MSFT', 'TSLA'}
        assert results['AAPL'] is not None
        assert results['MSFT'] is not None
        assert results['AAPL'].symbol == 'AAPL'
        # No history for TSLA yet
        assert results['TSLA'] is None
        # Batch prediction leaves the histories alone
        assert strategy.extractor.history_length('AAPL') == 150
        assert strategy.extractor.history_length('TSLA') == 0

    def test_best_policy_ignores_untrained(self, strategy):
        strategy.on_bar(random_walk_bars(1)[0])
        preds = {
            'ensemble': make_prediction(confidence=0.9),
            'stochastic': make_prediction(confidence=0.95, model_name='stochastic'),
        }
        assert strategy.select_prediction('AAPL', preds) is None

    def test_fixed_policies(self, small_ml_config):
        preds = {
            'ensemble': make_prediction(confidence=0.9),
            'stochastic': make_prediction(confidence=0.7, model_name='stochastic'),
        }
        for policy in ('ensemble', 'stochastic'):
            strat = MLSignalStrategy(SignalConfig(prediction_policy=policy), small_ml_config)
            try:
                assert strat.select_prediction('AAPL', preds).model_name == policy
            finally:
                strat.shutdown()

    def test_status(self, strategy):
        strategy.on_bar(random_walk_bars(1)[0])
        strategy.record_signal_outcome(True)
        status = strategy.get_status()

        assert status['strategy_name'] == 'ml_signal_strategy'
        assert status['prediction_policy'] == 'best'
        assert status['symbols'] == ['AAPL']
        assert status['win_rate'] == 1.0
        assert set(status['models']) == {'AAPL/ensemble', 'AAPL/stochastic'}

    def test_empty_feature_vector(self, strategy):
        assert strategy.predict('AAPL', make_bar('AAPL', 0, 1, 1, 1, 1),
                                FeatureVector.empty('AAPL')) == {'ensemble': None, 'stochastic': None}


# ============================================================================
# TEST CONFIGURATION
# ============================================================================

class TestConfiguration:
    """Test config validation, hashing and environment loading"""

    def test_defaults_valid(self):
        config = QuantSignalConfig()
        config.validate()
        assert config.signal.min_confidence == 0.65

    def test_bad_policy(self):
        with pytest.raises(ConfigurationError):
            SignalConfig(prediction_policy='random').validate()

    def test_bad_confidence(self):
        with pytest.raises(ConfigurationError):
            SignalConfig(min_confidence=1.5).validate()

    def test_hash_stable_and_sensitive(self):
        a = SignalConfig()
        b = SignalConfig()
        c = SignalConfig(min_confidence=0.7)

        assert a.get_config_hash() == b.get_config_hash()
        assert len(a.get_config_hash()) == 16
        assert a.get_config_hash() != c.get_config_hash()

    def test_round_trip(self):
        config = QuantSignalConfig()
        config.signal.min_confidence = 0.72
        restored = QuantSignalConfig.from_dict(config.to_dict())
        assert restored.get_config_hash() == config.get_config_hash()

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv('QUANTSIGNAL_MIN_CONFIDENCE', '0.7')
        monkeypatch.setenv('QUANTSIGNAL_PREDICTION_POLICY', ' Ensemble ')
        monkeypatch.setenv('QUANTSIGNAL_STALENESS_DAYS', '10')

        config = load_config_from_env(env_path=str(tmp_path / "missing.env"))

        assert config.signal.min_confidence == 0.7
        assert config.signal.prediction_policy == 'ensemble'
        assert config.ml.lifecycle.staleness_days == 10

    def test_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv('QUANTSIGNAL_LOOKBACK', raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("QUANTSIGNAL_LOOKBACK=15\n")
        try:
            config = load_config_from_env(env_path=str(env_file))
            assert config.ml.stochastic.lookback == 15
        finally:
            os.environ.pop('QUANTSIGNAL_LOOKBACK', None)

    def test_invalid_value(self, monkeypatch, tmp_path):
        monkeypatch.setenv('QUANTSIGNAL_LOOKBACK', 'abc')
        with pytest.raises(ConfigurationError):
            load_config_from_env(env_path=str(tmp_path / "missing.env"))

    def test_invalid_policy_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv('QUANTSIGNAL_PREDICTION_POLICY', 'random')
        with pytest.raises(ConfigurationError):
            load_config_from_env(env_path=str(tmp_path / "missing.env"))
