"""
Tests for the model lifecycle manager and the versioned model registry.

Run: pytest tests/test_lifecycle.py -v
"""

import pytest
import threading
from datetime import datetime, timedelta
from typing import Any, Dict

from quantsignal.exceptions import PersistenceError
from quantsignal.feature_engine.extractor import FeatureExtractor
from quantsignal.feature_engine.pipeline import FeaturePipeline
from quantsignal.ml_layer.base import PredictiveModel
from quantsignal.ml_layer.config import LifecycleConfig
from quantsignal.ml_layer.ensemble import EnsembleModel
from quantsignal.ml_layer.lifecycle import ModelLifecycleManager, ModelStatus
from quantsignal.ml_layer.model_registry import ModelRegistry, ModelVersionManager
from quantsignal.ml_layer.schemas import Direction, Prediction
from quantsignal.ml_layer.specialists import SpecialistModel
from quantsignal.ml_layer.stochastic_model import StochasticSequenceModel

from conftest import random_walk_bars


class GatedModel(PredictiveModel):
    """Model whose training blocks until released or cancelled"""

    name = "gated"
    started = threading.Event()
    release = threading.Event()

    def __init__(self):
        super().__init__(min_training_samples=10)
        self.generation = 0
        self.succeed = True

    def train(self, history, feature_series, cancel_event=None):
        GatedModel.started.set()
        while not GatedModel.release.wait(timeout=0.01):
            if cancel_event is not None and cancel_event.is_set():
                return False
        if not self.succeed:
            return False
        with self._lock:
            self.generation += 1
            self._mark_trained(len(history))
        return True

    def predict(self, bar, features):
        return Prediction(features.symbol, features.timestamp, Direction.SIDEWAYS, 0.5, self.name)

    def update(self, bar, features):
        pass

    def _get_params(self) -> Dict[str, Any]:
        return {'generation': self.generation}

    def _set_params(self, params: Dict[str, Any]):
        self.generation = params['generation']


class FailingModel(GatedModel):
    name = "failing"

    def train(self, history, feature_series, cancel_event=None):
        raise FloatingPointError("diverged")


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def history():
    bars = random_walk_bars(120)
    return bars, FeaturePipeline().compute_frame(bars)


@pytest.fixture
def manager():
    mgr = ModelLifecycleManager(LifecycleConfig(max_workers=2))
    yield mgr
    GatedModel.release.set()
    mgr.shutdown(wait=True)


@pytest.fixture(autouse=True)
def reset_gates():
    GatedModel.started = threading.Event()
    GatedModel.release = threading.Event()
    yield
    GatedModel.release.set()


# ============================================================================
# TEST TRAINING
# ============================================================================

class TestTraining:
    """Test background training and copy-then-swap"""

    def test_register_status(self, manager):
        manager.register('AAPL', 'ensemble', EnsembleModel())
        assert manager.status('AAPL', 'ensemble') == ModelStatus.UNTRAINED

    def test_register_trained_model_is_ready(self, manager, history):
        bars, frame = history
        model = EnsembleModel()
        model.train(bars, frame)
        manager.register('AAPL', 'ensemble', model)
        assert manager.status('AAPL', 'ensemble') == ModelStatus.READY

    def test_unknown_slot(self, manager):
        with pytest.raises(KeyError):
            manager.status('AAPL', 'missing')

    def test_successful_training_swaps_copy(self, manager, history):
        bars, frame = history
        original = EnsembleModel()
        manager.register('AAPL', 'ensemble', original)

        future = manager.submit_training('AAPL', 'ensemble', bars, frame)

        assert future.result(timeout=30) is True
        assert manager.status('AAPL', 'ensemble') == ModelStatus.READY
        live = manager.get_model('AAPL', 'ensemble')
        assert live is not original
        assert live.is_ready
        assert not original.is_ready

    def test_failed_training_restores_status(self, manager, history):
        bars, frame = history
        original = EnsembleModel()
        manager.register('AAPL', 'ensemble', original)

        future = manager.submit_training('AAPL', 'ensemble', bars[:50], frame.iloc[:50])

        assert future.result(timeout=30) is False
        assert manager.status('AAPL', 'ensemble') == ModelStatus.UNTRAINED
        assert manager.get_model('AAPL', 'ensemble') is original
        assert manager.get_all_statuses()['AAPL/ensemble']['last_error']

    def test_exception_in_training_is_reported(self, manager, history):
        bars, frame = history
        manager.register('AAPL', 'failing', FailingModel())

        future = manager.submit_training('AAPL', 'failing', bars, frame)

        assert future.result(timeout=5) is False
        assert manager.status('AAPL', 'failing') == ModelStatus.UNTRAINED
        assert 'diverged' in manager.get_all_statuses()['AAPL/failing']['last_error']

    def test_status_training_while_running(self, manager, history):
        bars, frame = history
        manager.register('AAPL', 'gated', GatedModel())

        future = manager.submit_training('AAPL', 'gated', bars, frame)
        assert GatedModel.started.wait(timeout=5)

        assert manager.status('AAPL', 'gated') == ModelStatus.TRAINING
        # A second request returns the in-flight future
        assert manager.submit_training('AAPL', 'gated', bars, frame) is future

        GatedModel.release.set()
        assert future.result(timeout=5) is True
        assert manager.status('AAPL', 'gated') == ModelStatus.READY

    def test_cancel_keeps_previous_ready_model(self, manager, history):
        bars, frame = history
        GatedModel.release.set()
        manager.register('AAPL', 'gated', GatedModel())
        assert manager.submit_training('AAPL', 'gated', bars, frame).result(timeout=5)
        ready_model = manager.get_model('AAPL', 'gated')
        assert ready_model.generation == 1

        GatedModel.release = threading.Event()
        GatedModel.started = threading.Event()
        future = manager.submit_training('AAPL', 'gated', bars, frame)
        assert GatedModel.started.wait(timeout=5)

        assert manager.cancel('AAPL', 'gated')
        assert future.result(timeout=5) is False
        assert manager.status('AAPL', 'gated') == ModelStatus.READY
        live = manager.get_model('AAPL', 'gated')
        assert live is ready_model
        assert live.generation == 1

    def test_cancel_without_training(self, manager):
        manager.register('AAPL', 'ensemble', EnsembleModel())
        assert not manager.cancel('AAPL', 'ensemble')

    def test_maybe_train_waits_for_data(self, manager, history):
        bars, frame = history
        manager.register('AAPL', 'ensemble', EnsembleModel())

        assert manager.maybe_train('AAPL', 'ensemble', bars[:99], frame.iloc[:99]) is None

        future = manager.maybe_train('AAPL', 'ensemble', bars, frame)
        assert future is not None
        assert future.result(timeout=30)

    def test_maybe_train_ignores_ready(self, manager, history):
        bars, frame = history
        model = EnsembleModel()
        model.train(bars, frame)
        manager.register('AAPL', 'ensemble', model)

        assert manager.maybe_train('AAPL', 'ensemble', bars, frame) is None

    def test_wait(self, manager, history):
        bars, frame = history
        manager.register('AAPL', 'ensemble', EnsembleModel())
        assert manager.wait('AAPL', 'ensemble') is None

        manager.submit_training('AAPL', 'ensemble', bars, frame)
        assert manager.wait('AAPL', 'ensemble', timeout=30) is True


# ============================================================================
# TEST HEALTH
# ============================================================================

class TestHealth:
    """Test degradation and retraining"""

    @pytest.fixture
    def ready_manager(self, manager, history):
        bars, frame = history
        model = EnsembleModel()
        model.train(bars, frame)
        manager.register('AAPL', 'ensemble', model)
        return manager

    def test_low_accuracy_degrades(self, ready_manager):
        for i in range(50):
            ready_manager.record_outcome('AAPL', 'ensemble', i % 3 == 0)

        assert ready_manager.check_health('AAPL', 'ensemble') == ModelStatus.DEGRADED

    def test_too_few_outcomes_stays_ready(self, ready_manager):
        for _ in range(49):
            ready_manager.record_outcome('AAPL', 'ensemble', False)

        assert ready_manager.check_health('AAPL', 'ensemble') == ModelStatus.READY

    def test_good_accuracy_stays_ready(self, ready_manager):
        for i in range(60):
            ready_manager.record_outcome('AAPL', 'ensemble', i % 2 == 0)

        assert ready_manager.check_health('AAPL', 'ensemble') == ModelStatus.READY

    def test_stale_model_degrades(self, ready_manager):
        later = datetime.now() + timedelta(days=31)
        assert ready_manager.check_health('AAPL', 'ensemble', now=later) == ModelStatus.DEGRADED

    def test_degraded_model_keeps_serving_and_retrains(self, ready_manager, history):
        bars, frame = history
        stale = ready_manager.get_model('AAPL', 'ensemble')
        ready_manager.check_health('AAPL', 'ensemble', now=datetime.now() + timedelta(days=40))

        assert ready_manager.is_serving('AAPL', 'ensemble')
        assert ready_manager.get_model('AAPL', 'ensemble') is stale

        future = ready_manager.maybe_train('AAPL', 'ensemble', bars, frame)
        assert future.result(timeout=30)
        assert ready_manager.status('AAPL', 'ensemble') == ModelStatus.READY
        assert ready_manager.get_model('AAPL', 'ensemble') is not stale

    def test_record_outcome_updates_model_state(self, ready_manager):
        ready_manager.record_outcome('AAPL', 'ensemble', True)
        ready_manager.record_outcome('AAPL', 'ensemble', False)

        state = ready_manager.get_model('AAPL', 'ensemble').state
        assert state.scored_count == 2
        assert state.correct_count == 1

    def test_retrained_model_starts_fresh_outcomes(self, ready_manager, history):
        bars, frame = history
        for _ in range(60):
            ready_manager.record_outcome('AAPL', 'ensemble', False)
        assert ready_manager.check_health('AAPL', 'ensemble') == ModelStatus.DEGRADED

        assert ready_manager.maybe_train('AAPL', 'ensemble', bars, frame).result(timeout=30)

        state = ready_manager.get_model('AAPL', 'ensemble').state
        assert state.scored_count == 0
        assert state.correct_count == 0
        # Old misses no longer count against the new model
        assert ready_manager.check_health('AAPL', 'ensemble') == ModelStatus.READY

    def test_full_update_buffer_degrades_and_retrains(self, manager, small_stochastic_config):
        bars = random_walk_bars(150)
        extractor = FeatureExtractor()
        frame = extractor.compute_frame(bars)
        vectors = extractor.frame_to_vectors('AAPL', frame)
        model = StochasticSequenceModel(small_stochastic_config)
        assert model.train(bars, frame)
        manager.register('AAPL', 'stochastic', model)
        assert manager.check_health('AAPL', 'stochastic') == ModelStatus.READY

        # threshold is 20 buffered observations
        live = manager.get_model('AAPL', 'stochastic')
        for bar, features in zip(bars[-25:], vectors[-25:]):
            live.update(bar, features)

        assert manager.check_health('AAPL', 'stochastic') == ModelStatus.DEGRADED

        future = manager.maybe_train('AAPL', 'stochastic', bars, frame)
        assert future is not None
        assert future.result(timeout=60)
        assert manager.status('AAPL', 'stochastic') == ModelStatus.READY
        assert manager.get_model('AAPL', 'stochastic').buffer_size == 0


# ============================================================================
# TEST PERSISTENCE
# ============================================================================

class TestPersistence:
    """Test lifecycle save/load and maintenance"""

    def test_save_and_load_sets_ready(self, manager, history, tmp_path):
        bars, frame = history
        model = EnsembleModel()
        model.train(bars, frame)
        manager.register('AAPL', 'ensemble', model)
        path = tmp_path / "AAPL_ensemble.pkl"
        assert manager.save('AAPL', 'ensemble', path)

        manager.register('MSFT', 'ensemble', EnsembleModel())
        assert manager.load('MSFT', 'ensemble', path)

        assert manager.status('MSFT', 'ensemble') == ModelStatus.READY
        assert manager.is_serving('MSFT', 'ensemble')

    def test_load_failure_leaves_slot(self, manager, tmp_path):
        manager.register('AAPL', 'ensemble', EnsembleModel())
        assert not manager.load('AAPL', 'ensemble', tmp_path / "missing.pkl")
        assert manager.status('AAPL', 'ensemble') == ModelStatus.UNTRAINED

    @pytest.mark.parametrize('succeed', [True, False])
    def test_load_during_training_wins(self, manager, history, tmp_path, succeed):
        bars, frame = history
        running = GatedModel()
        running.succeed = succeed
        manager.register('AAPL', 'gated', running)
        future = manager.submit_training('AAPL', 'gated', bars, frame)
        assert GatedModel.started.wait(timeout=5)

        saved = GatedModel()
        saved.generation = 7
        saved._mark_trained(10)
        path = tmp_path / "AAPL_gated.pkl"
        assert saved.save(path)

        assert manager.load('AAPL', 'gated', path)
        assert manager.status('AAPL', 'gated') == ModelStatus.READY

        GatedModel.release.set()
        assert future.result(timeout=5) is False
        assert manager.status('AAPL', 'gated') == ModelStatus.READY
        assert manager.get_model('AAPL', 'gated').generation == 7

    def test_maintenance_autosaves_and_reports_degraded(self, history, tmp_path):
        bars, frame = history
        manager = ModelLifecycleManager(LifecycleConfig(storage_path=str(tmp_path / "models")))
        try:
            ready = EnsembleModel()
            ready.train(bars, frame)
            manager.register('AAPL', 'ensemble', ready)
            manager.register('MSFT', 'ensemble', EnsembleModel())

            assert manager.perform_maintenance() == []
            assert manager.registry.list_versions('AAPL', 'ensemble') == ['v1.0.0']
            assert manager.registry.list_versions('MSFT', 'ensemble') == []

            degraded = manager.perform_maintenance(now=datetime.now() + timedelta(days=31))
            assert degraded == ['AAPL/ensemble']
        finally:
            manager.shutdown()

    def test_maintenance_stores_only_new_models(self, history, tmp_path):
        bars, frame = history
        manager = ModelLifecycleManager(LifecycleConfig(storage_path=str(tmp_path / "models")))
        try:
            ready = EnsembleModel()
            ready.train(bars, frame)
            manager.register('AAPL', 'ensemble', ready)

            manager.perform_maintenance()
            manager.perform_maintenance()
            assert manager.registry.list_versions('AAPL', 'ensemble') == ['v1.0.0']

            assert manager.submit_training('AAPL', 'ensemble', bars, frame).result(timeout=30)
            manager.perform_maintenance()
            manager.perform_maintenance()
            assert manager.registry.list_versions('AAPL', 'ensemble') == ['v1.0.0', 'v1.0.1']
        finally:
            manager.shutdown()

    def test_maintenance_records_config_hash(self, history, tmp_path):
        bars, frame = history
        manager = ModelLifecycleManager(
            LifecycleConfig(storage_path=str(tmp_path / "models")), config_hash='abc123'
        )
        try:
            ready = EnsembleModel()
            ready.train(bars, frame)
            manager.register('AAPL', 'ensemble', ready)
            manager.perform_maintenance()

            metadata = manager.registry.load_model('AAPL', 'ensemble', EnsembleModel())
            assert metadata.config_hash == 'abc123'
        finally:
            manager.shutdown()


# ============================================================================
# TEST REGISTRY
# ============================================================================

class TestRegistry:
    """Test versioned model storage"""

    @pytest.fixture
    def trained_model(self):
        bars = random_walk_bars(60)
        model = SpecialistModel('trend')
        model.train(bars, FeaturePipeline().compute_frame(bars))
        return model

    def test_versions_increment(self, tmp_path, trained_model):
        registry = ModelRegistry(str(tmp_path))

        v1 = registry.register_model('AAPL', 'trend', trained_model, config_hash='abc')
        v2 = registry.register_model('AAPL', 'trend', trained_model)

        assert (v1, v2) == ('v1.0.0', 'v1.0.1')
        assert registry.get_latest_version('AAPL', 'trend') == 'v1.0.1'
        assert (tmp_path / 'AAPL' / 'trend' / 'v1.0.0' / 'model.pkl').exists()
        assert (tmp_path / 'AAPL' / 'trend' / 'v1.0.0' / 'metadata.json').exists()

    def test_load_latest_and_specific(self, tmp_path, trained_model):
        registry = ModelRegistry(str(tmp_path))
        registry.register_model('AAPL', 'trend', trained_model, config_hash='abc')

        model = SpecialistModel('trend')
        metadata = registry.load_model('AAPL', 'trend', model)

        assert model.is_ready
        assert metadata.model_version == 'v1.0.0'
        assert metadata.config_hash == 'abc'
        assert metadata.training_samples == 60

        with pytest.raises(PersistenceError):
            registry.load_model('AAPL', 'trend', SpecialistModel('trend'), version='v9.9.9')

    def test_index_persists(self, tmp_path, trained_model):
        ModelRegistry(str(tmp_path)).register_model('AAPL', 'trend', trained_model)

        reopened = ModelRegistry(str(tmp_path))
        assert reopened.list_versions('AAPL', 'trend') == ['v1.0.0']
        assert 'AAPL/trend' in reopened.list_models()

    def test_untrained_rejected(self, tmp_path):
        registry = ModelRegistry(str(tmp_path))
        with pytest.raises(PersistenceError):
            registry.register_model('AAPL', 'trend', SpecialistModel('trend'))

    def test_unknown_slot(self, tmp_path):
        with pytest.raises(PersistenceError):
            ModelRegistry(str(tmp_path)).load_model('AAPL', 'trend', SpecialistModel('trend'))

    def test_delete_version(self, tmp_path, trained_model):
        registry = ModelRegistry(str(tmp_path))
        registry.register_model('AAPL', 'trend', trained_model)
        registry.register_model('AAPL', 'trend', trained_model)

        registry.delete_version('AAPL', 'trend', 'v1.0.1')

        assert registry.list_versions('AAPL', 'trend') == ['v1.0.0']
        assert not (tmp_path / 'AAPL' / 'trend' / 'v1.0.1').exists()

    def test_version_manager(self):
        assert ModelVersionManager.parse_version('v1.2.3') == (1, 2, 3)
        assert ModelVersionManager.increment_version('v1.2.3') == 'v1.2.4'
        assert ModelVersionManager.increment_version('v1.2.3', 'minor') == 'v1.3.0'
        assert ModelVersionManager.increment_version('v1.2.3', 'major') == 'v2.0.0'
