"""
Model Registry and Versioning

Versioned on-disk storage for trained model blobs, keyed by
(symbol, model name).

Layout:
    <storage>/<symbol>/<model>/<version>/model.pkl
    <storage>/<symbol>/<model>/<version>/metadata.json
    <storage>/registry_index.json
"""

import json
import threading
from typing import Optional, Dict, List
from datetime import datetime
from pathlib import Path
import logging

from quantsignal.exceptions import PersistenceError
from quantsignal.ml_layer.base import PredictiveModel
from quantsignal.ml_layer.schemas import ModelMetadata

LOG = logging.getLogger(__name__)


class ModelRegistry:
    """
    Versioned store of trained model blobs.

    Each (symbol, model) slot keeps an ordered list of versions in a JSON
    index; loading an older version is the rollback path. Metadata carries
    the config hash the model was trained under.
    """

    INDEX_NAME = "registry_index.json"

    def __init__(self, storage_path: str = "models"):
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.index_file = self.storage_path / self.INDEX_NAME

        self._lock = threading.Lock()
        self.index: Dict[str, List[Dict]] = self._read_index()
        LOG.info(f"Model registry at {self.storage_path} ({len(self.index)} slots)")

    @staticmethod
    def _key(symbol: str, model_name: str) -> str:
        return f"{symbol}/{model_name}"

    def _read_index(self) -> Dict:
        if not self.index_file.exists():
            return {}
        try:
            return json.loads(self.index_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Corrupt registry index {self.index_file}: {e}") from e

    def _write_index(self):
        self.index_file.write_text(json.dumps(self.index, indent=2))

    def register_model(
        self,
        symbol: str,
        model_name: str,
        model: PredictiveModel,
        config_hash: str = "",
        version: Optional[str] = None
    ) -> str:
        """
        Store a trained model as a new version.

        Args:
            symbol: Trading symbol
            model_name: Model slot name
            model: Trained model
            config_hash: Hash of the config the model was trained with
            version: Explicit version (next patch version if None)

        Returns:
            Model version
        """
        if not model.is_ready:
            raise PersistenceError(f"Cannot register untrained model {symbol}/{model_name}")

        with self._lock:
            key = self._key(symbol, model_name)
            entries = self.index.setdefault(key, [])
            if version is None:
                latest = entries[-1]['version'] if entries else "v1.0.0"
                version = ModelVersionManager.increment_version(latest) if entries else latest

            model_dir = self.storage_path / symbol / model_name / version
            try:
                model_dir.mkdir(parents=True, exist_ok=True)
                model_path = model_dir / "model.pkl"
                model_path.write_bytes(model.serialize())

                metadata = ModelMetadata(
                    model_version=version,
                    model_name=model_name,
                    symbol=symbol,
                    trained_on=model.state.last_trained.isoformat() if model.state.last_trained else None,
                    training_samples=model.state.training_samples,
                    config_hash=config_hash,
                    prediction_count=model.state.prediction_count,
                    accuracy=model.state.accuracy if model.state.scored_count else None,
                )
                metadata_path = model_dir / "metadata.json"
                with open(metadata_path, 'w') as f:
                    json.dump(metadata.to_dict(), f, indent=2)

                entries.append({
                    'version': version,
                    'registered_on': datetime.now().isoformat(),
                    'config_hash': config_hash,
                    'trained_on': metadata.trained_on,
                    'model_path': str(model_path),
                    'metadata_path': str(metadata_path),
                })
                self._write_index()
            except OSError as e:
                raise PersistenceError(f"Failed to register {key} {version}: {e}") from e

        LOG.info(f"Registered {symbol}/{model_name} model version {version}")
        return version

    def _entry(self, symbol: str, model_name: str, version: Optional[str]) -> Dict:
        key = self._key(symbol, model_name)
        entries = self.index.get(key)
        if not entries:
            raise PersistenceError(f"No models registered for {key}")
        if version is None:
            return entries[-1]
        entry = next((e for e in entries if e['version'] == version), None)
        if entry is None:
            raise PersistenceError(f"Model version {version} not found for {key}")
        return entry

    def load_model(
        self,
        symbol: str,
        model_name: str,
        model: PredictiveModel,
        version: Optional[str] = None
    ) -> ModelMetadata:
        """
        Restore a stored version into a model instance.

        Args:
            symbol: Trading symbol
            model_name: Model slot name
            model: Instance of the matching model class
            version: Version to load (latest if None)

        Returns:
            Metadata of the loaded version
        """
        with self._lock:
            entry = self._entry(symbol, model_name, version)

        try:
            model.deserialize(Path(entry['model_path']).read_bytes())
            with open(entry['metadata_path'], 'r') as f:
                metadata = ModelMetadata(**json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Failed to load {symbol}/{model_name} {entry['version']}: {e}") from e

        LOG.info(f"Loaded {symbol}/{model_name} model version {entry['version']}")
        return metadata

    def list_versions(self, symbol: str, model_name: str) -> List[str]:
        """Registered versions, oldest first"""
        return [e['version'] for e in self.index.get(self._key(symbol, model_name), [])]

    def list_models(self) -> Dict[str, List]:
        """Full index"""
        return dict(self.index)

    def get_latest_version(self, symbol: str, model_name: str) -> Optional[str]:
        """
        Get latest version for a slot.

        Returns:
            Latest version or None
        """
        versions = self.list_versions(symbol, model_name)
        return versions[-1] if versions else None

    def get_latest_trained_on(self, symbol: str, model_name: str) -> Optional[datetime]:
        """Training time of the latest stored version (None if nothing is stored)"""
        entries = self.index.get(self._key(symbol, model_name))
        if not entries:
            return None
        trained_on = entries[-1].get('trained_on')
        if trained_on is None:
            return None
        return datetime.fromisoformat(trained_on)

    def delete_version(self, symbol: str, model_name: str, version: str):
        """
        Delete one stored version.

        Args:
            symbol: Trading symbol
            model_name: Model slot name
            version: Version to delete
        """
        with self._lock:
            key = self._key(symbol, model_name)
            entry = next((e for e in self.index.get(key, []) if e['version'] == version), None)
            if entry is None:
                LOG.warning(f"Model {key} version {version} not found")
                return

            model_path = Path(entry['model_path'])
            metadata_path = Path(entry['metadata_path'])
            for path in (model_path, metadata_path):
                if path.exists():
                    path.unlink()

            model_dir = model_path.parent
            if model_dir.exists() and not list(model_dir.iterdir()):
                model_dir.rmdir()

            self.index[key] = [e for e in self.index[key] if e['version'] != version]
            self._write_index()

        LOG.info(f"Deleted {key} model version {version}")


class ModelVersionManager:
    """Semantic version strings of the form vMAJOR.MINOR.PATCH"""

    LEVELS = ('major', 'minor', 'patch')

    @staticmethod
    def parse_version(version: str) -> tuple:
        """'v1.2.3' -> (1, 2, 3)"""
        parts = version.lstrip('v').split('.')
        if len(parts) != 3:
            raise ValueError(f"Malformed model version {version!r}")
        return tuple(int(p) for p in parts)

    @staticmethod
    def increment_version(current_version: str, level: str = 'patch') -> str:
        """Bump one component and zero the ones below it"""
        if level not in ModelVersionManager.LEVELS:
            raise ValueError(f"level must be one of {ModelVersionManager.LEVELS}, got {level!r}")
        parts = list(ModelVersionManager.parse_version(current_version))
        i = ModelVersionManager.LEVELS.index(level)
        parts[i] += 1
        parts[i + 1:] = [0] * (2 - i)
        return "v" + ".".join(str(p) for p in parts)
