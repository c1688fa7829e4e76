import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from hybrid_srs.config import (
    AppConfig,
    ConfigLoader,
    EmbeddingConfig,
    LearningConfig,
    LoggingConfig,
    SM2Config,
    load_config,
)


class TestAppConfig(unittest.TestCase):
    """Test defaults and validation of the configuration sections."""

    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = AppConfig(_env_file=None)
        self.assertEqual(config.environment, "development")
        self.assertFalse(config.features.use_gnn_learning)
        self.assertTrue(config.features.use_vector_search)
        self.assertEqual(config.search.collections, ["vocabulary", "descriptions", "images"])
        self.assertEqual(config.bridge.max_shift_days, 3.0)
        self.assertEqual(config.database.backend, "memory")

    def test_validators_normalise_case(self):
        self.assertEqual(LoggingConfig(level="debug").level, "DEBUG")
        self.assertEqual(EmbeddingConfig(provider="OpenAI").provider, "openai")
        self.assertTrue(AppConfig(environment="TESTING", _env_file=None).is_testing)

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            LoggingConfig(level="LOUD")
        with self.assertRaises(ValueError):
            EmbeddingConfig(provider="word2vec")
        with self.assertRaises(ValueError):
            AppConfig(environment="qa", _env_file=None)
        with self.assertRaises(ValueError):
            SM2Config(fast_threshold_ms=9000, slow_threshold_ms=3000)
        with self.assertRaises(ValueError):
            LearningConfig(min_interactions_for_confidence=8, full_confidence_interactions=4)
        with self.assertRaises(ValueError):
            AppConfig(database={"backend": "mongo"}, _env_file=None)


class TestConfigLoader(unittest.TestCase):
    """Test file and environment sources."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name, content):
        path = self.dir / name
        path.write_text(content, encoding="utf-8")
        return str(path)

    def test_environment_variables(self):
        env = {
            "HYBRID_SRS_ENVIRONMENT": "production",
            "HYBRID_SRS_FEATURES__USE_GNN_LEARNING": "true",
            "HYBRID_SRS_EMBEDDING__DIMENSIONS": "128",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config()
        self.assertTrue(config.is_production)
        self.assertTrue(config.features.use_gnn_learning)
        self.assertEqual(config.embedding.dimensions, 128)

    def test_yaml_file_wins_over_environment(self):
        path = self.write("engine.yaml", yaml.safe_dump({
            "environment": "staging",
            "bridge": {"max_shift_days": 1.5},
        }))
        env = {"HYBRID_SRS_ENVIRONMENT": "production", "HYBRID_SRS_LOGGING__LEVEL": "ERROR"}
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config(path)
        self.assertEqual(config.environment, "staging")
        self.assertEqual(config.bridge.max_shift_days, 1.5)
        # sections the file leaves out still come from the environment
        self.assertEqual(config.logging.level, "ERROR")

    def test_config_path_from_environment(self):
        path = self.write("engine.json", json.dumps({"search": {"default_limit": 7}}))
        with mock.patch.dict(os.environ, {"HYBRID_SRS_CONFIG_PATH": path}, clear=True):
            config = ConfigLoader().load()
        self.assertEqual(config.search.default_limit, 7)

    def test_loader_caches(self):
        loader = ConfigLoader(self.write("engine.yaml", "environment: testing\n"))
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertIs(loader.load(), loader.load())

    def test_missing_or_empty_file_uses_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            missing = load_config(str(self.dir / "absent.yaml"))
            empty = load_config(self.write("empty.yaml", ""))
            unsupported = load_config(self.write("engine.toml", "environment = 'staging'"))
        for config in (missing, empty, unsupported):
            self.assertEqual(config.environment, "development")

    def test_non_mapping_file_is_rejected(self):
        path = self.write("list.yaml", "- a\n- b\n")
        with self.assertRaises(ValueError):
            load_config(path)


if __name__ == "__main__":
    unittest.main()
