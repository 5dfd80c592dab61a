"""
Flight Orchestrator - Environment Config Loader Tests

Tests three-tier config loading: base file -> overlay file -> FO_ env vars,
and the typed OrchestratorConfig built from the merged dict.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from coordinator.config import OrchestratorConfig
from engine.config import (
    _load_env_overrides,
    _load_overlay_file,
    _set_nested,
    _split_env_key,
    deep_merge,
    get_config_value,
    load_config,
)

BASE_YAML = os.path.join(_base, "config", "orchestrator.yaml")


class TestDeepMerge(unittest.TestCase):

    def test_flat_merge(self):
        self.assertEqual(deep_merge({"a": 1, "b": 2}, {"b": 99, "c": 3}),
                         {"a": 1, "b": 99, "c": 3})

    def test_nested_merge(self):
        base = {"journey": {"turnaround_seconds": 1.0, "cancel_active_leg": False}}
        result = deep_merge(base, {"journey": {"cancel_active_leg": True}})
        self.assertEqual(result["journey"], {"turnaround_seconds": 1.0, "cancel_active_leg": True})

    def test_lists_replaced(self):
        self.assertEqual(deep_merge({"x": [1, 2]}, {"x": [3]}), {"x": [3]})

    def test_base_untouched(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        self.assertEqual(base, {"a": {"b": 1}})


class TestEnvOverrides(unittest.TestCase):

    def test_split_uses_known_keys(self):
        shape = {"journey": {"turnaround_seconds": 1.0}, "runtime": {"worker_threads": 8}}
        self.assertEqual(_split_env_key(["journey", "turnaround", "seconds"], shape),
                         ["journey", "turnaround_seconds"])
        self.assertEqual(_split_env_key(["runtime", "worker", "threads"], shape),
                         ["runtime", "worker_threads"])

    def test_split_unknown_nests(self):
        self.assertEqual(_split_env_key(["a", "b", "c"], {}), ["a", "b", "c"])

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["event_bus", "backend"], "redis")
        self.assertEqual(d, {"event_bus": {"backend": "redis"}})

    @patch.dict(os.environ, {
        "FO_JOURNEY_TURNAROUND_SECONDS": "5",
        "FO_RUNTIME_STRICT_DETERMINISM": "true",
        "FO_PORT": "9000",
        "FO_ENV": "staging",
    })
    def test_overrides_parsed(self):
        shape = {"journey": {"turnaround_seconds": 1.0},
                 "runtime": {"strict_determinism": False}}
        overrides = _load_env_overrides(shape=shape)
        self.assertEqual(overrides["journey"], {"turnaround_seconds": 5})
        self.assertIs(overrides["runtime"]["strict_determinism"], True)
        self.assertNotIn("port", overrides)
        self.assertNotIn("env", overrides)


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.base = os.path.join(self.tmpdir, "orchestrator.yaml")
        with open(self.base, "w") as f:
            f.write("journey:\n  turnaround_seconds: 1.0\nruntime:\n  worker_threads: 8\n")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_base_only(self):
        cfg = load_config(self.base, include_env_vars=False)
        self.assertEqual(cfg["runtime"]["worker_threads"], 8)
        self.assertEqual(cfg["_config_source"], self.base)

    def test_overlay(self):
        with open(os.path.join(self.tmpdir, "prod.yaml"), "w") as f:
            f.write("runtime:\n  worker_threads: 32\n")
        cfg = load_config(self.base, env="prod", config_dir=self.tmpdir, include_env_vars=False)
        self.assertEqual(cfg["runtime"]["worker_threads"], 32)
        self.assertEqual(cfg["journey"]["turnaround_seconds"], 1.0)
        self.assertEqual(cfg["_active_env"], "prod")

    def test_missing_overlay(self):
        self.assertEqual(_load_overlay_file(self.base, env="nope", config_dir=self.tmpdir), {})

    @patch.dict(os.environ, {"FO_RUNTIME_WORKER_THREADS": "16"})
    def test_env_wins(self):
        with open(os.path.join(self.tmpdir, "prod.yaml"), "w") as f:
            f.write("runtime:\n  worker_threads: 32\n")
        cfg = load_config(self.base, env="prod", config_dir=self.tmpdir)
        self.assertEqual(cfg["runtime"]["worker_threads"], 16)

    def test_missing_base(self):
        cfg = load_config(os.path.join(self.tmpdir, "absent.yaml"), include_env_vars=False)
        self.assertEqual(get_config_value("runtime.worker_threads", cfg, 4), 4)

    def test_get_config_value(self):
        cfg = load_config(self.base, include_env_vars=False)
        self.assertEqual(get_config_value("journey.turnaround_seconds", cfg), 1.0)
        self.assertIsNone(get_config_value("journey.missing", cfg))


class TestOrchestratorConfig(unittest.TestCase):

    def test_defaults(self):
        cfg = OrchestratorConfig()
        self.assertEqual(cfg.journey.turnaround_seconds, 1.0)
        self.assertFalse(cfg.journey.cancel_active_leg)
        self.assertEqual(cfg.dispatcher.retry.max_attempts, 3)
        self.assertEqual(cfg.runtime.db_path, "")

    def test_from_dict(self):
        cfg = OrchestratorConfig.from_dict({
            "timing": {"demo_style": "fixed"},
            "dispatcher": {"timeout_seconds": 2, "retry": {"max_attempts": 5}},
            "journey": {"cancel_active_leg": True},
            "event_bus": {"backend": "redis", "stream": "fo"},
            "logging": {"level": "DEBUG"},
        })
        self.assertEqual(cfg.timing.demo_style, "fixed")
        self.assertEqual(cfg.dispatcher.timeout_seconds, 2.0)
        self.assertEqual(cfg.dispatcher.retry.max_attempts, 5)
        self.assertTrue(cfg.journey.cancel_active_leg)
        self.assertEqual(cfg.event_bus.backend, "redis")
        self.assertEqual(cfg.event_bus.stream, "fo")
        self.assertEqual(cfg.transition_store.backend, "memory")
        self.assertEqual(cfg.log_level, "DEBUG")

    def test_shipped_yaml(self):
        cfg = OrchestratorConfig.from_dict(load_config(BASE_YAML, include_env_vars=False))
        self.assertEqual(cfg.timing.base_minutes["BOARDING"], 1.0)
        self.assertEqual(cfg.timing.default_in_flight_minutes, 120.0)
        self.assertEqual(cfg.runtime.db_path, "orchestrator.db")
        self.assertEqual(cfg.transition_store.backend, "sqlite")


if __name__ == "__main__":
    unittest.main()
