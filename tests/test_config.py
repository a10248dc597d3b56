"""Tests for YAML configuration and logging setup.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

import muscle_redundancy
from muscle_redundancy._logging import SESSION_START_BANNER, enable_logging_handlers
from muscle_redundancy.config import (
    CONFIG_DIR_ENV_VAR_NAME,
    LOGGING,
    SolverConfig,
    load_config,
    load_config_as_ns,
    load_solver_config,
)
from muscle_redundancy.config.config import _normalize_log_level, deep_merge
from muscle_redundancy.types import TreeNamespace, namespace_to_dict


class TestLoadConfig:

    def test_default_sections(self):
        config = load_config()
        assert "solver" in config
        assert "logging" in config

    def test_as_namespace(self):
        ns = load_config_as_ns()
        assert isinstance(ns.solver, TreeNamespace)
        assert ns.solver.scheme == "trapezoidal"
        assert namespace_to_dict(ns)["solver"]["num_mesh_points"] == 100

    def test_missing(self):
        with pytest.raises(ValueError, match="not found"):
            load_config("no_such_config")

    def test_user_override(self, tmp_path, monkeypatch):
        (tmp_path / "default.yml").write_text("solver:\n  num_mesh_points: 12\n")
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR_NAME, str(tmp_path))

        config = load_solver_config()
        assert config.num_mesh_points == 12
        # Keys absent from the user file come from the packaged defaults
        assert config.tolerance == 1e-8

    def test_user_dir_without_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR_NAME, str(tmp_path))
        assert load_solver_config().num_mesh_points == 100

    def test_deep_merge(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        merged = deep_merge(base, {"a": {"c": 5}})
        assert merged == {"a": {"b": 1, "c": 5}, "d": 3}
        assert base["a"]["c"] == 2


class TestSolverConfig:

    def test_overrides(self):
        config = load_solver_config(num_mesh_points=20, coordinates_to_include=["hip"])
        assert config.num_mesh_points == 20
        assert config.coordinates_to_include == ("hip",)

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown solver option"):
            SolverConfig.from_dict({"mesh": 3})

    def test_null_weights(self):
        assert SolverConfig.from_dict({"control_weights": None}).control_weights == {}


class TestLogging:

    def test_exported_from_package(self):
        assert muscle_redundancy.enable_logging_handlers is enable_logging_handlers

    def test_levels_normalized(self):
        assert isinstance(LOGGING.file_level, int)
        assert LOGGING.pkg_console_levels.jax == logging.WARNING

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="console_level"):
            _normalize_log_level("console_level", "LOUD")

    def test_enable_logging_handlers(self, tmp_path):
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        try:
            log_path = enable_logging_handlers(
                file_level=logging.DEBUG,
                console_level=logging.WARNING,
                logs_dir=tmp_path,
            )
            assert log_path == (tmp_path / "muscle_redundancy.log").resolve()
            assert logging.getLogger("jax").level == logging.WARNING

            logging.getLogger("muscle_redundancy.test").debug("hello from the test")
            for h in root.handlers:
                h.flush()
            contents = log_path.read_text()
            assert SESSION_START_BANNER in contents
            assert "hello from the test" in contents

            # Calling again replaces the file handler instead of adding another
            enable_logging_handlers(logs_dir=tmp_path)
            file_handlers = [
                h
                for h in root.handlers
                if isinstance(h, RotatingFileHandler)
                and h.baseFilename == str(log_path)
            ]
            assert len(file_handlers) == 1
        finally:
            for h in list(root.handlers):
                if h not in saved_handlers:
                    root.removeHandler(h)
                    h.close()
            for h in saved_handlers:
                if h not in root.handlers:
                    root.addHandler(h)
            root.setLevel(saved_level)
            logging.captureWarnings(False)
