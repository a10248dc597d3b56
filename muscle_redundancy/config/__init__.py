import os

from .config import (
    CONFIG_DIR_ENV_VAR_NAME,
    SolverConfig,
    _normalize_log_level,
    _setup_logging,
    load_config,
    load_config_as_ns,
    load_solver_config,
)

LOG_LEVEL_ENV_VAR_NAME = "MUSCLE_REDUNDANCY_LOG_LEVEL"
DEBUG_ENV_VAR_NAME = "MUSCLE_REDUNDANCY_DEBUG"

# Project-wide logging options, from the `logging` section of the default config
LOGGING = _setup_logging(load_config_as_ns().logging)

if os.environ.get(DEBUG_ENV_VAR_NAME, False) == "True":
    LOGGING.console_level = _normalize_log_level("console_level", "DEBUG")
elif LOG_LEVEL_ENV_VAR_NAME in os.environ:
    LOGGING.console_level = _normalize_log_level(
        LOG_LEVEL_ENV_VAR_NAME, os.environ[LOG_LEVEL_ENV_VAR_NAME]
    )
