"""
lane-router config package public API.

File: src/lane_router/config/__init__.py
Last updated: 2026-10-18

Purpose
- Export config loading/validation entrypoints and public error types.

What should be included in this file
- Public schema constants and validation/report types.
- Loader APIs for effective runtime config and redacted dumps.
- Typed runtime settings live in ``lane_router.config.settings`` and are not
  re-exported here, so routing modules can import the schema without cycles.

Functional requirements
- Support loading from ``lane_router.toml`` + ``LANE_ROUTER_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from lane_router.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    load_config,
    normalize_paths,
    parse_cli_assignments,
)
from lane_router.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    STRATEGY_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    RouterConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    mask_url,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "RouterConfig",
    "STRATEGY_NAMES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "mask_url",
    "merge_config",
    "normalize_paths",
    "parse_cli_assignments",
    "redact_config",
    "validate_config",
]
