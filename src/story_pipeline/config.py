"""Loading pipeline configuration from .pipeline/config.json."""

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import PipelineConfig


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_file: Optional[Path] = None, **overrides: Any) -> PipelineConfig:
    """Build a PipelineConfig from an optional JSON file plus overrides.

    A missing file means defaults. Overrides win over the file and may be
    nested dicts, e.g. retry={"max_attempts": 5}.

    Raises:
        ConfigurationError: the file is not valid JSON or the result fails validation
    """
    data: dict[str, Any] = {}
    if config_file is not None and Path(config_file).exists():
        try:
            data = json.loads(Path(config_file).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_file} must contain a JSON object")

    data = _merge(data, {k: v for k, v in overrides.items() if v is not None})

    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline configuration: {e}") from e
