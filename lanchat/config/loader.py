"""Load a ``ChatConfig`` from a JSON file.

The file may use either camelCase (``discoveryPort``) or snake_case
(``discovery_port``) keys.  A missing file yields the defaults; a file that
cannot be parsed is reported and ignored.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic.alias_generators import to_snake

from lanchat.config.schema import ChatConfig

DEFAULT_CONFIG_PATH = Path("~/.lanchat/config.json")


def convert_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {to_snake(k): v for k, v in data.items()}


def load_config(path: str | Path | None = None, **overrides: Any) -> ChatConfig:
    """Build the node configuration.

    Parameters
    ----------
    path:
        JSON config file.  ``None`` means ``~/.lanchat/config.json``.
    overrides:
        Explicit values (typically command-line flags).  ``None`` values are
        skipped so unset flags do not mask file or environment values.
    """
    config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH.expanduser()
    data: dict[str, Any] = {}

    if config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                data = convert_keys(raw)
            else:
                logger.warning("[Chat/Config] {} is not a JSON object, using defaults", config_path)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("[Chat/Config] failed to load {}: {}", config_path, exc)
    elif path:
        logger.warning("[Chat/Config] config file {} not found, using defaults", config_path)

    data.update({k: v for k, v in overrides.items() if v is not None})
    return ChatConfig(**data)
