"""
Parley - JSON document persistence helpers.

Shared by the account, group and message stores. Writes go to a temporary
file first and are moved into place with an atomic rename.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles

from .errors import ErrorCode, StorageFailure

logger = logging.getLogger(__name__)


def read_json(path: Path, default: Any) -> Any:
    """
    Load a JSON document, falling back to ``default`` when absent or corrupted.

    Raises:
        StorageFailure: If the file exists but cannot be read
    """
    if not path.exists():
        return default

    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupted document {path}: {e}")
        logger.warning(f"Starting with empty state for {path.name}")
        return default
    except OSError as e:
        logger.error(f"Failed to read {path}: {e}")
        raise StorageFailure(f"Cannot load {path.name}: {e}", {"path": str(path)}) from e


async def write_json_atomic(path: Path, data: Any) -> None:
    """
    Persist a JSON document asynchronously.

    Raises:
        StorageFailure: If the document cannot be written
    """
    json_data = json.dumps(data, indent=2, ensure_ascii=False)
    temp_file = f"{path}.tmp"

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json_data)
        os.replace(temp_file, path)
    except OSError as e:
        logger.error(f"Failed to save {path}: {e}")
        raise StorageFailure(
            f"Cannot save {path.name}: {e}",
            {"path": str(path)},
            code=ErrorCode.E901_STORAGE_WRITE_FAILED,
        ) from e

    logger.debug(f"Saved {path.name}")
