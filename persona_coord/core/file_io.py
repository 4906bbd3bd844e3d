"""
Async file primitives shared by the lock and version stores.

Writes go through a uniquely named temp file in the target directory, are
fsync'd, then atomically renamed over the target, so readers in other
processes only ever observe a complete old file or a complete new one.

Temp file format: {target}.tmp.{pid}.{counter}.{uuid8}
"""

from __future__ import annotations

import asyncio
import errno
import itertools
import json
import logging
import os
from pathlib import Path
from typing import Any, List
from uuid import uuid4

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

_write_counter = itertools.count(1)


def _temp_path_for(target: Path) -> Path:
    return target.parent / f"{target.name}.tmp.{os.getpid()}.{next(_write_counter)}.{uuid4().hex[:8]}"


async def ensure_dir(path: Path) -> None:
    """Create ``path`` and its parents; raises OSError on failure."""
    await aiofiles.os.makedirs(path, exist_ok=True)


async def list_dir(path: Path) -> List[str]:
    """List entries of ``path``; a missing directory lists as empty."""
    try:
        return await aiofiles.os.listdir(path)
    except FileNotFoundError:
        return []


async def read_json(path: Path) -> Any:
    """
    Read and decode a JSON file.

    Raises:
        FileNotFoundError: file is absent
        json.JSONDecodeError: file is empty or not valid JSON
        OSError: any other read failure
    """
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        data = await f.read()
    return json.loads(data)


async def write_json_atomic(path: Path, payload: Any) -> None:
    """
    Serialize ``payload`` and atomically replace ``path`` with it.

    The parent directory is created if needed. The temp file is removed on
    any failure and the original exception propagates.
    """
    content = json.dumps(payload, indent=2).encode("utf-8")
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    temp_file = _temp_path_for(path)

    try:
        async with aiofiles.open(temp_file, "wb") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.rename(temp_file, path)
    except Exception:
        try:
            await aiofiles.os.remove(temp_file)
        except OSError:
            pass
        raise

    # Make the rename itself durable
    try:
        dir_fd = os.open(str(path.parent), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, AttributeError):
        # O_DIRECTORY not supported on some platforms
        await asyncio.sleep(0)


async def remove_file(path: Path) -> bool:
    """
    Remove ``path``. Returns True if this call removed it.

    A file that is already gone is not an error: another sweeper or process may
    have removed it between our check and our unlink.
    """
    try:
        await aiofiles.os.remove(path)
        return True
    except FileNotFoundError:
        logger.debug(f"File already removed: {path}")
        return False
    except OSError as e:
        if e.errno == errno.ENOENT:
            return False
        logger.error(f"Error removing {path}: {e}")
        return False
