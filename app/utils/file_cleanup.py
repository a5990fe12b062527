"""
Session Directory Cleanup
Recursive delete that tolerates files still locked by the browser process.
"""
import asyncio
import logging
import os
from typing import Awaitable, Callable

from app.utils.retry import best_effort_retry

logger = logging.getLogger(__name__)


def _remove_file(path: str) -> bool:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    return True


def _remove_dir(path: str) -> bool:
    try:
        os.rmdir(path)
    except FileNotFoundError:
        pass
    return True


async def delete_dir_safely(
    dir_path: str,
    attempts: int = 3,
    delay: float = 0.5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Delete ``dir_path`` bottom-up, retrying each entry with a fixed backoff.

    Entries that stay locked after ``attempts`` tries are logged and skipped.
    Never raises.

    Returns:
        True when the directory no longer exists afterwards
    """
    if not os.path.exists(dir_path):
        return True

    skipped = 0
    try:
        for root, dirs, files in os.walk(dir_path, topdown=False):
            for name in files:
                ok = await best_effort_retry(
                    _remove_file, os.path.join(root, name),
                    attempts=attempts, delay=delay, default=False, sleep=sleep,
                    label=f"delete {os.path.join(root, name)}",
                )
                skipped += 0 if ok else 1
            for name in dirs:
                path = os.path.join(root, name)
                remover = _remove_file if os.path.islink(path) else _remove_dir
                ok = await best_effort_retry(
                    remover, path,
                    attempts=attempts, delay=delay, default=False, sleep=sleep,
                    label=f"rmdir {path}",
                )
                skipped += 0 if ok else 1

        await best_effort_retry(
            _remove_dir, dir_path,
            attempts=attempts, delay=delay, default=False, sleep=sleep,
            label=f"rmdir {dir_path}",
        )
    except Exception as e:
        logger.warning(f"⚠️ Error cleaning up {dir_path}: {e}")

    if skipped:
        logger.warning(f"⚠️ Cleaned up {dir_path} with {skipped} locked entries left behind")
    else:
        logger.info(f"🧹 Cleaned up {dir_path}")

    return not os.path.exists(dir_path)
