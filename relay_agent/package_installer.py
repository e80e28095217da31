"""
Serialized installation of provider SDK distributions.

Only one install runs at a time per installer; a failed install whose output
looks like a corrupted package cache is retried with the cache bypassed.
"""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import logging
import sys
from dataclasses import dataclass
from types import ModuleType
from typing import Awaitable, Callable, List, Optional, Set

from .errors import PackageInstallError

logger = logging.getLogger(__name__)

CACHE_CORRUPTION_PATTERNS = (
    "hash mismatch",
    "hashes do not match",
    "corrupt",
    "badzipfile",
    "bad zip file",
    "eoferror",
    "invalid wheel",
    "is not a valid wheel",
    "unexpected end of data",
)


@dataclass
class InstallResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


InstallRunner = Callable[[List[str]], Awaitable[InstallResult]]


async def run_pip(args: List[str]) -> InstallResult:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await proc.communicate()
    return InstallResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


def is_cache_corruption(output: str) -> bool:
    lowered = (output or "").lower()
    return any(pattern in lowered for pattern in CACHE_CORRUPTION_PATTERNS)


class PackageInstaller:
    """Installs packages one at a time with bounded retries on cache corruption."""

    def __init__(
        self,
        *,
        runner: Optional[InstallRunner] = None,
        max_attempts: int = 3,
        retry_delay_s: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._runner = runner or run_pip
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._installed: Set[str] = set()

    def _command(self, package: str, attempt: int) -> List[str]:
        args = [sys.executable, "-m", "pip", "install", package]
        if attempt > 1:
            args.append("--no-cache-dir")
        return args

    async def install(self, package: str) -> None:
        async with self._lock:
            if package in self._installed:
                return
            last: Optional[InstallResult] = None
            for attempt in range(1, self.max_attempts + 1):
                logger.info("installing %s (attempt %d/%d)", package, attempt, self.max_attempts)
                result = await self._runner(self._command(package, attempt))
                if result.returncode == 0:
                    self._installed.add(package)
                    importlib.invalidate_caches()
                    return
                last = result
                if not is_cache_corruption(result.stderr + "\n" + result.stdout):
                    break
                logger.warning("install of %s hit a corrupted package cache; retrying", package)
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_delay_s)

            stderr = (last.stderr if last else "").strip()
            raise PackageInstallError(
                f"Failed to install {package}: {stderr[-500:] or 'pip exited with an error'}",
                details={"package": package, "returncode": last.returncode if last else None},
            )

    async def ensure_module(self, module: str, package: Optional[str] = None) -> ModuleType:
        """Import ``module``, installing ``package`` first when it is missing."""
        if module not in sys.modules and importlib.util.find_spec(module) is None:
            await self.install(package or module)
        try:
            return importlib.import_module(module)
        except ImportError as exc:
            raise PackageInstallError(
                f"Module {module} is not importable after installing {package or module}: {exc}",
                details={"package": package or module},
            ) from exc
