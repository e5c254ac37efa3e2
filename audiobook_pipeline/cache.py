"""
On-disk cache of synthesis results.

Entries are JSON files named by the SHA-256 of the request (SSML + voice).
A pruner deletes entries older than the TTL and then, oldest first, as many
entries as needed to bring the directory under its size limit.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from .styles import Prosody, build_ssml
from .tts_engine import SynthesisResult, TtsEngine

logger = logging.getLogger(__name__)

__all__ = [
    "CacheConfig",
    "PruneReport",
    "SynthesisCache",
    "CachedTtsEngine",
    "CachePruner",
    "cache_key",
]

SECONDS_PER_DAY = 24 * 60 * 60
BYTES_PER_GB = 1024 * 1024 * 1024


@dataclass
class CacheConfig:
    enabled: bool = True
    directory: Path = Path(".cache/tts")
    ttl_days: float = 7
    max_gb: float = 2
    cleanup_interval_s: float = 60 * 60

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_days * SECONDS_PER_DAY

    @property
    def max_bytes(self) -> int:
        return int(self.max_gb * BYTES_PER_GB)

    @classmethod
    def from_env(cls, directory: Optional[Path] = None) -> "CacheConfig":
        config = cls()
        if directory is not None:
            config.directory = directory
        config.enabled = os.environ.get("CACHE_ENABLED", "true").strip().lower() != "false"
        config.ttl_days = _env_float("CACHE_TTL_DAYS", config.ttl_days)
        config.max_gb = _env_float("CACHE_MAX_GB", config.max_gb)
        return config


@dataclass
class PruneReport:
    expired: int = 0
    evicted: int = 0
    remaining_bytes: int = 0
    errors: List[str] = field(default_factory=list)


def cache_key(ssml: str, voice: str) -> str:
    payload = json.dumps({"ssml": ssml, "voice": voice}, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SynthesisCache:
    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[SynthesisResult]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            prosody = payload.get("prosody")
            return SynthesisResult(
                audio=base64.b64decode(payload["audioContent"]),
                mime_type=payload["mimeType"],
                prosody=Prosody(**prosody) if prosody else None,
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path.name, exc)
            return None

    def put(self, key: str, result: SynthesisResult) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = {
            "audioContent": base64.b64encode(result.audio).decode("ascii"),
            "mimeType": result.mime_type,
            "prosody": result.prosody.to_dict() if result.prosody else None,
        }
        path = self.path_for(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(path)
        return path

    def entries(self) -> List[Tuple[Path, float, int]]:
        """(path, mtime, size) for every entry, oldest first."""
        if not self.directory.exists():
            return []
        found = []
        for path in self.directory.glob("*.json"):
            try:
                stat = path.stat()
            except OSError:
                continue
            found.append((path, stat.st_mtime, stat.st_size))
        found.sort(key=lambda item: item[1])
        return found

    def prune(self, *, ttl_seconds: float, max_bytes: int, now: Optional[float] = None) -> PruneReport:
        now = time.time() if now is None else now
        report = PruneReport()
        survivors: List[Tuple[Path, float, int]] = []

        for path, mtime, size in self.entries():
            if now - mtime > ttl_seconds:
                if _unlink(path, report):
                    report.expired += 1
                    continue
            survivors.append((path, mtime, size))

        total = sum(size for _, _, size in survivors)
        for path, _, size in survivors:
            if total <= max_bytes:
                break
            if _unlink(path, report):
                report.evicted += 1
                total -= size

        report.remaining_bytes = total
        return report


class CachedTtsEngine(TtsEngine):
    """
    Wraps an engine so identical requests (same SSML, same voice) are served
    from the on-disk cache. Cache write failures are logged and ignored.
    """

    def __init__(self, engine: TtsEngine, cache: SynthesisCache) -> None:
        self.engine = engine
        self.cache = cache

    def synthesize(self, text: str, voice_id: str, prosody: Prosody) -> SynthesisResult:
        key = cache_key(build_ssml(text, prosody), voice_id)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for voice %s (%s).", voice_id, key[:12])
            return cached

        logger.debug("Cache miss for voice %s (%s).", voice_id, key[:12])
        result = self.engine.synthesize(text, voice_id, prosody)
        try:
            self.cache.put(key, result)
        except OSError as exc:
            logger.warning("Failed to write cache entry %s: %s", key[:12], exc)
        return result

    def list_voices(self) -> List[str]:
        return self.engine.list_voices()

    def descriptor(self) -> str:
        return f"Cached({self.engine.descriptor()})"


class CachePruner:
    """
    Periodic cleanup of a ``SynthesisCache``. The clock and sleep are injectable
    so tests can drive expiry without waiting.
    """

    def __init__(
        self,
        cache: SynthesisCache,
        config: CacheConfig,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cache = cache
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._running = False

    def run_once(self) -> PruneReport:
        if not self.config.enabled:
            return PruneReport()
        report = self.cache.prune(
            ttl_seconds=self.config.ttl_seconds,
            max_bytes=self.config.max_bytes,
            now=self._clock(),
        )
        logger.info(
            "Cache cleanup: expired=%d, evicted=%d, remaining=%d bytes",
            report.expired,
            report.evicted,
            report.remaining_bytes,
        )
        return report

    async def run_periodically(self, max_runs: Optional[int] = None) -> int:
        """Prune now and then every ``cleanup_interval_s`` until stopped."""
        self._running = True
        runs = 0
        while self._running and (max_runs is None or runs < max_runs):
            await asyncio.to_thread(self.run_once)
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            await self._sleep(self.config.cleanup_interval_s)
        self._running = False
        return runs

    def stop(self) -> None:
        self._running = False


def _unlink(path: Path, report: PruneReport) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning("Failed to delete cache entry %s: %s", path.name, exc)
        report.errors.append(str(path))
        return False


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s.", name, raw, default)
        return default
