"""Asset manifests, per-manifest publishers and the publisher cache."""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from stackpilot.api.protocols import AssetHandler, AssetHandlerFactory
from stackpilot.cli import output
from stackpilot.core.config import Environment
from stackpilot.core.exceptions import ConfigurationError


class EventType(str, Enum):
    START = "start"
    CHECK = "check"
    BUILD = "build"
    CACHED = "cached"
    FOUND = "found"
    UPLOAD = "upload"
    SUCCESS = "success"
    FAIL = "fail"
    DEBUG = "debug"


# Names of the output helpers each event type is reported through.
EVENT_TO_LOGGER = {
    EventType.START: "info",
    EventType.CHECK: "debug",
    EventType.BUILD: "debug",
    EventType.CACHED: "debug",
    EventType.FOUND: "debug",
    EventType.UPLOAD: "debug",
    EventType.SUCCESS: "info",
    EventType.FAIL: "error",
    EventType.DEBUG: "debug",
}


@dataclass(frozen=True)
class ManifestEntry:
    """One asset going to one destination."""

    id: str
    type: str
    source: dict[str, Any] = field(default_factory=dict)
    destination: dict[str, Any] = field(default_factory=dict)


class AssetManifest:
    """A set of asset entries, read from an asset manifest file.

    Publishers are cached per manifest object, so two manifests loaded from
    the same file are deliberately distinct.
    """

    def __init__(self, directory: Path, entries: list[ManifestEntry]):
        self.directory = directory
        self.entries = entries

    @classmethod
    def from_file(cls, path: Path) -> "AssetManifest":
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read asset manifest {path}: {e}") from e

        entries = []
        for section, asset_type in (("files", "file"), ("dockerImages", "container-image")):
            for asset_id, asset in (data.get(section) or {}).items():
                for destination_id, destination in (asset.get("destinations") or {}).items():
                    entries.append(
                        ManifestEntry(
                            id=f"{asset_id}:{destination_id}",
                            type=asset_type,
                            source=asset.get("source") or {},
                            destination=destination,
                        )
                    )
        return cls(Path(path).parent, entries)

    def __len__(self) -> int:
        return len(self.entries)


class ParallelSafeAssetProgress:
    """Reports publishing events; quiet mode demotes everything but failures."""

    def __init__(self, prefix: str, quiet: bool):
        self.prefix = prefix
        self.quiet = quiet

    def on_publish_event(self, event_type: EventType, message: str) -> None:
        level = "debug" if self.quiet and event_type is not EventType.FAIL else EVENT_TO_LOGGER[event_type]
        getattr(output, level)(f"{self.prefix}{event_type.value}: {message}")


class Publisher:
    """Builds and publishes the entries of one manifest into one environment.

    Build state is remembered per entry so that publishing an entry that was
    already built does not build it again. Failures are recorded, reported
    as ``fail`` events and exposed through ``has_failures``.
    """

    def __init__(
        self,
        manifest: AssetManifest,
        environment: Environment,
        handler_factory: AssetHandlerFactory,
        progress_listener: ParallelSafeAssetProgress,
    ):
        self.manifest = manifest
        self.environment = environment
        self.handler_factory = handler_factory
        self.progress_listener = progress_listener
        self.failures: list[tuple[ManifestEntry, Exception]] = []
        self._handlers: dict[str, AssetHandler] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._built: set[str] = set()
        self._published: set[str] = set()

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    def is_built(self, entry: ManifestEntry) -> bool:
        return entry.id in self._built

    async def build_entry(self, entry: ManifestEntry) -> bool:
        async with self._lock_for(entry):
            return await self._build(entry)

    async def publish_entry(self, entry: ManifestEntry) -> bool:
        async with self._lock_for(entry):
            if not await self._build(entry):
                return False
            if entry.id in self._published:
                return True

            handler = self._handler_for(entry)
            try:
                self._emit(EventType.CHECK, f"Check {entry.id}")
                if await handler.is_published():
                    self._emit(EventType.FOUND, f"Found {entry.id}")
                else:
                    self._emit(EventType.UPLOAD, f"Publishing {entry.id}")
                    await handler.publish()
            except Exception as e:
                self._fail(entry, e)
                return False

            self._published.add(entry.id)
            self._emit(EventType.SUCCESS, f"Published {entry.id}")
            return True

    async def is_entry_published(self, entry: ManifestEntry) -> bool:
        return await self._handler_for(entry).is_published()

    async def build_all(self, parallel: bool = True) -> None:
        await self._for_each(self.build_entry, parallel)

    async def publish_all(self, parallel: bool = True) -> None:
        await self._for_each(self.publish_entry, parallel)

    async def _for_each(self, operation, parallel: bool) -> None:
        if parallel:
            await asyncio.gather(*(operation(entry) for entry in self.manifest.entries))
        else:
            for entry in self.manifest.entries:
                await operation(entry)

    async def _build(self, entry: ManifestEntry) -> bool:
        if entry.id in self._built:
            self._emit(EventType.CACHED, f"Already built {entry.id}")
            return True

        self._emit(EventType.START, f"Building {entry.id}")
        try:
            await self._handler_for(entry).build()
        except Exception as e:
            self._fail(entry, e)
            return False

        self._built.add(entry.id)
        self._emit(EventType.SUCCESS, f"Built {entry.id}")
        return True

    def _fail(self, entry: ManifestEntry, error: Exception) -> None:
        self.failures.append((entry, error))
        self._emit(EventType.FAIL, f"{entry.id}: {error}")

    def _handler_for(self, entry: ManifestEntry) -> AssetHandler:
        handler = self._handlers.get(entry.id)
        if handler is None:
            handler = self.handler_factory.handler_for(entry, self.environment)
            self._handlers[entry.id] = handler
        return handler

    def _lock_for(self, entry: ManifestEntry) -> asyncio.Lock:
        return self._locks.setdefault(entry.id, asyncio.Lock())

    def _emit(self, event_type: EventType, message: str) -> None:
        self.progress_listener.on_publish_event(event_type, message)


class PublisherCache:
    """One publisher per manifest object for the lifetime of the cache."""

    def __init__(self, handler_factory: AssetHandlerFactory, quiet: bool = False):
        self.handler_factory = handler_factory
        self.quiet = quiet
        # Keyed by id(); the manifest is kept alive next to its publisher.
        self._publishers: dict[int, tuple[AssetManifest, Publisher]] = {}

    def __len__(self) -> int:
        return len(self._publishers)

    def get(self, manifest: AssetManifest, environment: Environment, stack_name: str | None = None) -> Publisher:
        existing = self._publishers.get(id(manifest))
        if existing is not None:
            return existing[1]

        prefix = f"{stack_name}: " if stack_name else ""
        publisher = Publisher(
            manifest,
            environment,
            self.handler_factory,
            ParallelSafeAssetProgress(prefix, self.quiet),
        )
        self._publishers[id(manifest)] = (manifest, publisher)
        return publisher
