"""Process-wide service graph, built once at startup and passed to whoever needs it."""

from dataclasses import dataclass

from sqlalchemy import Engine

from gallery.config import Settings
from gallery.db import create_tables, make_engine, make_session_factory
from gallery.services.cache_paths import CachePathResolver
from gallery.services.cleanup import Janitor
from gallery.services.delivery import ArchiveDelivery
from gallery.services.directory_index import DirectoryIndexBuilder
from gallery.services.enqueue import EnqueueGate
from gallery.services.fallback import ThumbnailFallback
from gallery.services.paths import PathValidator
from gallery.services.status import StatusReporter, StatusSource
from gallery.services.store import JobStore


@dataclass
class Services:
    settings: Settings
    engine: Engine
    store: JobStore
    validator: PathValidator
    raw_validator: PathValidator
    resolver: CachePathResolver
    gate: EnqueueGate
    fallback: ThumbnailFallback
    status: StatusSource
    delivery: ArchiveDelivery
    index_builder: DirectoryIndexBuilder
    janitor: Janitor


def build_services(settings: Settings) -> Services:
    engine = make_engine(settings.database_url)
    create_tables(engine)
    store = JobStore(make_session_factory(engine))
    validator = PathValidator(settings.image_sources)
    raw_validator = PathValidator(settings.raw_sources)
    resolver = CachePathResolver.from_settings(settings)
    gate = EnqueueGate(store, validator, settings, raw_validator)
    return Services(
        settings=settings,
        engine=engine,
        store=store,
        validator=validator,
        raw_validator=raw_validator,
        resolver=resolver,
        gate=gate,
        fallback=ThumbnailFallback(gate, resolver, validator, settings, raw_validator),
        status=StatusReporter(store, settings),
        delivery=ArchiveDelivery(store, settings),
        index_builder=DirectoryIndexBuilder(store, validator, resolver, settings),
        janitor=Janitor(store, resolver, validator, settings, raw_validator),
    )
