"""Pytest configuration and fixtures for mirrorcache.

A small bookshop data model is replicated from a file-backed SQLite primary
seeded per test. Replicas default to in-memory stores; disk scenarios chdir
into tmp_path so replica files stay inside the test directory.
"""

from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import AbstractAsyncContextManager
from typing import Any

import pytest
import sqlalchemy as sa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mirrorcache.application.interfaces.data_service import RequestContext
from mirrorcache.core.config import ReplicationOptions, get_settings
from mirrorcache.domain.enums import AssociationKind, ElementType
from mirrorcache.domain.model import (
    Association,
    DataModel,
    Element,
    Entity,
    ReplicationPolicy,
)
from mirrorcache.domain.query import Query, Select
from mirrorcache.infrastructure.cache import CachedDataService, ReplicationCache
from mirrorcache.infrastructure.persistence.sql_service import SqlDataService
from mirrorcache.main import create_app

BOOK_COUNT = 100
AUTHOR_COUNT = 5
GENRE_COUNT = 3
PAGE_COUNT = 40
PAGE_CONTENT_LENGTH = 500
TRANSLATED_BOOKS = 10


def bookshop_entities() -> list[Entity]:
    """Entities of the bookshop model (shared by tests that extend it)."""
    integer = ElementType.INTEGER
    return [
        Entity.define(
            "Authors",
            [Element("ID", integer, key=True), Element("name")],
            [Association("books", "Books", on=(("ID", "author_ID"),), many=True)],
            replicate=ReplicationPolicy(),
        ),
        Entity.define(
            "Books",
            [
                Element("ID", integer, key=True),
                Element("title", localized=True),
                Element("author_ID", integer),
                Element("genre_ID", integer),
                Element("stock", integer),
            ],
            [
                Association("author", "Authors", on=(("author_ID", "ID"),)),
                Association("genre", "Genres", on=(("genre_ID", "ID"),)),
                Association(
                    "pages",
                    "Pages",
                    AssociationKind.COMPOSITION,
                    on=(("ID", "book_ID"),),
                    many=True,
                ),
            ],
            replicate=ReplicationPolicy(),
        ),
        Entity.define(
            "Books.texts",
            [
                Element("ID", integer, key=True),
                Element("locale", key=True),
                Element("title"),
            ],
        ),
        Entity.define(
            "Pages",
            [
                Element("ID", integer, key=True),
                Element("book_ID", integer),
                Element("number", integer),
                Element("content", ElementType.TEXT),
            ],
            replicate=ReplicationPolicy(),
        ),
        Entity.define(
            "Genres",
            [Element("ID", integer, key=True), Element("name")],
            replicate=ReplicationPolicy(static=True),
        ),
        Entity.define(
            "Quotes",
            [
                Element("ID", integer, key=True),
                Element("book_ID", integer),
                Element("text"),
            ],
        ),
        Entity.define(
            "BookTitles",
            [Element("ID", integer), Element("title")],
            query=Select.of("Books", "ID", "title"),
        ),
    ]


def bookshop_model() -> DataModel:
    return DataModel(bookshop_entities())


def bookshop_rows() -> dict[str, list[dict[str, Any]]]:
    """Seed rows per entity."""
    return {
        "Authors": [{"ID": i, "name": f"Author {i}"} for i in range(1, AUTHOR_COUNT + 1)],
        "Genres": [{"ID": i, "name": f"Genre {i}"} for i in range(1, GENRE_COUNT + 1)],
        "Books": [
            {
                "ID": i,
                "title": f"Book {i:03d}",
                "author_ID": i % AUTHOR_COUNT + 1,
                "genre_ID": i % GENRE_COUNT + 1,
                "stock": i,
            }
            for i in range(1, BOOK_COUNT + 1)
        ],
        "Books.texts": [
            {"ID": i, "locale": "de", "title": f"Buch {i:03d}"}
            for i in range(1, TRANSLATED_BOOKS + 1)
        ],
        "Pages": [
            {
                "ID": i,
                "book_ID": (i - 1) // 10 + 1,
                "number": (i - 1) % 10 + 1,
                "content": "x" * PAGE_CONTENT_LENGTH,
            }
            for i in range(1, PAGE_COUNT + 1)
        ],
        "Quotes": [
            {"ID": 1, "book_ID": 1, "text": "First quote"},
            {"ID": 2, "book_ID": 2, "text": "Second quote"},
        ],
    }


class CountingService:
    """Primary data service wrapper counting transactions and runs."""

    def __init__(self, inner: SqlDataService) -> None:
        self.inner = inner
        self.transactions = 0
        self.runs = 0

    def transaction(self, context: RequestContext) -> AbstractAsyncContextManager[Any]:
        self.transactions += 1
        return self.inner.transaction(context)

    async def run(self, query: Query, context: RequestContext) -> Any:
        self.runs += 1
        return await self.inner.run(query, context)


async def seed(engine: AsyncEngine, model: DataModel) -> None:
    """Create every base table of the model on the primary and insert the seed rows."""
    async with engine.begin() as conn:
        await conn.run_sync(model.metadata.create_all)
        for name, rows in bookshop_rows().items():
            if name in model:
                await conn.execute(sa.insert(model.table(name)), rows)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Iterator[None]:
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def entities() -> list[Entity]:
    """Fresh bookshop entity list, for tests that build a variant model."""
    return bookshop_entities()


@pytest.fixture
def model() -> DataModel:
    return bookshop_model()


@pytest.fixture
async def primary_engine(tmp_path, model: DataModel) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite primary seeded with the bookshop rows."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'primary.sqlite'}")
    await seed(engine, model)
    yield engine
    await engine.dispose()


@pytest.fixture
def primary(primary_engine: AsyncEngine, model: DataModel) -> SqlDataService:
    return SqlDataService(primary_engine, model)


@pytest.fixture
def counting_primary(primary: SqlDataService) -> CountingService:
    return CountingService(primary)


@pytest.fixture
async def make_cache(
    model: DataModel, primary: SqlDataService
) -> AsyncIterator[Callable[..., Awaitable[ReplicationCache]]]:
    """Factory of started caches; reads wait for loads unless wait=False is passed.

    Accepts option overrides plus optional model=, primary= and active=.
    """
    caches: list[ReplicationCache] = []

    async def factory(**overrides: Any) -> ReplicationCache:
        cache_model = overrides.pop("model", model)
        cache_primary = overrides.pop("primary", primary)
        active = overrides.pop("active", None)
        overrides.setdefault("wait", True)
        cache = ReplicationCache(
            cache_model, cache_primary, ReplicationOptions(**overrides), active=active
        )
        await cache.start()
        caches.append(cache)
        return cache

    yield factory
    for cache in caches:
        await cache.shutdown()


@pytest.fixture
def service_for() -> Callable[[ReplicationCache], CachedDataService]:
    """Read-through service over a cache and its primary."""

    def build(cache: ReplicationCache) -> CachedDataService:
        return CachedDataService(cache.primary, cache)

    return build


@pytest.fixture
async def app(model: DataModel, primary_engine: AsyncEngine):
    """FastAPI app with the bookshop model, lifespan running."""
    application = create_app(model=model, primary_engine=primary_engine)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    """Async HTTP client against the FastAPI app (ASGI)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
