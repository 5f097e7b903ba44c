from typing import Dict, Iterable, List, Mapping

from sqlalchemy import func, select

import models
from services.store import RelationalStore


class ContentRepository:
    """Read-only queries over the content tables, used for the end-of-run inventory."""

    def __init__(self, store: RelationalStore):
        self.store = store

    async def inventory(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        async with self.store.transaction(commit=False) as conn:
            for name, table in models.TABLES.items():
                rows = await self.store.query(conn, select(func.count().label("n")).select_from(table))
                counts[name] = rows[0]["n"]
        return counts

    async def stored_slugs(self) -> Dict[str, List[str]]:
        async with self.store.transaction(commit=False) as conn:
            categories = await self.store.query(conn, select(models.categories.c.slug))
            topics = await self.store.query(conn, select(models.topics.c.slug))
            lessons = await self.store.query(
                conn,
                select(models.topics.c.slug.label("topic_slug"), models.lessons.c.slug).join(
                    models.topics, models.lessons.c.topic_id == models.topics.c.id
                ),
            )
        return {
            "categories": [row["slug"] for row in categories],
            "topics": [row["slug"] for row in topics],
            "lessons": [f"{row['topic_slug']}/{row['slug']}" for row in lessons],
        }

    async def orphans(self, corpus_slugs: Mapping[str, Iterable[str]]) -> Dict[str, List[str]]:
        """Slugs present in the store but absent from the corpus, per kind (lessons as topic/lesson)."""
        stored = await self.stored_slugs()
        result: Dict[str, List[str]] = {}
        for kind, slugs in stored.items():
            known = set(corpus_slugs.get(kind, ()))
            missing = sorted(slug for slug in slugs if slug not in known)
            if missing:
                result[kind] = missing
        return result
