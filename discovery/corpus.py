"""Load experience records into the store from a JSON file."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pydantic
from pydantic import BaseModel, Field

from discovery.errors import ValidationError
from discovery.store.models import ExperienceRecord

if TYPE_CHECKING:
    from pathlib import Path

    from discovery.store.store import DiscoveryStore

logger = logging.getLogger(__name__)


class ExperienceIn(BaseModel):
    """One corpus entry as it appears in an import file."""

    id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    category: str = Field(min_length=1)
    occurred_at: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}")
    location: str = ""
    tags: list[str] = Field(default_factory=list)

    def to_record(self) -> ExperienceRecord:
        return ExperienceRecord(
            id=self.id,
            title=self.title,
            description=self.description,
            category=self.category.strip().lower(),
            occurred_at=self.occurred_at,
            location=self.location,
            tags=self.tags,
        )


def parse_corpus(raw: str) -> list[ExperienceRecord]:
    """Parse a JSON array (or ``{"experiences": [...]}``) of records.

    Raises:
        ValidationError: The document is not JSON or an entry is malformed;
            ``fields`` names each bad entry by index.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"Corpus is not valid JSON: {exc.msg}"
        raise ValidationError(msg) from exc
    if isinstance(data, dict):
        data = data.get("experiences", [])
    if not isinstance(data, list):
        msg = "Corpus must be a list of experiences"
        raise ValidationError(msg)

    records: list[ExperienceRecord] = []
    fields: dict[str, str] = {}
    for index, entry in enumerate(data):
        try:
            records.append(ExperienceIn.model_validate(entry).to_record())
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            fields[f"[{index}]{'.' + loc if loc else ''}"] = first.get("msg", "invalid")
    if fields:
        msg = f"{len(fields)} corpus entr{'y is' if len(fields) == 1 else 'ies are'} invalid"
        raise ValidationError(msg, fields=fields)
    return records


async def load_corpus(path: Path, store: DiscoveryStore) -> int:
    """Import ``path`` into ``store``. Returns the number of records written."""
    records = parse_corpus(path.read_text(encoding="utf-8"))
    count = await store.add_experiences(records)
    logger.info("Loaded %d experience(s) from %s", count, path)
    return count
