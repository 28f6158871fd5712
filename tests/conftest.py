"""Shared test fixtures."""

from pathlib import Path

import pytest

from discovery.branches import BranchManager
from discovery.citations import CitationTracker
from discovery.store import DiscoveryStore, ExperienceRecord

UFO_1997 = [
    ExperienceRecord(
        id="exp-phoenix",
        title="Lights over Phoenix",
        description="A huge V of amber lights drifted silently over the city.",
        category="ufo",
        occurred_at="1997-03-13",
        location="Phoenix, USA",
        tags=["lights", "formation"],
    ),
    ExperienceRecord(
        id="exp-leeds",
        title="Silent triangle near Leeds",
        description="Three of us watched a black triangle hover above the moor.",
        category="ufo",
        occurred_at="1997-07-02",
        location="Leeds, UK",
    ),
    ExperienceRecord(
        id="exp-oslo",
        title="Orange orbs off Oslo",
        description="Orange orbs rose out of the fjord and split in two.",
        category="ufo",
        occurred_at="1997-11-20",
        location="Oslo, Norway",
    ),
]

OTHER_RECORDS = [
    ExperienceRecord(
        id="exp-lyon",
        title="Disc over Lyon",
        description="A metallic disc hovered over the river at dusk.",
        category="ufo",
        occurred_at="1998-05-09",
        location="Lyon, France",
    ),
    ExperienceRecord(
        id="exp-dream",
        title="Dream of the flood",
        description="I dreamt of the flood a week before it happened.",
        category="dreams",
        occurred_at="1997-04-01",
        location="Dhaka, Bangladesh",
    ),
]


@pytest.fixture
def store(tmp_path: Path):
    """DiscoveryStore on a temp database, installed as the shared instance."""
    DiscoveryStore._reset()
    s = DiscoveryStore(db_path=tmp_path / "test.db")
    DiscoveryStore._instance = s
    yield s
    DiscoveryStore._reset()


@pytest.fixture
async def corpus(store: DiscoveryStore) -> DiscoveryStore:
    """Store seeded with three 1997 UFO reports plus unrelated records."""
    await store.add_experiences([*UFO_1997, *OTHER_RECORDS])
    return store


@pytest.fixture
def branches(store: DiscoveryStore) -> BranchManager:
    return BranchManager(store)


@pytest.fixture
def tracker(store: DiscoveryStore) -> CitationTracker:
    return CitationTracker(store)
