"""Tests for the local filesystem asset store."""
from pathlib import Path
from uuid import uuid4

import pytest

from services.asset_store import LocalAssetStore


@pytest.fixture
def store(tmp_path: Path) -> LocalAssetStore:
    """Store rooted in a temporary directory."""
    return LocalAssetStore(tmp_path)


async def test__save__read_returns_bytes_and_content_type(store: LocalAssetStore) -> None:
    """Saved blobs read back with their content type."""
    owner = uuid4()
    asset_id = await store.save(owner, b"\x89PNG data", "image/png")

    stored = await store.read(owner, asset_id)

    assert stored.data == b"\x89PNG data"
    assert stored.content_type == "image/png"
    assert await store.exists(owner, asset_id) is True


async def test__save__ids_are_unique(store: LocalAssetStore) -> None:
    """Every save gets a new id."""
    owner = uuid4()

    first = await store.save(owner, b"a", "text/plain")
    second = await store.save(owner, b"a", "text/plain")

    assert first != second


async def test__read__scoped_to_owner(store: LocalAssetStore) -> None:
    """A blob is invisible to other owners."""
    owner, stranger = uuid4(), uuid4()
    asset_id = await store.save(owner, b"secret", "application/pdf")

    assert await store.read(stranger, asset_id) is None
    assert await store.exists(stranger, asset_id) is False


async def test__release__deletes_and_is_idempotent(store: LocalAssetStore) -> None:
    """Released blobs are gone; releasing again is not an error."""
    owner = uuid4()
    asset_id = await store.save(owner, b"data", "video/mp4")

    await store.release(owner, asset_id)
    await store.release(owner, asset_id)

    assert await store.read(owner, asset_id) is None


@pytest.mark.parametrize("asset_id", ["../etc", "a/b", "", "x" * 65])
async def test__invalid_asset_id_rejected(store: LocalAssetStore, asset_id: str) -> None:
    """Ids that could escape the owner's directory are rejected."""
    with pytest.raises(ValueError, match="Invalid asset id"):
        await store.read(uuid4(), asset_id)
