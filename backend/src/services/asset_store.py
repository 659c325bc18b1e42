"""Blob storage for uploaded assets, screenshots and videos."""
import asyncio
import json
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

ASSET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_DATA_FILE = "asset.bin"
_METADATA_FILE = "metadata.json"


@dataclass(frozen=True)
class StoredAsset:
    """An asset's bytes and content type."""

    data: bytes
    content_type: str


class AssetStore(Protocol):
    """Owner-scoped blob storage contract."""

    async def save(self, owner_id: UUID, data: bytes, content_type: str) -> str:
        """Store a blob and return its new asset id."""
        ...

    async def read(self, owner_id: UUID, asset_id: str) -> StoredAsset | None:
        """Read a blob, or None if it does not exist."""
        ...

    async def exists(self, owner_id: UUID, asset_id: str) -> bool:
        """Whether a blob exists for this owner."""
        ...

    async def release(self, owner_id: UUID, asset_id: str) -> None:
        """Delete a blob. Releasing a missing blob is not an error."""
        ...


class LocalAssetStore:
    """
    AssetStore on the local filesystem.

    Layout: `{root}/{owner_id}/{asset_id}/asset.bin` plus `metadata.json`.
    File I/O runs in a worker thread.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _asset_dir(self, owner_id: UUID, asset_id: str) -> Path:
        if not ASSET_ID_PATTERN.match(asset_id):
            raise ValueError(f"Invalid asset id: {asset_id!r}")
        return self.root / str(owner_id) / asset_id

    async def save(self, owner_id: UUID, data: bytes, content_type: str) -> str:
        """Store a blob and return its new asset id."""
        asset_id = uuid4().hex
        asset_dir = self._asset_dir(owner_id, asset_id)

        def _write() -> None:
            asset_dir.mkdir(parents=True, exist_ok=True)
            (asset_dir / _DATA_FILE).write_bytes(data)
            (asset_dir / _METADATA_FILE).write_text(
                json.dumps({"content_type": content_type, "size": len(data)}),
            )

        await asyncio.to_thread(_write)
        logger.debug("Saved asset %s (%d bytes) for %s", asset_id, len(data), owner_id)
        return asset_id

    async def read(self, owner_id: UUID, asset_id: str) -> StoredAsset | None:
        """Read a blob, or None if it does not exist."""
        asset_dir = self._asset_dir(owner_id, asset_id)

        def _read() -> StoredAsset | None:
            try:
                data = (asset_dir / _DATA_FILE).read_bytes()
                metadata = json.loads((asset_dir / _METADATA_FILE).read_text())
            except FileNotFoundError:
                return None
            return StoredAsset(
                data=data,
                content_type=metadata.get("content_type", "application/octet-stream"),
            )

        return await asyncio.to_thread(_read)

    async def exists(self, owner_id: UUID, asset_id: str) -> bool:
        """Whether a blob exists for this owner."""
        asset_dir = self._asset_dir(owner_id, asset_id)
        return await asyncio.to_thread((asset_dir / _DATA_FILE).is_file)

    async def release(self, owner_id: UUID, asset_id: str) -> None:
        """Delete a blob; a missing blob is ignored."""
        asset_dir = self._asset_dir(owner_id, asset_id)
        await asyncio.to_thread(shutil.rmtree, asset_dir, ignore_errors=True)
        logger.debug("Released asset %s for %s", asset_id, owner_id)
