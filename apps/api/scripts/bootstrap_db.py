"""Create the database schema and the local recordings directory."""
from __future__ import annotations

import asyncio
from pathlib import Path

from callgrade.core.config import settings
from callgrade.db.session import dispose_engine, engine
from callgrade.models import Call, ScoringJob  # noqa: F401 - register tables
from callgrade.models.base import Base


async def create_schema() -> None:
	"""Create the database schema if it does not already exist."""

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)


def ensure_recordings_dir() -> Path:
	path = Path(settings.recordings_dir)
	path.mkdir(parents=True, exist_ok=True)
	return path


async def main() -> None:
	await create_schema()
	recordings = ensure_recordings_dir()
	await dispose_engine()
	print(f"Database schema ensured; recordings stored in {recordings}.")


if __name__ == "__main__":
	asyncio.run(main())
