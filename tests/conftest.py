from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_mod(
    root: Path,
    folder: str,
    mod_id: Optional[str] = None,
    *,
    last_updated: Optional[str] = None,
    ignored: Optional[str] = None,
    about_xml: bool = True,
) -> Path:
    path = root / folder
    about = path / "About"
    about.mkdir(parents=True, exist_ok=True)
    if about_xml:
        (about / "About.xml").write_text("<ModMetaData/>", encoding="utf-8")
    if mod_id is not None:
        (about / "PublishedFileId.txt").write_text(mod_id, encoding="utf-8")
    if last_updated is not None:
        (about / ".lastupdated").write_text(last_updated, encoding="utf-8")
    if ignored is not None:
        (about / ".ignoredupdate").write_text(ignored, encoding="utf-8")
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mod_factory() -> Callable[..., Path]:
    return make_mod


@pytest.fixture
def mods_dir(tmp_path: Path) -> Path:
    path = tmp_path / "mods"
    path.mkdir()
    return path
