import logging
import shutil
import time
from pathlib import Path


def now_ts() -> int:
    return int(time.time())


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def has_files(path: Path) -> bool:
    if not path.exists() or not path.is_dir():
        return False
    try:
        return any(path.iterdir())
    except OSError:
        return False


def list_subdirs(root: Path) -> list[Path]:
    return sorted(
        (child for child in root.iterdir() if child.is_dir()),
        key=lambda p: p.name.lower(),
    )


def remove_tree(path: Path) -> bool:
    if not path.exists() and not path.is_symlink():
        return False
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
    return True


def copy_tree(source: Path, dest: Path) -> Path:
    ensure_dir(dest.parent)
    shutil.copytree(source, dest, dirs_exist_ok=True)
    return dest


def is_nested(left: Path, right: Path) -> bool:
    """True when the two paths are equal or one contains the other."""
    a = left.expanduser().resolve(strict=False)
    b = right.expanduser().resolve(strict=False)
    return a == b or a.is_relative_to(b) or b.is_relative_to(a)


def safe_unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logging.warning("Failed to remove %s: %s", path, exc)


def read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="ignore")
    except FileNotFoundError:
        return None
