from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

import pydicom
from pydicom.dataset import FileDataset
from pydicom.tag import Tag

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


def read_dicom(path: str | os.PathLike, stop_before_pixels: bool = False) -> FileDataset | None:
    try:
        return pydicom.dcmread(str(path), force=True, stop_before_pixels=stop_before_pixels)
    except Exception as e:
        logger.debug("Failed to read DICOM %s: %s", path, e)
        return None


def get(ds: FileDataset, tag: int | tuple[int, int] | str, default: Any = None) -> Any:
    try:
        if isinstance(tag, str):
            return getattr(ds, tag, default)
        return ds.get(Tag(tag)).value if Tag(tag) in ds else default
    except Exception:
        return default


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def list_files(root: Path, patterns: Iterable[str] | None = None) -> list[Path]:
    if patterns is None:
        patterns = ["*"]
    patterns = list(patterns)
    root = Path(root)
    if root.is_file():
        return [root]
    out: list[Path] = []
    for base, _, files in os.walk(root):
        for name in sorted(files):
            path = Path(base) / name
            if any(path.match(pat) for pat in patterns):
                out.append(path)
    return sorted(out)


def _describe(item: Any) -> str:
    if isinstance(item, tuple):
        parts = []
        for part in item:
            if hasattr(part, 'shape'):
                parts.append(f"array{tuple(part.shape)}")
            else:
                parts.append(str(part))
        return ", ".join(parts)
    return str(item)


def _log_progress(logger: logging.Logger, label: str, completed: int, total: int, start: float) -> None:
    if total == 0:
        return
    elapsed = perf_counter() - start
    rate = completed / elapsed if elapsed > 0 else 0
    eta = (total - completed) / rate if rate > 0 else float('inf')
    logger.info(
        "%s: %d/%d (%.0f%%) elapsed %.1fs ETA %.1fs",
        label,
        completed,
        total,
        100 * completed / total,
        elapsed,
        eta,
    )


def run_tasks(
    label: str,
    items: Sequence[T],
    func: Callable[[T], R],
    *,
    max_workers: int,
    logger: Optional[logging.Logger] = None,
    show_progress: bool = False,
) -> List[Optional[R]]:
    """Run ``func`` over ``items`` on a thread pool.

    Returns:
        List of results aligned with ``items`` order. Entries are ``None`` when
        a task failed; failures are logged and never retried.
    """

    seq = list(items)
    total = len(seq)
    if total == 0:
        return []

    log = logger or logging.getLogger(__name__)
    workers = max(1, min(max_workers, total))
    results: List[Optional[R]] = [None] * total
    completed = 0
    start = perf_counter()

    if show_progress:
        log.info("%s: starting with %d worker(s) for %d task(s)", label, workers, total)

    with ThreadPoolExecutor(max_workers=workers) as ex:
        future_to_idx = {ex.submit(func, item): idx for idx, item in enumerate(seq)}
        for fut in as_completed(future_to_idx):
            idx = future_to_idx[fut]
            try:
                results[idx] = fut.result()
            except Exception as exc:  # noqa: BLE001 - logged, task result left as None
                log.error(
                    "%s: task #%d (%s) failed: %s",
                    label,
                    idx + 1,
                    _describe(seq[idx]),
                    exc,
                    exc_info=True,
                )
            completed += 1
            if show_progress:
                _log_progress(log, label, completed, total, start)

    return results
