from __future__ import annotations

from pathlib import Path

PRD_SUFFIX = ".md"


def list_prd_ids(prds_dir: Path) -> set[str]:
    """PRD ids are the stems of markdown files directly under prds_dir."""
    if not prds_dir.is_dir():
        return set()
    return {p.stem for p in prds_dir.iterdir() if p.is_file() and p.suffix == PRD_SUFFIX}


def prd_path(prds_dir: Path, prd_id: str) -> Path:
    return prds_dir / f"{prd_id}{PRD_SUFFIX}"
