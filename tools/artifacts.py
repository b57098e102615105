#!/usr/bin/env python3
from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

ArtifactsPathLike = Optional[Union[str, Path]]


def _safe_token(value: str, *, fallback: str) -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "-", (value or "").strip()).strip("-")
    return token or fallback


def resolve_artifacts_dir(artifacts_dir: ArtifactsPathLike = None) -> Optional[Path]:
    """Resolve the SOAP dump dir and ensure it exists.

    Resolution order:
    1) explicit argument
    2) SRI_ARTIFACTS_DIR
    3) ARTIFACTS_DIR

    Returns None when nothing is configured (dumps disabled).
    """
    raw = str(artifacts_dir).strip() if artifacts_dir is not None else ""
    if not raw:
        raw = (os.getenv("SRI_ARTIFACTS_DIR") or os.getenv("ARTIFACTS_DIR") or "").strip()
    if not raw:
        return None

    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    path = path.resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def make_run_dir(
    prefix: str,
    ambiente: str,
    *,
    clave: Optional[str] = None,
    artifacts_dir: ArtifactsPathLike = None,
) -> Optional[Path]:
    """Create and return a per-run dump directory, or None if dumps are disabled."""
    base_dir = resolve_artifacts_dir(artifacts_dir)
    if base_dir is None:
        return None
    ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    parts = [
        "run",
        ts,
        _safe_token(prefix, fallback="sri"),
        _safe_token(ambiente, fallback="amb"),
    ]
    if clave:
        parts.append(f"clave_{_safe_token(clave[-12:], fallback='clave')}")

    run_dir = base_dir / "_".join(parts)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir
