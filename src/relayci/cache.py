# cache.py
from __future__ import annotations

import hashlib
import json
import re
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level caching for `cache` steps:
#   key = rendered key template ("{defName}-{job}-{runner}" by default)
#
# Cache artifact:
#   a tar.gz containing the declared paths (relative to the primary
#   repository root) plus a manifest.json for explainability.
#
#   root/
#     <safe key>.tar.gz
#     <safe key>.manifest.json
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def render_key(template: str, values: Dict[str, str]) -> str:
    """Fill {placeholders}; unknown ones are left as written."""
    return re.sub(r"\{([A-Za-z_]+)\}", lambda m: values.get(m.group(1), m.group(0)), template)


def safe_key(key: str) -> str:
    """Filesystem-safe, still readable, collision-resistant name for a key."""
    readable = _UNSAFE.sub("_", key).strip("_")[:80] or "cache"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


class CacheStore:
    """File-based cache store keyed by rendered cache keys."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{safe_key(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{safe_key(key)}.manifest.json"

    def restore(self, key: str, workspace_root: str | Path) -> CacheHit:
        """
        Extract a saved artifact into `workspace_root`.

        NOTE: restore is "overwrite by extraction"; nothing is cleaned first.
        """
        root = Path(workspace_root).resolve()
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                members = [m for m in tar.getmembers() if _safe_member(m, root)]
                tar.extractall(path=str(root), members=members, filter="data")
        except (OSError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest={})

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}
        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored)

    def save(
        self,
        key: str,
        paths: Sequence[str],
        workspace_root: str | Path,
        excludes: Sequence[str] = (),
    ) -> Path:
        """Archive `paths` (relative to `workspace_root`) under `key`."""
        root = Path(workspace_root).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes)

        art = self.artifact_path(key)
        tmp = art.with_suffix(".tmp")
        files: List[str] = []
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    src = (root / entry).resolve()
                    if not src.exists():
                        continue
                    candidates = [src] if src.is_file() else list(_iter_files_under(src))
                    for f in candidates:
                        rel = _relpath(f, root)
                        if _matches_any_glob(rel, exclude_globs):
                            continue
                        tar.add(str(f), arcname=rel, recursive=False)
                        files.append(rel)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        manifest = {
            "key": key,
            "paths": list(paths),
            "files": len(files),
            "saved_at_unix": int(time.time()),
        }
        self.manifest_path(key).write_text(
            json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        return art

    def prune(self, keep: int = 10) -> None:
        """
        Keep only the newest N artifacts.
        Uses file mtime as "newest".
        """
        tars = sorted(self.root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            stem = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (self.root / f"{stem}.manifest.json").unlink(missing_ok=True)


def _safe_member(member: tarfile.TarInfo, root: Path) -> bool:
    if member.issym() or member.islnk():
        return False
    target = (root / member.name).resolve()
    try:
        target.relative_to(root)
        return True
    except ValueError:
        return False


