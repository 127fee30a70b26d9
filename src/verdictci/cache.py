# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import tarfile
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .model import CacheEntry, JobSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed caching:
#   cache_key = sha256(
#       format version,
#       namespace,
#       runner context (opaque),
#       [(path, content hash), ...] in declaration order
#   )
#
# A changed input always yields a new key. Entries are never rewritten in
# place under a different meaning; concurrent writers for the same key race
# and the last rename wins, which is fine because the content is
# reproducible from the key's inputs.
#
# Store layout:
#   root/
#     <key[:2]>/
#       <key>.tar.gz
#       <key>.manifest.json
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".verdictci/cache"
KEY_FORMAT_VERSION = 1
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".verdictci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _excluded(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def check_input_pattern(pattern: str) -> None:
    """
    Reject cache input patterns that cannot be expanded under the repo root.

    Raises ValueError; config loading turns that into a startup failure.
    """
    pat = pattern.strip()
    if not pat:
        raise ValueError("cache input pattern is empty")
    if Path(pat).is_absolute():
        raise ValueError(f"cache input {pattern!r} must be relative to the repository root")
    for part in pat.split("/"):
        if "**" in part and part != "**":
            raise ValueError(f"cache input {pattern!r}: '**' can only be an entire path component")


def hash_inputs(
    repo_root: str | Path,
    patterns: Sequence[str],
    *,
    excludes: Optional[List[str]] = None,
) -> List[Tuple[str, str]]:
    """
    Expand declared input patterns into ordered (path, content-hash) pairs.

    Order follows the declaration order of `patterns`; matches of a single
    glob are sorted so the result is stable across filesystems. Supports:
      - file path: "pyproject.toml"
      - dir path:  "src/"
      - glob:      "backend/**", "tests/**/*.py"
    A declared path that does not exist contributes ("<pattern>", "missing")
    so creating it later changes the key.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    pairs: List[Tuple[str, str]] = []
    seen = set()

    def add_file(f: Path) -> None:
        rel = _relpath(f, root)
        if rel in seen or _excluded(rel, exclude_globs):
            return
        seen.add(rel)
        pairs.append((rel, hash_file_contents(f)))

    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        direct = root / pat
        if direct.is_file():
            add_file(direct)
            continue
        if direct.is_dir():
            for f in _iter_files_under(direct):
                add_file(f)
            continue

        matches = sorted(m for m in root.glob(pat) if m.exists())
        if not matches:
            pairs.append((pat, "missing"))
            continue
        for m in matches:
            if m.is_file():
                add_file(m)
            else:
                for f in _iter_files_under(m):
                    add_file(f)

    return pairs


class CacheKeyResolver:
    """
    Derives cache keys from a namespace and its declared inputs.

    A pure function of (namespace, runner context, ordered input hashes):
    identical inputs give the identical key, any changed input gives a new one.
    """

    def __init__(self, context: str = ""):
        self.context = context

    def resolve(self, namespace: str, inputs: Sequence[Tuple[str, str]]) -> str:
        payload = [
            KEY_FORMAT_VERSION,
            namespace,
            self.context,
            [[str(path), str(digest)] for path, digest in inputs],
        ]
        return _sha256_str(_json_dumps_stable(payload))

    def resolve_for(self, namespace: str, patterns: Sequence[str], repo_root: str | Path) -> str:
        return self.resolve(namespace, hash_inputs(repo_root, patterns))


def _tar_add_path(tar: tarfile.TarFile, repo_root: Path, src: Path, *, exclude_globs: List[str]) -> None:
    src = src.resolve()
    if not src.exists():
        return

    if src.is_file():
        rel = _relpath(src, repo_root)
        if not _excluded(rel, exclude_globs):
            tar.add(str(src), arcname=rel, recursive=False)
        return

    for f in _iter_files_under(src):
        rel = _relpath(f, repo_root)
        if _excluded(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)


class CacheStore:
    """
    File-based, append-only cache store keyed by content-derived keys.

    `lookup` is a pure read that may miss. `save` writes to a temp file and
    renames it into place, so readers never see a partial artifact.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()

    def _key_dir(self, key: str) -> Path:
        return self.root / key[:2]

    def artifact_path(self, key: str) -> Path:
        return self._key_dir(key) / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self._key_dir(key) / f"{key}.manifest.json"

    def lookup(self, key: str) -> Optional[CacheEntry]:
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        if not art.exists() or not man.exists():
            return None
        try:
            manifest = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("cache manifest for %s unreadable, treating as miss: %s", key[:12], e)
            return None
        if not isinstance(manifest, dict):
            logger.warning("cache manifest for %s is not an object, treating as miss", key[:12])
            return None
        try:
            created_at = datetime.fromisoformat(manifest["created_at"])
        except (KeyError, TypeError, ValueError):
            created_at = datetime.fromtimestamp(art.stat().st_mtime, tz=timezone.utc)
        return CacheEntry(
            key=key,
            location=str(art),
            created_at=created_at,
            namespace=str(manifest.get("namespace", "")),
        )

    def restore(self, entry: CacheEntry, *, repo_root: str | Path = ".") -> bool:
        """Extract a stored artifact over the working tree. False on failure."""
        root = Path(repo_root).resolve()
        try:
            with tarfile.open(entry.location, mode="r:gz") as tar:
                tar.extractall(path=str(root), filter="data")
        except (OSError, tarfile.TarError) as e:
            logger.warning("cache restore for %s failed, treating as miss: %s", entry.key[:12], e)
            return False
        return True

    def save(
        self,
        key: str,
        *,
        namespace: str,
        paths: Sequence[str],
        inputs: Sequence[Tuple[str, str]] = (),
        repo_root: str | Path = ".",
    ) -> CacheEntry:
        """Store `paths` (files/dirs relative to repo_root) under `key`."""
        root = Path(repo_root).resolve()
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        art.parent.mkdir(parents=True, exist_ok=True)

        created_at = datetime.now(timezone.utc)
        manifest: Dict = {
            "key": key,
            "namespace": namespace,
            "inputs": [list(p) for p in inputs],
            "paths": list(paths),
            "created_at": created_at.isoformat(),
        }

        # unique temp name per writer; the final rename is last-write-wins
        tmp = art.with_name(f"{art.name}.{time.time_ns()}.tmp")
        tmp_man = man.with_name(f"{man.name}.{time.time_ns()}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    _tar_add_path(tar, root, root / entry, exclude_globs=DEFAULT_CACHE_EXCLUDES)

            tmp.replace(art)
            tmp_man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
            tmp_man.replace(man)
        finally:
            tmp.unlink(missing_ok=True)
            tmp_man.unlink(missing_ok=True)

        return CacheEntry(key=key, location=str(art), created_at=created_at, namespace=namespace)


class JobCache:
    """
    Cache consultation for the scheduler.

    Key derivation and restore run on the job's worker thread. Saves go to a
    dedicated background executor and never block or fail the job: any error
    is logged and the key simply stays uncached.
    """

    def __init__(
        self,
        store: CacheStore,
        resolver: CacheKeyResolver,
        *,
        repo_root: str | Path = ".",
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.repo_root = Path(repo_root).resolve()
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="verdictci-cache")
        self._owns_executor = executor is None

    def key_for(self, job: JobSpec) -> Tuple[Optional[str], List[Tuple[str, str]]]:
        if job.cache is None:
            return None, []
        try:
            inputs = hash_inputs(self.repo_root, job.cache.inputs)
        except Exception as e:
            logger.warning("[%s] could not hash cache inputs, caching disabled for this run: %s", job.id, e)
            return None, []
        return self.resolver.resolve(job.cache.namespace, inputs), inputs

    def try_restore(self, job: JobSpec, key: str) -> bool:
        try:
            entry = self.store.lookup(key)
            if entry is None:
                logger.debug("[%s] cache miss (%s...)", job.id, key[:12])
                return False
            restored = self.store.restore(entry, repo_root=self.repo_root)
        except Exception as e:
            logger.warning("[%s] cache lookup failed, treating as miss: %s", job.id, e)
            return False
        if restored:
            logger.info("[%s] cache hit (%s...)", job.id, key[:12])
        return restored

    def save_async(self, job: JobSpec, key: str, inputs: Sequence[Tuple[str, str]]) -> Optional[Future]:
        if job.cache is None:
            return None
        if not job.cache.paths and not job.cache.skip_on_hit:
            return None
        # with no paths the entry is an empty marker: enough for skip_on_hit
        try:
            return self._executor.submit(self._save, job, key, list(inputs))
        except RuntimeError as e:
            # executor already shut down
            logger.warning("[%s] cache save not scheduled: %s", job.id, e)
            return None

    def _save(self, job: JobSpec, key: str, inputs: List[Tuple[str, str]]) -> Optional[CacheEntry]:
        try:
            entry = self.store.save(
                key,
                namespace=job.cache.namespace,
                paths=job.cache.paths,
                inputs=inputs,
                repo_root=self.repo_root,
            )
        except Exception as e:
            logger.warning("[%s] cache save for %s... failed: %s", job.id, key[:12], e)
            return None
        logger.info("[%s] cache saved (%s...)", job.id, key[:12])
        return entry

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
