"""
Repository map and file reader for the solution architect.

Both results are cached in explicit ``ProcessCache`` instances: the map for
15 minutes, individual files for 30 minutes.
"""

import logging
import posixpath
from typing import Dict, Iterable, List, Optional

from ..pipeline.cache import ProcessCache
from .hosting import HostingService, TreeEntry

logger = logging.getLogger(__name__)

MAP_TTL_SECONDS = 15 * 60
FILE_TTL_SECONDS = 30 * 60

INCLUDED_EXTENSIONS = frozenset(
    {
        ".py", ".pyi", ".toml", ".cfg", ".ini",
        ".cs", ".csproj", ".razor", ".cshtml",
        ".ts", ".tsx", ".js", ".jsx", ".json",
        ".go", ".rs", ".java", ".kt", ".rb", ".php",
        ".md", ".css", ".scss", ".html", ".yaml", ".yml", ".sql", ".sh",
    }
)

EXCLUDED_PREFIXES = (
    "bin/", "obj/", "node_modules/", ".git/", "migrations/",
    "wwwroot/lib/", ".vs/", ".vscode/", "dist/", "build/",
    "__pycache__/", ".venv/", "venv/", ".tox/",
)

EXCLUDED_SUFFIXES = (
    ".db", ".lock", ".min.js", ".min.css", ".map",
    ".designer.cs", ".g.cs", ".assemblyinfo.cs", ".pyc",
)

BYTES_PER_LINE = 40


def is_included(path: str) -> bool:
    """Source-like files outside build output and vendored directories."""
    lowered = path.lower()
    if any(prefix in lowered for prefix in EXCLUDED_PREFIXES):
        return False
    if lowered.endswith(EXCLUDED_SUFFIXES):
        return False
    return posixpath.splitext(lowered)[1] in INCLUDED_EXTENSIONS


def estimate_lines(size_bytes: int) -> int:
    return max(1, size_bytes // BYTES_PER_LINE)


def render_repository_map(entries: Iterable[TreeEntry]) -> str:
    """Render blobs as a ``PROJECT STRUCTURE:`` listing grouped by directory."""
    files = sorted(
        (e for e in entries if e.type == "blob" and is_included(e.path)),
        key=lambda e: e.path,
    )
    lines = ["PROJECT STRUCTURE:"]
    current_dir: Optional[str] = None
    for entry in files:
        directory = posixpath.dirname(entry.path)
        if directory != current_dir:
            current_dir = directory
            if directory:
                lines.append(f"  {directory}/")
        indent = "    " if directory else "  "
        lines.append(f"{indent}{posixpath.basename(entry.path)} ({estimate_lines(entry.size)} lines)")
    return "\n".join(lines) + "\n"


class CodebaseReader:
    """Cached access to a project's source tree through the hosting service."""

    def __init__(
        self,
        hosting: HostingService,
        map_cache: Optional[ProcessCache] = None,
        file_cache: Optional[ProcessCache] = None,
        ref: Optional[str] = None,
    ):
        self.hosting = hosting
        self.map_cache = map_cache or ProcessCache("repository-map", MAP_TTL_SECONDS)
        self.file_cache = file_cache or ProcessCache("file-contents", FILE_TTL_SECONDS)
        self.ref = ref

    def get_repository_map(self, owner: str, repo: str) -> str:
        key = f"{owner}/{repo}"
        cached = self.map_cache.get(key)
        if cached is not None:
            logger.debug(f"Repository map cache hit for {key}")
            return cached

        logger.info(f"Building repository map for {key}")
        entries = self.hosting.get_tree(owner, repo, self.ref)
        repository_map = render_repository_map(entries)
        self.map_cache.set(key, repository_map)
        logger.info(f"Repository map built for {key}: {repository_map.count(' lines)')} files")
        return repository_map

    def read_files(self, owner: str, repo: str, paths: Iterable[str]) -> Dict[str, str]:
        """Best-effort read. Paths that cannot be fetched are absent from the result."""
        paths: List[str] = list(paths)
        results: Dict[str, str] = {}
        for path in paths:
            key = f"{owner}/{repo}/{path}"
            content = self.file_cache.get(key)
            if content is None:
                content = self.hosting.get_file_content(owner, repo, path, self.ref)
                if content is None:
                    continue
                self.file_cache.set(key, content)
            results[path] = content
        logger.info(f"Fetched {len(results)}/{len(paths)} files from {owner}/{repo}")
        return results

    def reader_for(self, owner: str, repo: str):
        """Bind ``read_files`` to one repository, for ``SolutionArchitect.analyse``."""
        return lambda paths: self.read_files(owner, repo, paths)

    def invalidate(self, owner: str, repo: str) -> None:
        prefix = f"{owner}/{repo}"
        self.map_cache.invalidate(prefix)
        self.file_cache.invalidate_prefix(prefix + "/")
        logger.info(f"Cache invalidated for {prefix}")
