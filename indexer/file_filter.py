"""File selection for repository ingestion.

Pure functions deciding which repository files are worth summarizing. No I/O
happens here; the policy object is read once per call and never mutated.
"""

import re
import fnmatch
from pathlib import PurePosixPath
from typing import Iterable, Optional

from config.policy_loader import IngestPolicy, ingest_policy

# Lines that only pull in or re-export other modules
IMPORT_LINE_PATTERN = re.compile(
    r"""^\s*(?:
        import\b
        |from\s+\S+\s+import\b
        |export\s+\*
        |export\s+(?:type\s+)?\{[^}]*\}\s*from\b
        |export\s+\w+\s+from\b
        |(?:const|let|var)\s+[\w${}\s,:]+=\s*require\s*\(
        |require\s*\(
        |module\.exports\s*=\s*require\s*\(
    )""",
    re.VERBOSE,
)


def is_ignored(path: str, patterns: Iterable[str]) -> bool:
    """Return True when ``path`` matches any ignore glob.

    Paths are matched with a leading slash so ``**/name/**`` also covers
    top-level directories.
    """
    candidate = "/" + path.lstrip("/")
    return any(fnmatch.fnmatchcase(candidate, pattern) for pattern in patterns)


def has_allowed_extension(path: str, policy: IngestPolicy = ingest_policy) -> bool:
    return PurePosixPath(path).suffix.lower() in policy.allowed_extensions


def import_ratio(content: str) -> float:
    """Share of non-blank lines that are import/export/require statements."""
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        return 0.0
    import_lines = sum(1 for line in lines if IMPORT_LINE_PATTERN.match(line))
    return import_lines / len(lines)


def rejection_reason(path: str, content: str, policy: IngestPolicy = ingest_policy) -> Optional[str]:
    """Explain why a file would be skipped, or return None if it qualifies."""
    if not has_allowed_extension(path, policy):
        return "extension not allowed"

    length = len(content)
    if length < policy.min_content_length:
        return f"content too short ({length} < {policy.min_content_length})"
    if length > policy.max_content_length:
        return f"content too long ({length} > {policy.max_content_length})"

    ratio = import_ratio(content)
    if ratio >= policy.max_import_ratio:
        return f"import density {ratio:.0%} >= {policy.max_import_ratio:.0%}"

    return None


def should_process(path: str, content: str, policy: IngestPolicy = ingest_policy) -> bool:
    """Return True when the file should be summarized and embedded."""
    return rejection_reason(path, content, policy) is None
