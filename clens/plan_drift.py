"""Compare the files a spec document promises against the files a session touched."""
from __future__ import annotations

import logging
import re
from typing import Any, Optional

import yaml

from clens.models import FileMapResult, PlanDriftReport

logger = logging.getLogger("clens.plan_drift")

FILES_SECTION_KEYWORDS = ("file", "deliverable", "relevant", "new", "modified", "create")
FRONTMATTER_FILE_KEYS = ("files", "deliverables")

COMMAND_KEYWORDS = frozenset({
    "bun", "npm", "npx", "git", "cd", "mkdir", "rm", "cp", "mv",
    "echo", "cat", "grep", "curl", "wget", "docker", "yarn", "pnpm",
    "node", "deno", "tsc", "eslint", "prettier", "jest", "vitest",
})

_FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)", re.DOTALL)
_BACKTICK_PATH_PATTERN = re.compile(r"^[-*]\s+`([^`]+)`")
_BOLD_PATH_PATTERN = re.compile(r"^[-*]\s+\*\*([^*]+)\*\*")
_BARE_PATH_PATTERN = re.compile(r"^[-*]\s+([\w./@-]+\.\w+)")
_PREFIX_PATH_PATTERN = re.compile(r"^(?:Create|Modify|File):\s*`?([^\s`]+)`?", re.IGNORECASE)
_TABLE_CELL_PATTERN = re.compile(r"\|\s*([^|]+?)\s*(?=\|)")
_INLINE_BACKTICK_PATTERN = re.compile(r"`([^`]+)`")
_BULLET_BACKTICK_PATTERN = re.compile(r"^\s*[-*]\s+`")
_EXTENSION_PATTERN = re.compile(r"\.\w+$")
_BUILD_SPEC_PATTERN = re.compile(r"/build\s+([\w./@-]*specs/[\w./@-]+)")


# ── Path predicates ─────────────────────────────────────────────────

def _has_extension(value: str) -> bool:
    return bool(_EXTENSION_PATTERN.search(value))


def _is_command_like(value: str) -> bool:
    lowered = value.strip().lower()
    return any(lowered == cmd or lowered.startswith(f"{cmd} ") for cmd in COMMAND_KEYWORDS)


def is_valid_file_path(value: str) -> bool:
    """Has a directory separator and an extension; not a call signature or a shell command."""
    return "/" in value and _has_extension(value) and "(" not in value and not _is_command_like(value)


def _normalize(path: str) -> str:
    trimmed = path.strip()
    return trimmed[2:] if trimmed.startswith("./") else trimmed


def _to_relative(path: str, project_dir: Optional[str]) -> str:
    trimmed = path[2:] if path.startswith("./") else path
    if not trimmed.startswith("/") or not project_dir:
        return trimmed
    prefix = project_dir if project_dir.endswith("/") else f"{project_dir}/"
    return trimmed[len(prefix):] if trimmed.startswith(prefix) else trimmed


# ── Line extractors ─────────────────────────────────────────────────

def _is_files_heading(line: str) -> bool:
    lowered = line.strip().lower()
    return lowered.startswith("#") and any(kw in lowered for kw in FILES_SECTION_KEYWORDS)


def _code_block_paths(line: str) -> list[str]:
    trimmed = line.strip()
    if not trimmed:
        return []
    if any(ch in trimmed for ch in "=({") or trimmed.startswith(("//", "#!")):
        return []
    first = trimmed.split()[0]
    return [_normalize(first)] if is_valid_file_path(first) else []


def _table_paths(line: str) -> list[str]:
    if "|" not in line:
        return []
    paths = []
    for match in _TABLE_CELL_PATTERN.finditer(line):
        cell = match.group(1).strip()
        if len(cell) >= 2 and cell.startswith("`") and cell.endswith("`"):
            cell = cell[1:-1]
        if is_valid_file_path(cell):
            paths.append(_normalize(cell))
    return paths


def _inline_backtick_paths(line: str) -> list[str]:
    # bullet lines starting with a backtick are handled as bullets
    if "`" not in line or _BULLET_BACKTICK_PATTERN.match(line):
        return []
    return [_normalize(m.group(1)) for m in _INLINE_BACKTICK_PATTERN.finditer(line) if is_valid_file_path(m.group(1))]


def _bullet_path(line: str) -> Optional[str]:
    trimmed = line.strip()
    match = _BACKTICK_PATH_PATTERN.match(trimmed)
    if match and "(" not in match.group(1):
        return match.group(1)
    for pattern in (_BOLD_PATH_PATTERN, _BARE_PATH_PATTERN):
        match = pattern.match(trimmed)
        if match and _has_extension(match.group(1)) and "(" not in match.group(1):
            return match.group(1)
    return None


def _prefix_path(line: str) -> Optional[str]:
    match = _PREFIX_PATH_PATTERN.match(line.strip())
    return match.group(1) if match else None


# ── Frontmatter ─────────────────────────────────────────────────────

def _extract_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    match = _FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text
    try:
        fm = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.debug("Ignoring unparseable spec frontmatter: %s", e)
        return {}, text
    if not isinstance(fm, dict):
        # a leading horizontal rule, not frontmatter
        return {}, text
    return fm, match.group(2)


def _frontmatter_files(frontmatter: dict[str, Any]) -> list[str]:
    paths: list[str] = []
    for key in FRONTMATTER_FILE_KEYS:
        value = frontmatter.get(key)
        entries = value if isinstance(value, list) else [value]
        for entry in entries:
            if isinstance(entry, dict):
                entry = entry.get("path")
            if isinstance(entry, str) and is_valid_file_path(_normalize(entry)):
                paths.append(_normalize(entry))
    return paths


# ── Public API ──────────────────────────────────────────────────────

def parse_spec_expected_files(spec_content: str) -> list[str]:
    """Sorted, deduplicated file paths a markdown spec says will be created or changed."""
    frontmatter, body = _extract_frontmatter(spec_content)
    paths = _frontmatter_files(frontmatter)

    in_files_section = False
    in_code_block = False
    for line in body.split("\n"):
        if line.strip().startswith("```"):
            in_code_block = not in_code_block
            continue
        if in_code_block:
            paths.extend(_code_block_paths(line))
            continue

        prefix = _prefix_path(line)
        line_paths = [_normalize(prefix)] if prefix else []

        if line.strip().startswith("#"):
            in_files_section = _is_files_heading(line)
        elif in_files_section:
            bullet = _bullet_path(line)
            if bullet:
                line_paths.append(_normalize(bullet))

        line_paths.extend(_inline_backtick_paths(line))
        line_paths.extend(_table_paths(line))
        paths.extend(line_paths)

    return sorted(set(paths))


def extract_actual_files(file_maps: list[FileMapResult]) -> list[str]:
    """Files with at least one edit or write across the given file maps."""
    return sorted({
        entry.file_path
        for file_map in file_maps
        for entry in file_map.files
        if entry.edits > 0 or entry.writes > 0
    })


def compute_plan_drift(
    spec_path: str,
    spec_content: str,
    file_maps: list[FileMapResult],
    project_dir: Optional[str] = None,
) -> PlanDriftReport:
    expected = sorted({_to_relative(p, project_dir) for p in parse_spec_expected_files(spec_content)})
    actual = sorted({_to_relative(p, project_dir) for p in extract_actual_files(file_maps)})

    expected_set = set(expected)
    actual_set = set(actual)
    unexpected = [f for f in actual if f not in expected_set]
    missing = [f for f in expected if f not in actual_set]

    return PlanDriftReport(
        spec_path=spec_path,
        expected_files=expected,
        actual_files=actual,
        unexpected_files=unexpected,
        missing_files=missing,
        drift_score=min(1.0, (len(unexpected) + len(missing)) / max(len(expected), 1)),
    )


def detect_spec_ref(prompts: list[str]) -> Optional[str]:
    """First ``/build <path>/specs/...`` reference among the prompts."""
    for prompt in prompts:
        match = _BUILD_SPEC_PATTERN.search(prompt)
        if match:
            return match.group(1)
    return None
