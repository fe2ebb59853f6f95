"""Inbox folder scanning, scenario file parsing, and archive logic."""

import shutil
from datetime import datetime
from pathlib import Path

import frontmatter

from qi_council.models import ScenarioInput

# Frontmatter keys accepted for each scenario field (short form first).
_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "primary_objective": ("objective", "primary_objective"),
    "current_state_description": ("current", "current_state"),
    "target_state_description": ("target", "target_state"),
    "known_harms": ("harms", "known_harms"),
    "detected_signals": ("signals", "detected_signals"),
    "pilot_id": ("pilot", "pilot_id"),
}


def ensure_dirs(inbox_dir: Path, archive_dir: Path) -> None:
    """Create inbox and archive directories if they don't exist."""
    inbox_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Return all .md files in inbox_dir, sorted by mtime ascending (oldest first)."""
    files = list(inbox_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)


def parse_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML frontmatter.

    Returns:
        (content, metadata) where content is the body text and metadata
        is the frontmatter dict. If no frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    content = post.content.strip()
    metadata = dict(post.metadata)
    return content, metadata


def _lookup(metadata: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def scenario_from_file(file_path: Path) -> tuple[ScenarioInput, dict]:
    """Build a ScenarioInput from a scenario file.

    Scenario fields come from the frontmatter; the markdown body, when
    present, is the community voice testimony.

    Raises:
        ValueError: If objective, current or target state is missing.
    """
    content, metadata = parse_file(file_path)
    fields = {name: _lookup(metadata, keys) for name, keys in _FIELD_KEYS.items()}
    community_voice = content or _lookup(metadata, ("voices", "community_voice"))
    scenario = ScenarioInput(
        primary_objective=fields["primary_objective"] or "",
        current_state_description=fields["current_state_description"] or "",
        target_state_description=fields["target_state_description"] or "",
        known_harms=fields["known_harms"],
        community_voice=community_voice,
        detected_signals=fields["detected_signals"],
        pilot_id=fields["pilot_id"],
    )
    return scenario, metadata


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move file to archive_dir with a timestamp prefix.

    Args:
        file_path: Source file to archive.
        archive_dir: Destination directory.
        failed: If True, prefix filename with "FAILED_".

    Returns:
        Path to the archived file.
    """
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M")
    prefix = "FAILED_" if failed else ""
    dest = archive_dir / f"{prefix}{timestamp}_{file_path.name}"
    shutil.move(str(file_path), str(dest))
    return dest
