"""Validator-gated file operations for actors.

Every read, write and edit goes through the PathValidator first, then is
resolved strictly inside the workspace root. Writes and edits leave a
``.bak`` copy of the previous content so a bad change can be reverted by hand.

Failures are returned as FileOpResult(ok=False, error=...) rather than
raised: a rejected operation is fed back to the requesting actor.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from src.core.exceptions import ToolError, ValidationError
from src.core.models import EditPattern, FileOpResult
from src.validation.path_validator import PathValidator


def apply_edits(content: str, edits: list[EditPattern]) -> str:
    """Apply find/replace edits in order. Each find must occur exactly once.

    Raises:
        ToolError: A pattern is missing or ambiguous.
    """
    result = content
    for i, edit in enumerate(edits, 1):
        occurrences = result.count(edit.find) if edit.find else 0
        if occurrences == 0:
            raise ToolError(f"Edit {i}: Pattern not found in file.")
        if occurrences > 1:
            raise ToolError(f"Edit {i}: Pattern appears {occurrences} times. Add more context.")
        result = result.replace(edit.find, edit.replace, 1)
    return result


class FileOps:
    """read/write/edit capability handed to the cycle controller."""

    def __init__(
        self,
        root: str | Path,
        validator: Optional[PathValidator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.root = Path(root).resolve()
        self.validator = validator or PathValidator()
        self.logger = logger or logging.getLogger("conclave.tools.file_ops")

    def read(self, path: str) -> FileOpResult:
        try:
            normalized = self.validator.require_valid(path)
            target = self._resolve_read_path(normalized)
            if not target.is_file():
                raise ToolError(f"File not found: {normalized}")
            content = target.read_text(encoding="utf-8")
        except (ValidationError, ToolError, OSError, UnicodeDecodeError) as e:
            return FileOpResult(ok=False, path=path, error=str(e))
        self.logger.debug("Read %d chars from %s", len(content), normalized)
        return FileOpResult(ok=True, path=normalized, content=content)

    def write(self, path: str, content: str) -> FileOpResult:
        try:
            normalized = self.validator.require_valid(path)
            self._check_size(normalized, content)
            target = self._resolve_write_path(normalized)
            self._backup(target)
            target.write_text(content, encoding="utf-8")
        except (ValidationError, ToolError, OSError) as e:
            return FileOpResult(ok=False, path=path, error=str(e))
        self.logger.info("Wrote %d chars to %s", len(content), normalized)
        return FileOpResult(ok=True, path=normalized)

    def edit(self, path: str, edits: list[EditPattern]) -> FileOpResult:
        try:
            normalized = self.validator.require_valid(path)
            if not self.validator.validate_operation_count(len(edits)):
                raise ToolError(
                    f"Too many edit operations for {normalized}: {len(edits)} "
                    f"(max {self.validator.max_operations})"
                )
            target = self._resolve_write_path(normalized)
            if not target.is_file():
                raise ToolError(f"File not found: {normalized}")
            updated = apply_edits(target.read_text(encoding="utf-8"), edits)
            self._check_size(normalized, updated)
            self._backup(target)
            target.write_text(updated, encoding="utf-8")
        except (ValidationError, ToolError, OSError, UnicodeDecodeError) as e:
            return FileOpResult(ok=False, path=path, error=str(e))
        self.logger.info("Applied %d edit(s) to %s", len(edits), normalized)
        return FileOpResult(ok=True, path=normalized)

    def _check_size(self, normalized: str, content: str) -> None:
        if not self.validator.validate_file_size(content):
            raise ToolError(
                f"Content for {normalized} exceeds {self.validator.max_file_kb}KB limit"
            )

    def _resolve_read_path(self, normalized: str) -> Path:
        candidate = self.root / normalized
        if not candidate.exists():
            return candidate
        resolved = candidate.resolve()
        if not resolved.is_relative_to(self.root):
            raise ToolError(f"Resolved path escapes workspace: {normalized}")
        return resolved

    def _resolve_write_path(self, normalized: str) -> Path:
        candidate = self.root / normalized
        parent = candidate.parent
        parent.mkdir(parents=True, exist_ok=True)

        resolved_parent = parent.resolve()
        if not resolved_parent.is_relative_to(self.root):
            raise ToolError(f"Resolved path escapes workspace: {normalized}")

        target = resolved_parent / candidate.name
        if target.is_symlink():
            raise ToolError(f"Refusing to write through symlink: {normalized}")
        return target

    def _backup(self, target: Path) -> None:
        if target.exists():
            backup_path = target.with_suffix(target.suffix + ".bak")
            shutil.copy2(target, backup_path)
            self.logger.debug("Backup created: %s", backup_path)

