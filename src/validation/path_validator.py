"""Path validation for actor file operations.

Every file-operation request passes through here before touching disk:
- normalization (backslashes, repeated separators, ``./`` segments)
- traversal rejection (any ``..`` segment, even if it would land inside the whitelist)
- top-level directory whitelist
- sensitive-file blocklist (matched per path segment)
- inclusive size and operation-count caps
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Optional

from src.core.config import PathsConfig
from src.core.exceptions import PathValidationError
from src.core.models import PathValidationResult

logger = logging.getLogger("conclave.validation.path_validator")

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def normalize_path(path: str) -> str:
    """Normalize separators and drop ``.`` segments. ``..`` is kept for detection."""
    unified = path.replace("\\", "/")
    absolute = unified.startswith("/")
    segments = [seg for seg in unified.split("/") if seg not in ("", ".")]
    normalized = "/".join(segments)
    return f"/{normalized}" if absolute else normalized


@dataclass
class PathValidator:
    """Gatekeeper for FileOps requests."""

    allowed_directories: list[str] = field(
        default_factory=lambda: ["src", "tests", "docs", "notes", "data"]
    )
    sensitive_patterns: list[str] = field(
        default_factory=lambda: [
            ".env",
            ".env.*",
            "node_modules",
            ".git",
            "package.json",
            "tsconfig.json",
            "pyproject.toml",
        ]
    )
    max_file_kb: int = 100
    max_operations: int = 5
    logger: logging.Logger = field(default=logger, repr=False)

    @classmethod
    def from_config(
        cls, config: PathsConfig, logger: Optional[logging.Logger] = None,
    ) -> "PathValidator":
        validator = cls(
            allowed_directories=list(config.allowed_directories),
            sensitive_patterns=list(config.sensitive_patterns),
            max_file_kb=config.max_file_kb,
            max_operations=config.max_operations,
        )
        if logger is not None:
            validator.logger = logger
        return validator

    def validate_path(self, path: str) -> PathValidationResult:
        """Check a path against traversal, whitelist and sensitive-file rules, in that order."""
        if not path or not path.strip():
            return self._reject(path or "", "Path validation failed: file path cannot be empty.")
        if "\x00" in path:
            return self._reject(path, f'Path validation failed: null byte in path "{path!r}".')

        normalized = normalize_path(path.strip())
        segments = [seg for seg in normalized.split("/") if seg]

        if ".." in segments:
            return self._reject(
                normalized,
                f'Path validation failed: path traversal attempt detected in path "{path}".',
            )

        is_absolute = normalized.startswith("/") or bool(_DRIVE_PREFIX.match(normalized))
        top = segments[0] if segments else ""
        if is_absolute or top not in self.allowed_directories:
            return self._reject(
                normalized,
                f'Path must be in allowed directories. Path "{path}" with root directory '
                f'"{top}" is not allowed. Allowed: {", ".join(self.allowed_directories)}.',
            )

        matched = self._match_sensitive(segments)
        if matched is not None:
            return self._reject(
                normalized,
                f'Access to sensitive file or directory "{path}" is disallowed '
                f'(matched pattern "{matched}").',
            )

        return PathValidationResult(is_valid=True, normalized_path=normalized)

    def require_valid(self, path: str) -> str:
        """Return the normalized path or raise PathValidationError."""
        result = self.validate_path(path)
        if not result.is_valid:
            raise PathValidationError(result.error or "Invalid path", path=path)
        return result.normalized_path

    def validate_file_size(self, content: str, max_kb: Optional[int] = None) -> bool:
        """True when the UTF-8 size is at most max_kb kilobytes (inclusive)."""
        limit = (self.max_file_kb if max_kb is None else max_kb) * 1024
        return len(content.encode("utf-8")) <= limit

    def validate_operation_count(self, count: int, max_operations: Optional[int] = None) -> bool:
        """True when count is at most max_operations (inclusive)."""
        limit = self.max_operations if max_operations is None else max_operations
        return count <= limit

    def _match_sensitive(self, segments: list[str]) -> Optional[str]:
        for segment in segments:
            for pattern in self.sensitive_patterns:
                if fnmatchcase(segment, pattern):
                    return pattern
        return None

    def _reject(self, normalized: str, error: str) -> PathValidationResult:
        self.logger.warning("Rejected path: %s", error)
        return PathValidationResult(is_valid=False, normalized_path=normalized, error=error)


def validate_path(path: str) -> PathValidationResult:
    """Validate against the default whitelist and blocklist."""
    return PathValidator().validate_path(path)


def validate_file_size(content: str, max_kb: int = 100) -> bool:
    return PathValidator(max_file_kb=max_kb).validate_file_size(content)


def validate_operation_count(count: int, max_operations: int = 5) -> bool:
    return PathValidator(max_operations=max_operations).validate_operation_count(count)
