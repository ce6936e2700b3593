"""Tests for src/validation/path_validator.py."""

import pytest

from src.core.config import PathsConfig
from src.core.exceptions import PathValidationError
from src.validation.path_validator import (
    PathValidator,
    normalize_path,
    validate_file_size,
    validate_operation_count,
    validate_path,
)


class TestNormalizePath:
    @pytest.mark.parametrize("raw,expected", [
        ("src/app.py", "src/app.py"),
        ("./src//app.py", "src/app.py"),
        ("src\\pkg\\app.py", "src/pkg/app.py"),
        ("src/./pkg/", "src/pkg"),
        ("/etc/passwd", "/etc/passwd"),
        ("src/../etc", "src/../etc"),
    ])
    def test_normalization(self, raw, expected):
        assert normalize_path(raw) == expected


class TestValidatePath:
    @pytest.mark.parametrize("path", [
        "src/app.py",
        "tests/test_app.py",
        "docs/guide.md",
        "notes/meeting.txt",
        "data/sample.csv",
        "./src/nested/deep/module.py",
    ])
    def test_allowed(self, path):
        result = validate_path(path)
        assert result.is_valid is True
        assert result.error is None

    def test_returns_normalized_path(self):
        assert validate_path("src\\a\\b.py").normalized_path == "src/a/b.py"

    @pytest.mark.parametrize("path", [
        "../secrets.txt",
        "src/../../etc/passwd",
        "src/../tests/x.py",
        "src\\..\\..\\boot.ini",
    ])
    def test_traversal_rejected(self, path):
        result = validate_path(path)
        assert result.is_valid is False
        assert "path traversal attempt detected" in result.error

    @pytest.mark.parametrize("path", ["/etc/passwd", "C:/Windows/system.ini", "lib/x.py", "app.py"])
    def test_outside_whitelist_rejected(self, path):
        result = validate_path(path)
        assert result.is_valid is False
        assert "Path must be in allowed directories" in result.error

    @pytest.mark.parametrize("path,pattern", [
        ("src/.env", ".env"),
        ("src/config/.env.local", ".env.*"),
        ("src/node_modules/left-pad/index.js", "node_modules"),
        ("src/.git/config", ".git"),
        ("notes/package.json", "package.json"),
        ("docs/tsconfig.json", "tsconfig.json"),
        ("data/pyproject.toml", "pyproject.toml"),
    ])
    def test_sensitive_rejected(self, path, pattern):
        result = validate_path(path)
        assert result.is_valid is False
        assert f'matched pattern "{pattern}"' in result.error

    def test_sensitive_pattern_matches_whole_segment(self):
        assert validate_path("src/environment.py").is_valid is True
        assert validate_path("docs/gitignore-notes.md").is_valid is True

    @pytest.mark.parametrize("path", ["", "   "])
    def test_empty_rejected(self, path):
        result = validate_path(path)
        assert result.is_valid is False
        assert "cannot be empty" in result.error

    def test_null_byte_rejected(self):
        assert validate_path("src/app.py\x00.txt").is_valid is False

    def test_rejection_is_logged(self, caplog):
        with caplog.at_level("WARNING", logger="conclave.validation.path_validator"):
            validate_path("../x")
        assert "Rejected path" in caplog.text


class TestRequireValid:
    def test_returns_normalized(self):
        assert PathValidator().require_valid("./src/a.py") == "src/a.py"

    def test_raises_with_path(self):
        with pytest.raises(PathValidationError) as exc_info:
            PathValidator().require_valid("../a.py")
        assert exc_info.value.path == "../a.py"


class TestLimits:
    def test_size_limit_is_inclusive(self):
        assert validate_file_size("a" * 100 * 1024) is True
        assert validate_file_size("a" * (100 * 1024 + 1)) is False

    def test_size_counts_utf8_bytes(self):
        # "é" is two bytes in UTF-8
        assert validate_file_size("é" * 512, max_kb=1) is True
        assert validate_file_size("é" * 513, max_kb=1) is False

    def test_operation_count_is_inclusive(self):
        assert validate_operation_count(5) is True
        assert validate_operation_count(6) is False
        assert validate_operation_count(0) is True


class TestFromConfig:
    def test_custom_whitelist(self):
        validator = PathValidator.from_config(
            PathsConfig(allowed_directories=["lib"], max_file_kb=1, max_operations=2)
        )
        assert validator.validate_path("lib/x.py").is_valid is True
        assert validator.validate_path("src/x.py").is_valid is False
        assert validator.validate_file_size("a" * 1025) is False
        assert validator.validate_operation_count(3) is False
