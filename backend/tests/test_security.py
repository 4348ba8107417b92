"""Tests for sandbox/security.py -- language mapping, program checks and output sanitization."""

import pytest

from sandbox.security import (
    MAX_CODE_CHARS,
    SUPPORTED_LANGUAGES,
    normalize_language,
    sanitize_output,
    validate_code,
)

# =========================================================================
# normalize_language
# =========================================================================


class TestNormalizeLanguage:
    """Declared languages map onto the supported set."""

    @pytest.mark.parametrize(
        ("declared", "canonical"),
        [
            ("python", "python"),
            ("Python3", "python"),
            ("py", "python"),
            (" js ", "javascript"),
            ("node", "javascript"),
            ("sh", "bash"),
            ("shell", "bash"),
        ],
    )
    def test_aliases(self, declared: str, canonical: str) -> None:
        assert normalize_language(declared) == canonical

    @pytest.mark.parametrize("declared", ["cobol", "", "rust"])
    def test_unsupported(self, declared: str) -> None:
        assert normalize_language(declared) is None

    def test_canonical_names_are_fixed_points(self) -> None:
        for language in SUPPORTED_LANGUAGES:
            assert normalize_language(language) == language


# =========================================================================
# validate_code
# =========================================================================


class TestValidateCode:
    """Programs that cannot run are rejected before reaching the sandbox."""

    def test_valid_program(self) -> None:
        assert validate_code("print(1)") == (True, "")

    @pytest.mark.parametrize("code", ["", "   \n\t"])
    def test_empty(self, code: str) -> None:
        ok, err = validate_code(code)
        assert ok is False
        assert err == "Code cannot be empty"

    def test_null_byte(self) -> None:
        ok, err = validate_code("print(1)\x00")
        assert ok is False
        assert "null byte" in err

    def test_size_limit(self) -> None:
        assert validate_code("x" * MAX_CODE_CHARS)[0] is True
        ok, err = validate_code("x" * (MAX_CODE_CHARS + 1))
        assert ok is False
        assert str(MAX_CODE_CHARS) in err


# =========================================================================
# sanitize_output
# =========================================================================


class TestSanitizeOutput:
    """Output is made safe to hand back to a model."""

    def test_empty(self) -> None:
        assert sanitize_output("") == ""

    def test_plain_text_untouched(self) -> None:
        assert sanitize_output("line 1\n\tline 2\n") == "line 1\n\tline 2\n"

    def test_strips_ansi_sequences(self) -> None:
        assert sanitize_output("\x1b[31mred\x1b[0m text") == "red text"

    def test_strips_control_characters(self) -> None:
        assert sanitize_output("a\x07b\x00c\x7f") == "abc"

    def test_truncates_long_output(self) -> None:
        result = sanitize_output("x" * 120, max_length=100)
        assert result.startswith("x" * 100)
        assert result.endswith("[truncated, 20 chars omitted]")
