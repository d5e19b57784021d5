"""
test_transfer.py
-----------------
Unit tests for the `transfer` module: size cap, extension allow-list and
extension extraction edge cases.
"""

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, ROOT)

from transfer import (
    FILE_TOO_LARGE,
    FILE_TYPE_NOT_ALLOWED,
    ValidationError,
    file_extension,
    validate_transfer,
)

ALLOWED = {"jpg", "jpeg", "png", "pdf", "txt", "mp4"}
MAX = 20 * 1024 * 1024


# Extension is the lowercased text after the last dot
def test_file_extension_basic_and_case():
    assert file_extension("photo.PNG") == "png"
    assert file_extension("archive.tar.gz") == "gz"
    assert file_extension("My Holiday.JpEg") == "jpeg"


# A name without any dot yields the whole name instead of failing
def test_file_extension_without_dot_is_whole_name():
    assert file_extension("README") == "readme"
    assert file_extension("") == ""


# Exactly at the cap is accepted, one byte over is rejected
def test_size_limit_boundary():
    assert validate_transfer(MAX, "a.png", MAX, ALLOWED) is None
    with pytest.raises(ValidationError) as exc:
        validate_transfer(MAX + 1, "a.png", MAX, ALLOWED)
    assert exc.value.reason == "too large"
    assert exc.value.code == FILE_TOO_LARGE
    assert "20 MB" in exc.value.message


# Extensions outside a non-empty allow-list are rejected with a distinct reason
def test_disallowed_extension_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_transfer(10, "script.exe", MAX, ALLOWED)
    assert exc.value.reason == "type not allowed"
    assert exc.value.code == FILE_TYPE_NOT_ALLOWED
    assert exc.value.message == "File type not allowed"


# Size is checked before type, so an oversized .exe reports "too large"
def test_size_checked_before_type():
    with pytest.raises(ValidationError) as exc:
        validate_transfer(MAX + 1, "script.exe", MAX, ALLOWED)
    assert exc.value.reason == "too large"


# Upper-case extensions match the lowercase allow-list
def test_uppercase_extension_allowed():
    assert validate_transfer(10, "SCAN.PDF", MAX, ALLOWED) is None


# An empty allow-list lets every extension through
def test_empty_allow_list_allows_everything():
    assert validate_transfer(10, "binary.exe", MAX, set()) is None
    assert validate_transfer(10, "Makefile", MAX, []) is None


# Dotless names are checked as a whole against the allow-list
def test_dotless_name_checked_against_allow_list():
    with pytest.raises(ValidationError):
        validate_transfer(10, "README", MAX, ALLOWED)
    assert validate_transfer(10, "txt", MAX, ALLOWED) is None


# Custom smaller caps use a readable unit in the message
def test_message_uses_configured_limit():
    with pytest.raises(ValidationError) as exc:
        validate_transfer(2048, "a.txt", 1024, ALLOWED)
    assert "1 KB" in exc.value.message
    assert str(exc.value) == exc.value.message
