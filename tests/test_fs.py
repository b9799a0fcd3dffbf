import os
from pathlib import Path

import pytest

from pravaah.service.fs import PathTraversalError, safe_join, sanitize_filename


def test_safe_join_accepts_child_path(tmp_path: Path):
    result = safe_join(tmp_path, "media/avatar.png")

    assert tmp_path.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, os.path.join("..", "escape.txt"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, str(Path("/tmp/absolute.txt")))


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("avatar.png", "avatar.png"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\ada\\cover photo.jpg", "coverphoto.jpg"),
        (".hidden", "hidden"),
        ("", "upload"),
        (None, "upload"),
        ("???", "upload"),
    ],
)
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected
