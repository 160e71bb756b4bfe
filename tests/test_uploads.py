import base64
import io

import pytest
from PIL import Image

from impression.pipeline.uploads import (
    UploadTooLarge,
    check_size,
    guess_extension,
    media_type_for,
    store_upload,
    to_data_uri,
)


def _png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


def test_mime_type_wins():
    assert guess_extension("image/png", "photo.jpg") == ".png"
    assert guess_extension("image/jpeg; charset=binary", None) == ".jpg"


def test_falls_back_to_filename():
    assert guess_extension("application/octet-stream", "IMG_0001.JPEG") == ".jpg"
    assert guess_extension(None, "scan.webp") == ".webp"


def test_sniffs_bytes_when_nothing_else_helps():
    assert guess_extension(None, "blob", _png()) == ".png"


def test_unknown_everything_gives_bin():
    assert guess_extension(None, None, b"not an image") == ".bin"


def test_size_cap():
    check_size(b"x" * 10, 10)
    with pytest.raises(UploadTooLarge) as info:
        check_size(b"x" * (12 * 1024 * 1024 + 1), 12 * 1024 * 1024)
    assert "12MB" in str(info.value)


def test_store_upload_uses_given_stem(tmp_path):
    path = store_upload(tmp_path / "uploads", b"abc", ".jpg", stem="job-1")
    assert path.name == "job-1.jpg"
    assert path.read_bytes() == b"abc"


def test_data_uri(tmp_path):
    path = tmp_path / "a.png"
    path.write_bytes(_png())
    uri = to_data_uri(path)
    prefix = "data:image/png;base64,"
    assert uri.startswith(prefix)
    assert base64.b64decode(uri[len(prefix):]) == path.read_bytes()
    assert media_type_for(tmp_path / "x.unknownext") == "application/octet-stream"


@pytest.mark.parametrize("filename", ["notes.json", "x.tmp", "y.part", "Z.JSON"])
def test_bookkeeping_suffixes_are_never_taken_from_filenames(filename):
    assert guess_extension("application/json", filename, b"{}") == ".bin"
