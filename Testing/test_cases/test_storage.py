"""
test_storage.py
----------------
Unit tests for the `storage` module: payload decoding, stored-name policy,
writes, idempotent deletion, expiry timers and static-file lookup.
"""

import os
import sys
import base64
import asyncio

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, ROOT)

from config import RANDOMIZED, SANITIZED
from storage import BlobStore, StorageError, StoredFile, decode_payload
from transfer import BAD_FILE_DATA, ValidationError


# -------------------
# decode_payload
# -------------------

# Plain base64 and data URLs decode to the same bytes
def test_decode_payload_plain_and_data_url():
    raw = b"\x89PNG\r\n\x1a\nbinary"
    enc = base64.b64encode(raw).decode()
    assert decode_payload(enc) == raw
    assert decode_payload("data:image/png;base64," + enc) == raw


# Decoded length is what the validator sees, not the encoded length
def test_decoded_length_smaller_than_encoded():
    raw = os.urandom(300)
    enc = base64.b64encode(raw).decode()
    assert len(decode_payload(enc)) == 300 < len(enc)


# Bad padding and non-string payloads are validation errors
def test_decode_payload_rejects_bad_input():
    with pytest.raises(ValidationError) as exc:
        decode_payload("abc")
    assert exc.value.code == BAD_FILE_DATA
    with pytest.raises(ValidationError):
        decode_payload(None)
    with pytest.raises(ValidationError):
        decode_payload("ünïcode")


# -------------------
# Naming
# -------------------

# Randomized names are distinct, keep the extension and hide the original
def test_randomized_names_distinct_with_extension(tmp_path):
    store = BlobStore(tmp_path, naming_mode=RANDOMIZED)
    a = store.stored_name("a.png")
    b = store.stored_name("b.png")
    assert a != b
    assert a.endswith(".png") and b.endswith(".png")
    assert a != "a.png" and b != "b.png"
    assert len(a) == 20 + len(".png")


# Randomized names never carry path components from the client
def test_randomized_name_strips_paths(tmp_path):
    store = BlobStore(tmp_path, naming_mode=RANDOMIZED)
    name = store.stored_name("../../evil/x.TXT")
    assert "/" not in name and name.endswith(".txt")
    assert "/" not in store.stored_name("dir.d/noext")


# Sanitized names replace whitespace and drop directories
def test_sanitized_names(tmp_path):
    store = BlobStore(tmp_path, naming_mode=SANITIZED)
    assert store.stored_name("my holiday\tphoto.png") == "my_holiday_photo.png"
    assert store.stored_name("../../etc/passwd") == "passwd"
    assert store.stored_name("C:\\Users\\me\\report.pdf") == "report.pdf"
    with pytest.raises(StorageError):
        store.stored_name("..")
    with pytest.raises(StorageError):
        store.stored_name("uploads/")


# Unknown naming modes are refused at construction
def test_unknown_naming_mode(tmp_path):
    with pytest.raises(ValueError):
        BlobStore(tmp_path, naming_mode="hashed")


# -------------------
# Save / delete / expiry
# -------------------

@pytest.mark.asyncio
# save writes the bytes and returns a URL under the prefix
async def test_save_writes_file_and_url(tmp_path):
    store = BlobStore(tmp_path / "up", url_prefix="uploads/", naming_mode=SANITIZED)
    stored = await store.save(b"hello", "greeting file.txt")
    assert stored.name == "greeting_file.txt"
    assert stored.url == "/uploads/greeting_file.txt"
    assert stored.path.read_bytes() == b"hello"
    assert stored.path.parent == (tmp_path / "up").resolve()


@pytest.mark.asyncio
# A missing upload directory surfaces as StorageError
async def test_save_failure_raises_storage_error(tmp_path):
    store = BlobStore(tmp_path / "up")
    os.rmdir(store.directory)
    with pytest.raises(StorageError):
        await store.save(b"x", "a.txt")


@pytest.mark.asyncio
# Deleting twice is a no-op the second time
async def test_delete_is_idempotent(tmp_path):
    store = BlobStore(tmp_path)
    stored = await store.save(b"x", "a.txt")
    assert store.delete(stored) is True
    assert not stored.path.exists()
    assert store.delete(stored) is False


# Deletion failures are logged, never raised
def test_delete_failure_is_logged(tmp_path, capsys):
    store = BlobStore(tmp_path)
    sub = tmp_path / "not-a-file"
    sub.mkdir()
    stored = StoredFile(name="not-a-file", path=sub, url="/uploads/not-a-file", created_at=0.0)
    assert store.delete(stored) is False
    assert "File deletion error" in capsys.readouterr().out
    assert sub.exists()


@pytest.mark.asyncio
# Scheduled deletion removes the file after the delay
async def test_schedule_delete_fires(tmp_path):
    store = BlobStore(tmp_path)
    stored = await store.save(b"x", "a.txt")
    store.schedule_delete(stored, 20)
    assert store.pending_deletes == 1
    await asyncio.sleep(0.2)
    assert not stored.path.exists()
    assert store.pending_deletes == 0


@pytest.mark.asyncio
# A timer firing on an already-removed file does not raise
async def test_schedule_delete_after_manual_delete(tmp_path):
    store = BlobStore(tmp_path)
    stored = await store.save(b"x", "a.txt")
    store.schedule_delete(stored, 20)
    store.delete(stored)
    await asyncio.sleep(0.2)
    assert store.pending_deletes == 0


@pytest.mark.asyncio
# close() cancels pending timers and leaves files in place
async def test_close_cancels_timers(tmp_path):
    store = BlobStore(tmp_path)
    stored = await store.save(b"x", "a.txt")
    store.schedule_delete(stored, 50)
    store.close()
    await asyncio.sleep(0.2)
    assert stored.path.exists()
    assert store.pending_deletes == 0


# -------------------
# Static lookup
# -------------------

@pytest.mark.asyncio
# open() finds stored files and refuses traversal or missing names
async def test_open_lookup(tmp_path):
    store = BlobStore(tmp_path / "up", naming_mode=SANITIZED)
    (tmp_path / "secret.txt").write_text("top secret")
    stored = await store.save(b"data", "a.txt")
    assert store.open("a.txt") == stored.path
    assert store.open("missing.txt") is None
    assert store.open("../secret.txt") is None
    assert store.open("..") is None
    assert store.open("") is None
