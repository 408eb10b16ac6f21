from contextlib import contextmanager

import psycopg2
import pytest

from lostfound.blob_store import LocalBlobStore, PostgresBlobStore, make_blob_name
from lostfound.errors import BlobStoreError, NotFoundError, ValidationError


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self.rowcount = 0
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        if self.db.fail:
            raise psycopg2.OperationalError("connection refused")
        self.db.executed.append((" ".join(sql.split()), params))
        statement = sql.strip().split()[0].upper()
        if statement == "INSERT":
            name, content_type, data = params
            self.db.rows[name] = (content_type, bytes(getattr(data, "adapted", data)))
        elif statement == "DELETE":
            self.rowcount = 1 if self.db.rows.pop(params[0], None) else 0
        elif statement == "SELECT":
            row = self.db.rows.get(params[0])
            column = sql.split()[1]
            if row is None:
                self._row = None
            elif column == "data":
                self._row = (memoryview(row[1]),)
            elif column == "content_type":
                self._row = (row[0],)
            else:
                self._row = (1,)

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, db):
        self.db = db

    def cursor(self, **kwargs):
        return FakeCursor(self.db)

    def commit(self):
        self.db.commits += 1


class FakeDBManager:
    def __init__(self):
        self.rows = {}
        self.executed = []
        self.commits = 0
        self.fail = False

    @contextmanager
    def get_connection(self):
        yield FakeConnection(self)


@pytest.fixture
def local(tmp_path):
    return LocalBlobStore(tmp_path / "blobs", public_base_url="http://lf.test/")


@pytest.fixture
def db():
    return FakeDBManager()


@pytest.fixture
def pg(db):
    return PostgresBlobStore(db, public_base_url="http://lf.test")


@pytest.mark.parametrize("filename, expected", [
    ("my photo.jpg", "abc-my_photo.jpg"),
    ("../../etc/passwd", "abc-passwd"),
    (None, "abc-image"),
    ("", "abc-image"),
    (".hidden", "abc-hidden"),
    ("fünf.png", "abc-fnf.png"),
])
def test_make_blob_name(filename, expected):
    assert make_blob_name("abc", filename) == expected


def test_local_put_get_delete(local):
    url = local.put("abc-bag.png", b"png bytes", "image/png")

    assert url == "http://lf.test/images/abc-bag.png"
    assert local.owns(url)
    assert local.exists(url)
    assert local.get(url) == b"png bytes"
    assert local.get("abc-bag.png") == b"png bytes"
    assert local.content_type(url) == "image/png"

    local.delete(url)
    assert not local.exists(url)
    with pytest.raises(NotFoundError):
        local.get(url)
    with pytest.raises(NotFoundError):
        local.delete(url)


def test_local_put_leaves_no_partial_files(local):
    local.put("abc-bag.jpg", b"data")
    assert [p.name for p in local.root.iterdir()] == ["abc-bag.jpg"]


def test_failed_put_removes_partial_file(local, monkeypatch):
    def broken_replace(src, dst):
        raise OSError("No space left on device")
    monkeypatch.setattr("lostfound.blob_store.os.replace", broken_replace)

    with pytest.raises(BlobStoreError):
        local.put("abc-bag.jpg", b"data")
    assert list(local.root.iterdir()) == []


@pytest.mark.parametrize("bad", ["..", "http://lf.test/images/..%2Fsecret", "http://lf.test/images/a%2Fb", "a b"])
def test_unsafe_names_are_rejected(local, bad):
    with pytest.raises(ValidationError):
        local.get(bad)


def test_foreign_urls_are_not_owned(local):
    assert not local.owns("https://elsewhere.example/images/abc-bag.png")


def test_postgres_round_trip(pg, db):
    url = pg.put("abc-bag.png", b"\x89PNG", "image/png")

    assert url == "http://lf.test/images/abc-bag.png"
    assert pg.get(url) == b"\x89PNG"
    assert pg.exists(url)
    assert pg.content_type(url) == "image/png"
    assert db.commits == 1

    pg.delete(url)
    assert not pg.exists(url)
    with pytest.raises(NotFoundError):
        pg.delete(url)
    with pytest.raises(NotFoundError):
        pg.get(url)


def test_postgres_errors_become_blob_store_errors(pg, db):
    db.fail = True
    with pytest.raises(BlobStoreError):
        pg.put("abc-bag.png", b"data")
    with pytest.raises(BlobStoreError):
        pg.get("abc-bag.png")
    with pytest.raises(BlobStoreError):
        pg.delete("abc-bag.png")


def test_postgres_default_content_type(pg):
    pg.put("abc-bag", b"data")
    assert pg.content_type("abc-bag") == "image/jpeg"
