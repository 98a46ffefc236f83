from concurrent.futures import ThreadPoolExecutor

import pytest

from shipline.artifacts import ArtifactStore, content_key
from shipline.errors import ArtifactNotFound


def test_put_is_content_addressed_and_idempotent(tmp_path):
    store = ArtifactStore(tmp_path / "store")

    first = store.put(b"bundle", produced_by="build", name="site.tar")
    count = len(store)
    second = store.put(b"bundle", produced_by="other", name="copy.tar")

    assert first.key == second.key == content_key(b"bundle")
    assert len(store) == count == 1
    assert store.refcount(first.key) == 2
    assert store.get(first) == b"bundle"
    # first producer wins in the metadata
    assert store.metadata(first.key)["produced_by"] == "build"


def test_distinct_content_gets_distinct_keys(tmp_path):
    store = ArtifactStore(tmp_path / "store")

    a = store.put(b"a")
    b = store.put(b"b")

    assert a.key != b.key
    assert len(store) == 2
    assert sorted(store.iter_keys()) == sorted([a.key, b.key])


def test_get_unknown_key_raises(tmp_path):
    store = ArtifactStore(tmp_path / "store")

    with pytest.raises(ArtifactNotFound):
        store.get("0" * 64)
    assert store.refcount("0" * 64) == 0


def test_put_file_missing_is_not_found(tmp_path):
    store = ArtifactStore(tmp_path / "store")

    with pytest.raises(ArtifactNotFound, match="output file missing"):
        store.put_file(tmp_path / "nope.bin")


def test_put_file_names_artifact_after_file(tmp_path):
    store = ArtifactStore(tmp_path / "store")
    f = tmp_path / "report.txt"
    f.write_bytes(b"ok")

    ref = store.put_file(f, produced_by="test")

    assert ref.name == "report.txt"
    assert ref.produced_by == "test"
    assert store.get(ref.key) == b"ok"


def test_concurrent_puts_of_same_content_store_one_object(tmp_path):
    store = ArtifactStore(tmp_path / "store")

    with ThreadPoolExecutor(max_workers=8) as pool:
        refs = list(pool.map(lambda i: store.put(b"same bytes", produced_by=f"job{i}"), range(16)))

    assert {r.key for r in refs} == {content_key(b"same bytes")}
    assert len(store) == 1
    assert store.refcount(refs[0].key) == 16


def test_store_survives_reopen(tmp_path):
    ref = ArtifactStore(tmp_path / "store").put(b"persisted")

    reopened = ArtifactStore(tmp_path / "store")

    assert reopened.contains(ref.key)
    assert reopened.get(ref) == b"persisted"
