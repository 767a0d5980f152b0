"""Unit tests for the image stores and the SQLite catalog."""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import pytest

from dockhand.modules.errors import (
    ImageNotFoundError,
    InvalidNameError,
    MalformedArchiveIndexError,
    RegistryConnectionError,
)
from dockhand.modules.keepers import storage
from dockhand.modules.keepers.archiver import ImageArchiver
from dockhand.modules.keepers.stores import (
    ImageStore,
    LocalImageStore,
    RegistryImageStore,
    open_image_store,
)

REPO = "acme/app"


@pytest.fixture
def local_store(tmp_path, scratch_dir):
    return LocalImageStore(str(tmp_path / "store"), ImageArchiver(str(scratch_dir)))


# ---------------------------------------------------------------------------
# Test: catalog
# ---------------------------------------------------------------------------


class TestCatalog:
    def test_init_creates_directory_and_table(self, tmp_path):
        root = tmp_path / "new" / "store"
        conn = storage.init_database(str(root))
        try:
            assert (root / storage.CATALOG_FILENAME).exists()
            assert storage.list_image_records(conn) == []
        finally:
            conn.close()

    def test_save_get_replace_delete(self, tmp_path):
        conn = storage.init_database(str(tmp_path))
        try:
            storage.save_image_record(conn, REPO, "v1", "id1", "/a.tar", 2, 100)
            storage.save_image_record(conn, REPO, "v1", "id2", "/b.tar", 3, 200)
            record = storage.get_image_record(conn, REPO, "v1")
            assert record["image_id"] == "id2"
            assert record["layer_count"] == 3
            assert len(storage.list_image_records(conn, REPO)) == 1

            assert storage.delete_image_record(conn, REPO, "v1") is True
            assert storage.delete_image_record(conn, REPO, "v1") is False
            assert storage.get_image_record(conn, REPO, "v1") is None
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Test: LocalImageStore
# ---------------------------------------------------------------------------


class TestLocalImageStore:
    def test_store_then_exists_and_get(self, local_store, two_layer_archive, tmp_path):
        assert local_store.image_exists(REPO, "v1") is False
        local_store.store_image(REPO, "v1", two_layer_archive)
        assert local_store.image_exists(REPO, "v1") is True

        out = local_store.get_image(REPO, "v1", tmp_path / "copy.tar")
        assert Path(out).read_bytes() == two_layer_archive.read_bytes()

    def test_catalog_row(self, local_store, two_layer_archive):
        local_store.store_image(REPO, "v1", two_layer_archive)
        (record,) = local_store.list_images(REPO)
        assert record["image_id"] == "f" * 64
        assert record["layer_count"] == 2
        assert record["archive_size"] == two_layer_archive.stat().st_size
        assert record["archive_path"].endswith(os.path.join("_images", "acme", "app", "_tags", "v1.tar"))

    def test_save_image_returns_temp_copy(self, local_store, two_layer_archive, scratch_dir):
        local_store.store_image(REPO, "v1", two_layer_archive)
        path = local_store.save_image(REPO, "v1")
        try:
            assert os.path.dirname(path) == str(scratch_dir)
            assert Path(path).read_bytes() == two_layer_archive.read_bytes()
        finally:
            os.remove(path)

    def test_save_image_missing_leaves_no_temp_file(self, local_store, scratch_dir):
        with pytest.raises(ImageNotFoundError):
            local_store.save_image(REPO, "v1")
        assert list(scratch_dir.iterdir()) == []

    def test_bad_archive_not_stored(self, local_store, make_archive):
        path = make_archive({}, [("a" * 64, b"data")], name="bad.tar")
        with pytest.raises(MalformedArchiveIndexError):
            local_store.store_image(REPO, "v1", path)
        assert local_store.image_exists(REPO, "v1") is False

    def test_names_differing_only_by_separator_kept_apart(self, local_store, make_archive, tmp_path):
        first = make_archive({"a/b_c": {"v1": "1" * 64}}, [("a" * 64, b"first image")], name="first.tar")
        second = make_archive({"a_b/c": {"v1": "2" * 64}}, [("b" * 64, b"second image")], name="second.tar")
        local_store.store_image("a/b_c", "v1", first)
        local_store.store_image("a_b/c", "v1", second)

        out = local_store.get_image("a/b_c", "v1", tmp_path / "out.tar")
        assert Path(out).read_bytes() == first.read_bytes()

        local_store.delete_image("a_b/c", "v1")
        assert local_store.image_exists("a/b_c", "v1") is True

    def test_repo_component_shaped_like_tag_file(self, local_store, make_archive):
        first = make_archive({"acme": {"v1.tar": "1" * 64}}, [("a" * 64, b"tagged")], name="first.tar")
        second = make_archive({"acme/v1.tar": {"v1": "2" * 64}}, [("b" * 64, b"nested")], name="second.tar")
        local_store.store_image("acme", "v1.tar", first)
        local_store.store_image("acme/v1.tar", "v1", second)
        assert local_store.image_exists("acme", "v1.tar") is True
        assert local_store.image_exists("acme/v1.tar", "v1") is True

    def test_delete(self, local_store, two_layer_archive):
        local_store.store_image(REPO, "v1", two_layer_archive)
        local_store.delete_image(REPO, "v1")
        assert local_store.image_exists(REPO, "v1") is False
        with pytest.raises(ImageNotFoundError):
            local_store.delete_image(REPO, "v1")

    def test_get_missing(self, local_store, tmp_path):
        with pytest.raises(ImageNotFoundError) as exc:
            local_store.get_image(REPO, "v1", tmp_path / "x.tar")
        assert "acme/app:v1" in str(exc.value)

    def test_names_validated(self, local_store, two_layer_archive):
        with pytest.raises(InvalidNameError):
            local_store.store_image("Acme", "v1", two_layer_archive)


# ---------------------------------------------------------------------------
# Test: RegistryImageStore / open_image_store
# ---------------------------------------------------------------------------


class TestRegistryImageStore:
    def test_round_trip_through_registry(self, client, fake_registry, two_layer_archive, tmp_path, tar_entries):
        store = RegistryImageStore(client)
        assert store.image_exists(REPO, "v1") is False
        store.store_image(REPO, "v1", two_layer_archive)
        assert store.image_exists(REPO, "v1") is True

        path = store.save_image(REPO, "v1")
        try:
            contents = [data for _, data in tar_entries(path)]
        finally:
            os.remove(path)
        assert contents == [b"first layer content", b"second layer content"]

        store.delete_image(REPO, "v1")
        assert store.image_exists(REPO, "v1") is False


class TestOpenImageStore:
    def test_registry_when_host_set(self, config, fake_registry):
        with open_image_store(config) as store:
            assert isinstance(store, RegistryImageStore)
        assert fake_registry.methods() == [("GET", "/v2/")]

    def test_local_when_no_host(self, config, fake_registry):
        store = open_image_store(replace(config, host=""))
        assert isinstance(store, LocalImageStore)
        assert store.root == config.store_dir
        assert fake_registry.calls == []

    def test_unreachable_registry(self, config, fake_registry):
        fake_registry.fail("GET", "ping", 502)
        with pytest.raises(RegistryConnectionError):
            open_image_store(config)

    def test_store_is_abstract(self):
        with pytest.raises(TypeError):
            ImageStore()
