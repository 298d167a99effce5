#!/usr/bin/env python3

import asyncio
import pytest

from conftest import InMemoryDocumentBackend, FakeStorageClient, make_object_store
from errors import BackendError, InvalidPathError
from models import FileMetadataRecord, Scope
from object_store import (
    encode_content,
    decode_content,
    newest_record,
    FOLDER_INDEX_PATH,
    JSON_CONTENT_TYPE,
    TEXT_CONTENT_TYPE,
    BINARY_CONTENT_TYPE,
)


class TestContentCodec:

    def test_dict_becomes_json(self):
        body, content_type = encode_content({"a": 1})
        assert content_type == JSON_CONTENT_TYPE
        assert decode_content(body, content_type) == {"a": 1}

    def test_json_text_is_detected(self):
        _, content_type = encode_content('{"a": 1}')
        assert content_type == JSON_CONTENT_TYPE

    def test_plain_text(self):
        body, content_type = encode_content("hello")
        assert content_type == TEXT_CONTENT_TYPE
        assert decode_content(body, content_type) == "hello"

    def test_bytes_stay_binary(self):
        body, content_type = encode_content(b"\x00\x01")
        assert content_type == BINARY_CONTENT_TYPE
        assert decode_content(body, content_type) == b"\x00\x01"

    def test_explicit_content_type_wins(self):
        _, content_type = encode_content("<p>hi</p>", "text/html")
        assert content_type == "text/html"

    def test_unsupported_content_raises(self):
        with pytest.raises(TypeError):
            encode_content(42)


class TestNewestRecord:

    def test_picks_latest_update(self):
        older = FileMetadataRecord(path="a/b", name="b", folder="a", updated="2024-01-01T00:00:00Z")
        newer = FileMetadataRecord(path="a/b", name="b", folder="a", updated="2024-02-01T00:00:00Z")

        assert newest_record([newer, older]) is newer
        assert newest_record([]) is None


class TestUploadDownload:

    def setup_method(self):
        self.backend = InMemoryDocumentBackend()
        self.storage = FakeStorageClient()
        self.store = make_object_store(self.backend, self.storage)

    def test_upload_about_download_delete(self):
        record = asyncio.run(self.store.upload("docs/report.json", {"a": 1}))

        assert record.path == "docs/report.json"
        assert record.name == "report.json"
        assert record.folder == "docs"
        assert record.content_type == JSON_CONTENT_TYPE
        assert record.size == len(b'{"a": 1}')
        assert "users%2Fuser-1%2Fdocs%2Freport.json" in record.download_url
        assert "users/user-1/docs/report.json" in self.storage.objects

        about = asyncio.run(self.store.about("docs/report.json"))
        assert about["exists"] is True
        assert about["contentType"] == JSON_CONTENT_TYPE
        assert about["docId"] == record.doc_id

        assert asyncio.run(self.store.download("docs/report.json")) == {"a": 1}

        asyncio.run(self.store.delete("docs/report.json"))

        assert asyncio.run(self.store.download("docs/report.json")) is None
        assert asyncio.run(self.store.about("docs/report.json")) == {"exists": False}

    def test_record_is_stored_under_its_doc_id(self):
        record = asyncio.run(self.store.upload("notes.txt", "hello"))

        stored = self.backend.docs[f"users/user-1/files/{record.doc_id}"]
        assert stored["path"] == "notes.txt"
        assert stored["folder"] == ""

    def test_reupload_keeps_doc_id_and_time_created(self):
        first = asyncio.run(self.store.upload("docs/report.json", {"v": 1}))
        second = asyncio.run(self.store.upload("docs/report.json", {"v": 2}))

        assert second.doc_id == first.doc_id
        assert second.time_created == first.time_created
        assert second.updated > first.updated
        assert len(asyncio.run(self.store.list("docs"))) == 1
        assert asyncio.run(self.store.download("docs/report.json")) == {"v": 2}

    def test_paths_are_normalized(self):
        asyncio.run(self.store.upload("/docs//report.txt/", "x"))

        assert "users/user-1/docs/report.txt" in self.storage.objects

    def test_blank_path_is_rejected(self):
        with pytest.raises(InvalidPathError):
            asyncio.run(self.store.upload("/", "x"))

    def test_scopes_use_separate_prefixes(self):
        public = make_object_store(self.backend, self.storage, scope=Scope.PUBLIC)
        asyncio.run(public.upload("shared/readme.txt", "hi"))

        assert "apps/public/shared/readme.txt" in self.storage.objects
        assert asyncio.run(self.store.list("shared")) == []
        assert [r.path for r in asyncio.run(public.list("shared"))] == ["shared/readme.txt"]

    def test_object_outside_prefix_is_rejected(self):
        original = self.storage.upload

        async def misplaced(id_token, object_name, body, content_type):
            meta = await original(id_token, object_name, body, content_type)
            meta["name"] = "users/someone-else/docs/report.json"
            return meta

        self.storage.upload = misplaced
        with pytest.raises(BackendError):
            asyncio.run(self.store.upload("docs/report.json", "x"))

    def test_update_rewrites_record(self):
        asyncio.run(self.store.upload("docs/page.txt", "<p>hi</p>"))
        record = asyncio.run(self.store.update("docs/page.txt", {"contentType": "text/html"}))

        assert record.content_type == "text/html"
        assert asyncio.run(self.store.about("docs/page.txt"))["contentType"] == "text/html"


class TestListingAndFolders:

    def setup_method(self):
        self.backend = InMemoryDocumentBackend()
        self.storage = FakeStorageClient()
        self.store = make_object_store(self.backend, self.storage)

    def test_list_only_direct_children_sorted(self):
        for path in ("docs/b.txt", "docs/a.txt", "docs/sub/c.txt", "top.txt"):
            asyncio.run(self.store.upload(path, "x"))

        assert [r.path for r in asyncio.run(self.store.list("docs"))] == ["docs/a.txt", "docs/b.txt"]
        assert [r.path for r in asyncio.run(self.store.list(""))] == ["top.txt"]
        assert [r.path for r in asyncio.run(self.store.list("/docs/sub/"))] == ["docs/sub/c.txt"]

    def test_list_keeps_newest_duplicate(self):
        asyncio.run(self.store.upload("docs/a.txt", "x"))
        stale = {
            "path": "docs/a.txt",
            "name": "a.txt",
            "folder": "docs",
            "updated": "2020-01-01T00:00:00Z",
            "docId": "stale",
        }
        asyncio.run(self.store.documents.write("files/stale", stale))

        listed = asyncio.run(self.store.list("docs"))

        assert len(listed) == 1
        assert listed[0].doc_id != "stale"

    def test_list_skips_malformed_records(self):
        asyncio.run(self.store.upload("docs/a.txt", "x"))
        asyncio.run(self.store.documents.write("files/broken", {"folder": "docs"}))

        assert [r.path for r in asyncio.run(self.store.list("docs"))] == ["docs/a.txt"]

    def test_list_degrades_on_backend_error(self):
        self.backend.fail_with["run_query"] = BackendError(503, "unavailable")

        assert asyncio.run(self.store.list("docs")) == []

    def test_folder_index(self):
        for path in ("docs/a.txt", "docs/b.txt", "images/logo.png", "docs/sub/c.txt", "top.txt"):
            asyncio.run(self.store.upload(path, b"x"))

        assert asyncio.run(self.store.folders()) == ["docs", "docs/sub", "images"]
        assert asyncio.run(self.store.folders("docs")) == ["docs", "docs/sub"]

    def test_folder_leaves_index_with_its_last_file(self):
        asyncio.run(self.store.upload("docs/a.txt", "x"))
        asyncio.run(self.store.upload("docs/b.txt", "x"))

        asyncio.run(self.store.delete("docs/a.txt"))
        assert asyncio.run(self.store.folders()) == ["docs"]

        asyncio.run(self.store.delete("docs/b.txt"))
        assert asyncio.run(self.store.folders()) == []

    def test_folders_ignores_non_string_entries(self):
        asyncio.run(self.store.documents.write(FOLDER_INDEX_PATH, {"folders": ["docs", 3, None]}))

        assert asyncio.run(self.store.folders()) == ["docs"]


class TestDelete:

    def setup_method(self):
        self.backend = InMemoryDocumentBackend()
        self.storage = FakeStorageClient()
        self.store = make_object_store(self.backend, self.storage)

    def test_delete_after_remote_object_vanished_cleans_index(self):
        asyncio.run(self.store.upload("docs/a.txt", "x"))
        self.storage.objects.clear()

        asyncio.run(self.store.delete("docs/a.txt"))

        assert asyncio.run(self.store.list("docs")) == []
        assert asyncio.run(self.store.folders()) == []

    def test_delete_of_unknown_path_is_harmless(self):
        asyncio.run(self.store.delete("nowhere/file.txt"))

        assert asyncio.run(self.store.folders()) == []

    def test_remote_failure_leaves_index_untouched(self):
        asyncio.run(self.store.upload("docs/a.txt", "x"))
        self.storage.fail_with["delete"] = BackendError(500, "boom")

        with pytest.raises(BackendError):
            asyncio.run(self.store.delete("docs/a.txt"))

        assert [r.path for r in asyncio.run(self.store.list("docs"))] == ["docs/a.txt"]
