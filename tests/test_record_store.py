"""
Tests for store/records.py and store/jsonl.py

Covers the JSONL round trip, tolerant reads, backup path naming, the
mutators, filesystem-derived presence and the in-process writer lock.
"""
import json
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from store.jsonl import JsonlFile
from store.records import Record, RecordStore, build_backup_path
from utils.errors import InvalidInputError, RecordNotFoundError


def _touch(store: RecordStore, record: Record, data: bytes = b"x" * 32) -> Path:
    path = store.file_path(record)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


# ── JSONL log ─────────────────────────────────────────────────────────────────

class TestJsonlFile:
    def test_missing_file_reads_empty(self, tmp_path):
        assert JsonlFile(tmp_path / "none.jsonl").read_objects() == []

    def test_skips_blank_malformed_and_non_objects(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_text('{"id": "a"}\n\n{not json\n[1, 2]\n"str"\n{"id": "b"}\n',
                        encoding="utf-8")
        assert JsonlFile(path).read_objects() == [{"id": "a"}, {"id": "b"}]

    def test_rewrite_replaces_content(self, tmp_path):
        log = JsonlFile(tmp_path / "log.jsonl")
        log.append_object({"id": "a"})
        log.rewrite_objects([{"id": "b"}, {"id": "c"}])
        assert log.read_objects() == [{"id": "b"}, {"id": "c"}]
        assert not (tmp_path / "log.jsonl.tmp").exists()

    def test_non_ascii_written_verbatim(self, tmp_path):
        log = JsonlFile(tmp_path / "log.jsonl")
        log.append_object({"title": "中文"})
        assert "中文" in log.path.read_text(encoding="utf-8")


# ── Record serialization ─────────────────────────────────────────────────────

class TestRecord:
    def test_camel_case_keys(self):
        record = Record(id="abc", title="t", page_url="https://lurl.cc/x",
                        file_url="https://cdn/x.mp4", backup_path="videos/t_abc.mp4")
        d = record.to_dict()
        assert d["pageUrl"] == "https://lurl.cc/x"
        assert d["fileUrl"] == "https://cdn/x.mp4"
        assert d["backupPath"] == "videos/t_abc.mp4"
        assert "blocked" not in d
        assert "thumbnailPath" not in d

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            Record.from_dict({"title": "no id"})

    def test_unknown_keys_survive(self):
        record = Record.from_dict({"id": "abc", "title": "t", "futureField": 1})
        assert record.to_dict()["futureField"] == 1


# ── Backup path naming ────────────────────────────────────────────────────────

class TestBuildBackupPath:
    def test_video_default_extension(self):
        assert build_backup_path("cat video", "abc", "https://cdn/v?sig=1", "video") == \
            "videos/cat_video_abc.mp4"

    def test_video_extension_from_url(self):
        assert build_backup_path("clip", "abc", "https://cdn/a/clip.WEBM?e=1", "video") == \
            "videos/clip_abc.webm"

    def test_image_default_extension(self):
        assert build_backup_path("pic", "abc", "https://cdn/p.png", "image") == \
            "images/pic_abc.jpg"

    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidInputError):
            build_backup_path("x", "abc", "https://cdn/x", "audio")

    def test_same_title_different_ids_never_collide(self):
        a = build_backup_path("same", "id1", "https://cdn/x.mp4", "video")
        b = build_backup_path("same", "id2", "https://cdn/x.mp4", "video")
        assert a != b


# ── RecordStore ───────────────────────────────────────────────────────────────

class TestRecordStore:
    def test_create_and_read_back(self, store):
        record = store.create("title", "https://lurl.cc/a", "https://cdn/a.mp4")
        assert store.read_all() == [record]
        assert record.backup_path == f"videos/title_{record.id}.mp4"
        assert record.captured_at.endswith("Z")

    def test_ids_unique_within_same_millisecond(self, store, monkeypatch):
        monkeypatch.setattr("store.records.time.time", lambda: 1_700_000_000.0)
        ids = {store.create(f"t{i}", f"https://lurl.cc/{i}", "https://cdn/x").id
               for i in range(5)}
        assert len(ids) == 5

    def test_corrupt_lines_skipped(self, store):
        store.create("good", "https://lurl.cc/a", "https://cdn/a.mp4")
        with open(store.path, "a", encoding="utf-8") as fh:
            fh.write("{broken\n")
            fh.write(json.dumps({"title": "no id"}) + "\n")
        assert [r.title for r in store.read_all()] == ["good"]

    def test_get_and_require(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        assert store.get(record.id) == record
        assert store.get("missing") is None
        with pytest.raises(RecordNotFoundError):
            store.require("missing")

    def test_find_by_page_url_hides_blocked(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        store.set_blocked(record.id)
        assert store.find_by_page_url("https://lurl.cc/a") is None
        assert store.find_by_page_url("https://lurl.cc/a", include_blocked=True).id == record.id

    def test_file_exists_tracks_disk(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        assert not store.file_exists(record)
        _touch(store, record)
        assert store.file_exists(record)

    def test_missing_records_excludes_present_and_blocked(self, store):
        present = store.create("present", "https://lurl.cc/1", "https://cdn/1")
        blocked = store.create("blocked", "https://lurl.cc/2", "https://cdn/2")
        missing = store.create("missing", "https://lurl.cc/3", "https://cdn/3")
        _touch(store, present)
        store.set_blocked(blocked.id)
        assert [r.id for r in store.missing_records()] == [missing.id]


class TestMutators:
    def test_update_file_url(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/old")
        store.update_file_url(record.id, "https://cdn/new")
        assert store.get(record.id).file_url == "https://cdn/new"

    def test_update_thumbnail(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        store.update_thumbnail(record.id, "thumbnails/a.jpg")
        assert store.get(record.id).thumbnail_path == "thumbnails/a.jpg"

    def test_votes(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        store.vote(record.id, "like")
        store.vote(record.id, "like")
        updated = store.vote(record.id, "dislike")
        assert (updated.like_count, updated.dislike_count) == (2, 1)

    def test_bad_vote_rejected(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        with pytest.raises(InvalidInputError):
            store.vote(record.id, "meh")

    def test_unblock(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        store.set_blocked(record.id, True)
        store.set_blocked(record.id, False)
        assert store.get(record.id).blocked is False

    def test_mutating_unknown_id(self, store):
        with pytest.raises(RecordNotFoundError):
            store.update_file_url("nope", "https://cdn/x")

    def test_mutation_keeps_other_records(self, store):
        a = store.create("a", "https://lurl.cc/a", "https://cdn/a")
        b = store.create("b", "https://lurl.cc/b", "https://cdn/b")
        store.vote(a.id, "like")
        assert store.get(b.id) == b

    def test_delete_removes_file(self, store):
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")
        path = _touch(store, record)
        store.delete(record.id)
        assert store.get(record.id) is None
        assert not path.exists()

    def test_concurrent_votes_not_lost(self, store):
        """Read-all/rewrite-all under the writer lock loses no updates."""
        record = store.create("t", "https://lurl.cc/a", "https://cdn/a")

        def worker():
            for _ in range(10):
                store.vote(record.id, "like")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get(record.id).like_count == 40
