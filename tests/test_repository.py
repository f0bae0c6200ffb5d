"""Tests for the local analysis archive."""

from worklens.repository import LocalAnalysisArchive


class TestLocalAnalysisArchive:
    def test_memory_archive_replaces_same_key(self):
        archive = LocalAnalysisArchive()

        archive.save("s1", "batch", 0, {"analysis": {"summary": "first"}})
        archive.save("s1", "batch", 0, {"analysis": {"summary": "second"}})
        archive.save("s1", "final", 0, {"analysis": {"summary": "report"}})
        archive.save("s2", "batch", 0, {"analysis": {"summary": "other"}})

        batches = archive.for_session("s1", "batch")
        assert len(batches) == 1
        assert batches[0]["analysis"]["summary"] == "second"
        assert [entry["kind"] for entry in archive.for_session("s1")] == ["batch", "final"]
        assert archive.count() == 3

    def test_sqlite_archive_survives_reopen(self, tmp_path):
        db_path = tmp_path / "nested" / "analyses.db"
        archive = LocalAnalysisArchive(db_path)
        archive.save("s1", "batch", 1, {"analysis": {"batch_index": 1}, "cost_usd": 0.0001})
        archive.save("s1", "batch", 0, {"analysis": {"batch_index": 0}})

        reopened = LocalAnalysisArchive(db_path)
        entries = reopened.for_session("s1", "batch")

        assert [entry["batch_index"] for entry in entries] == [0, 1]
        assert entries[1]["cost_usd"] == 0.0001
        assert "stored_at" in entries[0]
        assert reopened.count() == 2
