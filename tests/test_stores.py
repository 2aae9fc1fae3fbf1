"""
Session store and metrics store tests.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import shutil
import tempfile
import unittest
from unittest.mock import patch


def sample_metrics(**overrides):
    metrics = {
        "eyeContactPercentage": 70.0,
        "moodTimeline": [
            {"timestamp": 1000, "dominantEmotion": "happy", "confidence": 0.8, "emotions": {"happy": 0.8}},
            {"timestamp": 4000, "dominantEmotion": "happy", "confidence": 0.6, "emotions": {"happy": 0.6}},
            {"timestamp": 6000, "dominantEmotion": "neutral", "confidence": 0.5, "emotions": {"neutral": 0.5}},
        ],
        "averageConfidence": 0.634,
        "responseQuality": 0.71,
        "overallEngagement": 0.804,
    }
    metrics.update(overrides)
    return metrics


class TestSessionRecords(unittest.TestCase):
    """Record construction and timestamps."""

    def test_new_record_defaults(self):
        """New records are created, unarchived and carry full configuration settings."""
        from services.session_store import new_session_record
        record = new_session_record("user-1", {"interviewer": "tech-lead"})
        self.assertEqual(record["status"], "created")
        self.assertEqual(record["candidateId"], "user-1")
        self.assertFalse(record["archived"])
        self.assertEqual(record["responses"], [])
        self.assertIn("difficulty", record["configuration"]["settings"])
        self.assertTrue(record["startedAt"].endswith("Z"))

    def test_parse_iso_variants(self):
        """Z, offset and naive timestamps parse; garbage returns None."""
        from services.session_store import parse_iso
        self.assertIsNotNone(parse_iso("2024-01-01T00:00:00.000Z"))
        self.assertIsNotNone(parse_iso("2024-01-01T00:00:00+02:00"))
        self.assertIsNotNone(parse_iso("2024-01-01"))
        self.assertIsNone(parse_iso("yesterday"))
        self.assertIsNone(parse_iso(None))


class TestInMemorySessionStore(unittest.TestCase):
    """In-memory backend."""

    def setUp(self):
        from services.session_store import InMemorySessionStore, new_session_record
        self.store = InMemorySessionStore()
        self.record = self.store.save(new_session_record("user-1"))

    def test_returns_copies(self):
        """Mutating a returned record does not change the store."""
        fetched = self.store.get(self.record["id"])
        fetched["status"] = "completed"
        self.assertEqual(self.store.get(self.record["id"])["status"], "created")

    def test_update_and_missing(self):
        """update mutates in place; unknown ids raise SessionNotFoundError."""
        from services.session_store import SessionNotFoundError
        updated = self.store.update(self.record["id"], lambda r: r.update(status="abandoned"))
        self.assertEqual(updated["status"], "abandoned")
        with self.assertRaises(SessionNotFoundError):
            self.store.update("nope", lambda r: None)

    def test_owner_listing(self):
        """Records are listed per owner and owners are enumerable."""
        from services.session_store import new_session_record
        self.store.save(new_session_record("user-2"))
        self.assertEqual(self.store.list_owners(), ["user-1", "user-2"])
        self.assertEqual(len(self.store.list_by_owner("user-1")), 1)
        self.assertEqual(len(self.store.list_all()), 2)

    def test_delete(self):
        """delete reports whether something was removed."""
        self.assertTrue(self.store.delete(self.record["id"]))
        self.assertFalse(self.store.delete(self.record["id"]))


class TestJsonFileSessionStore(unittest.TestCase):
    """JSON file backend."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "sessions.json")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_persists_across_instances(self):
        """Records written by one store are loaded by the next."""
        from services.session_store import JsonFileSessionStore, new_session_record
        store = JsonFileSessionStore(self.path)
        record = store.save(new_session_record("user-1"))
        store.update(record["id"], lambda r: r.update(status="abandoned"))
        reloaded = JsonFileSessionStore(self.path)
        self.assertEqual(reloaded.get(record["id"])["status"], "abandoned")
        with open(self.path, encoding="utf-8") as f:
            self.assertIsInstance(json.load(f), list)

    def test_corrupt_file_raises_storage_error(self):
        """An unreadable store file raises StorageError."""
        from services.session_store import JsonFileSessionStore, StorageError
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(StorageError):
            JsonFileSessionStore(self.path)

    def test_failed_write_rolls_back(self):
        """When the write fails the in-memory state is left unchanged."""
        from services.session_store import JsonFileSessionStore, StorageError, new_session_record
        store = JsonFileSessionStore(self.path)
        record = store.save(new_session_record("user-1"))
        with patch("services.session_store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StorageError):
                store.update(record["id"], lambda r: r.update(status="abandoned"))
        self.assertEqual(store.get(record["id"])["status"], "created")
        self.assertEqual([n for n in os.listdir(self.tmpdir) if n.endswith(".tmp")], [])


class TestMetricsStore(unittest.TestCase):
    """Metrics persistence boundary."""

    def setUp(self):
        from services.metrics_store import MetricsStore
        self.store = MetricsStore()

    def test_store_and_get(self):
        """A complete payload is stored and read back."""
        record = self.store.store("s1", sample_metrics(), user_id="user-1")
        self.assertEqual(record["userId"], "user-1")
        self.assertEqual(self.store.get("s1")["metrics"]["eyeContactPercentage"], 70.0)

    def test_missing_fields_rejected(self):
        """Payloads without every metrics field raise ValueError naming them."""
        payload = sample_metrics()
        del payload["responseQuality"]
        with self.assertRaises(ValueError) as ctx:
            self.store.store("s1", payload)
        self.assertIn("responseQuality", str(ctx.exception))

    def test_update_accepts_known_fields_only(self):
        """MetricsUpdate rejects unknown keys and merges known ones."""
        from services.metrics_store import MetricsUpdate
        self.store.store("s1", sample_metrics())
        with self.assertRaises(ValueError):
            MetricsUpdate.from_dict({"eyeContact": 10})
        updated = self.store.update("s1", MetricsUpdate.from_dict({"eyeContactPercentage": 80}))
        self.assertEqual(updated["metrics"]["eyeContactPercentage"], 80.0)
        self.assertEqual(updated["metrics"]["responseQuality"], 0.71)

    def test_update_requires_metrics_update(self):
        """Plain dicts are not accepted as updates."""
        self.store.store("s1", sample_metrics())
        with self.assertRaises(TypeError):
            self.store.update("s1", {"eyeContactPercentage": 80})

    def test_update_missing_session(self):
        """Updating unknown metrics raises MetricsNotFoundError."""
        from services.metrics_store import MetricsNotFoundError, MetricsUpdate
        with self.assertRaises(MetricsNotFoundError):
            self.store.update("nope", MetricsUpdate(eye_contact_percentage=1.0))

    def test_metrics_csv(self):
        """CSV has a Metric,Value section and a mood timeline section."""
        from services.metrics_store import metrics_to_csv
        lines = metrics_to_csv(sample_metrics()).split("\n")
        self.assertEqual(lines[0], "Metric,Value")
        self.assertEqual(lines[1], "Eye Contact Percentage,70.0")
        self.assertIn("Timestamp,Dominant Emotion,Confidence", lines)
        self.assertIn("1970-01-01T00:00:01.000Z,happy,0.8", lines)

    def test_summary(self):
        """Summary rounds percentages and picks the most frequent mood."""
        from services.metrics_store import summarize_metrics
        summary = summarize_metrics("s1", sample_metrics())
        self.assertEqual(summary["eyeContactPercentage"], 70)
        self.assertEqual(summary["averageConfidence"], 63)
        self.assertEqual(summary["overallEngagement"], 80)
        self.assertEqual(summary["dominantMood"], "happy")
        self.assertEqual(summary["totalDataPoints"], 3)
        self.assertEqual(summary["sessionDuration"], 5)


if __name__ == "__main__":
    unittest.main()
