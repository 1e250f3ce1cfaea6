import unittest
from unittest.mock import patch

from interviewer import logging_utils
from interviewer.logging_utils import log_important


class TestImportantLogDedupe(unittest.TestCase):
    def test_repeat_within_window_is_suppressed(self):
        with patch.object(logging_utils, "_IMPORTANT_LAST_BY_KEY", {}):
            with self.assertLogs("interviewer.IMPORTANT", level="INFO") as logs:
                log_important("audio.pending_full", dedupe_key="7", dedupe_window_s=60.0, pending_bytes=10)
                log_important("audio.pending_full", dedupe_key="7", dedupe_window_s=60.0, pending_bytes=12)
                log_important("audio.pending_full", dedupe_key="8", dedupe_window_s=60.0, pending_bytes=3)
        self.assertEqual(len(logs.output), 2)
        self.assertIn("pending_bytes=10", logs.output[0])

    def test_stale_keys_are_pruned(self):
        stale = {f"audio.pending_full|old-{i}": 1000.0 for i in range(600)}
        stale["audio.pending_full|recent"] = 9990.0
        with patch.object(logging_utils, "_IMPORTANT_LAST_BY_KEY", stale) as seen:
            with patch.object(logging_utils.time, "time", return_value=10000.0):
                with self.assertLogs("interviewer.IMPORTANT", level="INFO"):
                    log_important("audio.pending_full", dedupe_key="7", dedupe_window_s=5.0)
        self.assertEqual(set(seen), {"audio.pending_full|recent", "audio.pending_full|7"})


if __name__ == "__main__":
    unittest.main()
