import os
import tempfile
import unittest
from unittest.mock import patch

import config
from extraction import clean_text
from config import _format_env_value


class TestUtils(unittest.TestCase):
    def test_clean_text(self):
        # Test basic cleanup
        self.assertEqual(clean_text("  hello   world  "), "hello world")
        # Test null bytes
        self.assertEqual(clean_text("hello\x00world"), "hello world")
        # Test consecutive newlines
        self.assertEqual(clean_text("hello\n\n\nworld"), "hello\n\nworld")

    def test_format_env_value(self):
        self.assertEqual(_format_env_value("ANY_KEY", None), "<unset>")
        self.assertEqual(_format_env_value("ANY_KEY", ""), "<empty>")
        self.assertEqual(_format_env_value("OPENAI_API_KEY", "sk-1234567890"), "****7890")
        self.assertEqual(_format_env_value("APP_PASSWORD", "hunter2"), "****ter2")
        self.assertEqual(_format_env_value("OTHER_KEY", "sensitive"), "sensitive")
        self.assertEqual(_format_env_value("FETCH_CONCURRENCY", 8), "8")

    def test_system_instructions_default_without_path(self):
        with patch("config.SYSTEM_INSTRUCTIONS_PATH", ""):
            text, source, path = config.load_system_instructions()
        self.assertEqual(text, config.DEFAULT_SYSTEM_INSTRUCTIONS)
        self.assertEqual(source, "default")
        self.assertIsNone(path)

    def test_system_instructions_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "instructions.txt")
            with open(path, "w", encoding="utf-8") as f:
                f.write("  You answer for the finance team.\n")
            with patch("config.SYSTEM_INSTRUCTIONS_PATH", path):
                text, source, resolved = config.load_system_instructions()
        self.assertEqual(text, "You answer for the finance team.")
        self.assertEqual(source, "file")
        self.assertEqual(resolved, path)

    def test_system_instructions_missing_file_falls_back(self):
        with patch("config.SYSTEM_INSTRUCTIONS_PATH", "/nonexistent/instructions.txt"):
            text, source, _ = config.load_system_instructions()
        self.assertEqual(text, config.DEFAULT_SYSTEM_INSTRUCTIONS)
        self.assertEqual(source, "default")


if __name__ == "__main__":
    unittest.main()
