import io
import json
import unittest
from datetime import date
from unittest.mock import MagicMock, patch

import pandas as pd
import requests

from ai_extractor import (
    ExtractionError,
    ExtractionValidationError,
    JobExtractor,
    build_prompt,
    parse_model_reply,
    spreadsheet_to_text,
)


def _gemini_response(status_code=200, text=None, body=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = body
    resp.json.return_value = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return resp


REPLY = json.dumps([{"date": "1/9/2026", "lot_number": 226552, "company": "NORTHERN SS", "address": "851 MOUNT PLEASANT RD"}])


class ParseReplyTests(unittest.TestCase):
    def test_strips_fences_and_normalizes_fields(self):
        jobs = parse_model_reply(f"```json\n{REPLY}\n```")
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0]["lot_number"], "226552")
        self.assertEqual(jobs[0]["company_name"], "NORTHERN SS")
        self.assertIsNone(jobs[0]["contact_name"])

    def test_finds_array_inside_prose(self):
        jobs = parse_model_reply(f"Here are the jobs: {REPLY} Hope that helps")
        self.assertEqual(jobs[0]["address"], "851 MOUNT PLEASANT RD")

    def test_single_object_is_wrapped(self):
        jobs = parse_model_reply('{"date": "1/9/2026", "assets": ["desktops - 3", "monitors - 2"]}')
        self.assertEqual(jobs[0]["assets"], "desktops - 3, monitors - 2")

    def test_garbage_raises(self):
        with self.assertRaises(ExtractionError):
            parse_model_reply("I could not find any jobs.")

    def test_prompt_carries_today_and_truncates(self):
        prompt = build_prompt("x" * 40000, date(2026, 1, 9))
        self.assertIn('use "1/9/2026" as the date', prompt)
        self.assertNotIn("x" * 30001, prompt)


class SpreadsheetTests(unittest.TestCase):
    def test_csv_rows_are_flattened(self):
        data = b"Date,Lot,Company\n1/9/2026,226552,NORTHERN SS\n,,\n1/10/2026,226553,ACME\n"
        text = spreadsheet_to_text(data, "jobs.csv")
        lines = text.splitlines()
        self.assertEqual(lines[0], "Date | Lot | Company")
        self.assertEqual(lines[1], "1/9/2026 | 226552 | NORTHERN SS")
        self.assertEqual(len(lines), 3)

    def test_xlsx_rows_are_flattened(self):
        buffer = io.BytesIO()
        pd.DataFrame([{"Date": "1/9/2026", "Company": "ACME"}]).to_excel(buffer, index=False, engine="openpyxl")
        text = spreadsheet_to_text(buffer.getvalue(), "jobs.xlsx")
        self.assertIn("1/9/2026 | ACME", text)

    def test_header_only_sheet_is_rejected(self):
        with self.assertRaises(ExtractionValidationError):
            spreadsheet_to_text(b"Date,Lot\n", "empty.csv")


class JobExtractorTests(unittest.TestCase):
    def setUp(self):
        self.extractor = JobExtractor("test-key", ["model-a", "model-b"], api_versions=("v1beta",), attempts_per_model=2)

    def test_empty_text_is_a_validation_error(self):
        with self.assertRaises(ExtractionValidationError):
            self.extractor.extract("   ")

    def test_missing_key_is_a_validation_error(self):
        with self.assertRaises(ExtractionValidationError):
            JobExtractor("", ["model-a"]).extract("some text")

    def test_candidate_order(self):
        extractor = JobExtractor("k", ["a", "b"])
        self.assertEqual(
            [(m, v) for m, v, _ in extractor.candidate_endpoints()],
            [("a", "v1beta"), ("a", "v1"), ("b", "v1beta"), ("b", "v1")],
        )

    @patch("ai_extractor.requests.post")
    def test_falls_back_to_next_model_on_not_found(self, mock_post):
        mock_post.side_effect = [
            _gemini_response(status_code=404, body="model not found"),
            _gemini_response(text=REPLY),
        ]
        jobs = self.extractor.extract("1/9/2026 226552 NORTHERN SS", today=date(2026, 1, 9))

        self.assertEqual(len(jobs), 1)
        self.assertEqual(mock_post.call_count, 2)
        self.assertIn("model-b:generateContent", mock_post.call_args.args[0])
        self.assertEqual(mock_post.call_args.kwargs["headers"]["x-goog-api-key"], "test-key")

    @patch("ai_extractor.requests.post")
    def test_retries_same_model_on_retryable_status(self, mock_post):
        mock_post.side_effect = [
            _gemini_response(status_code=503, body="overloaded"),
            _gemini_response(text=REPLY),
        ]
        self.extractor.extract("text")
        urls = [c.args[0] for c in mock_post.call_args_list]
        self.assertTrue(all("model-a" in url for url in urls))

    @patch("ai_extractor.requests.post")
    def test_unparsable_reply_moves_to_next_model(self, mock_post):
        mock_post.side_effect = [
            _gemini_response(text="no jobs here"),
            _gemini_response(text=REPLY),
        ]
        jobs = self.extractor.extract("text")
        self.assertEqual(jobs[0]["lot_number"], "226552")

    @patch("ai_extractor.requests.post")
    def test_all_candidates_failing_raises(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(ExtractionError) as ctx:
            self.extractor.extract("text")
        self.assertIn("model-b", str(ctx.exception))
        self.assertEqual(mock_post.call_count, 4)


if __name__ == "__main__":
    unittest.main()
