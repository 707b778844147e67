import json
import unittest
from unittest import mock

import requests

from ai_extraction import (
    LLMClient,
    SummaryWorker,
    extract_report_fields,
    generate_summary,
    validate_extracted_shape,
)
from errors import ExtractionError, ReportInputError, SummaryError


def chat_response(content, status_code=200):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.text = "" if status_code == 200 else "boom"
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


GOOD_FIELDS = {
    "location": "Fulwood Road, S10 5GG",
    "timeOfIncident": "yesterday evening",
    "description": "Two men broke into a car",
    "peopleInvolved": "two men",
    "appearance": None,
    "contactInfo": None,
    "hasVehicle": True,
    "hasWeapon": False,
    "postcode": "S10 5GG",
}


class TestExtractReportFields(unittest.TestCase):
    def setUp(self):
        self.client = LLMClient(api_key="sk-test", base_url="https://llm.test/v1", timeout=3)

    @mock.patch("ai_extraction.requests.post")
    def test_parses_well_formed_json(self, mock_post):
        mock_post.return_value = chat_response(json.dumps(GOOD_FIELDS))
        result = extract_report_fields(self.client, "  Two men broke into a car on Fulwood Road  ")
        self.assertEqual(result.fields["location"], "Fulwood Road, S10 5GG")
        self.assertIs(result.fields["hasVehicle"], True)
        self.assertIsNone(result.fields["appearance"])
        self.assertEqual(result.raw_transcript, "Two men broke into a car on Fulwood Road")

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://llm.test/v1/chat/completions")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(kwargs["timeout"], 3)
        self.assertEqual(kwargs["json"]["messages"][0]["role"], "system")

    @mock.patch("ai_extraction.requests.post")
    def test_missing_keys_mean_not_mentioned(self, mock_post):
        mock_post.return_value = chat_response('{"description": "A theft"}')
        result = extract_report_fields(self.client, "A theft")
        self.assertEqual(result.fields["description"], "A theft")
        self.assertIsNone(result.fields["location"])
        self.assertIsNone(result.fields["hasWeapon"])

    @mock.patch("ai_extraction.requests.post")
    def test_invalid_json_is_a_hard_failure(self, mock_post):
        mock_post.return_value = chat_response("Sure! Here is the JSON: {location: ...}")
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

    @mock.patch("ai_extraction.requests.post")
    def test_shape_mismatch_is_a_hard_failure(self, mock_post):
        bad = dict(GOOD_FIELDS, hasVehicle="yes")
        mock_post.return_value = chat_response(json.dumps(bad))
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

        mock_post.return_value = chat_response(json.dumps(["not", "an", "object"]))
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

    @mock.patch("ai_extraction.requests.post")
    def test_empty_response_is_a_hard_failure(self, mock_post):
        mock_post.return_value = chat_response("")
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

    @mock.patch("ai_extraction.requests.post")
    def test_http_and_network_errors_surface(self, mock_post):
        mock_post.return_value = chat_response("{}", status_code=500)
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

        mock_post.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

    @mock.patch("ai_extraction.requests.post")
    def test_malformed_completion_is_a_hard_failure(self, mock_post):
        bodies = [
            ["not", "an", "object"],
            {"choices": "nope"},
            {"choices": ["text"]},
            {"choices": [{"message": "text"}]},
            {"choices": [{"message": {"content": {"location": "S10"}}}]},
        ]
        for body in bodies:
            mock_post.return_value = mock.Mock(status_code=200, text="")
            mock_post.return_value.json.return_value = body
            with self.subTest(body=body):
                with self.assertRaises(ExtractionError):
                    extract_report_fields(self.client, "something happened")

    @mock.patch("ai_extraction.requests.post")
    def test_non_json_completion_is_a_hard_failure(self, mock_post):
        mock_post.return_value = mock.Mock(status_code=200, text="<html>")
        mock_post.return_value.json.side_effect = ValueError("Expecting value")
        with self.assertRaises(ExtractionError):
            extract_report_fields(self.client, "something happened")

    @mock.patch("ai_extraction.requests.post")
    def test_empty_transcript_rejected_without_network(self, mock_post):
        with self.assertRaises(ReportInputError):
            extract_report_fields(self.client, "   ")
        mock_post.assert_not_called()

    def test_validate_shape_blanks_become_none(self):
        fields = validate_extracted_shape({"location": "  ", "hasWeapon": None})
        self.assertIsNone(fields["location"])
        self.assertIsNone(fields["hasWeapon"])


class TestGenerateSummary(unittest.TestCase):
    def setUp(self):
        self.client = LLMClient(api_key="sk-test")
        self.report = {
            "id": "r1",
            "raw_text": "Bike stolen from rack",
            "postcode": "S10 5GG",
            "crime_type": "theft",
            "has_vehicle": False,
        }

    @mock.patch("ai_extraction.requests.post")
    def test_returns_first_line(self, mock_post):
        mock_post.return_value = chat_response('"Bike stolen from rack near S10 5GG"\nExtra commentary')
        self.assertEqual(generate_summary(self.client, self.report), "Bike stolen from rack near S10 5GG")
        prompt = mock_post.call_args[1]["json"]["messages"][1]["content"]
        self.assertIn("Location: S10 5GG", prompt)
        self.assertIn("Vehicle involved: No", prompt)

    @mock.patch("ai_extraction.requests.post")
    def test_empty_summary_is_an_error(self, mock_post):
        mock_post.return_value = chat_response("   ")
        with self.assertRaises(SummaryError):
            generate_summary(self.client, self.report)

    @mock.patch("ai_extraction.requests.post")
    def test_network_failure_is_an_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError()
        with self.assertRaises(SummaryError):
            generate_summary(self.client, self.report)

    @mock.patch("ai_extraction.requests.post")
    def test_malformed_completion_is_an_error(self, mock_post):
        mock_post.return_value = mock.Mock(status_code=200, text="")
        mock_post.return_value.json.return_value = {"choices": [None]}
        with self.assertRaises(SummaryError):
            generate_summary(self.client, self.report)


class TestSummaryWorker(unittest.TestCase):
    def test_success_updates_store(self):
        store = mock.Mock()
        store.update_summary.return_value = True
        worker = SummaryWorker(store, lambda report: "Short summary")
        self.assertEqual(worker.process({"id": "r1"}), "Short summary")
        store.update_summary.assert_called_once_with("r1", "Short summary")
        self.assertEqual(worker.get_status()["processed"], 1)

    def test_failure_is_swallowed_and_store_untouched(self):
        store = mock.Mock()

        def broken(report):
            raise SummaryError("Failed to generate summary")

        worker = SummaryWorker(store, broken)
        self.assertIsNone(worker.process({"id": "r1"}))
        store.update_summary.assert_not_called()
        self.assertEqual(worker.get_status()["failed"], 1)

    def test_background_thread_drains_queue(self):
        store = mock.Mock()
        store.update_summary.return_value = True
        worker = SummaryWorker(store, lambda report: f"Summary for {report['id']}")
        worker.start()
        try:
            self.assertTrue(worker.enqueue({"id": "r1"}))
            self.assertTrue(worker.enqueue({"id": "r2"}))
            worker.tasks.join()
        finally:
            worker.stop()
        self.assertEqual(store.update_summary.call_count, 2)

    def test_full_queue_drops_task(self):
        worker = SummaryWorker(mock.Mock(), lambda report: "x", maxsize=1)
        self.assertTrue(worker.enqueue({"id": "r1"}))
        self.assertFalse(worker.enqueue({"id": "r2"}))


if __name__ == "__main__":
    unittest.main()
