"""
LLM-backed report field extraction and one-line summaries.

Talks to an OpenAI-compatible chat completions endpoint over HTTP.
"""
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import requests

from errors import ExtractionError, ReportInputError, SummaryError

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert at extracting structured information from crime reports. "
    "Always respond with valid JSON only, no additional text."
)

SUMMARY_SYSTEM_PROMPT = (
    "You are a police report summarization assistant. Generate concise, professional, "
    "one-line summaries of crime reports. Focus on facts: what, where, when. Keep summaries "
    "under 80 characters and appropriate for public viewing."
)

STRING_FIELDS = (
    "location",
    "timeOfIncident",
    "description",
    "peopleInvolved",
    "appearance",
    "contactInfo",
    "postcode",
)
BOOLEAN_FIELDS = ("hasVehicle", "hasWeapon")


@dataclass
class ExtractionResult:
    fields: Dict
    raw_transcript: str
    processing_notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "success": True,
            "extractedFields": self.fields,
            "rawTranscript": self.raw_transcript,
            "processingNotes": list(self.processing_notes),
        }


def build_extraction_prompt(transcript: str) -> str:
    return f"""Parse this crime report transcript and extract structured information:

"{transcript}"

Extract the following information if mentioned in the transcript:
- LOCATION: Where did this happen? (address, postcode, area, landmarks, street names)
- TIME: When did this happen? (date, time, timeframe like "yesterday", "this morning")
- DESCRIPTION: What happened? (main incident description, what crime occurred)
- PEOPLE: Who was involved? (names, ages, relationships, "the suspect", "a man", etc.)
- APPEARANCE: Physical descriptions of people (height, clothing, hair, age, gender)
- CONTACT: Phone numbers, social media accounts, email addresses, or other contact details mentioned
- VEHICLE: Any mention of cars, bikes, motorcycles, etc. (respond with true/false)
- WEAPON: Any mention of weapons, knives, guns, etc. (respond with true/false)
- POSTCODE: The postcode if one is stated or can be determined from the location

Important rules:
- Only extract information that is explicitly mentioned in the transcript
- If information isn't clear or mentioned, mark that field as null
- For VEHICLE and WEAPON, respond with true only if explicitly mentioned
- Keep original wording where possible
- If multiple people are mentioned, include all relevant details

Respond with valid JSON in exactly this format:
{{
  "location": "extracted location or null",
  "timeOfIncident": "extracted time or null",
  "description": "extracted description or null",
  "peopleInvolved": "extracted people details or null",
  "appearance": "extracted appearance details or null",
  "contactInfo": "extracted contact info or null",
  "hasVehicle": true or false,
  "hasWeapon": true or false,
  "postcode": "postcode or null"
}}"""


def build_summary_prompt(report: Dict) -> str:
    location = report.get("location_hint") or report.get("postcode") or ""
    return f"""Generate a concise, one-line summary of this crime report. Focus on the key facts: what happened, where, and when. Keep it under 80 characters and professional.

Report Details:
- Type: {report.get("crime_type") or ""}
- Location: {location}
- Time: {report.get("time_description") or ""}
- Description: {report.get("raw_text") or ""}
- People involved: {report.get("people_description") or ""}
- Vehicle involved: {"Yes" if report.get("has_vehicle") else "No"}
- Weapon involved: {"Yes" if report.get("has_weapon") else "No"}

Generate a brief, factual summary suitable for a crime report dashboard:"""


def validate_extracted_shape(data: object) -> Dict:
    """Check the parsed model output looks like the extraction schema.

    Missing keys become None ("not mentioned"); wrong types are rejected.
    """
    if not isinstance(data, dict):
        raise ExtractionError("AI parser returned JSON that is not an object")

    problems = []
    fields: Dict = {}
    for key in STRING_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            problems.append(f"'{key}' should be a string or null")
        fields[key] = (value.strip() or None) if isinstance(value, str) else None
    for key in BOOLEAN_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, bool):
            problems.append(f"'{key}' should be true, false or null")
        fields[key] = value if isinstance(value, bool) else None

    if problems:
        raise ExtractionError("AI parser returned an unexpected shape: " + "; ".join(problems))
    return fields


class LLMClient:
    """Minimal chat-completions client."""

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.openai.com/v1", timeout: float = 30):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def chat(self, model: str, messages: List[Dict], temperature: float, max_tokens: int) -> str:
        """Return the first choice's message content (may be empty)."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        resp = requests.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=headers,
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise requests.exceptions.HTTPError(
                f"Chat completion failed: {resp.status_code} - {resp.text[:200]}",
                response=resp,
            )
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("Chat completion response is not a JSON object")
        choices = data.get("choices") or []
        if not choices:
            return ""
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise ValueError("Unexpected chat completion choices")
        message = choices[0].get("message") or {}
        if not isinstance(message, dict):
            raise ValueError("Unexpected chat completion message")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ValueError("Chat completion content is not text")
        return content


def extract_report_fields(client: LLMClient, transcript: Optional[str], model: str = "gpt-4o-mini") -> ExtractionResult:
    """Turn a free-text or transcribed report into structured fields.

    Anything other than a well-formed JSON object of the expected shape is a
    hard failure: the caller can't tell a parse error from "not mentioned".
    """
    text = (transcript or "").strip()
    if not text:
        raise ReportInputError("Transcript is required")

    logger.info(f"Parsing transcript: {text[:100]}...")
    try:
        response_text = client.chat(
            model=model,
            messages=[
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": build_extraction_prompt(text)},
            ],
            temperature=0.1,
            max_tokens=1000,
        )
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.error(f"Extraction request failed: {e}")
        raise ExtractionError(f"Extraction request failed: {e}") from e

    if not response_text.strip():
        raise ExtractionError("No response from AI parser")
    logger.debug(f"Raw extraction response: {response_text}")

    try:
        parsed = json.loads(response_text)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse AI JSON response: {e}")
        raise ExtractionError("Invalid JSON response from AI parser") from e

    fields = validate_extracted_shape(parsed)
    return ExtractionResult(
        fields=fields,
        raw_transcript=text,
        processing_notes=[f"Processed with {model}"],
    )


def generate_summary(client: LLMClient, report: Dict, model: str = "gpt-4o-mini") -> str:
    """One-line factual summary of a report."""
    if not report:
        raise ReportInputError("No report data provided")
    try:
        content = client.chat(
            model=model,
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": build_summary_prompt(report)},
            ],
            temperature=0.3,
            max_tokens=100,
        )
    except (requests.exceptions.RequestException, ValueError) as e:
        raise SummaryError(f"Failed to generate summary: {e}") from e

    lines = [line.strip() for line in content.strip().splitlines() if line.strip()]
    if not lines:
        raise SummaryError("Failed to generate summary")
    return lines[0].strip('"')


class SummaryWorker:
    """Back-fills report summaries on a background thread.

    Summaries are best effort: a failure is logged and the report simply
    stays without one.
    """

    def __init__(self, store, summarize: Callable[[Dict], str], maxsize: int = 500):
        self.store = store
        self.summarize = summarize
        self.tasks: "queue.Queue[Optional[Dict]]" = queue.Queue(maxsize=maxsize)
        self.thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        if self.thread and self.thread.is_alive():
            return
        self.thread = threading.Thread(target=self._run, name="SummaryWorker", daemon=True)
        self.thread.start()
        logger.info("Summary worker started")

    def stop(self, timeout: float = 5) -> None:
        if not self.thread:
            return
        try:
            self.tasks.put_nowait(None)
        except queue.Full:
            logger.warning("Summary queue is full; worker will stop after draining")
        self.thread.join(timeout=timeout)
        self.thread = None

    def enqueue(self, report: Dict) -> bool:
        try:
            self.tasks.put_nowait(dict(report))
            return True
        except queue.Full:
            logger.warning("Summary queue is full; dropping task")
            return False

    def process(self, report: Dict) -> Optional[str]:
        """Summarize one report and store the result. Returns the summary or None."""
        report_id = report.get("id")
        try:
            summary = self.summarize(report)
            if not self.store.update_summary(report_id, summary):
                logger.info(f"Report {report_id} already has a summary; keeping it")
            self.processed += 1
            return summary
        except Exception as e:
            self.failed += 1
            self.last_error = str(e)
            logger.warning(f"Summary generation failed for report {report_id}: {e}")
            return None

    def _run(self) -> None:
        while True:
            task = self.tasks.get()
            try:
                if task is None:
                    return
                self.process(task)
            finally:
                self.tasks.task_done()

    def get_status(self) -> Dict:
        return {
            "running": bool(self.thread and self.thread.is_alive()),
            "queued": self.tasks.qsize(),
            "processed": self.processed,
            "failed": self.failed,
            "last_error": self.last_error,
        }
