# ai_extractor.py - Turn pasted job text or spreadsheet rows into job drafts via Gemini

import io
import json
import re
from datetime import date

import pandas as pd
import requests

from logger_config import get_logger

logger = get_logger("extract")

EXTRACTED_FIELDS = (
    "date",
    "lot_number",
    "company_name",
    "address",
    "assets",
    "comments",
    "contact_name",
    "contact_detail",
)

# Field names used by older prompt variants.
_FIELD_ALIASES = {
    "job_date": "date",
    "lot_no": "lot_number",
    "lot": "lot_number",
    "company": "company_name",
}

MAX_INPUT_CHARS = 30000
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

EXTRACTION_PROMPT = """You extract pickup/delivery jobs for a logistics company from unstructured text.

RULES:
1. Each job usually starts with a date in M/D/YYYY format.
2. Extract ONLY these fields per job:
   - date: job date (M/D/YYYY)
   - lot_number: external reference, usually a 6-digit number
   - company_name: customer company (often UPPERCASE)
   - address: full address including street, city, province and postal code
   - assets: asset descriptions with quantities, e.g. "desktops - 37, monitors - 25"
   - comments: special instructions or notes (not internal metadata)
   - contact_name: contact person
   - contact_detail: phone number and/or email
3. Do not invent data. Use null for anything not present.
4. Spreadsheet input arrives as one row per line with " | " between cells.

Return ONLY a valid JSON array, no markdown:
[
  {"date": "1/9/2026", "lot_number": "226552", "company_name": "NORTHERN SS",
   "address": "851 MOUNT PLEASANT RD, TORONTO, ON CA M4P2L5",
   "assets": "desktops - 37, chromebooks - 35", "comments": "50 boxes of misc",
   "contact_name": "Greg", "contact_detail": "416 555 1883"}
]"""


class ExtractionError(RuntimeError):
    """Every candidate model failed or the model reply could not be parsed."""


class ExtractionValidationError(ValueError):
    """The request cannot be sent (missing input or configuration)."""


def us_date(value):
    return f"{value.month}/{value.day}/{value.year}"


def build_prompt(raw_text, today):
    today_str = us_date(today)
    return (
        f"{EXTRACTION_PROMPT}\n\n"
        f"CONTEXT:\nThe current date is {today_str}.\n"
        f"RULE: If a job date is not explicitly mentioned, use \"{today_str}\" as the date. Never return null for date.\n\n"
        f"EXTRACT FROM THIS TEXT:\n\n{raw_text[:MAX_INPUT_CHARS]}"
    )


def parse_model_reply(text):
    """Strip markdown fences and parse a JSON array (a lone object is wrapped)."""
    cleaned = re.sub(r'```(?:json)?\s*', '', text or '').strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r'\[.*\]', cleaned, re.DOTALL)
        if not match:
            raise ExtractionError(f"Failed to parse AI response as JSON: {cleaned[:200]}")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ExtractionError(f"Failed to parse AI response as JSON: {exc}") from exc
    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, list):
        raise ExtractionError("AI response was not a JSON array")
    return [normalize_extracted(item) for item in parsed if isinstance(item, dict)]


def normalize_extracted(item):
    row = {}
    for key, value in item.items():
        row[_FIELD_ALIASES.get(key, key)] = value
    out = {}
    for name in EXTRACTED_FIELDS:
        value = row.get(name)
        if isinstance(value, list):
            value = ", ".join(str(v).strip() for v in value if str(v).strip())
        if value is not None and not isinstance(value, str):
            value = str(value)
        out[name] = value.strip() if isinstance(value, str) and value.strip() else None
    return out


def spreadsheet_to_text(file_bytes, filename):
    """Flatten CSV/XLSX rows into ' | '-joined lines for the prompt."""
    name = (filename or "").lower()
    buffer = io.BytesIO(file_bytes)
    try:
        if name.endswith((".xlsx", ".xlsm", ".xls")):
            df = pd.read_excel(buffer, engine="openpyxl", dtype=str)
        else:
            df = pd.read_csv(buffer, dtype=str, keep_default_na=False)
    except Exception as exc:
        raise ExtractionValidationError(f"Could not read spreadsheet '{filename}': {exc}") from exc

    df = df.fillna("")
    lines = [" | ".join(str(c) for c in df.columns)]
    for row in df.itertuples(index=False):
        cells = [str(v).strip() for v in row]
        if any(cells):
            lines.append(" | ".join(cells))
    if len(lines) <= 1:
        raise ExtractionValidationError(f"Spreadsheet '{filename}' has no data rows")
    return "\n".join(lines)


class JobExtractor:
    """
    Calls Gemini generateContent against an ordered list of candidate
    endpoints (model x API version). Each candidate gets the same retry policy:
    up to `attempts_per_model` tries on transport errors and retryable HTTP
    codes; any other failure moves on to the next candidate.
    """

    def __init__(self, api_key, models, api_versions=("v1beta", "v1"), attempts_per_model=1,
                 timeout_seconds=60, base_url="https://generativelanguage.googleapis.com"):
        self.api_key = api_key
        self.models = list(models)
        self.api_versions = list(api_versions)
        self.attempts_per_model = max(1, int(attempts_per_model))
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url.rstrip("/")
        self.last_error = None

    @property
    def configured(self):
        return bool(self.api_key) and self.api_key != "your_gemini_api_key_here"

    def candidate_endpoints(self):
        return [
            (model, version, f"{self.base_url}/{version}/models/{model}:generateContent")
            for model in self.models
            for version in self.api_versions
        ]

    def _call(self, url, prompt):
        headers = {'Content-Type': 'application/json', 'x-goog-api-key': self.api_key}
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.1, "maxOutputTokens": 8192},
        }
        return requests.post(url, headers=headers, json=payload, timeout=self.timeout_seconds)

    def extract(self, raw_text, today=None):
        if not str(raw_text or "").strip():
            raise ExtractionValidationError("Paste some job text or upload a spreadsheet first.")
        if not self.configured:
            raise ExtractionValidationError("Gemini API key not configured")

        prompt = build_prompt(raw_text, today or date.today())
        self.last_error = None

        for model, version, url in self.candidate_endpoints():
            for attempt in range(1, self.attempts_per_model + 1):
                try:
                    response = self._call(url, prompt)
                except requests.exceptions.RequestException as exc:
                    self.last_error = f"{model} on {version}: request error {exc}"
                    logger.warning(f"[EXTRACT] {self.last_error} (attempt {attempt})")
                    continue

                if response.ok:
                    try:
                        data = response.json()
                        text = data['candidates'][0]['content']['parts'][0]['text']
                    except (ValueError, KeyError, IndexError, TypeError):
                        self.last_error = f"{model} on {version}: no content returned from AI"
                        logger.warning(f"[EXTRACT] {self.last_error}")
                        break
                    try:
                        jobs = parse_model_reply(text)
                    except ExtractionError as exc:
                        self.last_error = f"{model} on {version}: {exc}"
                        logger.warning(f"[EXTRACT] {self.last_error}")
                        break
                    logger.info(f"[EXTRACT] {len(jobs)} job(s) extracted with {model} ({version})")
                    return jobs

                error_text = response.text.strip().replace("\n", " ")[:300]
                self.last_error = f"{model} on {version} failed ({response.status_code}): {error_text}"
                logger.warning(f"[EXTRACT] {self.last_error}")
                if response.status_code not in RETRYABLE_STATUS:
                    break

        raise ExtractionError(f"All AI models failed. Last error: {self.last_error or 'Unknown error'}")


def build_job_extractor(app_settings):
    return JobExtractor(
        api_key=app_settings.gemini_api_key,
        models=app_settings.gemini_models,
        attempts_per_model=app_settings.advanced_int("gemini_attempts_per_model", 1),
        timeout_seconds=max(60, app_settings.request_timeout_seconds),
    )
