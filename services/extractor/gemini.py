"""Invoice field extraction through the Gemini generateContent API.

The model is treated as an oracle: document bytes in, structured fields out.
"""
import base64
import json
import logging
import re
from datetime import date
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from shared import settings
from shared.errors import ExtractionError
from shared.rate_limiter import gemini_limiter, RateLimiter
from services.extractor.suppliers import normalize_supplier_name

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Atua como contabilista sénior. Verifica primeiro se o documento é uma fatura,
recibo ou documento financeiro legível; caso contrário is_valid_document = false e indica
rejection_reason ("nao_e_documento", "documento_ilegivel" ou "nao_e_fatura").

Classificação:
- document_type: "fatura", "nota_credito", "recibo" ou "outro".
- cost_type: "custo_fixo" para despesas recorrentes (seguros, rendas, telecomunicações, software,
  eletricidade, água), "custo_variavel" para despesas pontuais (refeições, combustível,
  estacionamento, táxi, material), null se não for uma despesa.

Extração:
- doc_date no formato YYYY-MM-DD (assume DD-MM-AAAA se ambíguo).
- supplier_name curto e SEMPRE EM MAIÚSCULAS (ex: "GALP", "FIDELIDADE").
- total_amount com impostos, ponto decimal.
- summary telegráfico, no máximo 5 palavras.

Responde APENAS com JSON:
{"is_valid_document": boolean, "rejection_reason": string|null,
 "document_type": string|null, "cost_type": string|null, "doc_year": number|null,
 "doc_date": "YYYY-MM-DD"|null, "supplier_name": string|null, "supplier_vat": string|null,
 "doc_number": string|null, "total_amount": number|null, "tax_amount": number|null,
 "summary": string|null, "confidence_score": number}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ExtractedInvoice(BaseModel):
    """Structured fields returned by the extraction oracle."""

    is_valid_document: bool = True
    rejection_reason: Optional[str] = None
    document_type: Optional[str] = None
    cost_type: Optional[str] = None
    doc_year: Optional[int] = None
    doc_date: Optional[date] = None
    supplier_name: Optional[str] = None
    supplier_vat: Optional[str] = None
    doc_number: Optional[str] = None
    total_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    summary: Optional[str] = None
    confidence_score: Optional[float] = Field(default=0, ge=0, le=100)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def missing_confidence(cls, value):
        # null confidence sends the document to review
        return 0 if value is None else value

    @field_validator("cost_type")
    @classmethod
    def known_cost_type(cls, value):
        return value if value in ("custo_fixo", "custo_variavel") else None

    @field_validator("supplier_name")
    @classmethod
    def normalize_supplier(cls, value):
        return normalize_supplier_name(value)

    @field_validator("doc_number", "summary", "supplier_vat")
    @classmethod
    def blank_to_none(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None


def strip_fences(text: str) -> str:
    """Remove ```json ... ``` wrapping the model sometimes adds."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_extraction(text: str) -> ExtractedInvoice:
    """Parse and validate raw model output.

    Raises:
        ExtractionError: unparseable output, rejected document, or missing
            supplier/date/amount.
    """
    cleaned = strip_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Extraction output is not JSON: {cleaned[:200]}")
        raise ExtractionError(f"Invalid JSON from extraction model: {e}") from e

    if not isinstance(payload, dict):
        raise ExtractionError(f"Extraction output is not a JSON object: {type(payload).__name__}")

    try:
        invoice = ExtractedInvoice(**payload)
    except PydanticValidationError as e:
        raise ExtractionError(f"Extraction output failed validation: {e}") from e

    if not invoice.is_valid_document:
        raise ExtractionError(f"Document rejected: {invoice.rejection_reason or 'nao_e_documento'}")

    missing = [
        field for field in ("supplier_name", "doc_date", "total_amount")
        if getattr(invoice, field) is None
    ]
    if missing:
        raise ExtractionError(f"Extraction missing required fields: {', '.join(missing)}")

    if not invoice.doc_year:
        invoice.doc_year = invoice.doc_date.year
    return invoice


class GeminiExtractor:
    """REST client for Gemini document extraction."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_s: Optional[int] = None,
        limiter: RateLimiter = gemini_limiter,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.timeout_s = timeout_s or settings.gemini_timeout_seconds
        self.limiter = limiter

    def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ExtractionError("GEMINI_API_KEY is not configured")
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        self.limiter.wait_for_slot()
        resp = requests.post(url, params={"key": self.api_key}, json=payload, timeout=self.timeout_s)
        resp.raise_for_status()
        return resp.json()

    @staticmethod
    def _response_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ExtractionError("Extraction model returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise ExtractionError("Extraction model returned an empty answer")
        return text

    def extract(self, data: bytes, mime_type: str) -> ExtractedInvoice:
        """Extract invoice fields from document bytes."""
        payload = {
            "contents": [{
                "role": "user",
                "parts": [
                    {"text": EXTRACTION_PROMPT},
                    {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}},
                ],
            }],
            "generationConfig": {"temperature": 0, "responseMimeType": "application/json"},
        }
        try:
            response = self._request(payload)
        except requests.RequestException as e:
            logger.error(f"Gemini request failed: {e}")
            raise ExtractionError(f"Extraction request failed: {e}") from e

        invoice = parse_extraction(self._response_text(response))
        logger.info(
            f"Extracted {invoice.supplier_name} {invoice.doc_date} {invoice.total_amount} "
            f"(confidence {invoice.confidence_score})"
        )
        return invoice
